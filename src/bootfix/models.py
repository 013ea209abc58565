"""Core data model for the boot repair engine.

Everything here except ``RepairPlan.preview`` is plain data. Records that the
engine hands around after creation (findings, steps, results, transitions) are
frozen dataclasses so nothing downstream can rewrite history.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


class FindingCategory(str, Enum):
    """Closed set of boot failure categories the scanner can report."""

    STORE_MISSING = "store_missing"
    STORE_CORRUPT = "store_corrupt"
    PARTITION_NOT_MOUNTED = "partition_not_mounted"
    BOOT_PARTITION_MISSING = "boot_partition_missing"
    BOOT_PARTITION_UNREADABLE = "boot_partition_unreadable"
    LOADER_FILE_MISSING_IN_SYSTEM = "loader_file_missing_in_system"
    LOADER_FILE_MISSING_IN_BOOT_PARTITION = "loader_file_missing_in_boot_partition"
    DRIVER_MISSING = "driver_missing"
    PERMISSION_DENIED = "permission_denied"
    FIRMWARE_MODE_MISMATCH = "firmware_mode_mismatch"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return {"critical": 0, "warning": 1, "info": 2}[self.value]


class MountState(str, Enum):
    MOUNTED = "mounted"
    UNMOUNTED = "unmounted"
    UNKNOWN = "unknown"


class EnvironmentType(str, Enum):
    """Where the engine is running relative to the target installation."""

    LIVE_RUNNING_OS = "live_running_os"
    PRE_BOOT_RECOVERY = "pre_boot_recovery"


class SessionMode(str, Enum):
    DRY_RUN = "dry_run"
    APPLY = "apply"


class SessionState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING_TIER = "executing_tier"
    VERIFYING = "verifying"
    ESCALATING = "escalating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    PREVIEWED = "previewed"  # DryRun sessions end here

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.ABORTED, SessionState.PREVIEWED}
)


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


class RiskLevel(str, Enum):
    """Risk classification used by the safety gate."""

    SAFE = "safe"  # read-only or trivially reversible
    ELEVATED = "elevated"  # mutates boot state, needs an ordinary yes/no
    DESTRUCTIVE = "destructive"  # needs the literal confirmation phrase

    @property
    def rank(self) -> int:
        return {"safe": 0, "elevated": 1, "destructive": 2}[self.value]


class FailureKind(str, Enum):
    COMMAND_ERROR = "command_error"
    VERIFICATION_MISMATCH = "verification_mismatch"
    BACKUP_FAILED = "backup_failed"
    ENVIRONMENT_MISMATCH = "environment_mismatch"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --------------------------------------------------------------------------- #
# System state
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class TargetVolume:
    """The installation being repaired. Chosen by the operator, fixed per session."""

    drive_identifier: str  # e.g. "C:" or "D:" when booted from recovery media
    root_path: str  # e.g. "C:\\"
    file_system: str = "NTFS"
    is_encrypted: bool = False
    health_status: str = "healthy"

    @property
    def lock_key(self) -> str:
        """Normalized identifier used for per-volume locking."""
        return normalize_drive(self.drive_identifier)


def normalize_drive(identifier: str) -> str:
    """'c:\\' -> 'C', '\\\\?\\Volume{..}\\' -> 'VOLUME_..' (safe as a filename)."""
    cleaned = identifier.strip().rstrip("\\/").rstrip(":").upper()
    return re.sub(r"[^A-Z0-9_-]+", "_", cleaned).strip("_") or "UNKNOWN"


@dataclass(frozen=True)
class BootPartition:
    """The dedicated boot partition (ESP on UEFI systems)."""

    drive_identifier: Optional[str]
    mount_state: MountState
    file_system: str
    access_path: Optional[str] = None  # volume GUID path, readable without a letter

    @property
    def root(self) -> Optional[str]:
        """Path prefix usable for reading the partition contents, if any."""
        if self.drive_identifier:
            return self.drive_identifier.rstrip("\\") + "\\"
        if self.access_path:
            return self.access_path if self.access_path.endswith("\\") else self.access_path + "\\"
        return None


@dataclass(frozen=True)
class BootEntry:
    identifier: str
    description: str = ""
    entry_type: str = ""


@dataclass(frozen=True)
class BootStore:
    path: str
    readable: bool
    entries: Tuple[BootEntry, ...] = ()
    default_entry_id: Optional[str] = None


# --------------------------------------------------------------------------- #
# Scan output
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class Finding:
    """A single diagnosed problem. Immutable once the scanner creates it."""

    id: str
    category: FindingCategory
    evidence: Mapping[str, Any] = field(default_factory=dict, hash=False)
    severity: Severity = Severity.CRITICAL
    confidence: int = 100

    def __post_init__(self):
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence must be within 0..100, got {self.confidence}")
        object.__setattr__(self, "evidence", MappingProxyType(dict(self.evidence)))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category.value,
            "evidence": dict(self.evidence),
            "severity": self.severity.value,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ProbeFailure:
    """A probe that could not run. Inconclusive, never "healthy"."""

    probe: str
    reason: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {"probe": self.probe, "reason": self.reason, "detail": self.detail}


@dataclass(frozen=True)
class ScanResult:
    findings: Tuple[Finding, ...]
    probe_failures: Tuple[ProbeFailure, ...] = ()
    boot_partition: Optional[BootPartition] = None
    boot_store: Optional[BootStore] = None

    @property
    def finding_ids(self) -> List[str]:
        return [f.id for f in self.findings]

    def by_id(self, finding_id: str) -> Optional[Finding]:
        for finding in self.findings:
            if finding.id == finding_id:
                return finding
        return None

    def has_category(self, category: FindingCategory) -> bool:
        return any(f.category == category for f in self.findings)


# --------------------------------------------------------------------------- #
# Planning
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class BackupAction:
    """Command that must succeed, and leave ``verify_path`` behind, before a mutation."""

    command: str
    verify_path: str
    min_size_bytes: int = 1


@dataclass(frozen=True)
class ExpectedOutput:
    """A file a step claims to write; checked by the verifier."""

    path: str
    min_size_bytes: int = 1


@dataclass(frozen=True)
class RemediationStep:
    step_id: str
    tier: int
    command_template: str
    targets_finding_ids: Tuple[str, ...]
    destructive: bool = False
    reversible: bool = True
    backup_action: Optional[BackupAction] = None
    description: str = ""
    timeout_seconds: Optional[float] = None
    requires_mounted_partition: bool = False
    provides_mounted_partition: bool = False
    touches_target: bool = True
    environments: Tuple[EnvironmentType, ...] = ()  # empty means any
    requires_elevation: bool = True
    expected_outputs: Tuple[ExpectedOutput, ...] = ()
    preserve_command: Optional[str] = None

    @property
    def placeholders(self) -> List[str]:
        return sorted(set(re.findall(r"\{(\w+)\}", self.command_template)))

    def allowed_in(self, environment: EnvironmentType) -> bool:
        return not self.environments or environment in self.environments


@dataclass(frozen=True)
class RepairPlan:
    """Tiered, ordered remediation steps for one finding set."""

    steps: Tuple[RemediationStep, ...]
    findings: Tuple[Finding, ...] = ()
    fallback_steps: Tuple[RemediationStep, ...] = ()  # preview only, never scheduled

    @property
    def tiers(self) -> List[int]:
        return sorted({s.tier for s in self.steps})

    @property
    def is_empty(self) -> bool:
        return not self.steps

    def steps_for_tier(self, tier: int) -> List[RemediationStep]:
        return [s for s in self.steps if s.tier == tier]

    def targeted_finding_ids(self, tier: int) -> List[str]:
        ids: List[str] = []
        for step in self.steps_for_tier(tier):
            for fid in step.targets_finding_ids:
                if fid not in ids:
                    ids.append(fid)
        return ids

    def preview(self, resolve=None) -> str:
        """Render the commands that would run, tier by tier.

        Args:
            resolve: Optional callable(step) -> str returning the rendered command.
                Unresolved templates are shown as-is.
        """
        lines: List[str] = []
        if self.is_empty:
            lines.append("No remediation steps planned.")
        for tier in self.tiers:
            lines.append(f"Tier {tier}:")
            for step in self.steps_for_tier(tier):
                lines.append(f"  [{step.step_id}] {resolve(step) if resolve else step.command_template}")
                if step.backup_action:
                    lines.append(f"      backup first: {step.backup_action.command}")
        if self.fallback_steps:
            lines.append("Possible escalation (only if lower tiers fail verification):")
            for step in self.fallback_steps:
                lines.append(f"  Tier {step.tier} [{step.step_id}] {step.command_template}")
        return "\n".join(lines)


# --------------------------------------------------------------------------- #
# Execution record
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ExecutionResult:
    step: RemediationStep
    exit_code: int
    raw_output: str
    verified: bool
    outcome: Outcome
    command: str = ""  # fully resolved command line
    note: str = ""
    at: datetime = field(default_factory=_utcnow)

    @property
    def tier(self) -> int:
        return self.step.tier

    @property
    def reported_success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        return {
            "step_id": self.step.step_id,
            "tier": self.step.tier,
            "command": self.command or self.step.command_template,
            "exit_code": self.exit_code,
            "verified": self.verified,
            "outcome": self.outcome.value,
            "note": self.note,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True)
class StateTransition:
    session_id: str
    from_state: SessionState
    to_state: SessionState
    tier: Optional[int] = None
    reason: str = ""
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "from": self.from_state.value,
            "to": self.to_state.value,
            "tier": self.tier,
            "reason": self.reason,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True)
class TierAttempt:
    tier: int
    targeted_finding_ids: Tuple[str, ...]
    verified: bool
    skipped: bool = False
    failure_kind: Optional[FailureKind] = None
    detail: str = ""


@dataclass(frozen=True)
class PlanPreview:
    """Emitted instead of execution for DryRun sessions."""

    session_id: str
    text: str
    commands: Tuple[str, ...]


def sort_findings(findings: Iterable[Finding]) -> Tuple[Finding, ...]:
    return tuple(sorted(findings, key=lambda f: (f.severity.rank, f.id)))


def findings_by_id(findings: Iterable[Finding]) -> Dict[str, Finding]:
    return {f.id: f for f in findings}
