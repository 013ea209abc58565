"""Session report models (Pydantic) and the report builder.

The report is what a session leaves behind for the operator: what was found,
what ran, what is still broken, the exact commands a human would run next and
a root-cause hypothesis. Exporting it is the front end's job; ``to_json_dict``
gives a JSON-ready payload.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .catalog import RemediationCatalog
from .exceptions import PlaceholderError
from .models import FailureKind, Finding, FindingCategory, ProbeFailure, SessionState
from .planner import Planner
from .session import Session

HYPOTHESES: Dict[FindingCategory, str] = {
    FindingCategory.STORE_MISSING: "The boot store was deleted or never created on the boot partition.",
    FindingCategory.STORE_CORRUPT: "The boot store exists but cannot be enumerated; it is damaged.",
    FindingCategory.PARTITION_NOT_MOUNTED: "The boot partition has no drive letter, so repair tools cannot reach it.",
    FindingCategory.BOOT_PARTITION_MISSING: "No boot partition exists on the system disk.",
    FindingCategory.BOOT_PARTITION_UNREADABLE: "The boot partition's file system is unreadable (RAW or damaged).",
    FindingCategory.LOADER_FILE_MISSING_IN_SYSTEM: "Loader files in the installed system are missing or truncated.",
    FindingCategory.LOADER_FILE_MISSING_IN_BOOT_PARTITION: "The boot manager is missing from the boot partition.",
    FindingCategory.DRIVER_MISSING: "A storage driver needed to reach the system disk at boot is missing.",
    FindingCategory.PERMISSION_DENIED: "The engine lacks the elevated rights needed to inspect and repair boot state.",
    FindingCategory.FIRMWARE_MODE_MISMATCH: "Boot files are laid out for a different firmware mode than the machine uses.",
}


class ReportFinding(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    category: str
    severity: str
    confidence: int
    evidence: Dict[str, Any] = Field(default_factory=dict)


class AppliedStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    step_id: str
    tier: int
    command: str
    exit_code: int
    verified: bool
    outcome: str
    note: str = ""
    at: datetime


class InconclusiveProbe(BaseModel):
    model_config = ConfigDict(extra="forbid")

    probe: str
    reason: str
    detail: str = ""


class TierSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tier: int
    targeted_finding_ids: List[str] = Field(default_factory=list)
    verified: bool
    skipped: bool = False
    failure_kind: Optional[str] = None
    detail: str = ""


class SessionReport(BaseModel):
    """Final (or interim) report for one session."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    target_volume: str
    mode: str
    final_state: str
    findings: List[ReportFinding] = Field(default_factory=list)
    steps_applied: List[AppliedStep] = Field(default_factory=list)
    remaining_issues: List[ReportFinding] = Field(default_factory=list)
    inconclusive_probes: List[InconclusiveProbe] = Field(default_factory=list)
    manual_commands: List[str] = Field(default_factory=list)
    root_cause_hypothesis: str
    tiers: List[TierSummary] = Field(default_factory=list)
    backups: List[Dict[str, Any]] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tiers_attempted(self) -> List[int]:
        return [t.tier for t in self.tiers if not t.skipped]

    @property
    def tiers_skipped(self) -> List[int]:
        return [t.tier for t in self.tiers if t.skipped]

    def to_json_dict(self) -> Dict[str, Any]:
        """JSON-serializable dict with ISO datetimes."""
        return self.model_dump(mode="json", exclude_none=True)


def _report_finding(finding: Finding) -> ReportFinding:
    return ReportFinding(**finding.to_dict())


def _remaining(session: Session) -> List[Finding]:
    """Unresolved findings: what execution left behind, or the whole scan if nothing ran."""
    if session.executed:
        return list(session.outstanding)
    return list(session.scan.findings) if session.scan else []


def _inconclusive(session: Session) -> List[ProbeFailure]:
    """Probes still unchecked: what re-probing left behind, or the scan's failures if nothing ran."""
    if session.executed:
        return list(session.inconclusive)
    return list(session.scan.probe_failures) if session.scan else []


def _resolve(session: Session, template: str) -> str:
    if session.resolver is None:
        return template
    try:
        return session.resolver.resolve(template)
    except PlaceholderError:
        # Leave unknown facts visible to the operator as {placeholders}
        values = session.resolver.values()
        for key, value in values.items():
            template = template.replace("{" + key + "}", value)
        return template


def _manual_commands(session: Session, catalog: RemediationCatalog) -> List[str]:
    remaining = _remaining(session)
    commands: List[str] = []

    def add(command: str) -> None:
        if command and command not in commands:
            commands.append(command)

    if session.plan is not None:
        attempted = [a.tier for a in session.attempts if not a.skipped]
        last = max(attempted) if attempted else 0
        # Next rungs a human would try, including ones above the configured ceiling
        ladder = Planner(catalog, max_tier=5)
        actionable = [f for f in remaining if ladder.is_actionable(f)]
        partition = session.resolver.boot_partition if session.resolver else None
        for tier in range(last + 1, 6):
            for step in ladder.tier_steps(session.plan, tier, actionable, partition):
                add(_resolve(session, step.command_template))
            if commands:
                break

    for finding in remaining:
        for advice in catalog.advice_for(finding.category):
            add(_resolve(session, advice))
    return commands


def _hypothesis(session: Session) -> str:
    mismatches = [a for a in session.attempts if a.failure_kind == FailureKind.VERIFICATION_MISMATCH]
    if mismatches:
        first = mismatches[0]
        return (
            f"Tier {first.tier} tools reported success but the changes were not on disk "
            f"afterwards ({first.detail}). The target is likely locked, write-protected or "
            f"redirected; repairs that write to it cannot be trusted until that is cleared."
        )

    scan = session.scan
    if scan is not None and not scan.findings and scan.probe_failures:
        probes = ", ".join(f"{f.probe} ({f.reason})" for f in scan.probe_failures)
        return f"The scan was inconclusive: {probes}. Nothing can be assumed healthy."

    unchecked = _inconclusive(session)
    if session.state == SessionState.FAILED and unchecked and not _remaining(session):
        probes = ", ".join(f"{f.probe} ({f.reason})" for f in unchecked)
        return (
            f"The repairs that ran were verified, but {probes} remained inconclusive. "
            f"Nothing those checks cover can be assumed healthy."
        )

    if session.state == SessionState.SUCCEEDED:
        if not session.attempts:
            return "No boot problems were found."
        tier = session.attempts[-1].tier
        return f"Repaired and verified at tier {tier}."

    remaining = _remaining(session)
    if any(f.category == FindingCategory.PERMISSION_DENIED for f in remaining):
        return HYPOTHESES[FindingCategory.PERMISSION_DENIED]
    if remaining:
        # Findings are kept sorted by severity, so the first is the most likely cause
        return HYPOTHESES[remaining[0].category]
    if session.state == SessionState.ABORTED:
        return "The session was aborted before a repair could be verified."
    return "No root cause could be determined."


def build_report(session: Session, catalog: RemediationCatalog) -> SessionReport:
    scan = session.scan
    remaining = _remaining(session)
    return SessionReport(
        session_id=session.session_id,
        target_volume=session.target.drive_identifier,
        mode=session.mode.value,
        final_state=session.state.value,
        findings=[_report_finding(f) for f in (scan.findings if scan else ())],
        steps_applied=[AppliedStep(**r.to_dict()) for r in session.results],
        remaining_issues=[_report_finding(f) for f in remaining],
        inconclusive_probes=[InconclusiveProbe(**f.to_dict()) for f in _inconclusive(session)],
        manual_commands=_manual_commands(session, catalog),
        root_cause_hypothesis=_hypothesis(session),
        tiers=[
            TierSummary(
                tier=a.tier,
                targeted_finding_ids=list(a.targeted_finding_ids),
                verified=a.verified,
                skipped=a.skipped,
                failure_kind=a.failure_kind.value if a.failure_kind else None,
                detail=a.detail,
            )
            for a in session.attempts
        ],
        backups=[b.to_dict() for b in session.backups],
    )
