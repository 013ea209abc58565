"""
Backups taken before destructive or irreversible remediation steps.

Mechanism:
- A step's BackupAction command runs through the injected CommandRunner
- Its ``verify_path`` must then exist with at least ``min_size_bytes``;
  a zero exit code alone is not proof that anything was written
- The mutating step runs only after both checks pass

Relative backup roots live on the target volume, not on the (often RAM-backed)
recovery environment, so the copies survive a reboot:
    {system_root}<backup_root>\\<session_id>

A backup command that already succeeded in this session (same resolved command)
is not repeated.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from .capabilities import CommandRunner, FileProbe
from .exceptions import PlaceholderError
from .models import RemediationStep, TargetVolume
from .placeholders import PlaceholderResolver

logger = logging.getLogger(__name__)


def backup_dir_for(target: TargetVolume, backup_root: str, session_id: str) -> str:
    """Absolute per-session backup directory (Windows path syntax)."""
    root = backup_root.replace("/", "\\").rstrip("\\")
    is_absolute = root.startswith("\\\\") or (len(root) >= 2 and root[1] == ":")
    if not is_absolute:
        system_root = target.root_path if target.root_path.endswith("\\") else target.root_path + "\\"
        root = system_root + root.lstrip(".\\")
    return f"{root}\\{session_id}"


@dataclass(frozen=True)
class BackupRecord:
    step_id: str
    command: str
    verify_path: str
    ok: bool
    exit_code: Optional[int] = None
    reused: bool = False
    detail: str = ""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "command": self.command,
            "verify_path": self.verify_path,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "reused": self.reused,
            "detail": self.detail,
            "at": self.at.isoformat(),
        }


class BackupManager:
    """Runs and confirms BackupActions for one session."""

    def __init__(self, runner: CommandRunner, files: FileProbe, timeout: Optional[float] = None):
        """
        Args:
            runner: Command runner used for the backup command
            files: File probe used to confirm the backup landed
            timeout: Per-command timeout in seconds
        """
        self.runner = runner
        self.files = files
        self.timeout = timeout
        self._completed: Dict[str, str] = {}  # resolved command -> verify path

    @staticmethod
    def needs_backup(step: RemediationStep) -> bool:
        return step.backup_action is not None and (step.destructive or not step.reversible)

    def ensure(self, step: RemediationStep, resolver: PlaceholderResolver) -> BackupRecord:
        """Run (or reuse) the step's backup and confirm it is present.

        Returns:
            BackupRecord; ``ok`` is False if the mutating step must not run.
        """
        action = step.backup_action
        try:
            command = resolver.resolve(action.command)
            verify_path = resolver.resolve(action.verify_path)
        except PlaceholderError as e:
            logger.error(f"[Backup] Cannot resolve backup for {step.step_id}: {e}")
            return BackupRecord(step.step_id, action.command, action.verify_path, ok=False, detail=str(e))

        if command in self._completed:
            logger.info(f"[Backup] Reusing backup for {step.step_id}: {verify_path}")
            return BackupRecord(step.step_id, command, verify_path, ok=True, reused=True)

        logger.info(f"[Backup] Backing up before {step.step_id}: {command}")
        output = self.runner.execute(action.command, resolver.values(), timeout=self.timeout)
        if output.exit_code != 0:
            logger.error(f"[Backup] Backup command failed with exit code {output.exit_code}")
            return BackupRecord(
                step.step_id,
                command,
                verify_path,
                ok=False,
                exit_code=output.exit_code,
                detail=output.combined.strip()[:200],
            )

        try:
            present = self.files.exists(verify_path)
            size = self.files.size(verify_path) if present else 0
        except OSError as e:
            present, size = False, 0
            logger.error(f"[Backup] Cannot inspect {verify_path}: {e}")

        if not present or size < action.min_size_bytes:
            logger.error(
                f"[Backup] Backup reported success but {verify_path} is "
                f"{'missing' if not present else f'{size} bytes'}"
            )
            return BackupRecord(
                step.step_id,
                command,
                verify_path,
                ok=False,
                exit_code=output.exit_code,
                detail="backup not confirmed present",
            )

        self._completed[command] = verify_path
        logger.info(f"[Backup] Confirmed {verify_path} ({size} bytes)")
        return BackupRecord(step.step_id, command, verify_path, ok=True, exit_code=0)
