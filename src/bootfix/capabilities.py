"""
Capability interfaces the engine consumes.

The engine never touches the machine directly. Everything it knows about the
target comes through these interfaces, injected once per engine/session:

- CommandRunner: runs a (non-interactive) external tool with a timeout
- FileProbe: read-only filesystem access
- EnvironmentInfo: explicit snapshot of where we are running
- UserPrompt: ordinary and high-friction confirmations
- EventSink: receives every state transition / execution result

Implementations:
- SubprocessCommandRunner, LocalFileProbe, StaticEnvironment, LoggingEventSink
  are the defaults used outside tests.
- Front ends supply their own UserPrompt; DecliningPrompt is the safe
  non-interactive fallback.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .models import EnvironmentType, RiskLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandOutput:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def combined(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner(Protocol):
    def execute(
        self,
        command_template: str,
        resolved_args: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> CommandOutput:
        """
        Run ``command_template`` with ``resolved_args`` substituted.

        Must not prompt. Must honour ``timeout`` (seconds) when given.
        """
        ...


class FileProbe(Protocol):
    def exists(self, path: str) -> bool: ...

    def size(self, path: str) -> int: ...

    def read_text(self, path: str) -> str: ...


class EnvironmentInfo(Protocol):
    def type(self) -> EnvironmentType: ...

    def has_elevated_rights(self) -> bool: ...

    def running_volume(self) -> Optional[str]:
        """Drive the current OS booted from, or None in a pre-boot context."""
        ...


class UserPrompt(Protocol):
    def confirm(self, risk_level: RiskLevel, message: str) -> bool: ...

    def confirm_with_phrase(self, required_phrase: str, message: str) -> bool: ...


class EventSink(Protocol):
    def append(self, event: Any) -> None: ...


def render_command(command_template: str, resolved_args: Dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders. Unknown placeholders are left intact."""
    rendered = command_template
    for key, value in resolved_args.items():
        rendered = rendered.replace("{" + key + "}", str(value))
    return rendered


class SubprocessCommandRunner:
    """CommandRunner backed by ``subprocess.run`` (no shell)."""

    def __init__(self, default_timeout: Optional[float] = None, cwd: Optional[str] = None):
        self.default_timeout = default_timeout
        self.cwd = cwd

    def execute(
        self,
        command_template: str,
        resolved_args: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> CommandOutput:
        command = render_command(command_template, resolved_args)
        effective_timeout = timeout if timeout is not None else self.default_timeout
        # CreateProcess takes the command line as-is; splitting it would re-escape the quotes
        args = command if os.name == "nt" else shlex.split(command)
        logger.debug(f"[CommandRunner] Executing: {command[:200]}")
        try:
            result = subprocess.run(
                args,
                shell=False,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[CommandRunner] Timed out after {effective_timeout}s: {command[:200]}")
            return CommandOutput(
                exit_code=-1,
                stdout=e.stdout if isinstance(e.stdout, str) else "",
                stderr=f"Command timed out after {effective_timeout}s",
                timed_out=True,
            )
        except FileNotFoundError as e:
            tool = command.split(None, 1)[0] if command.strip() else command
            logger.warning(f"[CommandRunner] Tool not found: {tool}")
            return CommandOutput(exit_code=127, stderr=str(e))
        return CommandOutput(
            exit_code=result.returncode, stdout=result.stdout or "", stderr=result.stderr or ""
        )


class LocalFileProbe:
    """FileProbe over the local filesystem. Read-only by construction."""

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def size(self, path: str) -> int:
        return os.path.getsize(path)

    def read_text(self, path: str) -> str:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()


class StaticEnvironment:
    """Explicit environment snapshot, taken once and injected per session."""

    def __init__(
        self,
        environment_type: EnvironmentType,
        elevated: bool,
        running_volume: Optional[str] = None,
    ):
        self._type = environment_type
        self._elevated = elevated
        self._running_volume = running_volume

    def type(self) -> EnvironmentType:
        return self._type

    def has_elevated_rights(self) -> bool:
        return self._elevated

    def running_volume(self) -> Optional[str]:
        return self._running_volume

    @classmethod
    def snapshot(cls, environment: EnvironmentInfo) -> "StaticEnvironment":
        """Freeze any EnvironmentInfo into a value for the session's lifetime."""
        return cls(
            environment.type(),
            environment.has_elevated_rights(),
            environment.running_volume(),
        )


class DecliningPrompt:
    """UserPrompt for unattended use: never confirms anything."""

    def confirm(self, risk_level: RiskLevel, message: str) -> bool:
        logger.warning(f"[Prompt] Declining {risk_level.value} confirmation (non-interactive)")
        return False

    def confirm_with_phrase(self, required_phrase: str, message: str) -> bool:
        logger.warning("[Prompt] Declining destructive confirmation (non-interactive)")
        return False


class LoggingEventSink:
    """EventSink that forwards session events to stdlib logging."""

    def __init__(self, logger_name: str = "bootfix.events"):
        self._logger = logging.getLogger(logger_name)

    def append(self, event: Any) -> None:
        payload = event.to_dict() if hasattr(event, "to_dict") else {"event": repr(event)}
        self._logger.info(f"[Event] {type(event).__name__}", extra={"event": payload})


@dataclass
class Capabilities:
    """Bundle of injected collaborators."""

    runner: CommandRunner
    files: FileProbe
    environment: EnvironmentInfo
    prompt: UserPrompt
    events: EventSink

    @classmethod
    def local(
        cls,
        environment: EnvironmentInfo,
        prompt: Optional[UserPrompt] = None,
        command_timeout: Optional[float] = None,
    ) -> "Capabilities":
        """Defaults for running against the local machine."""
        return cls(
            runner=SubprocessCommandRunner(default_timeout=command_timeout),
            files=LocalFileProbe(),
            environment=environment,
            prompt=prompt or DecliningPrompt(),
            events=LoggingEventSink(),
        )
