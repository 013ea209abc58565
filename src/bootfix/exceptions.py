"""Custom exceptions for the bootfix repair engine."""

from typing import Optional


class BootfixError(Exception):
    """Base exception for all bootfix errors."""

    pass


class ProbeError(BootfixError):
    """Raised by a probe that could not execute (access denied, missing prerequisite).

    The scanner records these as inconclusive results. They never mean "healthy".
    """

    def __init__(self, probe: str, reason: str, detail: str = ""):
        """
        Initialize probe error.

        Args:
            probe: Name of the probe that failed to run
            reason: Short machine-readable reason (e.g. "access_denied")
            detail: Optional human-readable detail
        """
        super().__init__(f"{probe}: {reason}" + (f" ({detail})" if detail else ""))
        self.probe = probe
        self.reason = reason
        self.detail = detail


class CommandError(BootfixError):
    """External tool returned a nonzero exit code."""

    def __init__(self, step_id: str, exit_code: int, output: str = ""):
        super().__init__(f"Step {step_id} exited with code {exit_code}")
        self.step_id = step_id
        self.exit_code = exit_code
        self.output = output


class VerificationMismatch(BootfixError):
    """Tool reported success but independent verification disagrees."""

    def __init__(self, tier: int, unresolved: list, failed_checks: Optional[list] = None):
        super().__init__(
            f"Tier {tier} reported success but verification found "
            f"{len(unresolved)} unresolved finding(s)"
        )
        self.tier = tier
        self.unresolved = unresolved
        self.failed_checks = failed_checks or []


class EnvironmentMismatch(BootfixError):
    """A tier cannot run in the current environment (tool unavailable, no media, ...)."""

    def __init__(self, message: str, tier: Optional[int] = None):
        super().__init__(message)
        self.tier = tier


class PlaceholderError(EnvironmentMismatch):
    """A command placeholder could not be resolved right before execution."""

    def __init__(self, placeholder: str, command: str):
        super().__init__(f"Unresolved placeholder {{{placeholder}}} in: {command}")
        self.placeholder = placeholder
        self.command = command


class SessionInProgressError(BootfixError):
    """Another session already holds the lock for this target volume.

    Fatal to the new request only; the existing session is never touched.
    """

    def __init__(self, volume: str, holder: Optional[str] = None):
        message = f"A repair session is already in progress for volume {volume}"
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)
        self.volume = volume
        self.holder = holder

    def to_dict(self) -> dict:
        """Structured payload for front ends."""
        return {
            "error": "session_in_progress",
            "volume": self.volume,
            "holder": self.holder,
            "message": str(self),
        }


class CatalogError(BootfixError):
    """The remediation catalog is malformed or incomplete."""

    pass


class InvalidTransition(BootfixError):
    """The session state machine was asked to make an illegal transition."""

    def __init__(self, from_state, to_state):
        super().__init__(f"Illegal session transition {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state
