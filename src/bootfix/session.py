"""Repair session: state machine bookkeeping, append-only log and lock ownership."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, FrozenSet, List, Optional, Union

from .backup import BackupRecord
from .capabilities import EventSink, StaticEnvironment
from .exceptions import InvalidTransition
from .models import (
    ExecutionResult,
    Finding,
    PlanPreview,
    ProbeFailure,
    RepairPlan,
    RiskLevel,
    ScanResult,
    SessionMode,
    SessionState,
    StateTransition,
    TargetVolume,
    TierAttempt,
)
from .placeholders import PlaceholderResolver
from .session_lock import SessionLock

logger = logging.getLogger(__name__)

S = SessionState

# Succeeded is only reachable from Verifying.
ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    S.IDLE: frozenset({S.PLANNING, S.ABORTED}),
    S.PLANNING: frozenset({S.AWAITING_CONFIRMATION, S.FAILED, S.ABORTED}),
    S.AWAITING_CONFIRMATION: frozenset(
        {S.EXECUTING_TIER, S.VERIFYING, S.PREVIEWED, S.FAILED, S.ABORTED}
    ),
    S.EXECUTING_TIER: frozenset({S.VERIFYING, S.ABORTED}),
    S.VERIFYING: frozenset({S.SUCCEEDED, S.ESCALATING, S.FAILED, S.ABORTED}),
    S.ESCALATING: frozenset({S.EXECUTING_TIER, S.AWAITING_CONFIRMATION, S.FAILED, S.ABORTED}),
}

LogEntry = Union[StateTransition, ExecutionResult]


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


class Session:
    """One repair attempt against one target volume.

    The session is also the handle front ends hold. State only changes through
    ``transition``, which validates the move, appends it to the log, forwards it
    to the event sink and releases the volume lock on terminal states.
    """

    def __init__(
        self,
        target: TargetVolume,
        mode: SessionMode,
        environment: StaticEnvironment,
        lock: SessionLock,
        events: EventSink,
        prefer_reversible: bool = True,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or lock.session_id
        self.target = target
        self.mode = mode
        self.environment = environment
        self.prefer_reversible = prefer_reversible
        self.lock = lock
        self.events = events

        self.state = SessionState.IDLE
        self.scan: Optional[ScanResult] = None
        self.plan: Optional[RepairPlan] = None
        self.resolver: Optional[PlaceholderResolver] = None
        self.preview: Optional[PlanPreview] = None
        self.outstanding: List[Finding] = []
        # Probes that still could not run; a session never succeeds while any remain
        self.inconclusive: List[ProbeFailure] = []
        self.attempts: List[TierAttempt] = []
        self.backups: List[BackupRecord] = []
        self.current_tier: Optional[int] = None
        self.confirmed_risk: Optional[RiskLevel] = None
        self.executed = False

        self._log: List[LogEntry] = []
        self._guard = threading.RLock()
        self._abort_requested = threading.Event()
        self._running = False

    # ------------------------------------------------------------------ #
    # Log
    # ------------------------------------------------------------------ #

    @property
    def log(self) -> List[LogEntry]:
        """Copy of the append-only log."""
        with self._guard:
            return list(self._log)

    @property
    def transitions(self) -> List[StateTransition]:
        return [e for e in self.log if isinstance(e, StateTransition)]

    @property
    def results(self) -> List[ExecutionResult]:
        return [e for e in self.log if isinstance(e, ExecutionResult)]

    @property
    def lock_held(self) -> bool:
        return self.lock.held

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def record(self, result: ExecutionResult) -> ExecutionResult:
        with self._guard:
            self._log.append(result)
        self.events.append(result)
        return result

    def transition(
        self, to_state: SessionState, tier: Optional[int] = None, reason: str = ""
    ) -> StateTransition:
        with self._guard:
            from_state = self.state
            if from_state.is_terminal or to_state not in ALLOWED_TRANSITIONS.get(from_state, ()):
                raise InvalidTransition(from_state.value, to_state.value)
            if tier is not None:
                self.current_tier = tier
            event = StateTransition(
                session_id=self.session_id,
                from_state=from_state,
                to_state=to_state,
                tier=tier,
                reason=reason,
            )
            self.state = to_state
            self._log.append(event)
            if to_state.is_terminal:
                self.lock.release()

        suffix = f" (tier {tier})" if tier is not None else ""
        logger.info(
            f"[Session] {self.session_id}: {from_state.value} -> {to_state.value}{suffix}"
            + (f": {reason}" if reason else "")
        )
        self.events.append(event)
        return event

    # ------------------------------------------------------------------ #
    # Abort / worker bookkeeping
    # ------------------------------------------------------------------ #

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested.is_set()

    def abort(self, reason: str = "aborted by operator") -> Optional[StateTransition]:
        """Abort now if no worker is executing; otherwise flag it for the next tier boundary.

        Returns:
            The Aborted transition if it happened immediately, else None.
        """
        with self._guard:
            self._abort_requested.set()
            if self._running or self.state.is_terminal:
                return None
            return self.transition(SessionState.ABORTED, reason=reason)

    def begin_run(self) -> bool:
        """Mark a worker as running. False if the session already ended."""
        with self._guard:
            if self.state.is_terminal or self._running:
                return False
            self._running = True
            return True

    def end_run(self) -> None:
        with self._guard:
            self._running = False
