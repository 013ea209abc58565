"""
Boot repair engine facade.

Front ends talk to the engine only through this class:

    engine = BootRepairEngine(Capabilities.local(environment, prompt))
    session = engine.start_session(TargetVolume("C:", "C:\\"), SessionMode.APPLY)
    print(engine.get_plan(session).preview())
    for event in engine.execute(session, approved=False):
        ...
    report = engine.get_report(session)

``execute`` returns a generator; pull it from whatever worker the front end
uses. ``abort`` may be called from another thread and takes effect at the next
tier boundary (immediately if no worker is running).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, Optional

from .backup import backup_dir_for
from .capabilities import Capabilities, StaticEnvironment
from .catalog import RemediationCatalog, load_catalog
from .config import Settings
from .diagnostics import Scanner, Verifier
from .exceptions import BootfixError
from .executor import Event, RepairExecutor
from .models import RepairPlan, SessionMode, SessionState, TargetVolume
from .placeholders import PlaceholderResolver
from .planner import Planner
from .report import SessionReport, build_report
from .safety_gate import SafetyGate
from .session import Session, new_session_id
from .session_lock import SessionLock

logger = logging.getLogger(__name__)


class BootRepairEngine:
    def __init__(
        self,
        capabilities: Capabilities,
        settings: Optional[Settings] = None,
        catalog: Optional[RemediationCatalog] = None,
    ):
        if settings is None:
            from .config import settings as default_settings

            settings = default_settings
        self.capabilities = capabilities
        self.settings = settings
        self.catalog = catalog or load_catalog(settings.catalog_path)
        self.planner = Planner(self.catalog, max_tier=settings.max_tier)
        self._executors: Dict[str, RepairExecutor] = {}

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def start_session(
        self,
        target: TargetVolume,
        mode: SessionMode = SessionMode.DRY_RUN,
        prefer_reversible: Optional[bool] = None,
    ) -> Session:
        """Lock the volume, scan, plan, and park the session in AwaitingConfirmation.

        Raises:
            SessionInProgressError: Another session holds ``target``. The holder
                is not touched.
        """
        session_id = new_session_id()
        lock = SessionLock(target, session_id, lock_dir=Path(self.settings.lock_dir))
        environment = StaticEnvironment.snapshot(self.capabilities.environment)
        session = Session(
            target=target,
            mode=mode,
            environment=environment,
            lock=lock,
            events=self.capabilities.events,
            prefer_reversible=(
                self.settings.favor_reversibility if prefer_reversible is None else prefer_reversible
            ),
            session_id=session_id,
        )

        lock.acquire()
        try:
            session.transition(SessionState.PLANNING, reason=f"{mode.value} session")
            scanner = self._scanner(environment)
            session.scan = scanner.scan(target)
            session.outstanding = list(session.scan.findings)
            session.inconclusive = list(session.scan.probe_failures)
            session.plan = self.planner.plan(session.scan)
            session.resolver = PlaceholderResolver(
                target=target,
                firmware_mode=self.settings.firmware_mode,
                mount_letter=self.settings.boot_partition_mount_letter,
                boot_partition=session.scan.boot_partition,
                scanned_store_path=session.scan.boot_store.path if session.scan.boot_store else None,
                install_media=self.settings.install_media_root,
                backup_dir=backup_dir_for(target, self.settings.backup_root, session_id),
                session_tag=session_id.split("-")[-1][:8],
            )
            session.transition(
                SessionState.AWAITING_CONFIRMATION,
                reason=f"{len(session.scan.findings)} finding(s), tiers {session.plan.tiers}",
            )
        except Exception as e:
            logger.error(f"[Engine] Planning failed for {target.drive_identifier}: {e}")
            if not session.is_terminal:
                session.transition(SessionState.FAILED, reason=f"planning failed: {e}")
            raise

        self._executors[session.session_id] = self._executor(session, scanner)
        return session

    def get_plan(self, session: Session) -> RepairPlan:
        if session.plan is None:
            raise BootfixError(f"Session {session.session_id} has no plan")
        return session.plan

    def execute(self, session: Session, approved: bool = False) -> Iterator[Event]:
        """Stream of StateTransition / ExecutionResult (and PlanPreview for DryRun) events."""
        executor = self._executors.get(session.session_id)
        if executor is None:
            if session.is_terminal:
                return iter(())
            raise BootfixError(f"Unknown session {session.session_id}")
        return self._stream(session, executor.run(approved=approved))

    def abort(self, session: Session) -> None:
        transition = session.abort()
        if session.is_terminal:
            self._executors.pop(session.session_id, None)
        elif transition is None:
            logger.info(f"[Engine] Abort of {session.session_id} requested; honoured between tiers")

    def get_report(self, session: Session) -> SessionReport:
        return build_report(session, self.catalog)

    # ------------------------------------------------------------------ #
    # Wiring
    # ------------------------------------------------------------------ #

    def _stream(self, session: Session, events: Iterator[Event]) -> Iterator[Event]:
        try:
            yield from events
        finally:
            # Finished sessions keep their log; the engine lets go of their executor
            if session.is_terminal:
                self._executors.pop(session.session_id, None)

    def _scanner(self, environment: StaticEnvironment) -> Scanner:
        return Scanner(
            runner=self.capabilities.runner,
            files=self.capabilities.files,
            environment=environment,
            catalog=self.catalog,
            settings=self.settings,
        )

    def _executor(self, session: Session, scanner: Scanner) -> RepairExecutor:
        return RepairExecutor(
            session=session,
            runner=self.capabilities.runner,
            prompt=self.capabilities.prompt,
            scanner=scanner,
            planner=self.planner,
            verifier=Verifier(scanner),
            gate=SafetyGate(
                self.catalog, session.environment, session.target, self.settings.confirmation_phrase
            ),
            settings=self.settings,
        )
