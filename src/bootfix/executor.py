"""
Tiered repair executor.

Drives one session through

    AwaitingConfirmation -> ExecutingTier(n) -> Verifying
        -> Succeeded
        -> Escalating -> [AwaitingConfirmation] -> ExecutingTier(m > n) -> ...
        -> Failed
    any non-terminal state -> Aborted

Progress is exposed as a generator of StateTransition, ExecutionResult and
PlanPreview events, so the caller decides which worker thread or task pulls it.

Rules enforced here:
- every tier ends in Verifying; exit codes never decide success
- probes the scan could not complete are re-run after every tier, and a
  session never succeeds while one is still inconclusive
- tiers only go up, and only to tiers with work for what is still broken
- a tier that cannot run in this environment is skipped, not failed
- backups are run and confirmed before destructive or irreversible steps
- an escalation into riskier steps than the operator confirmed asks again
- abort is honoured between tiers, never mid-command
- DryRun sessions emit a preview and end in Previewed without running anything
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Set, Tuple, Union

from .backup import BackupManager
from .capabilities import CommandOutput, CommandRunner, UserPrompt
from .config import Settings
from .diagnostics import Scanner, Verifier
from .exceptions import CommandError, EnvironmentMismatch, PlaceholderError, VerificationMismatch
from .logging_config import session_id_var
from .models import (
    ExecutionResult,
    FailureKind,
    Finding,
    Outcome,
    PlanPreview,
    RemediationStep,
    SessionMode,
    SessionState,
    StateTransition,
    TierAttempt,
    sort_findings,
)
from .placeholders import PlaceholderResolver, placeholders_in
from .planner import Planner
from .safety_gate import SafetyGate
from .session import Session

logger = logging.getLogger(__name__)

Event = Union[StateTransition, ExecutionResult, PlanPreview]

# Filled in by mounting; may legitimately be unknown until the mount step has run
LATE_PLACEHOLDERS = frozenset({"boot_partition", "boot_partition_letter", "store_path"})


@dataclass
class _TierRun:
    executed: List[Tuple[RemediationStep, CommandOutput, str]] = field(default_factory=list)
    error: Optional[Exception] = None
    failure_kind: Optional[FailureKind] = None


class RepairExecutor:
    """Runs the repair plan of one session."""

    def __init__(
        self,
        session: Session,
        runner: CommandRunner,
        prompt: UserPrompt,
        scanner: Scanner,
        planner: Planner,
        verifier: Verifier,
        gate: SafetyGate,
        settings: Settings,
    ):
        self.session = session
        self.runner = runner
        self.prompt = prompt
        self.scanner = scanner
        self.planner = planner
        self.verifier = verifier
        self.gate = gate
        self.settings = settings
        self.backups = BackupManager(
            runner, scanner.files, timeout=settings.command_timeout_seconds
        )

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    def run(self, approved: bool = False) -> Iterator[Event]:
        session = self.session
        if session.state != SessionState.AWAITING_CONFIRMATION or not session.begin_run():
            logger.warning(
                f"[Executor] Session {session.session_id} is {session.state.value}; nothing to execute"
            )
            return

        token = session_id_var.set(session.session_id)
        try:
            yield from self._run(approved)
        except Exception as e:
            logger.exception(f"[Executor] Unexpected error in session {session.session_id}")
            if not session.is_terminal:
                session.transition(SessionState.FAILED, reason=f"internal error: {e}")
            raise
        finally:
            if not session.is_terminal:
                # The consumer stopped pulling events; never keep the lock behind its back
                session.transition(SessionState.ABORTED, reason="execution stream closed")
            session.end_run()
            session_id_var.reset(token)

    def _run(self, approved: bool) -> Iterator[Event]:
        session = self.session
        scan, plan = session.scan, session.plan

        if session.abort_requested:
            yield session.transition(SessionState.ABORTED, reason="aborted before execution")
            return

        if session.mode == SessionMode.DRY_RUN:
            session.preview = self.build_preview()
            session.events.append(session.preview)
            yield session.preview
            yield session.transition(SessionState.PREVIEWED, reason="dry run: no commands executed")
            return

        session.executed = True
        if not scan.findings:
            yield from self._confirm_clean()
            return

        if not self._remaining():
            yield session.transition(
                SessionState.FAILED, reason="no automated remediation applies; see manual commands"
            )
            return

        tier = self._next_runnable_tier(0)
        if tier is None:
            yield session.transition(
                SessionState.FAILED, reason="no runnable tier in this environment"
            )
            return

        scheduled = [s for s in plan.steps if s.tier <= self.planner.max_tier]
        ok, level = self.gate.confirm(
            scheduled or self._steps_for(tier),
            self.prompt,
            approved,
            f"Apply repairs to {session.target.drive_identifier}?\n{plan.preview()}",
        )
        if not ok:
            yield session.transition(SessionState.ABORTED, reason="confirmation declined")
            return
        session.confirmed_risk = level

        while True:
            steps = self._steps_for(tier)
            if not self.gate.already_confirmed(steps, session.confirmed_risk):
                if session.state == SessionState.ESCALATING:
                    yield session.transition(
                        SessionState.AWAITING_CONFIRMATION,
                        tier=tier,
                        reason=f"tier {tier} needs {self.gate.risk_of(steps).value} confirmation",
                    )
                ok, level = self.gate.confirm(
                    steps,
                    self.prompt,
                    approved,
                    f"Escalate to tier {tier} on {session.target.drive_identifier}?",
                )
                if not ok:
                    yield session.transition(
                        SessionState.ABORTED, tier=tier, reason="escalation declined"
                    )
                    return
                session.confirmed_risk = level

            yield session.transition(SessionState.EXECUTING_TIER, tier=tier)
            run = self._execute_tier(tier, steps)

            yield session.transition(SessionState.VERIFYING, tier=tier)
            verified = yield from self._verify_tier(tier, steps, run)

            self._recheck_inconclusive()
            remaining = self._remaining()
            if verified and not remaining:
                if session.inconclusive:
                    probes = ", ".join(f.probe for f in session.inconclusive)
                    yield session.transition(
                        SessionState.FAILED,
                        tier=tier,
                        reason=f"tier {tier} verified but still inconclusive: {probes}",
                    )
                    return
                yield session.transition(
                    SessionState.SUCCEEDED, tier=tier, reason="verification confirmed the repair"
                )
                return

            if session.abort_requested:
                yield session.transition(SessionState.ABORTED, tier=tier, reason="aborted between tiers")
                return

            next_tier = self._next_runnable_tier(tier)
            if next_tier is None:
                reason = (
                    f"tier {tier} failed and no higher tier applies"
                    if not verified
                    else f"tier {tier} verified but {len(remaining)} finding(s) remain"
                )
                yield session.transition(SessionState.FAILED, tier=tier, reason=reason)
                return

            yield session.transition(
                SessionState.ESCALATING,
                tier=next_tier,
                reason=f"unresolved: {', '.join(f.id for f in remaining)}",
            )
            if session.abort_requested:
                yield session.transition(SessionState.ABORTED, tier=next_tier, reason="aborted between tiers")
                return
            tier = next_tier

    # ------------------------------------------------------------------ #
    # Tier selection
    # ------------------------------------------------------------------ #

    def _remaining(self) -> List[Finding]:
        return [f for f in self.session.outstanding if self.planner.is_actionable(f)]

    def _steps_for(self, tier: int) -> List[RemediationStep]:
        return self.planner.tier_steps(
            self.session.plan, tier, self._remaining(), self.session.resolver.boot_partition
        )

    def _next_runnable_tier(self, after: int) -> Optional[int]:
        """Next tier with work, skipping (and recording) tiers this environment cannot run."""
        current = after
        while True:
            tier = self.planner.next_tier(
                self.session.plan, current, self._remaining(), self.session.resolver.boot_partition
            )
            if tier is None:
                return None
            steps = self._steps_for(tier)
            try:
                self._check_environment(tier, steps)
            except EnvironmentMismatch as e:
                logger.warning(f"[Executor] Skipping tier {tier}: {e}")
                self.session.attempts.append(
                    TierAttempt(
                        tier=tier,
                        targeted_finding_ids=self._targets(steps),
                        verified=False,
                        skipped=True,
                        failure_kind=FailureKind.ENVIRONMENT_MISMATCH,
                        detail=str(e),
                    )
                )
                current = tier
                continue
            return tier

    def _check_environment(self, tier: int, steps: List[RemediationStep]) -> None:
        env_type = self.session.environment.type()
        resolver = self.session.resolver
        for step in steps:
            if not step.allowed_in(env_type):
                raise EnvironmentMismatch(
                    f"{step.step_id} requires {[e.value for e in step.environments]}, "
                    f"running in {env_type.value}",
                    tier=tier,
                )
            templates = [step.command_template, step.preserve_command]
            if step.backup_action:
                templates += [step.backup_action.command, step.backup_action.verify_path]
            values = resolver.values()
            for template in filter(None, templates):
                for name in placeholders_in(template):
                    if name in values:
                        continue
                    if name in LATE_PLACEHOLDERS and step.requires_mounted_partition:
                        continue
                    raise PlaceholderError(name, template)

    @staticmethod
    def _targets(steps: List[RemediationStep]) -> Tuple[str, ...]:
        ids: List[str] = []
        for step in steps:
            ids.extend(i for i in step.targets_finding_ids if i not in ids)
        return tuple(ids)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def _execute_tier(self, tier: int, steps: List[RemediationStep]) -> _TierRun:
        session = self.session
        resolver = session.resolver
        run = _TierRun()

        for step in steps:
            if step.provides_mounted_partition and resolver.partition_mounted:
                logger.info(f"[Executor] {step.step_id}: boot partition already mounted, skipping")
                continue

            if step.requires_mounted_partition and not resolver.partition_mounted:
                partition = self.scanner.discover_boot_partition(session.target)
                if partition is not None:
                    resolver.boot_partition = partition

            template = step.command_template
            if session.prefer_reversible and step.preserve_command:
                template = step.preserve_command
            try:
                command = resolver.resolve(template)
            except PlaceholderError as e:
                logger.error(f"[Executor] {step.step_id}: {e}")
                run.error, run.failure_kind = e, FailureKind.ENVIRONMENT_MISMATCH
                break

            if BackupManager.needs_backup(step):
                record = self.backups.ensure(step, resolver)
                session.backups.append(record)
                if not record.ok:
                    run.error = CommandError(step.step_id, record.exit_code or -1, record.detail)
                    run.failure_kind = FailureKind.BACKUP_FAILED
                    break

            logger.info(f"[Executor] Tier {tier} {step.step_id}: {command}")
            output = self.runner.execute(
                template,
                resolver.values(),
                timeout=step.timeout_seconds or self.settings.command_timeout_seconds,
            )
            run.executed.append((step, output, command))
            if output.exit_code != 0:
                logger.warning(f"[Executor] {step.step_id} exited with code {output.exit_code}")
                run.error = CommandError(step.step_id, output.exit_code, output.combined)
                run.failure_kind = FailureKind.COMMAND_ERROR
                break
            if step.provides_mounted_partition:
                partition = self.scanner.discover_boot_partition(session.target)
                if partition is not None:
                    resolver.boot_partition = partition

        return run

    def _verify_tier(self, tier: int, steps: List[RemediationStep], run: _TierRun) -> Iterator[Event]:
        """Verify the tier, emit its ExecutionResults and update outstanding findings.

        Returns (via ``yield from``) whether the tier verified.
        """
        session = self.session
        targeted_ids: Set[str] = set(self._targets(steps))
        targeted = [f for f in session.outstanding if f.id in targeted_ids]

        report = self.verifier.verify(
            session.target, tier, [s for s, _, _ in run.executed], targeted, session.resolver
        )
        inconclusive = {f.probe for f in report.scan.probe_failures}
        unresolved = set(report.unresolved)

        for step, output, command in run.executed:
            step_unresolved = unresolved & set(step.targets_finding_ids)
            step_checks = [c for c in report.failed_checks if c.startswith(f"{step.step_id}:")]
            verified = not step_unresolved and not step_checks
            note = ""
            if output.exit_code != 0:
                outcome = Outcome.FAILED
                note = "timed out" if output.timed_out else f"exit code {output.exit_code}"
            elif verified:
                outcome = Outcome.SUCCESS
            elif not step_checks and all(
                f.evidence.get("probe") in inconclusive for f in targeted if f.id in step_unresolved
            ):
                outcome = Outcome.INCONCLUSIVE
                note = "verification probes could not run"
            else:
                outcome = Outcome.FAILED
                note = "tool reported success but verification disagrees"
            yield session.record(
                ExecutionResult(
                    step=step,
                    exit_code=output.exit_code,
                    raw_output=output.combined,
                    verified=verified,
                    outcome=outcome,
                    command=command,
                    note=note,
                )
            )

        session.outstanding = [f for f in session.outstanding if f.id not in set(report.resolved)]
        passed = run.error is None and report.passed

        failure_kind = run.failure_kind
        detail = str(run.error) if run.error else ""
        if run.error is None and not report.passed:
            failure_kind = FailureKind.VERIFICATION_MISMATCH
            mismatch = VerificationMismatch(tier, list(report.unresolved), list(report.failed_checks))
            detail = f"{mismatch}; " + "; ".join(report.failed_checks)
            logger.warning(f"[Executor] {mismatch}")

        session.attempts.append(
            TierAttempt(
                tier=tier,
                targeted_finding_ids=tuple(f.id for f in targeted),
                verified=passed,
                failure_kind=None if passed else failure_kind,
                detail=detail,
            )
        )
        return passed

    def _recheck_inconclusive(self) -> None:
        """Re-run the probes that could not complete; what they now report joins the outstanding work.

        A mount or a repaired permission often makes a probe runnable that the
        scan had to give up on, so every tier gets another look at them.
        """
        session = self.session
        if not session.inconclusive:
            return
        names = {f.probe for f in session.inconclusive}
        scan = self.scanner.rescan(session.target, names)
        if scan.boot_partition is not None:
            session.resolver.boot_partition = scan.boot_partition

        known = {f.id for f in session.outstanding}
        new = [f for f in scan.findings if f.evidence.get("probe") in names and f.id not in known]
        if new:
            logger.warning(f"[Executor] Re-probed checks now report: {[f.id for f in new]}")
            session.outstanding = list(sort_findings(session.outstanding + new))

        session.inconclusive = [f for f in scan.probe_failures if f.probe in names]
        if session.inconclusive:
            logger.warning(
                f"[Executor] Still inconclusive: {[f.probe for f in session.inconclusive]}"
            )

    def _confirm_clean(self) -> Iterator[Event]:
        """Nothing was found: succeed only if a full rescan agrees and nothing was inconclusive."""
        session = self.session
        if session.scan.probe_failures:
            probes = ", ".join(f.probe for f in session.scan.probe_failures)
            yield session.transition(SessionState.FAILED, reason=f"scan inconclusive: {probes}")
            return
        yield session.transition(SessionState.VERIFYING, reason="no findings; confirming with a rescan")
        rescan = self.scanner.scan(session.target)
        if rescan.findings or rescan.probe_failures:
            session.outstanding = list(rescan.findings)
            session.inconclusive = list(rescan.probe_failures)
            yield session.transition(
                SessionState.FAILED, reason="rescan disagrees with the original clean scan"
            )
            return
        yield session.transition(SessionState.SUCCEEDED, reason="no boot problems found")

    # ------------------------------------------------------------------ #
    # Preview
    # ------------------------------------------------------------------ #

    def build_preview(self) -> PlanPreview:
        """Textual preview of what Apply would run. Never executes anything."""
        session = self.session
        resolver = session.resolver

        def render(step: RemediationStep) -> str:
            template = step.command_template
            if session.prefer_reversible and step.preserve_command:
                template = step.preserve_command
            try:
                return resolver.resolve(template)
            except PlaceholderError:
                return template

        commands = []
        for step in session.plan.steps:
            if step.backup_action and BackupManager.needs_backup(step):
                commands.append(render_backup(step, resolver))
            commands.append(render(step))
        return PlanPreview(
            session_id=session.session_id,
            text=session.plan.preview(resolve=render),
            commands=tuple(commands),
        )


def render_backup(step: RemediationStep, resolver: PlaceholderResolver) -> str:
    try:
        return resolver.resolve(step.backup_action.command)
    except PlaceholderError:
        return step.backup_action.command
