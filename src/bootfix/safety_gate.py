"""Safety gate: risk classification and confirmation for remediation steps.

Risk is computed per step from two inputs:

- the catalog's static step -> risk table (steps missing from it are Elevated,
  and a step flagged ``destructive`` is never below Destructive), and
- a dynamic rule: in a live, running OS, any step that touches the volume the
  OS is running from is forced to Destructive.

Confirmation:
- SAFE: passes.
- ELEVATED: passes if the caller pre-approved, otherwise an ordinary yes/no.
- DESTRUCTIVE: always the literal confirmation phrase; pre-approval does not
  count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .capabilities import EnvironmentInfo, UserPrompt
from .catalog import RemediationCatalog
from .models import EnvironmentType, RemediationStep, RiskLevel, TargetVolume, normalize_drive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskAssessment:
    step_id: str
    level: RiskLevel
    static_level: RiskLevel
    reasons: Tuple[str, ...] = ()


def _max_risk(levels: Iterable[RiskLevel]) -> RiskLevel:
    return max(levels, key=lambda r: r.rank, default=RiskLevel.SAFE)


class SafetyGate:
    def __init__(
        self,
        catalog: RemediationCatalog,
        environment: EnvironmentInfo,
        target: TargetVolume,
        confirmation_phrase: str,
    ):
        self.catalog = catalog
        self.environment = environment
        self.target = target
        self.confirmation_phrase = confirmation_phrase

    def targets_running_volume(self) -> bool:
        """True when the target is the volume the live OS booted from.

        A live OS that cannot name its running volume is assumed to be running
        from the target.
        """
        if self.environment.type() != EnvironmentType.LIVE_RUNNING_OS:
            return False
        running = self.environment.running_volume()
        if not running:
            return True
        return normalize_drive(running) == self.target.lock_key

    def assess(self, step: RemediationStep) -> RiskAssessment:
        static = self.catalog.risk_for(step.step_id)
        reasons: List[str] = [f"catalog: {static.value}"]
        level = static
        if step.destructive and level != RiskLevel.DESTRUCTIVE:
            level = RiskLevel.DESTRUCTIVE
            reasons.append("step deletes or overwrites data")
        if step.touches_target and self.targets_running_volume():
            if level != RiskLevel.DESTRUCTIVE:
                reasons.append("live OS: step touches the running volume")
            level = RiskLevel.DESTRUCTIVE
        return RiskAssessment(
            step_id=step.step_id, level=level, static_level=static, reasons=tuple(reasons)
        )

    def risk_of(self, steps: Iterable[RemediationStep]) -> RiskLevel:
        return _max_risk(self.assess(s).level for s in steps)

    def confirm(
        self,
        steps: Iterable[RemediationStep],
        prompt: UserPrompt,
        approved: bool,
        message: str,
    ) -> Tuple[bool, RiskLevel]:
        """Ask for whatever confirmation ``steps`` need.

        Returns:
            (confirmed, risk level that was confirmed or refused)
        """
        steps = list(steps)
        level = self.risk_of(steps)
        destructive = [s.step_id for s in steps if self.assess(s).level == RiskLevel.DESTRUCTIVE]

        if level == RiskLevel.SAFE:
            return True, level
        if level == RiskLevel.ELEVATED:
            if approved:
                logger.info("[SafetyGate] Elevated steps pre-approved by caller")
                return True, level
            ok = prompt.confirm(level, message)
            logger.info(f"[SafetyGate] Elevated confirmation {'granted' if ok else 'declined'}")
            return ok, level

        detail = f"{message}\nDestructive steps: {', '.join(destructive)}"
        ok = prompt.confirm_with_phrase(self.confirmation_phrase, detail)
        logger.warning(
            f"[SafetyGate] Destructive confirmation {'granted' if ok else 'declined'} "
            f"for {destructive}"
        )
        return ok, level

    def already_confirmed(self, steps: Iterable[RemediationStep], confirmed: Optional[RiskLevel]) -> bool:
        if confirmed is None:
            return False
        return self.risk_of(steps).rank <= confirmed.rank
