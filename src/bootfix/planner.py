"""
Planner: turns a finding set into a tiered RepairPlan.

Tiers form a fallback ladder, simple first:

    1  in-place copy                 4  extraction from installation media
    2  component-store self-repair   5  force wipe and rebuild
    3  boot file / store regeneration

Only tiers 1-3 are scheduled up front. Tiers 4 and 5 depend on whether lower
tiers verifiably succeed, so the executor asks for them at runtime through
``fallback_steps``. The one exception is a finding whose cheapest remedy
already lives above Tier 3 (an unreadable boot partition can only be
reformatted); its lowest tier is scheduled directly.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .catalog import RemediationCatalog, StepTemplate
from .models import (
    BootPartition,
    Finding,
    FindingCategory,
    MountState,
    RemediationStep,
    RepairPlan,
    ScanResult,
)

logger = logging.getLogger(__name__)

SCHEDULED_MAX_TIER = 3


def _is_mounted(partition: Optional[BootPartition]) -> bool:
    return bool(
        partition and partition.mount_state == MountState.MOUNTED and partition.drive_identifier
    )


class Planner:
    def __init__(self, catalog: RemediationCatalog, max_tier: int = 5):
        self.catalog = catalog
        self.max_tier = max_tier

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def plan(self, scan: ScanResult) -> RepairPlan:
        """Build the up-front plan for ``scan``. Pure function of its input."""
        scheduled: Dict[int, List[Tuple[StepTemplate, str]]] = {}
        fallback: Dict[int, List[Tuple[StepTemplate, str]]] = {}

        for found in scan.findings:
            templates = self._templates(found.category)
            if not templates:
                continue
            cheap = [t for t in templates if t.tier <= SCHEDULED_MAX_TIER]
            if not cheap:
                lowest = min(t.tier for t in templates)
                cheap = [t for t in templates if t.tier == lowest]
            for template in templates:
                bucket = scheduled if template in cheap else fallback
                bucket.setdefault(template.tier, []).append((template, found.id))

        steps: List[RemediationStep] = []
        for tier in sorted(scheduled):
            steps.extend(self._build_tier(scheduled[tier], scan.boot_partition))

        fallback_steps: List[RemediationStep] = []
        for tier in sorted(fallback):
            if tier in scheduled:
                continue
            fallback_steps.extend(self._build_tier(fallback[tier], scan.boot_partition))

        plan = RepairPlan(
            steps=tuple(steps), findings=scan.findings, fallback_steps=tuple(fallback_steps)
        )
        logger.info(
            f"[Planner] Scheduled tiers {plan.tiers} ({len(plan.steps)} steps), "
            f"{len(plan.fallback_steps)} fallback step(s)"
        )
        return plan

    def is_actionable(self, finding: Finding) -> bool:
        """True when some tier up to ``max_tier`` can address ``finding``."""
        return bool(self._templates(finding.category))

    def fallback_steps(
        self,
        tier: int,
        unresolved: Iterable[Finding],
        partition: Optional[BootPartition] = None,
    ) -> List[RemediationStep]:
        """Steps of ``tier`` that address ``unresolved``, mount step prepended if needed."""
        pairs: List[Tuple[StepTemplate, str]] = []
        for found in unresolved:
            for template in self._templates(found.category):
                if template.tier == tier:
                    pairs.append((template, found.id))
        return self._build_tier(pairs, partition)

    def tier_steps(
        self,
        plan: RepairPlan,
        tier: int,
        unresolved: Sequence[Finding],
        partition: Optional[BootPartition] = None,
    ) -> List[RemediationStep]:
        """What the executor should run for ``tier`` given what is still broken.

        Scheduled tiers reuse the plan's steps; other tiers come from the catalog.
        Steps whose targets are all resolved are dropped, and a mount step only
        survives if something after it still needs the partition (or the mount
        itself is still broken).
        """
        unresolved_ids = {f.id for f in unresolved}
        if tier in plan.tiers:
            candidates = plan.steps_for_tier(tier)
            planned = set(plan.targeted_finding_ids(tier))
            commands = {s.command_template for s in candidates}
            extra = self.fallback_steps(
                tier, [f for f in unresolved if f.id not in planned], partition
            )
            candidates += [s for s in extra if s.command_template not in commands]
        else:
            candidates = self.fallback_steps(tier, unresolved, partition)

        work = [
            s
            for s in candidates
            if not s.provides_mounted_partition and unresolved_ids & set(s.targets_finding_ids)
        ]
        needs_mount = any(s.requires_mounted_partition for s in work)
        mounts = [
            s
            for s in candidates
            if s.provides_mounted_partition
            and (needs_mount or unresolved_ids & set(s.targets_finding_ids))
        ]
        return mounts[:1] + work

    def next_tier(
        self,
        plan: RepairPlan,
        after: int,
        unresolved: Sequence[Finding],
        partition: Optional[BootPartition] = None,
    ) -> Optional[int]:
        """Smallest tier above ``after`` with work for ``unresolved``, or None."""
        for tier in range(after + 1, self.max_tier + 1):
            if self.tier_steps(plan, tier, unresolved, partition):
                return tier
        return None

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _templates(self, category: FindingCategory) -> List[StepTemplate]:
        return [t for t in self.catalog.templates_for(category) if t.tier <= self.max_tier]

    def _build_tier(
        self, pairs: List[Tuple[StepTemplate, str]], partition: Optional[BootPartition]
    ) -> List[RemediationStep]:
        """Merge duplicate commands, order mount first, add the mount dependency."""
        merged: Dict[str, Tuple[StepTemplate, List[str]]] = {}
        order: List[str] = []
        for template, finding_id in pairs:
            key = template.command
            if key not in merged:
                merged[key] = (template, [])
                order.append(key)
            targets = merged[key][1]
            if finding_id not in targets:
                targets.append(finding_id)

        steps = [merged[key][0].to_step(merged[key][1]) for key in order]
        providers = [s for s in steps if s.provides_mounted_partition]
        others = [s for s in steps if not s.provides_mounted_partition]

        if not providers and not _is_mounted(partition):
            dependent: List[str] = []
            for step in others:
                if step.requires_mounted_partition:
                    dependent.extend(i for i in step.targets_finding_ids if i not in dependent)
            if dependent:
                # The mount runs as part of this tier, whatever tier its template lists
                mount = self.catalog.mount_template.to_step(dependent)
                providers = [replace(mount, tier=others[0].tier)]
        return providers + others
