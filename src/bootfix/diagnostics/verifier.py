"""
Independent post-tier verification.

External repair tools regularly report success for writes that never landed
(locked or write-protected targets, redirected paths). The Verifier never looks
at exit codes. After a tier it:

1. re-runs only the probes that produced the findings the tier targeted
   (plus the probes those depend on), and
2. checks every file a step declares in ``expected_outputs`` for existence and
   a non-trivial size, and
3. re-enumerates the boot store when the tier targeted store findings.

A targeted finding counts as resolved only if its probe ran to completion and
did not report it again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Set, Tuple

from ..exceptions import PlaceholderError
from ..models import Finding, FindingCategory, RemediationStep, ScanResult, TargetVolume
from ..placeholders import PlaceholderResolver
from .scanner import Scanner

logger = logging.getLogger(__name__)

STORE_CATEGORIES = frozenset(
    {
        FindingCategory.STORE_MISSING,
        FindingCategory.STORE_CORRUPT,
        FindingCategory.FIRMWARE_MODE_MISMATCH,
    }
)


@dataclass(frozen=True)
class VerificationReport:
    tier: int
    resolved: Tuple[str, ...]
    unresolved: Tuple[str, ...]
    failed_checks: Tuple[str, ...]
    scan: ScanResult

    @property
    def passed(self) -> bool:
        return not self.unresolved and not self.failed_checks


class Verifier:
    def __init__(self, scanner: Scanner):
        self.scanner = scanner

    def verify(
        self,
        target: TargetVolume,
        tier: int,
        steps: Sequence[RemediationStep],
        targeted: Iterable[Finding],
        resolver: PlaceholderResolver,
    ) -> VerificationReport:
        targeted = list(targeted)
        probe_names: Set[str] = {str(f.evidence.get("probe", "")) for f in targeted}
        probe_names.discard("")
        if any(f.category in STORE_CATEGORIES for f in targeted):
            probe_names.add("boot_store")

        scan = self.scanner.rescan(target, probe_names)
        if scan.boot_partition is not None:
            resolver.boot_partition = scan.boot_partition

        still_present = set(scan.finding_ids)
        inconclusive = {f.probe for f in scan.probe_failures}
        unresolved: List[str] = []
        for f in targeted:
            if f.id in still_present or f.evidence.get("probe") in inconclusive:
                unresolved.append(f.id)

        failed_checks: List[str] = []
        for step in steps:
            problems = self._check_outputs(step, resolver)
            if problems:
                failed_checks.extend(problems)
                for fid in step.targets_finding_ids:
                    if fid not in unresolved and any(fid == f.id for f in targeted):
                        unresolved.append(fid)

        if "boot_store" in probe_names and "boot_store" not in inconclusive:
            store = scan.boot_store
            if store is None or not store.readable or not store.entries:
                failed_checks.append("boot store is not enumerable after repair")
                for f in targeted:
                    if f.category in STORE_CATEGORIES and f.id not in unresolved:
                        unresolved.append(f.id)

        resolved = tuple(f.id for f in targeted if f.id not in unresolved)
        report = VerificationReport(
            tier=tier,
            resolved=resolved,
            unresolved=tuple(unresolved),
            failed_checks=tuple(failed_checks),
            scan=scan,
        )
        if report.passed:
            logger.info(f"[Verifier] Tier {tier}: all {len(resolved)} targeted finding(s) resolved")
        else:
            logger.warning(
                f"[Verifier] Tier {tier}: unresolved={list(report.unresolved)} "
                f"failed_checks={list(report.failed_checks)}"
            )
        return report

    def _check_outputs(self, step: RemediationStep, resolver: PlaceholderResolver) -> List[str]:
        problems: List[str] = []
        files = self.scanner.files
        for expected in step.expected_outputs:
            try:
                path = resolver.resolve(expected.path)
            except PlaceholderError as e:
                problems.append(f"{step.step_id}: cannot locate output ({e})")
                continue
            try:
                if not files.exists(path):
                    problems.append(f"{step.step_id}: {path} was not written")
                    continue
                size = files.size(path)
            except OSError as e:
                problems.append(f"{step.step_id}: cannot read {path} ({e})")
                continue
            if size < expected.min_size_bytes:
                problems.append(
                    f"{step.step_id}: {path} is {size} bytes, expected at least "
                    f"{expected.min_size_bytes}"
                )
        return problems
