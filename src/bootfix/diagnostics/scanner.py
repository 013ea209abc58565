"""Scanner: runs probes in dependency order and normalizes their findings."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from ..capabilities import CommandRunner, EnvironmentInfo, FileProbe
from ..catalog import RemediationCatalog
from ..config import Settings
from ..exceptions import ProbeError
from ..models import BootPartition, Finding, ProbeFailure, ScanResult, TargetVolume, sort_findings
from .probes import Probe, ProbeContext, ProbeLibrary

logger = logging.getLogger(__name__)


class Scanner:
    """Runs the probe catalog against a target volume.

    Probes run strictly in phase order. A probe that raises ProbeError (or an
    OSError from the file probe) is recorded as a ProbeFailure and the scan
    carries on; nothing a probe could not check is ever reported as healthy.
    """

    def __init__(
        self,
        runner: CommandRunner,
        files: FileProbe,
        environment: EnvironmentInfo,
        catalog: RemediationCatalog,
        settings: Optional[Settings] = None,
        probes: Optional[List[Probe]] = None,
    ):
        if settings is None:
            from ..config import settings as default_settings

            settings = default_settings
        self.runner = runner
        self.files = files
        self.environment = environment
        self.catalog = catalog
        self.settings = settings
        self.probes = probes or ProbeLibrary.default(settings.required_storage_drivers)

    def _context(self, target: TargetVolume) -> ProbeContext:
        return ProbeContext(
            target=target,
            runner=self.runner,
            files=self.files,
            environment=self.environment,
            catalog=self.catalog,
            firmware_mode=self.settings.firmware_mode,
            min_loader_size_bytes=self.settings.min_loader_size_bytes,
            command_timeout=self.settings.command_timeout_seconds,
        )

    def scan(self, target: TargetVolume) -> ScanResult:
        """Full scan. Two scans of an unchanged system return equal results."""
        logger.info(f"[Scanner] Scanning {target.drive_identifier} ({len(self.probes)} probes)")
        result = self._run(target, self.probes)
        logger.info(
            f"[Scanner] {len(result.findings)} finding(s), "
            f"{len(result.probe_failures)} inconclusive probe(s)"
        )
        return result

    def rescan(self, target: TargetVolume, probe_names: Iterable[str]) -> ScanResult:
        """Re-run only the named probes plus whatever they depend on."""
        subset = ProbeLibrary.with_dependencies(self.probes, set(probe_names))
        logger.debug(f"[Scanner] Re-probing {[p.name for p in subset]}")
        return self._run(target, subset)

    def discover_boot_partition(self, target: TargetVolume) -> Optional[BootPartition]:
        """Refresh the boot partition facts (drive letter, mount state) only."""
        return self.rescan(target, ["boot_partition"]).boot_partition

    def _run(self, target: TargetVolume, probes: List[Probe]) -> ScanResult:
        ctx = self._context(target)
        findings: List[Finding] = []
        failures: List[ProbeFailure] = []

        for probe in probes:
            try:
                found = probe.run(ctx)
            except ProbeError as e:
                logger.warning(f"[Scanner] Probe {probe.name} inconclusive: {e.reason} {e.detail}")
                failures.append(ProbeFailure(probe=probe.name, reason=e.reason, detail=e.detail))
                continue
            except PermissionError as e:
                logger.warning(f"[Scanner] Probe {probe.name} denied access: {e}")
                failures.append(ProbeFailure(probe=probe.name, reason="access_denied", detail=str(e)))
                continue
            except OSError as e:
                logger.warning(f"[Scanner] Probe {probe.name} I/O error: {e}")
                failures.append(ProbeFailure(probe=probe.name, reason="io_error", detail=str(e)))
                continue

            ctx.completed.add(probe.name)
            if found is not None:
                logger.info(f"[Scanner] {found.severity.value.upper()} {found.id}")
                findings.append(found)

        return ScanResult(
            findings=sort_findings(findings),
            probe_failures=tuple(sorted(failures, key=lambda f: f.probe)),
            boot_partition=ctx.boot_partition,
            boot_store=ctx.boot_store,
        )
