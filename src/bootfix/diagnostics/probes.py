"""
Declarative probe library for boot failures.

Each probe is a small read-only check over the injected capabilities that
returns at most one Finding. Probes are grouped into phases and always run in
phase order, because later probes read state established by earlier ones:

- ENVIRONMENT: elevation
- PARTITION: boot partition discovery and mount state
- STORE: boot store presence and enumerability
- FILES: loader files in the system root and the boot partition, firmware layout
- DRIVERS: one probe per required storage driver

A probe that cannot run raises ProbeError. The scanner records that as an
inconclusive result, never as "no issue".
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..capabilities import CommandRunner, EnvironmentInfo, FileProbe
from ..catalog import RemediationCatalog
from ..exceptions import ProbeError
from ..models import (
    BootEntry,
    BootPartition,
    BootStore,
    Finding,
    FindingCategory,
    MountState,
    Severity,
    TargetVolume,
)

UEFI_STORE = "EFI\\Microsoft\\Boot\\BCD"
BIOS_STORE = "Boot\\BCD"

BOOT_MANAGER = {
    "uefi": "EFI\\Microsoft\\Boot\\bootmgfw.efi",
    "bios": "bootmgr",
}

# Files the repair commands copy from or regenerate out of the installed system
SYSTEM_LOADER_FILES = {
    "uefi": ("Windows\\System32\\winload.efi", "Windows\\Boot\\EFI\\bootmgfw.efi"),
    "bios": ("Windows\\System32\\winload.exe", "Windows\\Boot\\PCAT\\bootmgr"),
}

READABLE_FILE_SYSTEMS = {"FAT32", "FAT", "FAT16", "NTFS"}

_ACCESS_DENIED = re.compile(r"access (is )?denied|0x80070005", re.IGNORECASE)


class ProbePhase(IntEnum):
    ENVIRONMENT = 1
    PARTITION = 2
    STORE = 3
    FILES = 4
    DRIVERS = 5


@dataclass
class ProbeContext:
    """Shared state for one scan. Earlier probes fill in what later probes read."""

    target: TargetVolume
    runner: CommandRunner
    files: FileProbe
    environment: EnvironmentInfo
    catalog: RemediationCatalog
    firmware_mode: str = "uefi"
    min_loader_size_bytes: int = 1024
    command_timeout: Optional[float] = None
    boot_partition: Optional[BootPartition] = None
    boot_store: Optional[BootStore] = None
    completed: Set[str] = field(default_factory=set)

    @property
    def system_root(self) -> str:
        root = self.target.root_path
        return root if root.endswith("\\") else root + "\\"

    @property
    def system_letter(self) -> str:
        return self.target.drive_identifier.strip().rstrip("\\").rstrip(":")

    def store_path(self) -> Optional[str]:
        root = self.partition_root()
        if root is None:
            return None
        return root + (UEFI_STORE if self.firmware_mode == "uefi" else BIOS_STORE)

    def partition_root(self) -> Optional[str]:
        """Readable root of the boot partition, or None if its contents cannot be read."""
        partition = self.boot_partition
        if partition is None or partition.file_system.upper() not in READABLE_FILE_SYSTEMS:
            return None
        return partition.root


@dataclass(frozen=True)
class Probe:
    """A named read-only check."""

    name: str
    phase: ProbePhase
    description: str
    categories: Tuple[FindingCategory, ...]
    check: Callable[[ProbeContext], Optional[Finding]] = field(compare=False)
    requires: Tuple[str, ...] = ()

    def run(self, ctx: ProbeContext) -> Optional[Finding]:
        missing = [name for name in self.requires if name not in ctx.completed]
        if missing:
            raise ProbeError(self.name, "dependency_unavailable", f"needs {', '.join(missing)}")
        return self.check(ctx)


def finding(
    category: FindingCategory,
    subject: str,
    probe: str,
    severity: Severity = Severity.CRITICAL,
    confidence: int = 100,
    **evidence,
) -> Finding:
    """Build a Finding with the deterministic ``<category>:<subject>`` id."""
    evidence["probe"] = probe
    return Finding(
        id=f"{category.value}:{subject}",
        category=category,
        evidence=evidence,
        severity=severity,
        confidence=confidence,
    )


def is_access_denied(output: str) -> bool:
    return bool(_ACCESS_DENIED.search(output or ""))


def _sized_ok(files: FileProbe, path: str, min_size: int) -> Tuple[bool, Optional[int]]:
    if not files.exists(path):
        return False, None
    size = files.size(path)
    return size >= min_size, size


def _partition_root_or_fail(ctx: ProbeContext, probe: str) -> str:
    root = ctx.partition_root()
    if root is None:
        raise ProbeError(probe, "dependency_unavailable", "boot partition contents are not readable")
    return root


# --------------------------------------------------------------------------- #
# Parsers for tool output
# --------------------------------------------------------------------------- #


def parse_partition_query(output: str) -> Optional[Dict[str, str]]:
    """Parse the JSON emitted by the catalog's ``query_boot_partition`` command.

    ConvertTo-Json emits nothing for no partitions, an object for one and a
    list for several; the first boot partition on the disk wins.
    """
    text = (output or "").strip()
    if not text or text == "null":
        return None
    data = json.loads(text)
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]
    if not isinstance(data, dict):
        raise ValueError(f"unexpected partition query payload: {text[:120]}")
    return {
        "drive_letter": str(data.get("DriveLetter") or "").strip().strip("\x00"),
        "access_path": str(data.get("AccessPath") or "").strip(),
        "file_system": str(data.get("FileSystem") or "").strip(),
    }


def parse_store_enumeration(output: str) -> Tuple[List[BootEntry], Optional[str]]:
    """Parse ``bcdedit /enum`` text into entries plus the default entry id."""
    entries: List[BootEntry] = []
    default_id: Optional[str] = None
    lines = (output or "").splitlines()
    i = 0
    while i < len(lines):
        header = lines[i].strip()
        is_block = i + 1 < len(lines) and set(lines[i + 1].strip()) == {"-"}
        if not header or not is_block:
            i += 1
            continue
        values: Dict[str, str] = {}
        i += 2
        while i < len(lines) and lines[i].strip():
            parts = lines[i].strip().split(None, 1)
            if len(parts) == 2:
                values.setdefault(parts[0].lower(), parts[1].strip())
            i += 1
        identifier = values.get("identifier")
        if identifier:
            entries.append(
                BootEntry(
                    identifier=identifier,
                    description=values.get("description", ""),
                    entry_type=header,
                )
            )
            if identifier == "{bootmgr}" and "default" in values:
                default_id = values["default"]
    return entries, default_id


# --------------------------------------------------------------------------- #
# Probe checks
# --------------------------------------------------------------------------- #


def check_elevation(ctx: ProbeContext) -> Optional[Finding]:
    if ctx.environment.has_elevated_rights():
        return None
    return finding(
        FindingCategory.PERMISSION_DENIED,
        "elevation",
        "elevation",
        elevated=False,
        environment=ctx.environment.type().value,
    )


def check_boot_partition(ctx: ProbeContext) -> Optional[Finding]:
    command = ctx.catalog.probe_command("query_boot_partition")
    output = ctx.runner.execute(
        command, {"system_letter": ctx.system_letter}, timeout=ctx.command_timeout
    )
    if output.exit_code != 0:
        reason = "access_denied" if is_access_denied(output.combined) else "command_failed"
        raise ProbeError("boot_partition", reason, output.combined.strip()[:200])
    try:
        parsed = parse_partition_query(output.stdout)
    except ValueError as e:
        raise ProbeError("boot_partition", "unparseable_output", str(e)) from e

    if parsed is None:
        return finding(
            FindingCategory.BOOT_PARTITION_MISSING,
            "boot_partition",
            "boot_partition",
            disk_of=ctx.target.drive_identifier,
        )

    letter = parsed["drive_letter"]
    ctx.boot_partition = BootPartition(
        drive_identifier=f"{letter.rstrip(':')}:" if letter else None,
        mount_state=MountState.MOUNTED if letter else MountState.UNMOUNTED,
        file_system=parsed["file_system"] or "RAW",
        access_path=parsed["access_path"] or None,
    )
    partition = ctx.boot_partition

    if partition.file_system.upper() not in READABLE_FILE_SYSTEMS:
        return finding(
            FindingCategory.BOOT_PARTITION_UNREADABLE,
            "boot_partition",
            "boot_partition",
            file_system=partition.file_system,
            access_path=partition.access_path,
        )
    if partition.mount_state != MountState.MOUNTED:
        return finding(
            FindingCategory.PARTITION_NOT_MOUNTED,
            "boot_partition",
            "boot_partition",
            severity=Severity.WARNING,
            access_path=partition.access_path,
            contents_readable=partition.root is not None,
        )
    return None


def check_boot_store(ctx: ProbeContext) -> Optional[Finding]:
    _partition_root_or_fail(ctx, "boot_store")
    store_path = ctx.store_path()
    if not ctx.files.exists(store_path):
        ctx.boot_store = BootStore(path=store_path, readable=False)
        return finding(
            FindingCategory.STORE_MISSING, "boot_store", "boot_store", store_path=store_path
        )

    command = ctx.catalog.probe_command("enumerate_store")
    output = ctx.runner.execute(command, {"store_path": store_path}, timeout=ctx.command_timeout)
    if output.exit_code != 0 and is_access_denied(output.combined):
        raise ProbeError("boot_store", "access_denied", output.combined.strip()[:200])

    entries, default_id = parse_store_enumeration(output.stdout) if output.exit_code == 0 else ([], None)
    ctx.boot_store = BootStore(
        path=store_path,
        readable=output.exit_code == 0,
        entries=tuple(entries),
        default_entry_id=default_id,
    )
    if output.exit_code != 0 or not entries:
        return finding(
            FindingCategory.STORE_CORRUPT,
            "boot_store",
            "boot_store",
            store_path=store_path,
            exit_code=output.exit_code,
            entry_count=len(entries),
            output_excerpt=output.combined.strip()[:200],
        )
    return None


def check_loader_in_system(ctx: ProbeContext) -> Optional[Finding]:
    missing = []
    for relative in SYSTEM_LOADER_FILES[ctx.firmware_mode]:
        path = ctx.system_root + relative
        ok, size = _sized_ok(ctx.files, path, ctx.min_loader_size_bytes)
        if not ok:
            missing.append({"path": path, "size": size})
    if not missing:
        return None
    return finding(
        FindingCategory.LOADER_FILE_MISSING_IN_SYSTEM,
        "system_root",
        "loader_in_system",
        missing=missing,
        min_size_bytes=ctx.min_loader_size_bytes,
    )


def check_firmware_mode(ctx: ProbeContext) -> Optional[Finding]:
    root = _partition_root_or_fail(ctx, "firmware_mode")
    expected = UEFI_STORE if ctx.firmware_mode == "uefi" else BIOS_STORE
    other = BIOS_STORE if ctx.firmware_mode == "uefi" else UEFI_STORE
    # Boot files laid out for the other firmware while ours are absent
    if ctx.files.exists(root + other) and not ctx.files.exists(root + expected):
        return finding(
            FindingCategory.FIRMWARE_MODE_MISMATCH,
            "boot_partition",
            "firmware_mode",
            confidence=80,
            firmware_mode=ctx.firmware_mode,
            found_layout=root + other,
        )
    return None


def check_loader_in_boot_partition(ctx: ProbeContext) -> Optional[Finding]:
    root = _partition_root_or_fail(ctx, "loader_in_boot_partition")
    path = root + BOOT_MANAGER[ctx.firmware_mode]
    ok, size = _sized_ok(ctx.files, path, ctx.min_loader_size_bytes)
    if ok:
        return None
    return finding(
        FindingCategory.LOADER_FILE_MISSING_IN_BOOT_PARTITION,
        "boot_manager",
        "loader_in_boot_partition",
        path=path,
        size=size,
        min_size_bytes=ctx.min_loader_size_bytes,
    )


def _driver_check(driver: str) -> Callable[[ProbeContext], Optional[Finding]]:
    probe_name = f"storage_driver:{driver}"

    def check(ctx: ProbeContext) -> Optional[Finding]:
        path = ctx.system_root + "Windows\\System32\\drivers\\" + driver
        ok, size = _sized_ok(ctx.files, path, 1)
        if ok:
            return None
        return finding(
            FindingCategory.DRIVER_MISSING,
            driver.lower(),
            probe_name,
            severity=Severity.WARNING,
            confidence=70,
            path=path,
            size=size,
        )

    return check


class ProbeLibrary:
    """Source of truth for the probe catalog and its order."""

    @staticmethod
    def default(required_storage_drivers: Optional[List[str]] = None) -> List[Probe]:
        probes = [
            Probe(
                name="elevation",
                phase=ProbePhase.ENVIRONMENT,
                description="Check the engine runs with elevated rights.",
                categories=(FindingCategory.PERMISSION_DENIED,),
                check=check_elevation,
            ),
            Probe(
                name="boot_partition",
                phase=ProbePhase.PARTITION,
                description="Locate the boot partition and its mount state.",
                categories=(
                    FindingCategory.BOOT_PARTITION_MISSING,
                    FindingCategory.BOOT_PARTITION_UNREADABLE,
                    FindingCategory.PARTITION_NOT_MOUNTED,
                ),
                check=check_boot_partition,
            ),
            Probe(
                name="boot_store",
                phase=ProbePhase.STORE,
                description="Check the boot store exists and enumerates.",
                categories=(FindingCategory.STORE_MISSING, FindingCategory.STORE_CORRUPT),
                check=check_boot_store,
                requires=("boot_partition",),
            ),
            Probe(
                name="loader_in_system",
                phase=ProbePhase.FILES,
                description="Check loader and boot manager sources in the system root.",
                categories=(FindingCategory.LOADER_FILE_MISSING_IN_SYSTEM,),
                check=check_loader_in_system,
            ),
            Probe(
                name="firmware_mode",
                phase=ProbePhase.FILES,
                description="Check the boot file layout matches the firmware mode.",
                categories=(FindingCategory.FIRMWARE_MODE_MISMATCH,),
                check=check_firmware_mode,
                requires=("boot_partition",),
            ),
            Probe(
                name="loader_in_boot_partition",
                phase=ProbePhase.FILES,
                description="Check the boot manager exists on the boot partition.",
                categories=(FindingCategory.LOADER_FILE_MISSING_IN_BOOT_PARTITION,),
                check=check_loader_in_boot_partition,
                requires=("boot_partition",),
            ),
        ]
        for driver in required_storage_drivers or []:
            probes.append(
                Probe(
                    name=f"storage_driver:{driver}",
                    phase=ProbePhase.DRIVERS,
                    description=f"Check storage driver {driver} is present.",
                    categories=(FindingCategory.DRIVER_MISSING,),
                    check=_driver_check(driver),
                )
            )
        # Stable sort keeps declaration order within a phase
        return sorted(probes, key=lambda p: p.phase)

    @staticmethod
    def with_dependencies(probes: List[Probe], names: Set[str]) -> List[Probe]:
        """Subset of ``probes`` named in ``names`` plus everything they require, in order."""
        by_name = {p.name: p for p in probes}
        wanted = set()
        pending = [n for n in names if n in by_name]
        while pending:
            name = pending.pop()
            if name in wanted:
                continue
            wanted.add(name)
            pending.extend(by_name[name].requires)
        return [p for p in probes if p.name in wanted]
