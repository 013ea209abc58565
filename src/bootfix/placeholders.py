"""Late placeholder resolution for command templates.

Templates carry ``{name}`` placeholders for facts that are only known right
before a step runs (the boot partition's drive letter appears once the mount
step has run). ``PlaceholderResolver`` is rebuilt from current session state
each time a command is about to be rendered.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .capabilities import render_command
from .exceptions import PlaceholderError
from .models import BootPartition, MountState, TargetVolume

KNOWN_PLACEHOLDERS = frozenset(
    {
        "system_root",
        "system_letter",
        "boot_partition",
        "boot_partition_letter",
        "mount_letter",
        "store_path",
        "firmware",
        "install_media",
        "backup_dir",
        "session_tag",
    }
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def placeholders_in(template: str) -> List[str]:
    """Known placeholder names used by ``template``, in order of first use."""
    names: List[str] = []
    for name in _PLACEHOLDER.findall(template or ""):
        if name in KNOWN_PLACEHOLDERS and name not in names:
            names.append(name)
    return names


_STORE_RELATIVE = {"uefi": "EFI\\Microsoft\\Boot\\BCD", "bios": "Boot\\BCD"}


def _with_backslash(path: str) -> str:
    return path if path.endswith("\\") else path + "\\"


@dataclass
class PlaceholderResolver:
    target: TargetVolume
    firmware_mode: str = "uefi"
    mount_letter: str = "S:"
    boot_partition: Optional[BootPartition] = None
    scanned_store_path: Optional[str] = None
    install_media: Optional[str] = None
    backup_dir: Optional[str] = None
    session_tag: str = ""

    @property
    def partition_mounted(self) -> bool:
        partition = self.boot_partition
        return bool(
            partition
            and partition.mount_state == MountState.MOUNTED
            and partition.drive_identifier
        )

    def values(self) -> Dict[str, str]:
        letter = self.target.drive_identifier.strip().rstrip("\\").rstrip(":")
        values = {
            "system_root": _with_backslash(self.target.root_path),
            "system_letter": letter,
            "mount_letter": self.mount_letter,
            "firmware": self.firmware_mode.upper(),
            "session_tag": self.session_tag,
        }
        if self.partition_mounted:
            drive = self.boot_partition.drive_identifier.rstrip("\\")
            values["boot_partition_letter"] = drive
            values["boot_partition"] = drive + "\\"
            values["store_path"] = drive + "\\" + _STORE_RELATIVE[self.firmware_mode]
        elif self.scanned_store_path:
            values["store_path"] = self.scanned_store_path
        if self.install_media:
            values["install_media"] = _with_backslash(self.install_media)
        if self.backup_dir:
            values["backup_dir"] = self.backup_dir.rstrip("\\/")
        return values

    def resolve(self, template: str) -> str:
        """Render ``template``.

        Raises:
            PlaceholderError: A known placeholder has no value yet.
        """
        values = self.values()
        for name in placeholders_in(template):
            if name not in values:
                raise PlaceholderError(name, template)
        return render_command(template, values)
