"""Shared fixtures: a simulated Windows machine behind fake capabilities.

``FakeMachine`` models the two volumes the engine cares about: the target
system volume (plain absolute paths such as ``C:\\Windows\\...``) and the boot
partition, reachable through its drive letter once mounted and through its
volume GUID access path at all times. ``FakeRunner`` interprets the catalog's
commands against that model, so a repair is only "done" if the simulated
files really change. Write protection makes tools lie: they exit 0 and
nothing lands on disk.
"""

import json
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

_src_path = Path(__file__).resolve().parent.parent / "src"
if str(_src_path) not in sys.path:
    sys.path.insert(0, str(_src_path))

from bootfix import session_lock  # noqa: E402
from bootfix.capabilities import (  # noqa: E402
    Capabilities,
    CommandOutput,
    StaticEnvironment,
    render_command,
)
from bootfix.catalog import load_catalog  # noqa: E402
from bootfix.config import Settings  # noqa: E402
from bootfix.engine import BootRepairEngine  # noqa: E402
from bootfix.models import EnvironmentType, RiskLevel, TargetVolume  # noqa: E402

ACCESS_PATH = "\\\\?\\Volume{3f1c0e6a-52b1-4d0e-9a7e-5c2f0d1e8a44}\\"
BOOT_MANAGER = "EFI\\Microsoft\\Boot\\bootmgfw.efi"
STORE = "EFI\\Microsoft\\Boot\\BCD"
BIOS_STORE = "Boot\\BCD"

TARGET = TargetVolume("C:", "C:\\")

HEALTHY_SYSTEM_FILES = {
    "C:\\Windows\\System32\\winload.efi": 2_097_152,
    "C:\\Windows\\Boot\\EFI\\bootmgfw.efi": 1_572_864,
    "C:\\Windows\\System32\\drivers\\stornvme.sys": 155_648,
    "C:\\Windows\\System32\\drivers\\storahci.sys": 188_416,
}

HEALTHY_PARTITION_FILES = {
    BOOT_MANAGER: 1_572_864,
    STORE: 32_768,
}

BCDEDIT_OUTPUT = """
Windows Boot Manager
--------------------
identifier              {bootmgr}
device                  partition=S:
path                    \\EFI\\Microsoft\\Boot\\bootmgfw.efi
description             Windows Boot Manager
default                 {current}
timeout                 30

Windows Boot Loader
-------------------
identifier              {current}
device                  partition=C:
path                    \\Windows\\system32\\winload.efi
description             Windows 11
osdevice                partition=C:
systemroot              \\Windows
"""

_QUOTED = re.compile(r'"([^"]*)"')


@dataclass
class FakeCall:
    template: str
    command: str
    timeout: Optional[float] = None


class FakeMachine:
    """Mutable state of the simulated machine."""

    def __init__(
        self,
        *,
        letter: Optional[str] = "S:",
        file_system: str = "FAT32",
        partition_present: bool = True,
        partition_files: Optional[Dict[str, int]] = None,
        system_files: Optional[Dict[str, int]] = None,
        store_enumerable: bool = True,
        write_protected: Tuple[str, ...] = (),
        mount_letter: str = "S:",
        restorable: Optional[Dict[str, int]] = None,
        restore_requires_media: bool = False,
        access_path: Optional[str] = ACCESS_PATH,
    ):
        self.letter = letter
        self.file_system = file_system
        self.partition_present = partition_present
        self.partition_files: Dict[str, int] = (
            dict(HEALTHY_PARTITION_FILES) if partition_files is None else dict(partition_files)
        )
        self.system_files: Dict[str, int] = (
            dict(HEALTHY_SYSTEM_FILES) if system_files is None else dict(system_files)
        )
        self.store_enumerable = store_enumerable
        self.write_protected: Set[str] = set(write_protected)
        self.mount_letter = mount_letter
        self.restorable: Dict[str, int] = dict(restorable or {})
        self.restore_requires_media = restore_requires_media
        self.access_path = access_path
        self.denied_paths: Set[str] = set()
        # command prefix -> (exit code, stderr); matching commands fail without side effects
        self.failures: Dict[str, Tuple[int, str]] = {}

    def partition_prefixes(self) -> List[str]:
        prefixes = [self.access_path] if self.access_path else []
        if self.letter:
            prefixes.insert(0, self.letter + "\\")
        return prefixes

    def locate(self, path: str) -> Tuple[Dict[str, int], str]:
        """Map an absolute path to (file table, key)."""
        if self.partition_present:
            for prefix in self.partition_prefixes():
                if path.upper().startswith(prefix.upper()):
                    return self.partition_files, path[len(prefix):]
        return self.system_files, path

    def write(self, path: str, size: int) -> bool:
        table, key = self.locate(path)
        if table is self.partition_files and key in self.write_protected:
            return False
        table[key] = size
        return True

    def remove_tree(self, path: str) -> Dict[str, int]:
        table, key = self.locate(path)
        removed = {}
        for name in list(table):
            if name == key or name.startswith(key.rstrip("\\") + "\\"):
                removed[name] = table.pop(name)
        return removed


class FakeFiles:
    """FileProbe over a FakeMachine."""

    def __init__(self, machine: FakeMachine):
        self.machine = machine

    def _check(self, path: str) -> None:
        if path in self.machine.denied_paths:
            raise PermissionError(13, "Access is denied", path)

    def exists(self, path: str) -> bool:
        self._check(path)
        table, key = self.machine.locate(path)
        return key in table

    def size(self, path: str) -> int:
        self._check(path)
        table, key = self.machine.locate(path)
        if key not in table:
            raise FileNotFoundError(2, "No such file", path)
        return table[key]

    def read_text(self, path: str) -> str:
        self._check(path)
        return ""


class FakeRunner:
    """CommandRunner that interprets catalog commands against a FakeMachine."""

    def __init__(self, machine: FakeMachine):
        self.machine = machine
        self.calls: List[FakeCall] = []

    @property
    def commands(self) -> List[str]:
        return [c.command for c in self.calls]

    def execute(self, command_template, resolved_args, timeout=None) -> CommandOutput:
        command = render_command(command_template, resolved_args)
        self.calls.append(FakeCall(command_template, command, timeout))

        for prefix, (code, stderr) in self.machine.failures.items():
            if command.startswith(prefix):
                return CommandOutput(exit_code=code, stderr=stderr)

        if command.startswith("powershell"):
            return self._query_partition()
        if command.startswith("bcdedit"):
            return self._enumerate_store(command)
        if command.startswith("mountvol"):
            self.machine.letter = self.machine.mount_letter
            return CommandOutput(exit_code=0)
        if command.startswith("bcdboot"):
            return self._bcdboot()
        if command.startswith("xcopy"):
            return self._xcopy(command)
        if command.startswith("format"):
            return self._format()
        if command.startswith("dism"):
            if "/Source:" in command or not self.machine.restore_requires_media:
                self.machine.system_files.update(self.machine.restorable)
            return CommandOutput(exit_code=0, stdout="The operation completed successfully.")
        if command.startswith("cmd /c ren"):
            return self._rename(command)
        if command.startswith("cmd /c rd") or command.startswith("cmd /c del"):
            self.machine.remove_tree(_QUOTED.findall(command)[0])
            return CommandOutput(exit_code=0)
        if " copy " in command or command.startswith("cmd /c copy"):
            src, dst = _QUOTED.findall(command)[-2:]
            return self._copy(src, dst)
        return CommandOutput(exit_code=1, stderr=f"unknown command: {command}")

    def _query_partition(self) -> CommandOutput:
        machine = self.machine
        if not machine.partition_present:
            return CommandOutput(exit_code=0, stdout="")
        payload = {
            "DriveLetter": machine.letter.rstrip(":") if machine.letter else "",
            "AccessPath": machine.access_path or "",
            "FileSystem": machine.file_system,
        }
        return CommandOutput(exit_code=0, stdout=json.dumps(payload))

    def _enumerate_store(self, command: str) -> CommandOutput:
        path = _QUOTED.findall(command)[0]
        table, key = self.machine.locate(path)
        if key in table and self.machine.store_enumerable:
            return CommandOutput(exit_code=0, stdout=BCDEDIT_OUTPUT)
        return CommandOutput(
            exit_code=1,
            stderr="The boot configuration data store could not be opened.",
        )

    def _bcdboot(self) -> CommandOutput:
        machine = self.machine
        if STORE not in machine.write_protected:
            machine.partition_files[STORE] = 32_768
            machine.store_enumerable = True
        if BOOT_MANAGER not in machine.write_protected:
            machine.partition_files[BOOT_MANAGER] = 1_572_864
        return CommandOutput(exit_code=0, stdout="Boot files successfully created.")

    def _copy(self, src: str, dst: str) -> CommandOutput:
        table, key = self.machine.locate(src)
        if key not in table:
            return CommandOutput(exit_code=1, stderr="The system cannot find the file specified.")
        self.machine.write(dst, table[key])
        return CommandOutput(exit_code=0, stdout="        1 file(s) copied.")

    def _xcopy(self, command: str) -> CommandOutput:
        src, dst = _QUOTED.findall(command)[:2]
        table, key = self.machine.locate(src)
        copied = 0
        for name, size in list(table.items()):
            if name.startswith(key + "\\"):
                self.machine.write(dst + name[len(key):], size)
                copied += 1
        return CommandOutput(exit_code=0, stdout=f"{copied} File(s) copied")

    def _rename(self, command: str) -> CommandOutput:
        path = _QUOTED.findall(command)[0]
        new_name = command.rsplit(" ", 1)[-1]
        removed = self.machine.remove_tree(path)
        _, key = self.machine.locate(path)
        parent = key.rsplit("\\", 1)[0] + "\\" if "\\" in key else ""
        table, _ = self.machine.locate(path)
        for name, size in removed.items():
            table[parent + new_name + name[len(key):]] = size
        return CommandOutput(exit_code=0)

    def _format(self) -> CommandOutput:
        machine = self.machine
        machine.partition_files.clear()
        machine.write_protected.clear()
        machine.file_system = "FAT32"
        machine.store_enumerable = False
        return CommandOutput(exit_code=0, stdout="Format complete.")


class FakePrompt:
    """UserPrompt with scripted answers; records every question."""

    def __init__(self, answer: bool = True, phrase: Optional[str] = None):
        self.answer = answer
        self.phrase = phrase
        self.calls: List[Tuple[str, str]] = []

    def confirm(self, risk_level: RiskLevel, message: str) -> bool:
        self.calls.append(("confirm", risk_level.value))
        return self.answer

    def confirm_with_phrase(self, required_phrase: str, message: str) -> bool:
        self.calls.append(("phrase", required_phrase))
        return self.phrase == required_phrase

    @property
    def phrase_requests(self) -> int:
        return sum(1 for kind, _ in self.calls if kind == "phrase")


@dataclass
class FakeEvents:
    events: list = field(default_factory=list)

    def append(self, event) -> None:
        self.events.append(event)


def recovery_environment() -> StaticEnvironment:
    return StaticEnvironment(EnvironmentType.PRE_BOOT_RECOVERY, elevated=True)


def live_environment(running_volume: Optional[str] = "C:") -> StaticEnvironment:
    return StaticEnvironment(EnvironmentType.LIVE_RUNNING_OS, True, running_volume)


@pytest.fixture(autouse=True)
def _clear_session_registry():
    """Never let a session held by one test leak into the next."""
    yield
    with session_lock._registry_guard:
        session_lock._active_sessions.clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        lock_dir=str(tmp_path / "locks"),
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def machine() -> FakeMachine:
    return FakeMachine()


@pytest.fixture
def make_engine(settings, catalog):
    """Build an engine wired to fakes: make_engine(machine, environment=..., prompt=...)."""

    def factory(machine: FakeMachine, environment=None, prompt=None, engine_settings=None):
        capabilities = Capabilities(
            runner=FakeRunner(machine),
            files=FakeFiles(machine),
            environment=environment or recovery_environment(),
            prompt=prompt or FakePrompt(),
            events=FakeEvents(),
        )
        return BootRepairEngine(capabilities, settings=engine_settings or settings, catalog=catalog)

    return factory


def mutating_calls(engine: BootRepairEngine) -> List[FakeCall]:
    mutating = engine.catalog.mutating_commands
    return [c for c in engine.capabilities.runner.calls if c.template in mutating]


def states(session) -> List[str]:
    return [t.to_state.value for t in session.transitions]


def executed_tiers(session) -> List[int]:
    return [t.tier for t in session.transitions if t.to_state.value == "executing_tier"]
