"""Remediation catalog loader.

Loads the static command catalog (command templates, tiers, risk classes and
manual advice) from YAML. The packaged ``remediation_catalog.yaml`` is used
unless ``settings.catalog_path`` or an explicit path overrides it.

Unlike lenient config loaders, a malformed catalog is fatal: every finding
category must be mapped (possibly to an empty list) so the planner can never
meet a category it has no answer for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import yaml

from ..exceptions import CatalogError
from ..models import (
    BackupAction,
    EnvironmentType,
    ExpectedOutput,
    FindingCategory,
    RemediationStep,
    RiskLevel,
)

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_RESOURCE = "remediation_catalog.yaml"
MIN_TIER = 1
MAX_TIER = 5

_STEP_KEYS = {
    "id",
    "tier",
    "command",
    "description",
    "destructive",
    "reversible",
    "backup",
    "timeout_seconds",
    "requires_mounted_partition",
    "provides_mounted_partition",
    "touches_target",
    "environments",
    "requires_elevation",
    "expected_outputs",
    "preserve_command",
}


@dataclass(frozen=True)
class StepTemplate:
    """Catalog entry that becomes a RemediationStep once findings are attached."""

    step_id: str
    tier: int
    command: str
    description: str = ""
    destructive: bool = False
    reversible: bool = True
    backup: Optional[BackupAction] = None
    timeout_seconds: Optional[float] = None
    requires_mounted_partition: bool = False
    provides_mounted_partition: bool = False
    touches_target: bool = True
    environments: Tuple[EnvironmentType, ...] = ()
    requires_elevation: bool = True
    expected_outputs: Tuple[ExpectedOutput, ...] = ()
    preserve_command: Optional[str] = None

    def to_step(self, targets: Iterable[str]) -> RemediationStep:
        return RemediationStep(
            step_id=self.step_id,
            tier=self.tier,
            command_template=self.command,
            targets_finding_ids=tuple(targets),
            destructive=self.destructive,
            reversible=self.reversible,
            backup_action=self.backup,
            description=self.description,
            timeout_seconds=self.timeout_seconds,
            requires_mounted_partition=self.requires_mounted_partition,
            provides_mounted_partition=self.provides_mounted_partition,
            touches_target=self.touches_target,
            environments=self.environments,
            requires_elevation=self.requires_elevation,
            expected_outputs=self.expected_outputs,
            preserve_command=self.preserve_command,
        )


@dataclass(frozen=True)
class RemediationCatalog:
    """Parsed, validated catalog."""

    version: int
    templates: Dict[FindingCategory, Tuple[StepTemplate, ...]]
    force_wipe_categories: FrozenSet[FindingCategory]
    force_wipe_steps: Tuple[StepTemplate, ...]
    risk_table: Dict[str, RiskLevel]
    probe_commands: Dict[str, str]
    manual_advice: Dict[FindingCategory, Tuple[str, ...]]
    mount_template_id: str
    source: str = field(default="<memory>", compare=False)

    def templates_for(self, category: FindingCategory) -> List[StepTemplate]:
        """All templates for ``category`` across tiers, ordered by tier then catalog order."""
        result = list(self.templates.get(category, ()))
        if category in self.force_wipe_categories:
            result.extend(self.force_wipe_steps)
        return sorted(result, key=lambda t: t.tier)

    def template(self, step_id: str) -> StepTemplate:
        for template in self._all_templates():
            if template.step_id == step_id:
                return template
        raise KeyError(step_id)

    @property
    def mount_template(self) -> StepTemplate:
        return self.template(self.mount_template_id)

    def risk_for(self, step_id: str) -> RiskLevel:
        """Static risk class. Steps missing from the table default to Elevated."""
        return self.risk_table.get(step_id, RiskLevel.ELEVATED)

    def probe_command(self, name: str) -> str:
        try:
            return self.probe_commands[name]
        except KeyError:
            raise CatalogError(f"Catalog has no probe command '{name}'") from None

    def advice_for(self, category: FindingCategory) -> Tuple[str, ...]:
        return self.manual_advice.get(category, ())

    @property
    def mutating_commands(self) -> FrozenSet[str]:
        """Every command template that can change the machine (steps, preserves, backups)."""
        commands = set()
        for template in self._all_templates():
            commands.add(template.command)
            if template.preserve_command:
                commands.add(template.preserve_command)
            if template.backup:
                commands.add(template.backup.command)
        return frozenset(commands)

    def _all_templates(self) -> List[StepTemplate]:
        result: List[StepTemplate] = []
        for templates in self.templates.values():
            result.extend(templates)
        result.extend(self.force_wipe_steps)
        return result


# --------------------------------------------------------------------------- #
# Parsing
# --------------------------------------------------------------------------- #


def _parse_backup(raw: Any, step_id: str) -> Optional[BackupAction]:
    if raw is None:
        return None
    if not isinstance(raw, dict) or "command" not in raw or "verify_path" not in raw:
        raise CatalogError(f"Step '{step_id}': backup needs 'command' and 'verify_path'")
    return BackupAction(
        command=str(raw["command"]),
        verify_path=str(raw["verify_path"]),
        min_size_bytes=int(raw.get("min_size_bytes", 1)),
    )


def _parse_environments(raw: Any, step_id: str) -> Tuple[EnvironmentType, ...]:
    if not raw:
        return ()
    try:
        return tuple(EnvironmentType(value) for value in raw)
    except ValueError as e:
        raise CatalogError(f"Step '{step_id}': {e}") from e


def _parse_step(raw: Any) -> StepTemplate:
    if not isinstance(raw, dict):
        raise CatalogError(f"Step entry must be a mapping, got {type(raw).__name__}")
    step_id = raw.get("id")
    if not step_id or "command" not in raw or "tier" not in raw:
        raise CatalogError(f"Step entry needs 'id', 'tier' and 'command': {raw!r}")

    unknown = set(raw) - _STEP_KEYS
    if unknown:
        raise CatalogError(f"Step '{step_id}': unknown keys {sorted(unknown)}")

    tier = int(raw["tier"])
    if not MIN_TIER <= tier <= MAX_TIER:
        raise CatalogError(f"Step '{step_id}': tier {tier} outside {MIN_TIER}..{MAX_TIER}")

    outputs = tuple(
        ExpectedOutput(path=str(o["path"]), min_size_bytes=int(o.get("min_size_bytes", 1)))
        for o in raw.get("expected_outputs") or []
    )
    timeout = raw.get("timeout_seconds")
    return StepTemplate(
        step_id=str(step_id),
        tier=tier,
        command=str(raw["command"]),
        description=str(raw.get("description", "")),
        destructive=bool(raw.get("destructive", False)),
        reversible=bool(raw.get("reversible", True)),
        backup=_parse_backup(raw.get("backup"), step_id),
        timeout_seconds=float(timeout) if timeout is not None else None,
        requires_mounted_partition=bool(raw.get("requires_mounted_partition", False)),
        provides_mounted_partition=bool(raw.get("provides_mounted_partition", False)),
        touches_target=bool(raw.get("touches_target", True)),
        environments=_parse_environments(raw.get("environments"), step_id),
        requires_elevation=bool(raw.get("requires_elevation", True)),
        expected_outputs=outputs,
        preserve_command=raw.get("preserve_command"),
    )


def _parse_category(name: str) -> FindingCategory:
    try:
        return FindingCategory(name)
    except ValueError:
        raise CatalogError(f"Unknown finding category '{name}'") from None


def _register(seen: Dict[str, StepTemplate], template: StepTemplate) -> None:
    # The same step may be listed under several categories, but only with one definition
    existing = seen.get(template.step_id)
    if existing is not None and existing != template:
        raise CatalogError(f"Step id '{template.step_id}' defined twice with different content")
    seen[template.step_id] = template


def parse_catalog(data: Any, source: str = "<memory>") -> RemediationCatalog:
    """Validate a decoded YAML document and build a RemediationCatalog."""
    if not isinstance(data, dict):
        raise CatalogError(f"Catalog {source} is empty or not a mapping")

    raw_templates = data.get("templates")
    if not isinstance(raw_templates, dict):
        raise CatalogError(f"Catalog {source} has no 'templates' section")

    seen: Dict[str, StepTemplate] = {}
    templates: Dict[FindingCategory, Tuple[StepTemplate, ...]] = {}
    for name, entries in raw_templates.items():
        category = _parse_category(name)
        parsed = tuple(_parse_step(entry) for entry in entries or [])
        for template in parsed:
            _register(seen, template)
        templates[category] = parsed

    missing = [c.value for c in FindingCategory if c not in templates]
    if missing:
        raise CatalogError(f"Catalog {source} does not map categories: {', '.join(missing)}")

    force_wipe = data.get("force_wipe") or {}
    force_wipe_steps = tuple(_parse_step(entry) for entry in force_wipe.get("steps") or [])
    for template in force_wipe_steps:
        _register(seen, template)
    force_wipe_categories = frozenset(
        _parse_category(name) for name in force_wipe.get("applies_to") or []
    )

    risk_table: Dict[str, RiskLevel] = {}
    for step_id, level in (data.get("risk") or {}).items():
        try:
            risk_table[str(step_id)] = RiskLevel(level)
        except ValueError:
            raise CatalogError(f"Unknown risk level '{level}' for step '{step_id}'") from None

    mount_template_id = data.get("mount_template")
    if not mount_template_id or mount_template_id not in seen:
        raise CatalogError(f"Catalog {source}: mount_template '{mount_template_id}' is not a step")
    if not seen[mount_template_id].provides_mounted_partition:
        raise CatalogError(f"Mount template '{mount_template_id}' must provide the mounted partition")

    manual_advice = {
        _parse_category(name): tuple(str(line) for line in lines or [])
        for name, lines in (data.get("manual_advice") or {}).items()
    }

    catalog = RemediationCatalog(
        version=int(data.get("version", 1)),
        templates=templates,
        force_wipe_categories=force_wipe_categories,
        force_wipe_steps=force_wipe_steps,
        risk_table=risk_table,
        probe_commands={str(k): str(v) for k, v in (data.get("probe_commands") or {}).items()},
        manual_advice=manual_advice,
        mount_template_id=str(mount_template_id),
        source=source,
    )
    logger.debug(f"[Catalog] Loaded {len(seen)} step templates from {source}")
    return catalog


def load_catalog(path: Optional[Union[str, Path]] = None) -> RemediationCatalog:
    """Load and validate the remediation catalog.

    Args:
        path: Explicit YAML path. Defaults to ``settings.catalog_path`` and then
            to the catalog packaged with bootfix.

    Raises:
        CatalogError: If the file is unreadable, not valid YAML, or incomplete.
    """
    if path is None:
        from ..config import settings

        path = settings.catalog_path

    if path is None:
        source = f"bootfix.catalog/{DEFAULT_CATALOG_RESOURCE}"
        text = resources.files("bootfix.catalog").joinpath(DEFAULT_CATALOG_RESOURCE).read_text(
            encoding="utf-8"
        )
    else:
        source = str(path)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise CatalogError(f"Cannot read catalog {source}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise CatalogError(f"Catalog {source} is not valid YAML: {e}") from e

    return parse_catalog(data, source=source)
