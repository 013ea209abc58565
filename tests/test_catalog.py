"""Tests for the remediation catalog loader.

Tests cover:
- The packaged catalog loads and maps every finding category
- Force-wipe steps are offered to boot partition and store categories only
- Risk defaults and mutating command inventory
- Validation failures (missing category, bad tier, bad risk, conflicting ids)
- Loading an override file from disk
"""

import copy
from pathlib import Path

import pytest
import yaml

from bootfix.catalog import load_catalog, parse_catalog
from bootfix.catalog.loader import DEFAULT_CATALOG_RESOURCE
from bootfix.exceptions import CatalogError
from bootfix.models import EnvironmentType, FindingCategory, RiskLevel

PACKAGED = Path(__file__).resolve().parent.parent / "src" / "bootfix" / "catalog" / DEFAULT_CATALOG_RESOURCE


@pytest.fixture
def raw_catalog() -> dict:
    with open(PACKAGED, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


class TestPackagedCatalog:
    def test_every_category_is_mapped(self, catalog) -> None:
        """Test that the planner can never meet an unmapped category."""
        for category in FindingCategory:
            assert category in catalog.templates

    def test_categories_without_automated_remedy(self, catalog) -> None:
        """Test that permission and missing-partition findings have no templates."""
        assert catalog.templates_for(FindingCategory.PERMISSION_DENIED) == []
        assert catalog.templates_for(FindingCategory.BOOT_PARTITION_MISSING) == []

    def test_templates_are_ordered_simple_first(self, catalog) -> None:
        """Test that templates come back sorted by tier."""
        tiers = [t.tier for t in catalog.templates_for(FindingCategory.LOADER_FILE_MISSING_IN_BOOT_PARTITION)]
        assert tiers == sorted(tiers)
        assert tiers[0] == 1
        assert tiers[-1] == 5

    def test_force_wipe_offered_to_store_categories(self, catalog) -> None:
        """Test that store and boot partition file categories can escalate to Tier 5."""
        for category in (
            FindingCategory.STORE_MISSING,
            FindingCategory.STORE_CORRUPT,
            FindingCategory.FIRMWARE_MODE_MISMATCH,
        ):
            ids = [t.step_id for t in catalog.templates_for(category)]
            assert "clear_boot_partition" in ids
            assert "format_boot_partition" in ids

    def test_force_wipe_not_offered_to_system_files(self, catalog) -> None:
        """Test that a missing loader in the system root never wipes the boot partition."""
        ids = [t.step_id for t in catalog.templates_for(FindingCategory.LOADER_FILE_MISSING_IN_SYSTEM)]
        assert "clear_boot_partition" not in ids
        assert "format_boot_partition" not in ids

    def test_destructive_steps_carry_backups(self, catalog) -> None:
        """Test that every destructive template has a backup action."""
        for category in FindingCategory:
            for template in catalog.templates_for(category):
                if template.destructive and template.step_id != "format_unreadable_boot_partition":
                    assert template.backup is not None, template.step_id

    def test_component_store_repair_is_recovery_only(self, catalog) -> None:
        """Test that offline servicing is restricted to the recovery environment."""
        template = catalog.template("restore_component_store")
        assert template.environments == (EnvironmentType.PRE_BOOT_RECOVERY,)

    def test_risk_lookup(self, catalog) -> None:
        """Test the static risk table and its default."""
        assert catalog.risk_for("copy_boot_manager") == RiskLevel.ELEVATED
        assert catalog.risk_for("clear_boot_partition") == RiskLevel.DESTRUCTIVE
        assert catalog.risk_for("not_in_table") == RiskLevel.ELEVATED

    def test_mount_template(self, catalog) -> None:
        """Test that the configured mount template provides the mount."""
        assert catalog.mount_template.step_id == "mount_boot_partition"
        assert catalog.mount_template.provides_mounted_partition

    def test_mutating_commands_exclude_probes(self, catalog) -> None:
        """Test that read-only probe commands are not in the mutating inventory."""
        mutating = catalog.mutating_commands
        assert catalog.probe_command("enumerate_store") not in mutating
        assert catalog.probe_command("query_boot_partition") not in mutating
        assert catalog.template("copy_boot_manager").command in mutating
        assert catalog.template("retire_corrupt_store").preserve_command in mutating
        assert catalog.template("clear_boot_partition").backup.command in mutating

    def test_unknown_probe_command(self, catalog) -> None:
        """Test that asking for an unknown probe command fails loudly."""
        with pytest.raises(CatalogError):
            catalog.probe_command("no_such_probe")

    def test_to_step_attaches_targets(self, catalog) -> None:
        """Test that a template becomes a step targeting the given findings."""
        step = catalog.template("create_boot_store").to_step(["store_missing:boot_store"])
        assert step.step_id == "create_boot_store"
        assert step.tier == 3
        assert step.targets_finding_ids == ("store_missing:boot_store",)
        assert step.requires_mounted_partition


class TestCatalogValidation:
    def test_missing_category_rejected(self, raw_catalog: dict) -> None:
        """Test that a catalog which forgets a category is refused."""
        del raw_catalog["templates"]["driver_missing"]
        with pytest.raises(CatalogError, match="driver_missing"):
            parse_catalog(raw_catalog)

    def test_unknown_category_rejected(self, raw_catalog: dict) -> None:
        """Test that categories outside the closed set are refused."""
        raw_catalog["templates"]["cosmic_rays"] = []
        with pytest.raises(CatalogError, match="cosmic_rays"):
            parse_catalog(raw_catalog)

    def test_tier_out_of_range_rejected(self, raw_catalog: dict) -> None:
        """Test that tiers outside 1..5 are refused."""
        raw_catalog["templates"]["store_missing"][0]["tier"] = 6
        with pytest.raises(CatalogError, match="tier 6"):
            parse_catalog(raw_catalog)

    def test_unknown_step_key_rejected(self, raw_catalog: dict) -> None:
        """Test that typos in step keys are caught."""
        raw_catalog["templates"]["store_missing"][0]["destrutive"] = True
        with pytest.raises(CatalogError, match="unknown keys"):
            parse_catalog(raw_catalog)

    def test_unknown_risk_rejected(self, raw_catalog: dict) -> None:
        """Test that risk levels outside the closed set are refused."""
        raw_catalog["risk"]["copy_boot_manager"] = "spicy"
        with pytest.raises(CatalogError, match="spicy"):
            parse_catalog(raw_catalog)

    def test_conflicting_duplicate_id_rejected(self, raw_catalog: dict) -> None:
        """Test that one step id cannot carry two definitions."""
        duplicate = copy.deepcopy(raw_catalog["templates"]["store_missing"][0])
        duplicate["command"] = "bcdboot {system_root}Windows /s {boot_partition_letter} /f BIOS"
        raw_catalog["templates"]["firmware_mode_mismatch"].append(duplicate)
        with pytest.raises(CatalogError, match="defined twice"):
            parse_catalog(raw_catalog)

    def test_identical_duplicate_id_accepted(self, raw_catalog: dict) -> None:
        """Test that the shared rebuild step may appear in several places."""
        catalog = parse_catalog(raw_catalog)
        assert catalog.template("rebuild_boot_files").tier == 5

    def test_mount_template_must_exist(self, raw_catalog: dict) -> None:
        """Test that the mount template must name a real step."""
        raw_catalog["mount_template"] = "mount_everything"
        with pytest.raises(CatalogError, match="mount_everything"):
            parse_catalog(raw_catalog)

    def test_non_mapping_rejected(self) -> None:
        """Test that an empty document is refused."""
        with pytest.raises(CatalogError):
            parse_catalog(None)


class TestLoadCatalog:
    def test_load_override_file(self, tmp_path: Path, raw_catalog: dict) -> None:
        """Test loading a catalog from an explicit path."""
        raw_catalog["version"] = 7
        path = tmp_path / "catalog.yaml"
        path.write_text(yaml.safe_dump(raw_catalog), encoding="utf-8")

        catalog = load_catalog(path)

        assert catalog.version == 7
        assert catalog.source == str(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that an unreadable override is a CatalogError."""
        with pytest.raises(CatalogError, match="Cannot read"):
            load_catalog(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML is a CatalogError."""
        path = tmp_path / "broken.yaml"
        path.write_text("templates: [unclosed", encoding="utf-8")
        with pytest.raises(CatalogError, match="not valid YAML"):
            load_catalog(path)
