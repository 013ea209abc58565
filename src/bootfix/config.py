"""Configuration module for bootfix settings.

Settings are read from ``BOOTFIX_*`` environment variables (or a local ``.env``).
The engine reads the module-level ``settings`` object unless a caller injects its
own ``Settings`` instance, which is what the tests do.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="BOOTFIX_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Per-volume session locks (one file per target volume)
    lock_dir: str = ".bootfix/locks"

    # Escalation ladder
    max_tier: int = Field(default=5, ge=1, le=5)
    command_timeout_seconds: float = 600.0

    # Safety gate
    confirmation_phrase: str = "WIPE BOOT PARTITION"
    favor_reversibility: bool = True

    # Remediation catalog override (defaults to the packaged YAML)
    catalog_path: Optional[str] = None

    # Boot layout facts used by probes and placeholders
    boot_partition_mount_letter: str = "S:"
    firmware_mode: Literal["uefi", "bios"] = "uefi"
    min_loader_size_bytes: int = 1024
    required_storage_drivers: List[str] = Field(
        default_factory=lambda: ["stornvme.sys", "storahci.sys"]
    )

    # Tier 4 needs installation media; unset means Tier 4 is skipped
    install_media_root: Optional[str] = None
    backup_root: str = ".bootfix/backups"

    # Defaults for logging_config.configure_logging; unset log_dir means <workspace>/.bootfix/logs
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @property
    def lock_path(self) -> Path:
        return Path(self.lock_dir)


settings = Settings()
