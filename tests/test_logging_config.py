"""Tests for logging configuration."""

import json
import logging
from pathlib import Path

import pytest

from bootfix.config import Settings
from bootfix.logging_config import (
    StructuredFormatter,
    configure_logging,
    get_default_log_dir,
    session_id_var,
)


def _record(message: str = "hello") -> logging.LogRecord:
    return logging.LogRecord("bootfix.test", logging.INFO, __file__, 1, message, None, None)


class TestStructuredFormatter:
    def test_includes_session_id(self) -> None:
        """Test that records carry the active session id."""
        token = session_id_var.set("session-abc123")
        try:
            payload = json.loads(StructuredFormatter().format(_record()))
        finally:
            session_id_var.reset(token)

        assert payload["session_id"] == "session-abc123"
        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "bootfix.test"

    def test_session_id_absent_outside_sessions(self) -> None:
        """Test that session_id is null when no session is running."""
        payload = json.loads(StructuredFormatter().format(_record()))
        assert payload["session_id"] is None

    def test_extra_fields_are_kept(self) -> None:
        """Test that extra= attributes end up in the JSON."""
        record = _record()
        record.event = {"to": "verifying"}
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["event"] == {"to": "verifying"}


class TestConfigureLogging:
    def test_writes_log_file(self, tmp_path: Path) -> None:
        """Test that a log file named after the session is created."""
        logger = configure_logging(
            session_id="session-1", log_dir=tmp_path, log_to_console=False
        )
        try:
            files = list(tmp_path.glob("session-1_*.log"))
            assert len(files) == 1
            assert logger.name == "bootfix"
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

    def test_console_only(self, tmp_path: Path) -> None:
        """Test that no file handler is added when file logging is off."""
        logger = configure_logging(log_dir=tmp_path, log_to_file=False, log_level="DEBUG")
        try:
            assert not any(isinstance(h, logging.FileHandler) for h in logger.handlers)
            assert logger.level == logging.DEBUG
            assert list(tmp_path.iterdir()) == []
        finally:
            logger.handlers.clear()

    def test_level_and_dir_come_from_settings(self, tmp_path: Path) -> None:
        """Test that Settings.log_level and Settings.log_dir are the defaults."""
        config = Settings(_env_file=None, log_level="WARNING", log_dir=str(tmp_path / "logs"))
        logger = configure_logging(log_to_console=False, log_filename="run.log", config=config)
        try:
            assert logger.level == logging.WARNING
            assert (tmp_path / "logs" / "run.log").exists()
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

    def test_structured_output(self, tmp_path: Path) -> None:
        """Test that structured=True writes JSON lines."""
        logger = configure_logging(
            log_dir=tmp_path, log_to_console=False, log_filename="run.log", structured=True
        )
        try:
            logger.warning("boot store missing")
            for handler in logger.handlers:
                handler.flush()
            lines = (tmp_path / "run.log").read_text(encoding="utf-8").splitlines()
            payload = json.loads(lines[-1])
            assert payload["message"] == "boot store missing"
            assert payload["level"] == "WARNING"
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)


def test_default_log_dir_from_settings(tmp_path: Path) -> None:
    """Test that Settings.log_dir wins over the workspace default."""
    config = Settings(_env_file=None, log_dir=str(tmp_path / "elsewhere"))
    assert get_default_log_dir(tmp_path, config) == tmp_path / "elsewhere"


def test_log_dir_env_reaches_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOOTFIX_LOG_DIR", str(tmp_path / "env"))
    assert get_default_log_dir(config=Settings(_env_file=None)) == tmp_path / "env"


def test_default_log_dir(tmp_path: Path) -> None:
    config = Settings(_env_file=None, log_dir=None)
    assert get_default_log_dir(tmp_path, config) == tmp_path / ".bootfix" / "logs"
