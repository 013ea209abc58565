"""Tests for session reports."""

import json

import pytest

from bootfix.exceptions import BootfixError
from bootfix.models import FindingCategory, SessionMode
from bootfix.report import HYPOTHESES, SessionReport
from tests.conftest import BOOT_MANAGER, STORE, TARGET, FakeMachine, FakePrompt


def test_every_category_has_a_hypothesis() -> None:
    assert set(HYPOTHESES) == set(FindingCategory)


def test_report_after_success_is_json_ready(make_engine) -> None:
    engine = make_engine(FakeMachine(letter=None, partition_files={STORE: 32_768}))
    session = engine.start_session(TARGET, SessionMode.APPLY)
    list(engine.execute(session, approved=True))

    report = engine.get_report(session)
    payload = report.to_json_dict()

    json.dumps(payload)
    assert payload["session_id"] == session.session_id
    assert payload["target_volume"] == "C:"
    assert payload["mode"] == "apply"
    assert payload["final_state"] == "succeeded"
    assert [s["step_id"] for s in payload["steps_applied"]] == ["mount_boot_partition", "copy_boot_manager"]
    assert payload["remaining_issues"] == []
    assert payload["tiers"][0]["verified"] is True
    assert "failure_kind" not in payload["tiers"][0]
    assert report.root_cause_hypothesis == "Repaired and verified at tier 1."


def test_interim_report_before_execution(make_engine) -> None:
    """Test that a planned-but-not-run session reports everything as remaining."""
    engine = make_engine(FakeMachine(partition_files={STORE: 32_768}))
    session = engine.start_session(TARGET, SessionMode.APPLY)

    report = engine.get_report(session)

    assert report.final_state == "awaiting_confirmation"
    assert [f.id for f in report.remaining_issues] == [f.id for f in report.findings]
    assert report.manual_commands[0].startswith("cmd /c copy")
    engine.abort(session)


def test_report_model_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError):
        SessionReport(
            session_id="s",
            target_volume="C:",
            mode="apply",
            final_state="failed",
            root_cause_hypothesis="x",
            surprise=True,
        )


def test_backups_are_reported(make_engine) -> None:
    machine = FakeMachine(partition_files={STORE: 32_768}, write_protected=(BOOT_MANAGER,))
    engine = make_engine(machine, prompt=FakePrompt(phrase="WIPE BOOT PARTITION"))
    session = engine.start_session(TARGET, SessionMode.APPLY)
    list(engine.execute(session, approved=True))

    report = engine.get_report(session)

    assert [b["step_id"] for b in report.backups] == ["clear_boot_partition", "format_boot_partition"]
    assert all(b["ok"] for b in report.backups)


def test_unknown_session_plan(make_engine) -> None:
    engine = make_engine(FakeMachine())
    session = engine.start_session(TARGET, SessionMode.DRY_RUN)
    session.plan = None
    with pytest.raises(BootfixError):
        engine.get_plan(session)
    engine.abort(session)
