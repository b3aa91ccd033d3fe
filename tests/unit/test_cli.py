"""CLI tests with the service mocked out."""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from recunlock.cli import app
from recunlock.errors import NotFound
from recunlock.models import (
    ProgressSnapshot,
    ReplacementReport,
    UnlockRejected,
    UnlockRejection,
    UnlockResult,
    UnlockState,
    ValidationOutcome,
    ValidationStatus,
)

runner = CliRunner()


def _service_mock(**methods) -> MagicMock:
    service = MagicMock()
    for name, value in methods.items():
        setattr(service, name, AsyncMock(**value))
    return service


def _snapshot() -> ProgressSnapshot:
    return ProgressSnapshot(scan_id=5, total=10, active=5, locked=5)


def test_status_prints_progress():
    service = _service_mock(get_progress={"return_value": _snapshot()})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["status", "5"])

    assert result.exit_code == 0
    assert "Scan 5 progress" in result.stdout
    service.get_progress.assert_awaited_once_with(5)


def test_engine_errors_exit_with_code_1():
    service = _service_mock(get_progress={"side_effect": NotFound("scan", 99)})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["status", "99"])

    assert result.exit_code == 1
    assert "scan 99 not found" in result.stdout


def test_unlock_success():
    unlocked = UnlockResult(
        scan_id=5, unlocked_count=5, batch_number=2, recommendations=[], progress=_snapshot()
    )
    service = _service_mock(unlock_next={"return_value": unlocked})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["unlock", "5"])

    assert result.exit_code == 0
    assert "Unlocked 5 recommendations in batch 2" in result.stdout


def test_unlock_rejection_exits_with_code_2():
    rejected = UnlockRejected(
        scan_id=5,
        reason=UnlockRejection.ACTIVE_REMAINING,
        active_remaining=3,
        message="Complete all active recommendations before unlocking more (3 remaining)",
    )
    service = _service_mock(unlock_next={"return_value": rejected})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["unlock", "5"])

    assert result.exit_code == 2
    assert "active_remaining" in result.stdout


def test_register_reads_generator_json(tmp_path):
    payload = {
        "scan_id": 5,
        "user_id": 2,
        "recommendations": [
            {"category": "schema", "recommendation_text": "Add Organization schema", "batch_number": 1},
            {"category": "faq", "recommendation_text": "Add FAQ", "batch_number": 2},
        ],
    }
    path = tmp_path / "recs.json"
    path.write_text(json.dumps(payload))
    service = _service_mock(register_scan={"return_value": _snapshot()})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["register", str(path)])

    assert result.exit_code == 0
    scan_id, user_id, drafts = service.register_scan.await_args.args
    assert (scan_id, user_id) == (5, 2)
    assert [d.batch_number for d in drafts] == [1, 2]


def test_validate_passes_repeated_elements():
    outcome = ValidationOutcome(
        recommendation_id=3,
        outcome=ValidationStatus.PARTIAL_PROGRESS,
        completion_percentage=50,
        missing_elements=["faq-schema"],
        previous_state=UnlockState.COMPLETED,
        proposed_state=UnlockState.IN_PROGRESS,
        applied=True,
    )
    service = _service_mock(validate_recommendation={"return_value": outcome})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["validate", "3", "-e", "faq-section", "-e", "faq-heading"])

    assert result.exit_code == 0
    service.validate_recommendation.assert_awaited_once_with(3, ["faq-section", "faq-heading"])
    assert "partial_progress" in result.stdout
    assert "faq-schema" in result.stdout


def test_force_replace_reports_next_date():
    report = ReplacementReport(
        scan_id=5,
        replaced_ids=[1, 2],
        new_ids=[11, 12],
        next_replacement_date=datetime(2026, 1, 10, 3, 0),
        forced=True,
    )
    service = _service_mock(force_replacement={"return_value": report})

    with patch("recunlock.cli.UnlockService", return_value=service):
        result = runner.invoke(app, ["force-replace", "5"])

    assert result.exit_code == 0
    assert "Replaced 2 recommendations" in result.stdout
    assert "2026-01-10 03:00" in result.stdout


def test_logging_configured_from_app_config(monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    service = _service_mock(get_progress={"return_value": _snapshot()})

    with patch("recunlock.cli.UnlockService", return_value=service), patch(
        "recunlock.cli.configure_logging"
    ) as configure:
        runner.invoke(app, ["status", "5"])
        runner.invoke(app, ["--log-level", "WARNING", "status", "5"])

    assert configure.call_args_list[0].args == ("DEBUG", "json")
    assert configure.call_args_list[1].args == ("WARNING", "json")
