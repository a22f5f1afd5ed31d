from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from agentfix.models import (
    EscalationResult,
    EvidenceResult,
    FailureReason,
    RemediationOutcome,
    RemediationRun,
    ReportResult,
    RestartResult,
    ServiceState,
    StepResult,
)
from agentfix.run_state import build_state_record, save_state, write_textfile_metrics

STARTED = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
FINISHED = datetime(2026, 10, 18, 9, 33, 20, 500, tzinfo=timezone.utc)


def _escalated_run() -> RemediationRun:
    return RemediationRun(
        outcome=RemediationOutcome.ESCALATION_FAILED,
        initial_state=ServiceState.STOPPED,
        started_at=STARTED,
        finished_at=FINISHED,
        restart=RestartResult(
            attempted=True,
            succeeded=False,
            elapsed_seconds=90,
            probes=18,
            reason=FailureReason.RESTART_TIMEOUT,
        ),
        evidence=EvidenceResult(found=True, records=()),
        escalation=EscalationResult(
            outcome=RemediationOutcome.ESCALATION_FAILED,
            stop=StepResult.success(),
            archive=StepResult.success("C:/Agent_20261018093130"),
            archived_path=Path("C:/Agent_20261018093130"),
            identifier="site-42",
            fetch=StepResult.failure(FailureReason.FETCH_FAILED, "network: connection refused"),
        ),
    )


def test_build_state_record_for_escalation() -> None:
    record = build_state_record(
        _escalated_run(),
        log_file=Path("logs/CORP_PC01_20261018-093000.log"),
        report=ReportResult(sent=True, status_code=200),
    )

    assert record["outcome"] == "EscalationFailed"
    assert record["initial_state"] == "Stopped"
    assert record["last_run_utc"] == "2026-10-18T09:33:20+00:00"
    assert record["restart_attempted"] is True
    assert record["restart_fixed_issue"] is False
    assert record["report_sent"] is True
    esc = record["escalation"]
    assert esc["failure_reason"] == "fetch_failed"
    assert esc["fetch"] == {"ok": False, "reason": "fetch_failed", "detail": "network: connection refused"}
    assert esc["install"] is None
    assert esc["identifier_recovered"] is True


def test_save_state_is_valid_json(tmp_path) -> None:
    path = tmp_path / "state" / "last-run.json"
    run = RemediationRun(
        outcome=RemediationOutcome.NO_ACTION_NEEDED,
        initial_state=ServiceState.RUNNING,
        started_at=STARTED,
        finished_at=STARTED,
    )

    save_state(path, build_state_record(run, log_file=None, report=None))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["outcome"] == "NoActionNeeded"
    assert "escalation" not in data
    assert not list(path.parent.glob("*.tmp"))


def test_write_textfile_metrics(tmp_path) -> None:
    write_textfile_metrics(out_dir=tmp_path, out_file="agentfix.prom", run=_escalated_run())

    text = (tmp_path / "agentfix.prom").read_text(encoding="utf-8")
    assert "agentfix_metrics_ok 1" in text
    assert f"agentfix_last_run_timestamp_seconds {int(FINISHED.timestamp())}" in text
    assert "agentfix_initial_service_running 0" in text
    assert 'agentfix_last_result{outcome="EscalationFailed"} 1' in text
    assert 'agentfix_last_result{outcome="RestartSucceeded"} 0' in text
    assert not list(tmp_path.glob("*.tmp"))
