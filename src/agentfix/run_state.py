from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import RemediationOutcome, RemediationRun, ReportResult, ServiceState, StepResult


def _dt_to_epoch_seconds(dt: datetime) -> int:
    return int(dt.astimezone(timezone.utc).timestamp())


def _step(step: Optional[StepResult]) -> Optional[dict[str, Any]]:
    if step is None:
        return None
    return {
        "ok": step.ok,
        "reason": step.reason.value if step.reason else None,
        "detail": step.detail[:400],
    }


def build_state_record(
    run: RemediationRun,
    *,
    log_file: Optional[Path],
    report: Optional[ReportResult],
) -> dict[str, Any]:
    """
    JSON-serialisable summary of a run, kept for forensics only.
    """
    record: dict[str, Any] = {
        "last_run_utc": run.finished_at.replace(microsecond=0).isoformat(),
        "outcome": run.outcome.value,
        "initial_state": run.initial_state.value,
        "restart_attempted": bool(run.restart and run.restart.attempted),
        "restart_fixed_issue": run.restart_fixed_issue,
        "evidence_count": len(run.evidence.records) if run.evidence else 0,
        "evidence_query_failed": bool(run.evidence and run.evidence.reason),
        "log_file": str(log_file) if log_file else None,
        "report_sent": bool(report and report.sent),
    }
    if run.escalation is not None:
        esc = run.escalation
        record["escalation"] = {
            "stop": _step(esc.stop),
            "archive": _step(esc.archive),
            "archived_path": str(esc.archived_path) if esc.archived_path else None,
            "identifier_recovered": esc.identifier is not None,
            "fetch": _step(esc.fetch),
            "install": _step(esc.install),
            "install_exit_code": esc.install_exit_code,
            "cleanup": _step(esc.cleanup),
            "error": _step(esc.error),
            "failure_reason": esc.failure_reason.value if esc.failure_reason else None,
        }
    return record


def save_state(path: Path, record: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(json.dumps(record, indent=2, sort_keys=True) + "\n")
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


def write_textfile_metrics(
    *,
    out_dir: Path,
    out_file: str,
    run: RemediationRun,
) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / out_file
    tmp = path.with_suffix(path.suffix + f".{os.getpid()}.tmp")

    def emit(line: str) -> None:
        lines.append(line.rstrip("\n"))

    lines: list[str] = []
    emit("# HELP agentfix_metrics_ok 1 if the agent repair run completed.")
    emit("# TYPE agentfix_metrics_ok gauge")
    emit("agentfix_metrics_ok 1")

    emit("# HELP agentfix_last_run_timestamp_seconds UNIX timestamp of the last run.")
    emit("# TYPE agentfix_last_run_timestamp_seconds gauge")
    emit(f"agentfix_last_run_timestamp_seconds {_dt_to_epoch_seconds(run.finished_at)}")

    emit("# HELP agentfix_initial_service_running 1 if the service was running at the first probe.")
    emit("# TYPE agentfix_initial_service_running gauge")
    emit(f"agentfix_initial_service_running {int(run.initial_state is ServiceState.RUNNING)}")

    emit("# HELP agentfix_evidence_records Matching diagnostic log records found by the last run.")
    emit("# TYPE agentfix_evidence_records gauge")
    emit(f"agentfix_evidence_records {len(run.evidence.records) if run.evidence else 0}")

    emit("# HELP agentfix_last_result 1 for the outcome of the last run (label: outcome).")
    emit("# TYPE agentfix_last_result gauge")
    for outcome in RemediationOutcome:
        value = 1 if outcome is run.outcome else 0
        emit(f'agentfix_last_result{{outcome="{outcome.value}"}} {value}')

    tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
    tmp.replace(path)
