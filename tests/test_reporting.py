from __future__ import annotations

import httpx
import pytest

from agentfix.host_identity import HostIdentity
from agentfix.models import FailureReason, RemediationOutcome
from agentfix.reporting import OutcomeReporter, ReportContext, build_params, mode_for

COLLECTOR = "https://collector.example.org/upload"


def _context(tmp_path, text: str = "run log line\n") -> ReportContext:
    log_path = tmp_path / "CORP_PC01_20261018-093000.log"
    log_path.write_text(text, encoding="utf-8")
    return ReportContext(
        identity=HostIdentity(hostname="PC01", membership="CORP"),
        log_path=log_path,
        timestamp="20261018-093000",
    )


def _capturing_transport(status: int = 200):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status)

    return seen, httpx.MockTransport(handler)


def test_restart_report_params_and_body(tmp_path) -> None:
    seen, transport = _capturing_transport()
    reporter = OutcomeReporter(COLLECTOR, transport=transport)

    result = reporter.report(RemediationOutcome.RESTART_SUCCEEDED, _context(tmp_path, "CagService is running\n"))

    assert result.sent is True
    assert result.status_code == 200
    request = seen[0]
    assert request.method == "POST"
    params = dict(request.url.params)
    assert params["device"] == "PC01"
    assert params["domain"] == "CORP"
    assert params["mode"] == "restart"
    assert params["prefix"] == "ServiceRestartFix"
    assert params["s3filename"] == "ServiceRestartFix/CORP_PC01_20261018-093000.log"
    assert params["ts"] == "20261018-093000"
    assert request.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert request.content == b"CagService is running\n"


@pytest.mark.parametrize(
    "outcome",
    [RemediationOutcome.ESCALATION_SUCCEEDED, RemediationOutcome.ESCALATION_FAILED],
)
def test_escalation_reports_use_remediation_mode(tmp_path, outcome) -> None:
    params = build_params(outcome, _context(tmp_path))
    assert params["mode"] == "remediation"
    assert params["prefix"] == "FullRemediation"
    assert params["s3filename"].startswith("FullRemediation/")
    assert params["outcome"] == outcome.value


@pytest.mark.parametrize(
    "outcome",
    [RemediationOutcome.NO_ACTION_NEEDED, RemediationOutcome.UNRESOLVED],
)
def test_non_state_change_outcomes_are_not_reportable(outcome) -> None:
    with pytest.raises(ValueError):
        mode_for(outcome)


def test_report_disabled_without_collector(tmp_path) -> None:
    result = OutcomeReporter(None).report(RemediationOutcome.RESTART_SUCCEEDED, _context(tmp_path))
    assert result.sent is False
    assert result.reason is FailureReason.REPORT_DISABLED


def test_report_rejected_by_collector(tmp_path) -> None:
    _, transport = _capturing_transport(status=500)
    result = OutcomeReporter(COLLECTOR, transport=transport).report(
        RemediationOutcome.ESCALATION_FAILED, _context(tmp_path)
    )
    assert result.sent is False
    assert result.status_code == 500
    assert result.reason is FailureReason.REPORT_FAILED


def test_report_transport_error_never_raises(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route to host", request=request)

    result = OutcomeReporter(COLLECTOR, transport=httpx.MockTransport(handler)).report(
        RemediationOutcome.ESCALATION_SUCCEEDED, _context(tmp_path)
    )

    assert result.sent is False
    assert result.reason is FailureReason.REPORT_FAILED
    assert "no route to host" in result.detail


def test_report_sends_placeholder_when_log_missing(tmp_path) -> None:
    seen, transport = _capturing_transport()
    context = _context(tmp_path)
    context.log_path.unlink()

    result = OutcomeReporter(COLLECTOR, transport=transport).report(
        RemediationOutcome.RESTART_SUCCEEDED, context
    )

    assert result.sent is True
    assert b"run log unavailable" in seen[0].content
