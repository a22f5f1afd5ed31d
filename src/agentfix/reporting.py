from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .errors import describe_error
from .host_identity import PREFIX_REMEDIATION, PREFIX_RESTART, HostIdentity, remote_path
from .models import FailureReason, RemediationOutcome, ReportResult

logger = logging.getLogger("agentfix.reporting")

MODE_RESTART = "restart"
MODE_REMEDIATION = "remediation"


@dataclass(frozen=True)
class ReportContext:
    identity: HostIdentity
    log_path: Path
    timestamp: str


def mode_for(outcome: RemediationOutcome) -> tuple[str, str]:
    """
    Return (mode, prefix) for a reportable outcome.
    """
    if outcome is RemediationOutcome.RESTART_SUCCEEDED:
        return MODE_RESTART, PREFIX_RESTART
    if outcome in (
        RemediationOutcome.ESCALATION_SUCCEEDED,
        RemediationOutcome.ESCALATION_FAILED,
    ):
        return MODE_REMEDIATION, PREFIX_REMEDIATION
    raise ValueError(f"{outcome.value} is not a reportable outcome")


def build_params(outcome: RemediationOutcome, context: ReportContext) -> dict[str, str]:
    mode, prefix = mode_for(outcome)
    return {
        "device": context.identity.hostname,
        "mode": mode,
        "prefix": prefix,
        "domain": context.identity.membership,
        "s3filename": remote_path(prefix, context.log_path.name),
        "ts": context.timestamp,
        "outcome": outcome.value,
    }


class OutcomeReporter:
    """
    Fire-and-forget upload of the run log to the collector.

    ``report`` never raises; a failure only shows up in the returned
    ReportResult and the log.
    """

    def __init__(
        self,
        collector_url: Optional[str],
        *,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.collector_url = collector_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def report(self, outcome: RemediationOutcome, context: ReportContext) -> ReportResult:
        if not self.collector_url:
            logger.info("No collector configured; skipping report.")
            return ReportResult(sent=False, reason=FailureReason.REPORT_DISABLED)

        try:
            params = build_params(outcome, context)
            try:
                body = context.log_path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                body = f"(run log unavailable: {exc})\noutcome={outcome.value}\n"
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout_seconds), transport=self._transport
            ) as client:
                response = client.post(
                    self.collector_url,
                    params=params,
                    content=body.encode("utf-8"),
                    headers={"Content-Type": "text/plain; charset=utf-8"},
                )
        except Exception as exc:  # broad: reporting must never alter the run
            logger.warning("Report upload failed: %s", describe_error(exc))
            return ReportResult(
                sent=False, reason=FailureReason.REPORT_FAILED, detail=str(exc)
            )

        if response.is_success:
            logger.info("Report uploaded as %s (HTTP %s)", params["s3filename"], response.status_code)
            return ReportResult(sent=True, status_code=response.status_code)

        logger.warning("Collector rejected report: HTTP %s", response.status_code)
        return ReportResult(
            sent=False,
            status_code=response.status_code,
            reason=FailureReason.REPORT_FAILED,
            detail=f"HTTP {response.status_code}",
        )
