from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional


class ServiceState(str, Enum):
    UNKNOWN = "Unknown"
    STOPPED = "Stopped"
    RUNNING = "Running"
    MISSING = "Missing"


class RemediationOutcome(str, Enum):
    NO_ACTION_NEEDED = "NoActionNeeded"
    RESTART_SUCCEEDED = "RestartSucceeded"
    ESCALATION_SUCCEEDED = "EscalationSucceeded"
    ESCALATION_FAILED = "EscalationFailed"
    UNRESOLVED = "Unresolved"

    @property
    def exit_code(self) -> int:
        if self is RemediationOutcome.ESCALATION_FAILED:
            return 1
        if self is RemediationOutcome.UNRESOLVED:
            return 2
        return 0

    @property
    def is_state_change(self) -> bool:
        """
        True for outcomes that changed something on the host and get reported.
        """
        return self in (
            RemediationOutcome.RESTART_SUCCEEDED,
            RemediationOutcome.ESCALATION_SUCCEEDED,
            RemediationOutcome.ESCALATION_FAILED,
        )


class FailureReason(str, Enum):
    RESTART_TIMEOUT = "restart_timeout"
    START_FAILED = "start_failed"
    EVIDENCE_QUERY_FAILED = "evidence_query_failed"
    STOP_FAILED = "stop_failed"
    ARCHIVE_FAILED = "archive_failed"
    IDENTIFIER_MISSING = "identifier_missing"
    FETCH_FAILED = "fetch_failed"
    INSTALL_FAILED = "install_failed"
    CLEANUP_FAILED = "cleanup_failed"
    ESCALATION_ABORTED = "escalation_aborted"
    REPORT_FAILED = "report_failed"
    REPORT_DISABLED = "report_disabled"


@dataclass(frozen=True)
class EvidenceWindow:
    lookback: timedelta
    event_ids: frozenset[int]
    text_filter: str


@dataclass(frozen=True)
class EventRecord:
    event_id: int
    timestamp: datetime
    message: str


@dataclass(frozen=True)
class StepResult:
    """
    Outcome of a single best-effort step.

    ``ok`` is False whenever ``reason`` is set; ``detail`` carries the
    human-readable cause for the run log.
    """

    ok: bool
    reason: Optional[FailureReason] = None
    detail: str = ""

    @classmethod
    def success(cls, detail: str = "") -> "StepResult":
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, reason: FailureReason, detail: str = "") -> "StepResult":
        return cls(ok=False, reason=reason, detail=detail)


@dataclass(frozen=True)
class RestartResult:
    attempted: bool
    succeeded: bool
    elapsed_seconds: float = 0.0
    probes: int = 0
    reason: Optional[FailureReason] = None


@dataclass(frozen=True)
class EvidenceResult:
    found: bool
    records: tuple[EventRecord, ...] = ()
    reason: Optional[FailureReason] = None


@dataclass(frozen=True)
class FetchResult:
    url: str
    destination: Path
    bytes_written: int


@dataclass(frozen=True)
class EscalationResult:
    outcome: RemediationOutcome
    stop: Optional[StepResult] = None
    archive: Optional[StepResult] = None
    archived_path: Optional[Path] = None
    identifier: Optional[str] = None
    fetch: Optional[StepResult] = None
    install: Optional[StepResult] = None
    install_exit_code: Optional[int] = None
    cleanup: Optional[StepResult] = None
    # Set when the sequence was cut short by an unexpected exception.
    error: Optional[StepResult] = None

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        for step in (self.error, self.install, self.fetch):
            if step is not None and step.reason is not None:
                return step.reason
        if self.identifier is None:
            return FailureReason.IDENTIFIER_MISSING
        return None


@dataclass(frozen=True)
class ReportResult:
    sent: bool
    status_code: Optional[int] = None
    reason: Optional[FailureReason] = None
    detail: str = ""


@dataclass(frozen=True)
class RemediationRun:
    """
    Immutable record of one pass through the decision procedure.
    """

    outcome: RemediationOutcome
    initial_state: ServiceState
    started_at: datetime
    finished_at: datetime
    restart: Optional[RestartResult] = None
    evidence: Optional[EvidenceResult] = None
    escalation: Optional[EscalationResult] = None

    @property
    def restart_fixed_issue(self) -> bool:
        return self.outcome is RemediationOutcome.RESTART_SUCCEEDED

    @property
    def remediation_performed(self) -> bool:
        return self.escalation is not None
