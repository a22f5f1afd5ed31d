from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from .clock import Clock, poll_until
from .errors import EventLogQueryError, ServiceControlError, describe_error
from .models import (
    EscalationResult,
    EventRecord,
    EvidenceResult,
    EvidenceWindow,
    FailureReason,
    RemediationOutcome,
    RemediationRun,
    RestartResult,
    ServiceState,
    StepResult,
)

"""
agentfix.remediation - the decision procedure

Probe -> (restart if Stopped) -> (evidence if still not running) ->
(escalate if evidence) -> outcome. Control only ever moves forward; the
outcome is computed once, by decide_outcome, from what each stage returned.
"""

logger = logging.getLogger("agentfix.remediation")


class ServiceControl(Protocol):
    def get_state(self, name: str) -> ServiceState: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str, force: bool = False) -> None: ...


class DiagnosticLog(Protocol):
    def query(
        self,
        log_name: str,
        ids: Iterable[int],
        since: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Sequence[EventRecord]: ...


class Escalator(Protocol):
    def escalate(self) -> EscalationResult: ...


class HealthProber:
    def __init__(self, service: ServiceControl, service_name: str) -> None:
        self.service = service
        self.service_name = service_name

    def probe(self) -> ServiceState:
        """Fresh read of the service state; never raises."""
        try:
            return self.service.get_state(self.service_name)
        except Exception as exc:  # broad: a probe failure must not abort the run
            logger.warning("Probe of %s failed: %s", self.service_name, exc)
            return ServiceState.UNKNOWN


class RestartAttempter:
    def __init__(
        self,
        service: ServiceControl,
        prober: HealthProber,
        clock: Clock,
        *,
        poll_interval_seconds: float = 5,
        max_wait_seconds: float = 90,
    ) -> None:
        self.service = service
        self.prober = prober
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds
        self.max_wait_seconds = max_wait_seconds

    def attempt_restart(self, state: ServiceState) -> RestartResult:
        """
        Issue one start request and poll until Running or the wait bound.

        Only a Stopped service is restarted; any other state skips the stage.
        """
        if state is not ServiceState.STOPPED:
            return RestartResult(attempted=False, succeeded=False)

        name = self.prober.service_name
        logger.info("%s is stopped; issuing start request.", name)
        start_error = False
        try:
            self.service.start(name)
        except ServiceControlError as exc:
            # The start may still have been queued; keep polling.
            start_error = True
            logger.warning("Start request for %s reported an error: %s", name, exc)

        result = poll_until(
            self.prober.probe,
            lambda s: s is ServiceState.RUNNING,
            interval_seconds=self.poll_interval_seconds,
            max_wait_seconds=self.max_wait_seconds,
            clock=self.clock,
        )
        if result.satisfied:
            logger.info("%s is running after %.0fs.", name, result.elapsed_seconds)
            return RestartResult(
                attempted=True,
                succeeded=True,
                elapsed_seconds=result.elapsed_seconds,
                probes=result.attempts,
            )
        logger.warning(
            "%s not running after %.0fs (last state: %s).",
            name,
            result.elapsed_seconds,
            getattr(result.value, "value", result.value),
        )
        return RestartResult(
            attempted=True,
            succeeded=False,
            elapsed_seconds=result.elapsed_seconds,
            probes=result.attempts,
            reason=FailureReason.START_FAILED if start_error else FailureReason.RESTART_TIMEOUT,
        )


def matches_window(record: EventRecord, window: EvidenceWindow, since: datetime) -> bool:
    """
    Event id in the set, inside the window, and message containing the text
    filter (case-insensitive).
    """
    return (
        record.event_id in window.event_ids
        and record.timestamp >= since
        and window.text_filter.casefold() in record.message.casefold()
    )


class EvidenceGatherer:
    def __init__(self, log: DiagnosticLog, clock: Clock, *, log_name: str = "System") -> None:
        self.log = log
        self.clock = clock
        self.log_name = log_name

    def gather_evidence(self, window: EvidenceWindow) -> EvidenceResult:
        """
        Look for corroborating failure records. Fails closed: an unavailable
        or failing query counts as no evidence.
        """
        now = self.clock.now()
        since = now - window.lookback
        try:
            records = self.log.query(self.log_name, window.event_ids, since, now=now)
        except EventLogQueryError as exc:
            logger.warning("Diagnostic log query failed; treating as no evidence: %s", exc)
            return EvidenceResult(found=False, reason=FailureReason.EVIDENCE_QUERY_FAILED)
        except (OSError, ValueError) as exc:
            logger.warning("Diagnostic log unavailable; treating as no evidence: %s", exc)
            return EvidenceResult(found=False, reason=FailureReason.EVIDENCE_QUERY_FAILED)

        matching = tuple(r for r in records if matches_window(r, window, since))
        for r in matching:
            logger.info(
                "Evidence: event %s at %s: %s",
                r.event_id,
                r.timestamp.isoformat(),
                r.message[:200],
            )
        logger.info(
            "%d matching record(s) for %r in the last %s.",
            len(matching),
            window.text_filter,
            window.lookback,
        )
        return EvidenceResult(found=bool(matching), records=matching)


def decide_outcome(
    initial_state: ServiceState,
    restart: Optional[RestartResult],
    evidence: Optional[EvidenceResult],
    escalation: Optional[EscalationResult],
) -> RemediationOutcome:
    """
    Pure mapping from stage results to the single outcome of a run.
    """
    if initial_state is ServiceState.RUNNING:
        return RemediationOutcome.NO_ACTION_NEEDED
    if restart is not None and restart.succeeded:
        return RemediationOutcome.RESTART_SUCCEEDED
    if evidence is None or not evidence.found or escalation is None:
        return RemediationOutcome.UNRESOLVED
    return escalation.outcome


class Remediator:
    """
    Runs the whole procedure once. Single-threaded, every wait bounded.

    Assumes exclusive access to the service and install dir; nothing here
    prevents a second concurrent instance.
    """

    def __init__(
        self,
        *,
        prober: HealthProber,
        restarter: RestartAttempter,
        gatherer: EvidenceGatherer,
        escalator: Escalator,
        window: EvidenceWindow,
        clock: Clock,
        stabilization_delay_seconds: float = 0,
    ) -> None:
        self.prober = prober
        self.restarter = restarter
        self.gatherer = gatherer
        self.escalator = escalator
        self.window = window
        self.clock = clock
        self.stabilization_delay_seconds = stabilization_delay_seconds

    def _escalate(self) -> EscalationResult:
        try:
            return self.escalator.escalate()
        except Exception as exc:  # broad: the service may already be stopped and archived
            logger.exception("Escalation aborted: %s", describe_error(exc))
            return EscalationResult(
                outcome=RemediationOutcome.ESCALATION_FAILED,
                error=StepResult.failure(FailureReason.ESCALATION_ABORTED, describe_error(exc)),
            )

    def run(self) -> RemediationRun:
        started_at = self.clock.now()
        if self.stabilization_delay_seconds > 0:
            logger.info("Waiting %.0fs before probing.", self.stabilization_delay_seconds)
            self.clock.sleep(self.stabilization_delay_seconds)

        initial_state = self.prober.probe()
        logger.info("%s state: %s", self.prober.service_name, initial_state.value)

        restart: Optional[RestartResult] = None
        evidence: Optional[EvidenceResult] = None
        escalation: Optional[EscalationResult] = None

        if initial_state is not ServiceState.RUNNING:
            restart = self.restarter.attempt_restart(initial_state)
            if not restart.succeeded:
                if initial_state is ServiceState.MISSING:
                    logger.warning("%s is not registered.", self.prober.service_name)
                evidence = self.gatherer.gather_evidence(self.window)
                if evidence.found:
                    escalation = self._escalate()
                else:
                    logger.warning("No corroborating evidence; not escalating.")

        outcome = decide_outcome(initial_state, restart, evidence, escalation)
        logger.info("Outcome: %s", outcome.value)
        return RemediationRun(
            outcome=outcome,
            initial_state=initial_state,
            started_at=started_at,
            finished_at=self.clock.now(),
            restart=restart,
            evidence=evidence,
            escalation=escalation,
        )
