from __future__ import annotations

import argparse
import logging
import sys
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Optional

from . import downloader, installer
from .clock import Clock, SystemClock
from .config import RemediationConfig, resolve_config
from .escalation import EscalationExecutor
from .event_log import WindowsEventLog
from .host_identity import format_timestamp, log_filename, resolve_host_identity
from .logging_config import attach_run_log, configure_logging, detach_run_log
from .models import RemediationRun, ReportResult
from .remediation import (
    EvidenceGatherer,
    HealthProber,
    Remediator,
    RestartAttempter,
    ServiceControl,
)
from .reporting import OutcomeReporter, ReportContext
from .run_state import build_state_record, save_state, write_textfile_metrics
from .service_control import WindowsServiceControl

logger = logging.getLogger("agentfix.cli")

# Exit code when the run can't even create its own log.
EXIT_RUN_LOG_UNAVAILABLE = 3


def _load_config(args: argparse.Namespace) -> RemediationConfig:
    config_file = Path(args.config) if getattr(args, "config", None) else None
    try:
        cfg = resolve_config(config_file)
    except (OSError, ValueError) as exc:
        print(f"ERROR: Failed to load configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    overrides: dict[str, object] = {}
    if getattr(args, "service_name", None):
        overrides["service_name"] = args.service_name
    if getattr(args, "collector_url", None):
        overrides["collector_url"] = args.collector_url
    if getattr(args, "log_dir", None):
        overrides["log_dir"] = Path(args.log_dir)
    if getattr(args, "lookback_hours", None):
        overrides["evidence_lookback_hours"] = int(args.lookback_hours)
    if getattr(args, "no_stabilization_delay", False):
        overrides["stabilization_delay_seconds"] = 0
    return replace(cfg, **overrides) if overrides else cfg


def build_remediator(
    cfg: RemediationConfig,
    *,
    clock: Clock,
    service: Optional[ServiceControl] = None,
    event_log: Optional[WindowsEventLog] = None,
) -> Remediator:
    """
    Wire the pipeline stages to their collaborators.
    """
    service = service or WindowsServiceControl()
    event_log = event_log or WindowsEventLog()
    prober = HealthProber(service, cfg.service_name)
    return Remediator(
        prober=prober,
        restarter=RestartAttempter(
            service,
            prober,
            clock,
            poll_interval_seconds=cfg.restart_poll_interval_seconds,
            max_wait_seconds=cfg.restart_max_wait_seconds,
        ),
        gatherer=EvidenceGatherer(event_log, clock, log_name=cfg.evidence_log_name),
        escalator=EscalationExecutor(
            cfg,
            service=service,
            clock=clock,
            fetch=downloader.fetch,
            run_installer=installer.run,
        ),
        window=cfg.evidence_window,
        clock=clock,
        stabilization_delay_seconds=cfg.stabilization_delay_seconds,
    )


def _record_run(
    cfg: RemediationConfig,
    run: RemediationRun,
    *,
    log_path: Path,
    report: Optional[ReportResult],
) -> None:
    # Forensic artifacts only; never read back by a later run.
    try:
        save_state(
            cfg.effective_state_file,
            build_state_record(run, log_file=log_path, report=report),
        )
    except Exception as exc:
        logger.warning("Could not write state file %s: %s", cfg.effective_state_file, exc)

    if cfg.textfile_dir is not None:
        try:
            write_textfile_metrics(out_dir=cfg.textfile_dir, out_file="agentfix.prom", run=run)
        except Exception as exc:
            logger.warning("Could not write textfile metrics: %s", exc)


# === Command implementations ===


def cmd_run(args: argparse.Namespace, *, clock: Optional[Clock] = None) -> None:
    """
    Run the full check-and-repair procedure once.

    Exit code: 0 healthy or repaired, 1 reinstall failed, 2 unresolved,
    3 the run log could not be created.
    """
    cfg = _load_config(args)
    clock = clock or SystemClock()

    identity = resolve_host_identity()
    started = clock.now()
    log_path = cfg.log_dir / log_filename(identity, started)
    try:
        handler = attach_run_log(log_path)
    except OSError as exc:
        print(f"ERROR: Cannot create run log {log_path}: {exc}", file=sys.stderr)
        sys.exit(EXIT_RUN_LOG_UNAVAILABLE)

    try:
        logger.info(
            "agentfix run on %s (%s) for service %s",
            identity.hostname,
            identity.membership,
            cfg.service_name,
        )
        run = build_remediator(cfg, clock=clock).run()

        report: Optional[ReportResult] = None
        if run.outcome.is_state_change:
            reporter = OutcomeReporter(
                cfg.collector_url, timeout_seconds=cfg.report_timeout_seconds
            )
            report = reporter.report(
                run.outcome,
                ReportContext(
                    identity=identity,
                    log_path=log_path,
                    timestamp=format_timestamp(started),
                ),
            )
        _record_run(cfg, run, log_path=log_path, report=report)
    finally:
        detach_run_log(handler)

    print(run.outcome.value)
    if run.outcome.exit_code != 0:
        sys.exit(run.outcome.exit_code)


def cmd_probe(args: argparse.Namespace) -> None:
    cfg = _load_config(args)
    prober = HealthProber(WindowsServiceControl(), cfg.service_name)
    print(f"{cfg.service_name}: {prober.probe().value}")


def cmd_evidence(args: argparse.Namespace) -> None:
    """
    Show the records that would gate a reinstall right now.
    """
    cfg = _load_config(args)
    gatherer = EvidenceGatherer(WindowsEventLog(), SystemClock(), log_name=cfg.evidence_log_name)
    window = cfg.evidence_window
    result = gatherer.gather_evidence(window)

    print(f"Log:        {cfg.evidence_log_name}")
    print(f"Event IDs:  {', '.join(str(i) for i in sorted(window.event_ids))}")
    print(f"Lookback:   {window.lookback}")
    print(f"Text match: {window.text_filter!r} (case-insensitive)")
    if result.reason is not None:
        print(f"Query failed ({result.reason.value}); treated as no evidence.")
    for record in result.records:
        print(f"  {record.timestamp.isoformat()}  {record.event_id}  {record.message[:160]}")
    print(f"Evidence found: {'yes' if result.found else 'no'}")
    if not result.found:
        sys.exit(1)


def cmd_check_env(args: argparse.Namespace) -> None:
    cfg = _load_config(args)

    print("agentfix – Environment Check")
    print("----------------------------")
    print(f"Service:           {cfg.service_name}")
    print(f"Install dir:       {cfg.install_dir}")
    print(f"Config artifact:   {cfg.install_dir / cfg.config_artifact} [{cfg.identifier_field}]")
    print(f"Download URL:      {cfg.build_download_url('<identifier>')}")
    print(f"Restart wait:      {cfg.restart_poll_interval_seconds:.0f}s x up to {cfg.restart_max_wait_seconds:.0f}s")
    print(f"Evidence lookback: {cfg.evidence_lookback_hours}h")
    print(f"Evidence filter:   {cfg.evidence_window.text_filter!r} (case-insensitive)")
    if not cfg.evidence_text_filter:
        # SCM 7xxx messages name the service by its display name.
        print(
            "  Note: filter defaults to the service key name. If the agent's display "
            "name differs, set AGENTFIX_EVIDENCE_TEXT_FILTER to it."
        )
    print(f"Collector:         {cfg.collector_url or '(disabled)'}")
    print(f"Log dir:           {cfg.log_dir}")
    print("")

    try:
        cfg.log_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=cfg.log_dir, prefix=".agentfix_write_test_", delete=True
        ) as f:
            f.write(b"ok")
            f.flush()
    except OSError as exc:
        print(f"ERROR: Log directory is not writable: {exc}")
        sys.exit(1)
    else:
        print("Log directory exists and is writable.")


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--config",
        help="Optional TOML file overriding environment-derived settings.",
    )
    p.add_argument(
        "--service-name",
        help="Name of the monitored service (default: AGENTFIX_SERVICE_NAME or CagService).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentfix",
        description="Check the monitoring agent service and repair it when it is down.",
    )
    subparsers = parser.add_subparsers(dest="command")

    # run
    p_run = subparsers.add_parser(
        "run",
        help="Probe, restart, gather evidence and reinstall if warranted.",
    )
    _add_config_args(p_run)
    p_run.add_argument(
        "--collector-url",
        help="Collector endpoint for the run report (default: AGENTFIX_COLLECTOR_URL).",
    )
    p_run.add_argument(
        "--log-dir",
        help="Directory for the per-run output log.",
    )
    p_run.add_argument(
        "--no-stabilization-delay",
        action="store_true",
        default=False,
        help="Probe immediately instead of waiting for the stabilization delay.",
    )
    p_run.set_defaults(func=cmd_run)

    # probe
    p_probe = subparsers.add_parser("probe", help="Print the current service state.")
    _add_config_args(p_probe)
    p_probe.set_defaults(func=cmd_probe)

    # evidence
    p_evidence = subparsers.add_parser(
        "evidence",
        help="Show diagnostic log records that would justify a reinstall.",
    )
    _add_config_args(p_evidence)
    p_evidence.add_argument(
        "--lookback-hours",
        type=int,
        help="Override the evidence lookback window.",
    )
    p_evidence.set_defaults(func=cmd_evidence)

    # check-env
    p_env = subparsers.add_parser(
        "check-env",
        help="Show effective configuration and verify the log directory.",
    )
    _add_config_args(p_env)
    p_env.set_defaults(func=cmd_check_env)

    return parser


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)
    args.func(args)
