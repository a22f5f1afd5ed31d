from __future__ import annotations

import logging

from agentfix.logging_config import attach_run_log, configure_logging, detach_run_log


def test_configure_logging_sets_debug_level(monkeypatch) -> None:
    monkeypatch.setenv("AGENTFIX_LOG_LEVEL", "DEBUG")
    configure_logging()
    root = logging.getLogger()
    assert root.level == logging.DEBUG


def test_configure_logging_defaults_to_info(monkeypatch) -> None:
    monkeypatch.delenv("AGENTFIX_LOG_LEVEL", raising=False)
    configure_logging()
    root = logging.getLogger()
    # Either INFO or lower (NOTSET) is acceptable, but INFO is the default.
    assert root.level in (logging.INFO, logging.NOTSET)


def test_configure_logging_ignores_invalid_level(monkeypatch) -> None:
    monkeypatch.setenv("AGENTFIX_LOG_LEVEL", "LOUD")
    configure_logging()
    assert logging.getLogger().level == logging.INFO


def test_run_log_captures_package_records(tmp_path) -> None:
    log_path = tmp_path / "logs" / "WORKGROUP_PC01_20261018-093000.log"
    handler = attach_run_log(log_path)
    try:
        logging.getLogger("agentfix.remediation").info("CagService state: %s", "Stopped")
        logging.getLogger("unrelated").warning("not ours")
    finally:
        detach_run_log(handler)

    text = log_path.read_text(encoding="utf-8")
    assert "[INFO] agentfix.remediation: CagService state: Stopped" in text
    assert "not ours" not in text
    assert handler not in logging.getLogger("agentfix").handlers
