from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _get_log_level_from_env(env_var: str = "AGENTFIX_LOG_LEVEL") -> int:
    """
    Resolve the desired log level from an environment variable.

    Defaults to INFO when the variable is unset or invalid.
    """
    value = os.getenv(env_var, "INFO").upper()
    level = getattr(logging, value, logging.INFO)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: Optional[int] = None) -> None:
    """
    Configure basic console logging for agentfix.

    Can be called multiple times without causing duplicate handlers in most
    common configurations.
    """
    if level is None:
        level = _get_log_level_from_env()

    root_logger = logging.getLogger()

    # If handlers are already configured, just adjust the level.
    if root_logger.handlers:
        root_logger.setLevel(level)
        return

    logging.basicConfig(level=level, format=LOG_FORMAT)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def attach_run_log(log_path: Path) -> logging.FileHandler:
    """
    Mirror everything logged under ``agentfix`` into the per-run output log.

    Creating the log directory is allowed to raise: a run that cannot write
    its own record should not go on to touch the agent.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    pkg_logger = logging.getLogger("agentfix")
    pkg_logger.addHandler(handler)
    if pkg_logger.getEffectiveLevel() > logging.INFO:
        pkg_logger.setLevel(logging.INFO)
    return handler


def detach_run_log(handler: logging.FileHandler) -> None:
    logging.getLogger("agentfix").removeHandler(handler)
    handler.close()


__all__ = ["configure_logging", "attach_run_log", "detach_run_log", "LOG_FORMAT"]
