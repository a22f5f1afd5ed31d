from __future__ import annotations

import logging
import subprocess  # nosec: B404 - runs the downloaded vendor installer
from pathlib import Path
from typing import Sequence

from .errors import InstallError

logger = logging.getLogger("agentfix.installer")

OUTPUT_LOG_TRUNCATE_LENGTH = 500


def run(path: Path, args: Sequence[str], *, timeout_seconds: float) -> int:
    """
    Run the installer and wait for it to finish; return its exit code.

    Raises InstallError if the process can't be launched or exceeds the timeout.
    """
    cmd = [str(path), *args]
    logger.info("Running installer: %s", " ".join(cmd))
    try:
        cp = subprocess.run(  # nosec: B603
            cmd,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        raise InstallError(f"Installer did not finish within {timeout_seconds:.0f}s") from exc
    except OSError as exc:
        raise InstallError(f"Installer could not be launched: {exc}") from exc

    if cp.stdout:
        logger.debug("Installer stdout: %s", cp.stdout[:OUTPUT_LOG_TRUNCATE_LENGTH])
    if cp.stderr:
        logger.debug("Installer stderr: %s", cp.stderr[:OUTPUT_LOG_TRUNCATE_LENGTH])
    return int(cp.returncode)
