from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Callable, Optional, Protocol

from .agent_config import recover_identifier
from .clock import Clock
from .config import RemediationConfig
from .errors import FetchError, IdentifierMissing, InstallError, ServiceControlError, describe_error
from .models import (
    EscalationResult,
    FailureReason,
    FetchResult,
    RemediationOutcome,
    StepResult,
)

logger = logging.getLogger("agentfix.escalation")

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class StoppableService(Protocol):
    def stop(self, name: str, force: bool = False) -> None: ...


FetchFn = Callable[[str, Path, float], FetchResult]
RunFn = Callable[..., int]
IdentifierFn = Callable[[Path, str, str], str]


def archive_installation(install_dir: Path, suffix: str) -> tuple[StepResult, Optional[Path]]:
    """
    Rename ``install_dir`` to ``<install_dir>_<suffix>`` and return the new path.

    A missing install dir is not an error. The archive is never deleted here.
    """
    if not install_dir.exists():
        logger.info("Install directory %s not present; nothing to archive.", install_dir)
        return StepResult.success("nothing to archive"), None

    target = install_dir.with_name(f"{install_dir.name}_{suffix}")
    if target.exists():
        detail = f"archive target {target} already exists"
        logger.error("Archive failed: %s", detail)
        return StepResult.failure(FailureReason.ARCHIVE_FAILED, detail), None
    try:
        install_dir.rename(target)
    except OSError as exc:
        logger.error("Archive of %s failed: %s", install_dir, exc)
        return StepResult.failure(FailureReason.ARCHIVE_FAILED, str(exc)), None

    logger.info("Archived %s to %s", install_dir, target)
    return StepResult.success(str(target)), target


class EscalationExecutor:
    """
    Full reinstall of the agent: stop, archive, recover identifier, fetch,
    install, clean up.

    Only the identifier, fetch and install steps can end the escalation as
    EscalationFailed. Stop and archive failures are logged and recorded but
    the sequence carries on. A kill between steps can leave the service
    stopped and the install dir archived with nothing reinstalled.
    """

    def __init__(
        self,
        config: RemediationConfig,
        *,
        service: StoppableService,
        clock: Clock,
        fetch: FetchFn,
        run_installer: RunFn,
        read_identifier: IdentifierFn = recover_identifier,
        download_dir: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.service = service
        self.clock = clock
        self._fetch = fetch
        self._run_installer = run_installer
        self._read_identifier = read_identifier
        self.download_dir = download_dir or Path(tempfile.gettempdir()) / "agentfix"

    def _stop_service(self) -> StepResult:
        name = self.config.service_name
        try:
            self.service.stop(name, force=True)
        except ServiceControlError as exc:
            # Proceeding with the service possibly still running is accepted.
            logger.warning("Could not stop %s, continuing anyway: %s", name, exc)
            return StepResult.failure(FailureReason.STOP_FAILED, str(exc))
        logger.info("Stopped %s", name)
        return StepResult.success()

    def _cleanup(self, installer_path: Path) -> StepResult:
        try:
            installer_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove installer %s: %s", installer_path, exc)
            return StepResult.failure(FailureReason.CLEANUP_FAILED, str(exc))
        logger.info("Removed installer %s", installer_path)
        return StepResult.success()

    def escalate(self) -> EscalationResult:
        cfg = self.config
        logger.warning("Escalating: reinstalling %s", cfg.service_name)

        stop = self._stop_service()
        self.clock.sleep(cfg.stop_settle_seconds)

        suffix = self.clock.now().strftime(ARCHIVE_TIMESTAMP_FORMAT)
        archive, archived_path = archive_installation(cfg.install_dir, suffix)

        source_dir = archived_path or cfg.install_dir
        try:
            identifier = self._read_identifier(
                source_dir, cfg.config_artifact, cfg.identifier_field
            )
        except IdentifierMissing as exc:
            logger.error("Cannot reinstall, identifier unavailable: %s", exc)
            return EscalationResult(
                outcome=RemediationOutcome.ESCALATION_FAILED,
                stop=stop,
                archive=archive,
                archived_path=archived_path,
            )

        url = cfg.build_download_url(identifier)
        installer_path = self.download_dir / cfg.installer_filename
        try:
            fetched = self._fetch(url, installer_path, cfg.fetch_timeout_seconds)
        except FetchError as exc:
            logger.error("Installer download from %s failed: %s", url, describe_error(exc))
            return EscalationResult(
                outcome=RemediationOutcome.ESCALATION_FAILED,
                stop=stop,
                archive=archive,
                archived_path=archived_path,
                identifier=identifier,
                fetch=StepResult.failure(FailureReason.FETCH_FAILED, str(exc)),
                cleanup=self._cleanup(installer_path),
            )
        fetch_step = StepResult.success(f"{fetched.bytes_written} bytes")

        exit_code: Optional[int] = None
        try:
            exit_code = self._run_installer(
                fetched.destination,
                cfg.installer_args,
                timeout_seconds=cfg.install_timeout_seconds,
            )
        except InstallError as exc:
            logger.error("Installer failed to run: %s", exc)
            install = StepResult.failure(FailureReason.INSTALL_FAILED, str(exc))
        else:
            if exit_code == 0:
                logger.info("Installer finished successfully.")
                install = StepResult.success("exit code 0")
            else:
                logger.error("Installer exited with code %s", exit_code)
                install = StepResult.failure(
                    FailureReason.INSTALL_FAILED, f"exit code {exit_code}"
                )

        cleanup = self._cleanup(fetched.destination)
        return EscalationResult(
            outcome=(
                RemediationOutcome.ESCALATION_SUCCEEDED
                if install.ok
                else RemediationOutcome.ESCALATION_FAILED
            ),
            stop=stop,
            archive=archive,
            archived_path=archived_path,
            identifier=identifier,
            fetch=fetch_step,
            install=install,
            install_exit_code=exit_code,
            cleanup=cleanup,
        )
