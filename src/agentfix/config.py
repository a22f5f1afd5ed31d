from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from .models import EvidenceWindow

# === Monitored agent ===

DEFAULT_SERVICE_NAME = "CagService"
DEFAULT_INSTALL_DIR = Path(r"C:\Program Files (x86)\CentraStage")

# Configuration artifact inside the install dir that carries the install-time
# identifier, and the field holding it.
DEFAULT_CONFIG_ARTIFACT = "CagService.exe.config"
DEFAULT_IDENTIFIER_FIELD = "SiteUID"

# === Reinstall ===

DEFAULT_PLATFORM = "merlot"
DEFAULT_DOWNLOAD_URL_TEMPLATE = (
    "https://{platform}.centrastage.net/csm/profile/downloadAgent/{identifier}"
)
DEFAULT_INSTALLER_FILENAME = "AgentSetup.exe"
DEFAULT_INSTALLER_ARGS = "/S"
DEFAULT_FETCH_TIMEOUT_SECONDS = 300
DEFAULT_INSTALL_TIMEOUT_SECONDS = 1800

# === Timing ===

DEFAULT_STABILIZATION_DELAY_SECONDS = 30
DEFAULT_RESTART_POLL_INTERVAL_SECONDS = 5
DEFAULT_RESTART_MAX_WAIT_SECONDS = 90
DEFAULT_STOP_SETTLE_SECONDS = 10

# === Evidence ===

# Service Control Manager events: failed to start (7000), start timeouts
# (7009, 7011, 7022), terminated with error (7023, 7024), terminated
# unexpectedly (7031, 7034).
DEFAULT_EVIDENCE_EVENT_IDS: frozenset[int] = frozenset(
    {7000, 7009, 7011, 7022, 7023, 7024, 7031, 7034}
)
DEFAULT_EVIDENCE_LOOKBACK_HOURS = 24
DEFAULT_EVIDENCE_LOG_NAME = "System"

# === Reporting and output ===

DEFAULT_REPORT_TIMEOUT_SECONDS = 15
DEFAULT_LOG_DIR = Path(r"C:\ProgramData\agentfix\logs")
DEFAULT_STATE_FILENAME = "last-run.json"
DEFAULT_TEXTFILE_OUT_FILE = "agentfix.prom"


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        value = default
    return max(minimum, min(value, maximum))


def _env_float(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = os.environ.get(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        value = float(default)
    return max(minimum, min(value, maximum))


def parse_event_ids(raw: str) -> frozenset[int]:
    """
    Parse a comma-separated list of event ids, ignoring blanks and junk.
    """
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            continue
    return frozenset(ids)


def get_service_name() -> str:
    return _env_str("AGENTFIX_SERVICE_NAME", DEFAULT_SERVICE_NAME)


def get_install_dir() -> Path:
    return Path(_env_str("AGENTFIX_INSTALL_DIR", str(DEFAULT_INSTALL_DIR)))


def get_download_url_template() -> str:
    """
    Return the installer URL template.

    Must contain ``{platform}`` and ``{identifier}`` placeholders and use https;
    anything else falls back to the default.
    """
    raw = _env_str("AGENTFIX_DOWNLOAD_URL_TEMPLATE", DEFAULT_DOWNLOAD_URL_TEMPLATE)
    if not raw.startswith("https://") or "{identifier}" not in raw:
        return DEFAULT_DOWNLOAD_URL_TEMPLATE
    return raw


def get_evidence_event_ids() -> frozenset[int]:
    raw = os.environ.get("AGENTFIX_EVIDENCE_EVENT_IDS")
    if raw is None:
        return DEFAULT_EVIDENCE_EVENT_IDS
    ids = parse_event_ids(raw)
    return ids or DEFAULT_EVIDENCE_EVENT_IDS


def get_collector_url() -> str | None:
    """
    Return the collector endpoint, or None when reporting is disabled.

    Defaults to https:// if the scheme is omitted.
    """
    raw = os.environ.get("AGENTFIX_COLLECTOR_URL", "").strip()
    if not raw:
        return None
    if not (raw.startswith("http://") or raw.startswith("https://")):
        raw = f"https://{raw}"
    return raw


def get_log_dir() -> Path:
    return Path(_env_str("AGENTFIX_LOG_DIR", str(DEFAULT_LOG_DIR)))


def get_textfile_dir() -> Path | None:
    raw = os.environ.get("AGENTFIX_TEXTFILE_DIR", "").strip()
    return Path(raw) if raw else None


@dataclass(frozen=True)
class RemediationConfig:
    """
    Everything a run needs, resolved once at start-up and never mutated.
    """

    service_name: str = DEFAULT_SERVICE_NAME
    install_dir: Path = DEFAULT_INSTALL_DIR
    config_artifact: str = DEFAULT_CONFIG_ARTIFACT
    identifier_field: str = DEFAULT_IDENTIFIER_FIELD
    platform: str = DEFAULT_PLATFORM
    download_url_template: str = DEFAULT_DOWNLOAD_URL_TEMPLATE
    installer_filename: str = DEFAULT_INSTALLER_FILENAME
    installer_args: tuple[str, ...] = (DEFAULT_INSTALLER_ARGS,)
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    install_timeout_seconds: float = DEFAULT_INSTALL_TIMEOUT_SECONDS
    stabilization_delay_seconds: float = DEFAULT_STABILIZATION_DELAY_SECONDS
    restart_poll_interval_seconds: float = DEFAULT_RESTART_POLL_INTERVAL_SECONDS
    restart_max_wait_seconds: float = DEFAULT_RESTART_MAX_WAIT_SECONDS
    stop_settle_seconds: float = DEFAULT_STOP_SETTLE_SECONDS
    evidence_log_name: str = DEFAULT_EVIDENCE_LOG_NAME
    evidence_lookback_hours: int = DEFAULT_EVIDENCE_LOOKBACK_HOURS
    evidence_event_ids: frozenset[int] = DEFAULT_EVIDENCE_EVENT_IDS
    evidence_text_filter: str = ""
    collector_url: Optional[str] = None
    report_timeout_seconds: float = DEFAULT_REPORT_TIMEOUT_SECONDS
    log_dir: Path = DEFAULT_LOG_DIR
    state_file: Optional[Path] = None
    textfile_dir: Optional[Path] = None

    @property
    def evidence_window(self) -> EvidenceWindow:
        return EvidenceWindow(
            lookback=timedelta(hours=self.evidence_lookback_hours),
            event_ids=frozenset(self.evidence_event_ids),
            text_filter=self.evidence_text_filter or self.service_name,
        )

    @property
    def effective_state_file(self) -> Path:
        return self.state_file or (self.log_dir / DEFAULT_STATE_FILENAME)

    def build_download_url(self, identifier: str) -> str:
        return self.download_url_template.format(
            platform=self.platform, identifier=identifier
        )


def get_remediation_config() -> RemediationConfig:
    """
    Return the run configuration, honouring AGENTFIX_* environment overrides.
    """
    installer_args = os.environ.get("AGENTFIX_INSTALLER_ARGS", DEFAULT_INSTALLER_ARGS)
    state_raw = os.environ.get("AGENTFIX_STATE_FILE", "").strip()
    return RemediationConfig(
        service_name=get_service_name(),
        install_dir=get_install_dir(),
        config_artifact=_env_str("AGENTFIX_CONFIG_ARTIFACT", DEFAULT_CONFIG_ARTIFACT),
        identifier_field=_env_str("AGENTFIX_IDENTIFIER_FIELD", DEFAULT_IDENTIFIER_FIELD),
        platform=_env_str("AGENTFIX_PLATFORM", DEFAULT_PLATFORM),
        download_url_template=get_download_url_template(),
        installer_args=tuple(installer_args.split()),
        fetch_timeout_seconds=_env_float(
            "AGENTFIX_FETCH_TIMEOUT_SECONDS",
            DEFAULT_FETCH_TIMEOUT_SECONDS,
            minimum=10.0,
            maximum=3600.0,
        ),
        install_timeout_seconds=_env_float(
            "AGENTFIX_INSTALL_TIMEOUT_SECONDS",
            DEFAULT_INSTALL_TIMEOUT_SECONDS,
            minimum=60.0,
            maximum=7200.0,
        ),
        stabilization_delay_seconds=_env_float(
            "AGENTFIX_STABILIZATION_DELAY_SECONDS",
            DEFAULT_STABILIZATION_DELAY_SECONDS,
            minimum=0.0,
            maximum=600.0,
        ),
        restart_poll_interval_seconds=_env_float(
            "AGENTFIX_RESTART_POLL_INTERVAL_SECONDS",
            DEFAULT_RESTART_POLL_INTERVAL_SECONDS,
            minimum=1.0,
            maximum=60.0,
        ),
        restart_max_wait_seconds=_env_float(
            "AGENTFIX_RESTART_MAX_WAIT_SECONDS",
            DEFAULT_RESTART_MAX_WAIT_SECONDS,
            minimum=5.0,
            maximum=900.0,
        ),
        stop_settle_seconds=_env_float(
            "AGENTFIX_STOP_SETTLE_SECONDS",
            DEFAULT_STOP_SETTLE_SECONDS,
            minimum=0.0,
            maximum=300.0,
        ),
        evidence_lookback_hours=_env_int(
            "AGENTFIX_EVIDENCE_LOOKBACK_HOURS",
            DEFAULT_EVIDENCE_LOOKBACK_HOURS,
            minimum=1,
            maximum=720,
        ),
        evidence_event_ids=get_evidence_event_ids(),
        evidence_text_filter=os.environ.get("AGENTFIX_EVIDENCE_TEXT_FILTER", "").strip(),
        collector_url=get_collector_url(),
        report_timeout_seconds=_env_float(
            "AGENTFIX_REPORT_TIMEOUT_SECONDS",
            DEFAULT_REPORT_TIMEOUT_SECONDS,
            minimum=1.0,
            maximum=120.0,
        ),
        log_dir=get_log_dir(),
        state_file=Path(state_raw) if state_raw else None,
        textfile_dir=get_textfile_dir(),
    )


_PATH_FIELDS = {"install_dir", "log_dir", "state_file", "textfile_dir"}


def _coerce_toml_value(name: str, value: Any) -> Any:
    if name in _PATH_FIELDS:
        return Path(str(value))
    if name == "evidence_event_ids":
        if isinstance(value, str):
            return parse_event_ids(value)
        return frozenset(int(v) for v in value)
    if name == "installer_args":
        if isinstance(value, str):
            return tuple(value.split())
        return tuple(str(v) for v in value)
    return value


def load_config_file(path: Path, base: RemediationConfig) -> RemediationConfig:
    """
    Overlay a TOML file onto ``base``.

    Keys match RemediationConfig field names; unknown keys are rejected so a
    typo doesn't silently fall back to a default.
    """
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    known = {f.name for f in fields(RemediationConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    overrides = {name: _coerce_toml_value(name, value) for name, value in raw.items()}
    return replace(base, **overrides)


def resolve_config(config_file: Path | None = None) -> RemediationConfig:
    """
    Environment-derived config, overlaid with a TOML file when one is given
    (explicitly or via AGENTFIX_CONFIG_FILE).
    """
    cfg = get_remediation_config()
    if config_file is None:
        raw = os.environ.get("AGENTFIX_CONFIG_FILE", "").strip()
        config_file = Path(raw) if raw else None
    if config_file is not None:
        cfg = load_config_file(config_file, cfg)
    return cfg
