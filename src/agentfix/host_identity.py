from __future__ import annotations

import logging
import os
import re
import socket
import subprocess  # nosec: B404 - fixed dsregcmd invocation
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger("agentfix.host_identity")

WORKGROUP_SENTINEL = "WORKGROUP"
DSREGCMD_TIMEOUT_SECONDS = 20
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

PREFIX_RESTART = "ServiceRestartFix"
PREFIX_REMEDIATION = "FullRemediation"

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class HostIdentity:
    hostname: str
    membership: str


def safe_label(raw: str) -> str:
    """
    Make ``raw`` safe for use in a filename; empty input maps to the workgroup sentinel.
    """
    value = _UNSAFE_RE.sub("-", raw.strip()).strip("-.")
    return value or WORKGROUP_SENTINEL


def parse_dsregcmd(output: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip()
        if key and key not in values:
            values[key] = value.strip()
    return values


def membership_from_dsregcmd(values: dict[str, str]) -> str | None:
    """
    Azure AD tenant name wins over the AD domain name; None if neither is joined.
    """
    if values.get("AzureAdJoined", "").upper() == "YES" and values.get("TenantName"):
        return values["TenantName"]
    if values.get("DomainJoined", "").upper() == "YES" and values.get("DomainName"):
        return values["DomainName"]
    return None


def _run_dsregcmd() -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # nosec: B603
        ["dsregcmd.exe", "/status"],
        check=False,
        capture_output=True,
        text=True,
        errors="replace",
        timeout=DSREGCMD_TIMEOUT_SECONDS,
    )


def resolve_membership() -> str:
    """
    Return a filename-safe label for the host's network membership.

    Only used for naming output artifacts, so every failure falls back to a
    less specific answer rather than raising.
    """
    try:
        cp = _run_dsregcmd()
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("dsregcmd unavailable: %s", exc)
    else:
        if cp.returncode == 0:
            found = membership_from_dsregcmd(parse_dsregcmd(cp.stdout or ""))
            if found:
                return safe_label(found)

    dns_domain = os.environ.get("USERDNSDOMAIN", "").strip()
    if dns_domain:
        return safe_label(dns_domain)
    return WORKGROUP_SENTINEL


def get_hostname() -> str:
    raw = os.environ.get("COMPUTERNAME", "").strip() or socket.gethostname()
    return safe_label(raw.split(".", 1)[0])


def resolve_host_identity() -> HostIdentity:
    return HostIdentity(hostname=get_hostname(), membership=resolve_membership())


def format_timestamp(when: datetime) -> str:
    return when.strftime(TIMESTAMP_FORMAT)


def log_filename(identity: HostIdentity, when: datetime) -> str:
    """``<domain-or-tenant>_<hostname>_<timestamp>.log``"""
    return f"{identity.membership}_{identity.hostname}_{format_timestamp(when)}.log"


def remote_path(prefix: str, filename: str) -> str:
    return f"{prefix}/{filename}"
