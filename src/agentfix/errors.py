from __future__ import annotations

import errno as errno_module
import socket
from typing import Iterator

import httpx

NETWORK_ERRNOS: frozenset[int] = frozenset(
    {
        errno_module.ETIMEDOUT,
        errno_module.ECONNREFUSED,
        errno_module.ECONNRESET,
        errno_module.ENETUNREACH,
        errno_module.EHOSTUNREACH,
        # WSAECONNREFUSED / WSAETIMEDOUT / WSAEHOSTUNREACH on Windows.
        10061,
        10060,
        10065,
    }
)


class AgentFixError(RuntimeError):
    pass


class ServiceControlError(AgentFixError):
    pass


class EventLogQueryError(AgentFixError):
    pass


class ConfigArtifactError(AgentFixError):
    pass


class IdentifierMissing(ConfigArtifactError):
    pass


class FetchError(AgentFixError):
    pass


class InstallError(AgentFixError):
    pass


def iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """
    Yield an exception and its causal/context chain (best-effort).

    Useful when a transport error is wrapped by one of our own exceptions.
    """
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None:
        cur_id = id(cur)
        if cur_id in seen:
            break
        seen.add(cur_id)
        yield cur
        cur = cur.__cause__ or cur.__context__


def is_network_error(exc: BaseException) -> bool:
    """
    Return True if the exception (or anything it wraps) is a connectivity failure
    rather than a server-side or local problem.
    """
    for item in iter_exception_chain(exc):
        if isinstance(item, (httpx.TransportError, socket.gaierror)):
            return True
        if isinstance(item, OSError) and item.errno in NETWORK_ERRNOS:
            return True
    return False


def describe_error(exc: BaseException) -> str:
    """
    One-line description for the run log, tagging connectivity failures.
    """
    kind = "network" if is_network_error(exc) else type(exc).__name__
    return f"{kind}: {exc}"
