from __future__ import annotations

import logging
import ssl
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .clock import Clock, SystemClock
from .errors import FetchError
from .models import FetchResult

logger = logging.getLogger("agentfix.downloader")

MIN_TLS_VERSION = ssl.TLSVersion.TLSv1_2
USER_AGENT = "agentfix/0.1"


def build_tls_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.minimum_version = MIN_TLS_VERSION
    return ctx


def fetch(
    url: str,
    destination: Path,
    timeout_seconds: float,
    *,
    transport: Optional[httpx.BaseTransport] = None,
    clock: Optional[Clock] = None,
) -> FetchResult:
    """
    Download ``url`` to ``destination`` over https with TLS 1.2 or newer.

    Raises FetchError on a non-https URL, transport error, timeout, non-2xx
    status, an empty body, or the whole download taking longer than
    ``timeout_seconds``. A partial file is removed before raising.
    """
    if urlsplit(url).scheme.lower() != "https":
        raise FetchError(f"Refusing to fetch installer over a non-https URL: {url}")

    clock = clock or SystemClock()
    # httpx applies the timeout per socket operation, not to the whole body.
    deadline = clock.monotonic() + timeout_seconds
    timeout = httpx.Timeout(timeout_seconds)
    headers = {"User-Agent": USER_AGENT}

    bytes_written = 0
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with httpx.Client(
            timeout=timeout,
            headers=headers,
            follow_redirects=True,
            verify=build_tls_context(),
            transport=transport,
        ) as client:
            with client.stream("GET", url) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    raise FetchError(f"Installer download failed with status {response.status_code}.")
                with destination.open("wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                        bytes_written += len(chunk)
                        if clock.monotonic() > deadline:
                            raise FetchError("Installer download timed out.")
    except httpx.TimeoutException as exc:
        _discard(destination)
        raise FetchError("Installer download timed out.") from exc
    except httpx.HTTPError as exc:
        _discard(destination)
        raise FetchError(f"Installer download failed: {exc}") from exc
    except OSError as exc:
        _discard(destination)
        raise FetchError(f"Could not write installer to {destination}: {exc}") from exc
    except FetchError:
        _discard(destination)
        raise

    if bytes_written == 0:
        _discard(destination)
        raise FetchError("Installer download returned zero bytes.")

    logger.info("Downloaded %d bytes from %s to %s", bytes_written, url, destination)
    return FetchResult(url=url, destination=destination, bytes_written=bytes_written)


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove partial download %s: %s", path, exc)
