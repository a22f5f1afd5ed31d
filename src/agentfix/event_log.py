from __future__ import annotations

import logging
import re
import subprocess  # nosec: B404 - fixed wevtutil invocation
import xml.etree.ElementTree as ET  # nosec: B405 - local, trusted wevtutil output
from datetime import datetime, timezone
from typing import Iterable, Optional

from .errors import EventLogQueryError
from .models import EventRecord

logger = logging.getLogger("agentfix.event_log")

WEVTUTIL_TIMEOUT_SECONDS = 60
MAX_EVENTS = 500

_NS = {"e": "http://schemas.microsoft.com/win/2004/08/events/event"}
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def build_xpath(event_ids: Iterable[int], *, lookback_ms: int) -> str:
    ids = sorted(set(int(i) for i in event_ids))
    if not ids:
        raise ValueError("at least one event id is required")
    id_clause = " or ".join(f"EventID={i}" for i in ids)
    return (
        f"*[System[({id_clause}) and "
        f"TimeCreated[timediff(@SystemTime) <= {max(0, int(lookback_ms))}]]]"
    )


def _parse_system_time(raw: str | None) -> Optional[datetime]:
    if not raw:
        return None
    # Event log timestamps carry 7 fractional digits.
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1), raw.strip())
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _event_message(event: ET.Element) -> str:
    rendered = event.find("e:RenderingInfo/e:Message", _NS)
    if rendered is not None and rendered.text:
        return rendered.text.strip()
    # No rendering available: fall back to the raw insertion strings, which
    # for Service Control Manager events start with the service name.
    parts = [d.text.strip() for d in event.findall("e:EventData/e:Data", _NS) if d.text]
    return " ".join(parts)


def parse_events_xml(raw: str) -> list[EventRecord]:
    """
    Parse ``wevtutil qe /f:RenderedXml`` output (a bare sequence of <Event>
    elements) into EventRecords. Events without an id or timestamp are skipped.
    """
    body = raw.strip()
    if not body:
        return []
    try:
        root = ET.fromstring(f"<Events>{body}</Events>")
    except ET.ParseError as exc:
        raise EventLogQueryError(f"Unparseable event log output: {exc}") from exc

    records: list[EventRecord] = []
    for event in root.findall("e:Event", _NS):
        id_el = event.find("e:System/e:EventID", _NS)
        time_el = event.find("e:System/e:TimeCreated", _NS)
        if id_el is None or not (id_el.text or "").strip():
            continue
        try:
            event_id = int((id_el.text or "").strip())
        except ValueError:
            continue
        ts = _parse_system_time(time_el.get("SystemTime") if time_el is not None else None)
        if ts is None:
            continue
        records.append(EventRecord(event_id=event_id, timestamp=ts, message=_event_message(event)))
    return records


def _run_wevtutil(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # nosec: B603
        cmd,
        check=False,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=WEVTUTIL_TIMEOUT_SECONDS,
    )


class WindowsEventLog:
    """Diagnostic Log Query collaborator backed by ``wevtutil``."""

    def query(
        self,
        log_name: str,
        ids: Iterable[int],
        since: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> list[EventRecord]:
        now = now or datetime.now(timezone.utc)
        lookback_ms = int((now - since).total_seconds() * 1000)
        cmd = [
            "wevtutil.exe",
            "qe",
            log_name,
            f"/q:{build_xpath(ids, lookback_ms=lookback_ms)}",
            "/f:RenderedXml",
            "/rd:true",
            f"/c:{MAX_EVENTS}",
        ]
        try:
            cp = _run_wevtutil(cmd)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise EventLogQueryError(f"wevtutil could not run: {exc}") from exc
        if cp.returncode != 0:
            raise EventLogQueryError(
                f"wevtutil failed (rc={cp.returncode}): {(cp.stderr or '').strip()[:400]}"
            )
        records = [r for r in parse_events_xml(cp.stdout or "") if r.timestamp >= since]
        logger.debug("wevtutil returned %d record(s) from %s", len(records), log_name)
        return records
