"""Minimal CalDAV client for calendar sync on generic providers.

Uses WebDAV collection synchronization (RFC 6578): the cursor is the
server's sync-token. Resources reported with a 404 status were removed.
Servers that omit calendar-data from the sync report get a follow-up
calendar-multiget for the changed hrefs.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any
from xml.sax.saxutils import escape

import httpx
from icalendar import Calendar

from mailsync.application.dtos.mailbox import CalendarEvent, CalendarSyncPage
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import ensure_utc

logger = get_logger(__name__)

DAV = "DAV:"
CALDAV = "urn:ietf:params:xml:ns:caldav"
_NS = {"d": DAV, "c": CALDAV}
MULTIGET_CHUNK = 100


class SyncTokenInvalidError(Exception):
    """The server no longer accepts the stored sync-token."""


def _sync_body(token: str | None) -> bytes:
    token_xml = f"<d:sync-token>{escape(token)}</d:sync-token>" if token else "<d:sync-token/>"
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<d:sync-collection xmlns:d="{DAV}" xmlns:c="{CALDAV}">'
        f"{token_xml}<d:sync-level>1</d:sync-level>"
        "<d:prop><d:getetag/><c:calendar-data/></d:prop>"
        "</d:sync-collection>"
    ).encode()


def _multiget_body(hrefs: list[str]) -> bytes:
    href_xml = "".join(f"<d:href>{escape(h)}</d:href>" for h in hrefs)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<c:calendar-multiget xmlns:d="{DAV}" xmlns:c="{CALDAV}">'
        f"<d:prop><d:getetag/><c:calendar-data/></d:prop>{href_xml}"
        "</c:calendar-multiget>"
    ).encode()


def _status_code(text: str | None) -> int | None:
    # "HTTP/1.1 404 Not Found"
    parts = (text or "").split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return None


def parse_multistatus(content: bytes) -> tuple[dict[str, str | None], list[str], str | None]:
    """Parse a multistatus body into (href -> calendar data, removed hrefs, sync token)."""
    root = ET.fromstring(content)
    changed: dict[str, str | None] = {}
    removed: list[str] = []
    for response in root.findall("d:response", _NS):
        href = (response.findtext("d:href", default="", namespaces=_NS) or "").strip()
        if not href:
            continue
        if _status_code(response.findtext("d:status", namespaces=_NS)) == 404:
            removed.append(href)
            continue
        data = None
        for propstat in response.findall("d:propstat", _NS):
            if _status_code(propstat.findtext("d:status", namespaces=_NS)) not in (None, 200):
                continue
            value = propstat.findtext("d:prop/c:calendar-data", namespaces=_NS)
            if value and value.strip():
                data = value
        changed[href] = data
    token = root.findtext("d:sync-token", namespaces=_NS)
    return changed, removed, token.strip() if token else None


def _when(component: Any, name: str) -> tuple[datetime | None, bool]:
    if component.get(name) is None:
        return None, False
    value = component.decoded(name)
    if isinstance(value, datetime):
        return ensure_utc(value), False
    if isinstance(value, date):
        return ensure_utc(datetime(value.year, value.month, value.day)), True
    return None, False


def _mailto(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text[7:] if text.lower().startswith("mailto:") else text


def parse_event(href: str, ical: str, calendar_id: str | None = None) -> CalendarEvent | None:
    """Parse the master VEVENT of an iCalendar resource; None when it has none."""
    calendar = Calendar.from_ical(ical)
    events = list(calendar.walk("VEVENT"))
    if not events:
        return None
    master = next((e for e in events if e.get("RECURRENCE-ID") is None), events[0])
    starts_at, all_day = _when(master, "DTSTART")
    ends_at, _ = _when(master, "DTEND")
    updated_at, _ = _when(master, "LAST-MODIFIED")
    attendees = master.get("ATTENDEE") or []
    if not isinstance(attendees, list):
        attendees = [attendees]
    return CalendarEvent(
        external_id=href,
        title=str(master.get("SUMMARY", "") or ""),
        starts_at=starts_at,
        ends_at=ends_at,
        calendar_id=calendar_id,
        description=str(master["DESCRIPTION"]) if master.get("DESCRIPTION") else None,
        location=str(master["LOCATION"]) if master.get("LOCATION") else None,
        all_day=all_day,
        status=str(master["STATUS"]).lower() if master.get("STATUS") else None,
        organizer=_mailto(master.get("ORGANIZER")),
        attendees=[a for a in (_mailto(x) for x in attendees) if a],
        updated_at=updated_at,
        provider_metadata={"uid": str(master.get("UID", "")), "recurring": len(events) > 1},
    )


class CalDavClient:
    """Sync-collection REPORTs against one calendar collection URL."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url if url.endswith("/") else f"{url}/"
        self._auth = httpx.BasicAuth(username, password)
        self._timeout = timeout
        self._http = http_client

    @asynccontextmanager
    async def _client_cm(self):
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def _report(self, client: httpx.AsyncClient, body: bytes) -> httpx.Response:
        return await client.request(
            "REPORT",
            self.url,
            content=body,
            auth=self._auth,
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
        )

    async def sync(self, token: str | None) -> CalendarSyncPage:
        """Changes since token (all resources when token is None).

        An invalid token falls back to an initial sync with full_resync set.
        """
        async with self._client_cm() as client:
            return await self._sync(client, token)

    async def _sync(self, client: httpx.AsyncClient, token: str | None) -> CalendarSyncPage:
        full_resync = False
        try:
            changed, removed, next_token = await self._sync_report(client, token)
        except SyncTokenInvalidError:
            logger.info("CalDAV sync token rejected by %s, resyncing", self.url)
            changed, removed, next_token = await self._sync_report(client, None)
            full_resync = True

        missing = [href for href, data in changed.items() if data is None]
        for start in range(0, len(missing), MULTIGET_CHUNK):
            chunk = missing[start : start + MULTIGET_CHUNK]
            response = await self._report(client, _multiget_body(chunk))
            response.raise_for_status()
            fetched, gone, _ = parse_multistatus(response.content)
            changed.update({h: d for h, d in fetched.items() if d is not None})
            removed.extend(gone)

        events = []
        for href, data in changed.items():
            if data is None:
                continue
            event = parse_event(href, data, calendar_id=self.url)
            if event is not None:
                events.append(event)
        return CalendarSyncPage(
            events=events,
            next_cursor=next_token,
            deleted_ids=removed,
            full_resync=full_resync,
        )

    async def _sync_report(
        self, client: httpx.AsyncClient, token: str | None
    ) -> tuple[dict[str, str | None], list[str], str | None]:
        response = await self._report(client, _sync_body(token))
        rejected = response.status_code in (403, 409)
        if token and rejected and b"valid-sync-token" in response.content:
            raise SyncTokenInvalidError(token)
        response.raise_for_status()
        return parse_multistatus(response.content)

    async def check(self) -> bool:
        """PROPFIND the collection; True when the credentials are accepted."""
        body = (
            f'<?xml version="1.0" encoding="utf-8"?><d:propfind xmlns:d="{DAV}">'
            "<d:prop><d:resourcetype/></d:prop></d:propfind>"
        ).encode()
        async with self._client_cm() as client:
            response = await client.request(
                "PROPFIND",
                self.url,
                content=body,
                auth=self._auth,
                headers={"Depth": "0", "Content-Type": "application/xml; charset=utf-8"},
            )
        return response.status_code in (200, 207)
