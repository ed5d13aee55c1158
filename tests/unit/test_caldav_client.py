"""CalDAV sync-collection client against an httpx MockTransport."""

import xml.etree.ElementTree as ET

import httpx
import pytest

from mailsync.infrastructure.external.mailbox.providers.caldav_client import (
    CalDavClient,
    parse_event,
    parse_multistatus,
)

CALENDAR_URL = "https://dav.example.com/calendars/owner/work/"

STANDUP = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//EN
BEGIN:VEVENT
UID:standup-1
SUMMARY:Standup
DTSTART:20260302T090000Z
DTEND:20260302T091500Z
LOCATION:Room 1
STATUS:CONFIRMED
ORGANIZER:mailto:boss@example.com
ATTENDEE:mailto:owner@example.com
ATTENDEE:mailto:bob@example.com
LAST-MODIFIED:20260301T120000Z
END:VEVENT
END:VCALENDAR
"""

HOLIDAY = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//EN
BEGIN:VEVENT
UID:holiday-1
SUMMARY:Holiday
DTSTART;VALUE=DATE:20260406
DTEND;VALUE=DATE:20260407
END:VEVENT
END:VCALENDAR
"""


def _multistatus(responses: str, token: str | None = "tok-2") -> bytes:
    token_xml = f"<d:sync-token>{token}</d:sync-token>" if token else ""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
        f"{responses}{token_xml}</d:multistatus>"
    ).encode()


def _changed(href: str, data: str | None) -> str:
    prop = f"<c:calendar-data>{data}</c:calendar-data>" if data else ""
    return (
        f"<d:response><d:href>{href}</d:href><d:propstat>"
        f'<d:prop><d:getetag>"1"</d:getetag>{prop}</d:prop>'
        "<d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response>"
    )


def _removed(href: str) -> str:
    return (
        f"<d:response><d:href>{href}</d:href>"
        "<d:status>HTTP/1.1 404 Not Found</d:status></d:response>"
    )


def test_parse_multistatus_splits_changed_and_removed():
    body = _multistatus(_changed("/a.ics", STANDUP) + _changed("/b.ics", None) + _removed("/c.ics"))

    changed, removed, token = parse_multistatus(body)

    assert set(changed) == {"/a.ics", "/b.ics"}
    assert changed["/b.ics"] is None
    assert "Standup" in changed["/a.ics"]
    assert removed == ["/c.ics"]
    assert token == "tok-2"


def test_parse_event_reads_times_and_people():
    event = parse_event("/a.ics", STANDUP, calendar_id=CALENDAR_URL)

    assert event.external_id == "/a.ics"
    assert event.title == "Standup"
    assert event.starts_at.isoformat() == "2026-03-02T09:00:00+00:00"
    assert event.ends_at.isoformat() == "2026-03-02T09:15:00+00:00"
    assert event.all_day is False
    assert event.location == "Room 1"
    assert event.status == "confirmed"
    assert event.organizer == "boss@example.com"
    assert event.attendees == ["owner@example.com", "bob@example.com"]
    assert event.provider_metadata["uid"] == "standup-1"


def test_parse_event_all_day():
    event = parse_event("/h.ics", HOLIDAY)

    assert event.all_day is True
    assert event.starts_at.isoformat() == "2026-04-06T00:00:00+00:00"


def test_parse_event_without_vevent():
    assert parse_event("/x.ics", "BEGIN:VCALENDAR\nVERSION:2.0\nEND:VCALENDAR\n") is None


def _client(handler) -> CalDavClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CalDavClient(CALENDAR_URL, "owner", "secret", http_client=http)


@pytest.mark.asyncio
async def test_sync_fetches_missing_calendar_data_with_multiget():
    bodies: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "REPORT"
        assert request.headers["Authorization"].startswith("Basic ")
        bodies.append(request.content)
        if b"calendar-multiget" in request.content:
            return httpx.Response(207, content=_multistatus(_changed("/b.ics", HOLIDAY), None))
        return httpx.Response(
            207,
            content=_multistatus(
                _changed("/a.ics", STANDUP) + _changed("/b.ics", None) + _removed("/c.ics")
            ),
        )

    page = await _client(handler).sync("tok-1")

    assert b"<d:sync-token>tok-1</d:sync-token>" in bodies[0]
    assert b"<d:href>/b.ics</d:href>" in bodies[1]
    assert sorted(e.title for e in page.events) == ["Holiday", "Standup"]
    assert page.deleted_ids == ["/c.ics"]
    assert page.next_cursor == "tok-2"
    assert page.full_resync is False


@pytest.mark.asyncio
async def test_invalid_sync_token_restarts_from_scratch():
    tokens: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        tokens.append(request.content)
        if b"<d:sync-token>stale</d:sync-token>" in request.content:
            return httpx.Response(
                403,
                content=b'<d:error xmlns:d="DAV:"><d:valid-sync-token/></d:error>',
            )
        return httpx.Response(207, content=_multistatus(_changed("/a.ics", STANDUP), "tok-9"))

    page = await _client(handler).sync("stale")

    assert len(tokens) == 2
    assert b"<d:sync-token/>" in tokens[1]
    assert page.full_resync is True
    assert page.next_cursor == "tok-9"
    assert [e.title for e in page.events] == ["Standup"]


@pytest.mark.asyncio
async def test_tokens_and_hrefs_are_escaped_in_request_bodies():
    bodies: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.content)
        ET.fromstring(request.content)
        if b"calendar-multiget" in request.content:
            return httpx.Response(
                207, content=_multistatus(_changed("/a&amp;b.ics", HOLIDAY), None)
            )
        return httpx.Response(207, content=_multistatus(_changed("/a&amp;b.ics", None)))

    page = await _client(handler).sync("tok&1<2")

    assert b"<d:sync-token>tok&amp;1&lt;2</d:sync-token>" in bodies[0]
    assert b"<d:href>/a&amp;b.ics</d:href>" in bodies[1]
    assert [e.title for e in page.events] == ["Holiday"]


@pytest.mark.asyncio
async def test_other_failures_raise_http_status_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(httpx.HTTPStatusError):
        await _client(handler).sync(None)


@pytest.mark.parametrize(("status", "expected"), [(207, True), (401, False)])
@pytest.mark.asyncio
async def test_check_uses_propfind(status, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PROPFIND"
        assert request.headers["Depth"] == "0"
        return httpx.Response(status)

    assert await _client(handler).check() is expected
