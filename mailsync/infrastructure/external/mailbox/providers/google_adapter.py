"""Google adapter: Gmail, Calendar and People APIs via google-api-python-client.

Discovery clients are blocking, so every request runs in a worker thread.
The access token is supplied by the token lifecycle manager; the
google-auth Credentials object is never asked to refresh itself.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailsync.application.dtos.credentials import AccessCredential
from mailsync.application.dtos.mailbox import (
    CalendarEvent,
    CalendarSyncPage,
    Contact,
    ContactSyncPage,
    Draft,
    EmailSyncPage,
    Label,
    LabelCount,
    ListThreadsParams,
    MailFolder,
    MailMessage,
    OutgoingEmail,
    SentMessage,
    SyncCollectionParams,
    SyncEmailsParams,
    ThreadPage,
    ThreadSummary,
    UserInfo,
)
from mailsync.core.config import Settings
from mailsync.domain.entities.provider_config import ProviderConfig
from mailsync.domain.enums import ProviderType, SyncType
from mailsync.infrastructure.external.mailbox.providers.base import BaseMailboxAdapter
from mailsync.infrastructure.external.mailbox.providers.mime import (
    build_mime_message,
    parse_rfc822,
)
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import (
    from_timestamp_ms_utc,
    parse_iso_datetime,
    utc_now,
)

logger = get_logger(__name__)

BATCH_SIZE = 50
MODIFY_CHUNK = 1000
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]
COUNTED_LABELS = ("INBOX", "SENT", "DRAFT", "SPAM", "TRASH")
SYSTEM_LABEL_USE = {
    "INBOX": "INBOX",
    "SENT": "SENT",
    "DRAFT": "DRAFTS",
    "TRASH": "TRASH",
    "SPAM": "JUNK",
    "STARRED": "FLAGGED",
    "IMPORTANT": "IMPORTANT",
}
PERSON_FIELDS = "names,emailAddresses,phoneNumbers,organizations,metadata"


class HistoryExpiredError(Exception):
    """Raised when a Gmail history id or sync token is no longer valid."""


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _is_expired_token_error(error: HttpError) -> bool:
    status = getattr(error.resp, "status", None)
    if status in (404, 410):
        return True
    content = (error.content or b"").lower()
    return status == 400 and (b"expired_sync_token" in content or b"sync token" in content)


class GoogleMailboxAdapter(BaseMailboxAdapter):
    """Gmail mailbox plus Google Calendar and Contacts."""

    PROVIDER_TYPE = ProviderType.GOOGLE

    def __init__(
        self,
        config: ProviderConfig,
        credential: AccessCredential,
        *,
        settings: Settings | None = None,
        service_builder: Callable[..., Any] = build,
    ) -> None:
        super().__init__(config, credential, settings=settings)
        self._creds = Credentials(token=credential.reveal())
        self._builder = service_builder
        self._services: dict[str, Any] = {}

    async def _service(self, name: str, version: str) -> Any:
        key = f"{name}:{version}"
        if key not in self._services:
            self._services[key] = await asyncio.to_thread(
                self._builder, name, version, credentials=self._creds, cache_discovery=False
            )
        return self._services[key]

    async def _gmail(self) -> Any:
        return await self._service("gmail", "v1")

    @staticmethod
    async def _execute(request: Any) -> Any:
        return await asyncio.to_thread(request.execute)

    async def aclose(self) -> None:
        services, self._services = self._services, {}
        for service in services.values():
            close = getattr(service, "close", None)
            if close is not None:
                await asyncio.to_thread(close)

    # Mailbox

    async def get_user_info(self) -> UserInfo:
        gmail = await self._gmail()
        profile = await self._execute(gmail.users().getProfile(userId="me"))
        return UserInfo(email=profile.get("emailAddress", self.email))

    async def list_threads(self, params: ListThreadsParams) -> ThreadPage:
        gmail = await self._gmail()
        query = " ".join(filter(None, [params.query, "is:unread" if params.unread_only else None]))
        kwargs: dict[str, Any] = {"userId": "me", "maxResults": params.max_results}
        if params.label_ids:
            kwargs["labelIds"] = params.label_ids
        if query:
            kwargs["q"] = query
        if params.page_token:
            kwargs["pageToken"] = params.page_token
        result = await self._execute(gmail.users().threads().list(**kwargs))
        return ThreadPage(
            threads=[
                ThreadSummary(id=t["id"], snippet=t.get("snippet", ""))
                for t in result.get("threads", [])
            ],
            next_page_token=result.get("nextPageToken"),
            result_size_estimate=result.get("resultSizeEstimate"),
        )

    async def get_message(self, message_id: str) -> MailMessage:
        gmail = await self._gmail()
        msg = await self._execute(
            gmail.users().messages().get(userId="me", id=message_id, format="raw")
        )
        return self._parse_raw(msg)

    def _parse_raw(self, msg: dict[str, Any]) -> MailMessage:
        """Parse a format=raw Gmail message (labels and internalDate from the envelope)."""
        label_ids = msg.get("labelIds", [])
        received = (
            from_timestamp_ms_utc(int(msg["internalDate"])) if msg.get("internalDate") else None
        )
        parsed = parse_rfc822(
            _b64url_decode(msg["raw"]),
            external_id=msg["id"],
            thread_id=msg.get("threadId"),
            labels=label_ids,
            is_read="UNREAD" not in label_ids,
            is_starred="STARRED" in label_ids,
            received_at=received,
            provider_metadata={"gmail_id": msg["id"], "history_id": msg.get("historyId")},
        )
        if msg.get("snippet"):
            parsed.snippet = msg["snippet"]
        return parsed

    def _raw_message(self, payload: OutgoingEmail) -> dict[str, Any]:
        body: dict[str, Any] = {
            "raw": _b64url_encode(build_mime_message(payload, self.email).as_bytes())
        }
        if payload.thread_id:
            body["threadId"] = payload.thread_id
        return body

    async def send_email(self, payload: OutgoingEmail) -> SentMessage:
        gmail = await self._gmail()
        result = await self._execute(
            gmail.users().messages().send(userId="me", body=self._raw_message(payload))
        )
        return SentMessage(id=result["id"], thread_id=result.get("threadId"))

    async def _fetch_batch(self, message_ids: list[str]) -> tuple[list[MailMessage], list[str]]:
        """Fetch messages by id with batch requests.

        Returns (messages, missing_ids); a message deleted since it was
        listed comes back as 404 and is reported missing. Any other batch
        item failure is raised.
        """
        gmail = await self._gmail()
        messages: list[MailMessage] = []
        missing: list[str] = []
        for start in range(0, len(message_ids), BATCH_SIZE):
            chunk = message_ids[start : start + BATCH_SIZE]
            responses: dict[str, dict[str, Any]] = {}
            failures: list[HttpError] = []

            def callback(request_id: str, response: Any, exception: Exception | None) -> None:
                if exception is None:
                    responses[request_id] = response
                elif isinstance(exception, HttpError) and exception.resp.status == 404:
                    missing.append(request_id)
                else:
                    failures.append(exception)

            batch = gmail.new_batch_http_request(callback=callback)
            for msg_id in chunk:
                batch.add(
                    gmail.users().messages().get(userId="me", id=msg_id, format="raw"),
                    request_id=msg_id,
                )
            await self._execute(batch)
            if failures:
                raise failures[0]
            messages.extend(self._parse_raw(responses[i]) for i in chunk if i in responses)
        return messages, missing

    async def sync_emails(self, params: SyncEmailsParams) -> EmailSyncPage:
        if params.sync_type is SyncType.INCREMENTAL and params.cursor:
            try:
                return await self._sync_history(params.cursor, params.max_messages)
            except HistoryExpiredError:
                logger.info(
                    "Gmail history %s expired for %s, running full sync",
                    params.cursor,
                    self.config.id,
                )
                page = await self._sync_full(params.max_messages)
                page.full_resync = True
                return page
        return await self._sync_full(params.max_messages)

    async def _sync_full(self, max_messages: int | None) -> EmailSyncPage:
        gmail = await self._gmail()
        # Read the history id first so nothing that arrives during the listing is skipped.
        profile = await self._execute(gmail.users().getProfile(userId="me"))
        limit = max_messages or self.settings.full_sync_max_messages
        ids: list[str] = []
        page_token: str | None = None
        while len(ids) < limit:
            kwargs: dict[str, Any] = {"userId": "me", "maxResults": min(500, limit - len(ids))}
            if page_token:
                kwargs["pageToken"] = page_token
            result = await self._execute(gmail.users().messages().list(**kwargs))
            ids.extend(m["id"] for m in result.get("messages", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                break
        messages, _ = await self._fetch_batch(ids[:limit])
        return EmailSyncPage(messages=messages, next_cursor=str(profile["historyId"]))

    async def _sync_history(
        self, start_history_id: str, limit: int | None = None
    ) -> EmailSyncPage:
        """Changes since start_history_id.

        Stops at the end of the page where limit changed messages are
        reached; the cursor is then the last history record read, so the
        next pass picks up the rest.
        """
        gmail = await self._gmail()
        changed: dict[str, None] = {}
        deleted: dict[str, None] = {}
        new_history_id = start_history_id
        page_token: str | None = None
        try:
            while True:
                kwargs: dict[str, Any] = {
                    "userId": "me",
                    "startHistoryId": start_history_id,
                    "historyTypes": HISTORY_TYPES,
                    "maxResults": 500,
                }
                if page_token:
                    kwargs["pageToken"] = page_token
                result = await self._execute(gmail.users().history().list(**kwargs))
                new_history_id = str(result.get("historyId", new_history_id))
                for record in result.get("history", []):
                    for key in ("messagesAdded", "labelsAdded", "labelsRemoved"):
                        for item in record.get(key, []):
                            gid = item.get("message", {}).get("id")
                            if gid:
                                changed.setdefault(gid, None)
                                deleted.pop(gid, None)
                    for item in record.get("messagesDeleted", []):
                        gid = item.get("message", {}).get("id")
                        if gid:
                            deleted.setdefault(gid, None)
                            changed.pop(gid, None)
                page_token = result.get("nextPageToken")
                if not page_token:
                    break
                if limit is not None and len(changed) >= limit:
                    records = result.get("history") or [{}]
                    new_history_id = str(records[-1].get("id", new_history_id))
                    break
        except HttpError as e:
            if getattr(e.resp, "status", None) == 404:
                raise HistoryExpiredError(start_history_id) from e
            raise
        messages, missing = await self._fetch_batch(list(changed))
        return EmailSyncPage(
            messages=messages,
            next_cursor=new_history_id,
            deleted_ids=list(deleted) + missing,
        )

    async def get_labels(self) -> list[Label]:
        gmail = await self._gmail()
        result = await self._execute(gmail.users().labels().list(userId="me"))
        return [
            Label(id=item["id"], name=item["name"], type=item.get("type", "user").lower())
            for item in result.get("labels", [])
        ]

    async def list_folders(self) -> list[MailFolder]:
        """Labels as folders; nested user labels ("a/b") point at their parent label."""
        gmail = await self._gmail()
        result = await self._execute(gmail.users().labels().list(userId="me"))
        labels = [item for item in result.get("labels", []) if item.get("id")]
        ids_by_name = {item.get("name", ""): item["id"] for item in labels}
        folders = []
        for item in labels:
            name = item.get("name") or item["id"]
            parent_name, _, _ = name.rpartition("/")
            special = SYSTEM_LABEL_USE.get(item["id"])
            folders.append(
                MailFolder(
                    external_id=item["id"],
                    name=name,
                    special_use=special,
                    parent_id=ids_by_name.get(parent_name) if parent_name else None,
                    total_count=item.get("messagesTotal"),
                    unread_count=item.get("messagesUnread"),
                    is_selectable=item.get("type") != "system" or special is not None,
                )
            )
        return folders

    async def create_label(self, name: str) -> Label:
        gmail = await self._gmail()
        body = {"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"}
        item = await self._execute(gmail.users().labels().create(userId="me", body=body))
        return Label(id=item["id"], name=item["name"], type=item.get("type", "user").lower())

    async def _modify(self, ids: list[str], add: list[str], remove: list[str]) -> None:
        gmail = await self._gmail()
        ids = self.normalize_ids(ids)
        for start in range(0, len(ids), MODIFY_CHUNK):
            body = {
                "ids": ids[start : start + MODIFY_CHUNK],
                "addLabelIds": add,
                "removeLabelIds": remove,
            }
            await self._execute(gmail.users().messages().batchModify(userId="me", body=body))

    async def mark_as_read(self, ids: list[str]) -> None:
        await self._modify(ids, [], ["UNREAD"])

    async def mark_as_unread(self, ids: list[str]) -> None:
        await self._modify(ids, ["UNREAD"], [])

    async def create_draft(self, payload: OutgoingEmail) -> Draft:
        gmail = await self._gmail()
        result = await self._execute(
            gmail.users().drafts().create(userId="me", body={"message": self._raw_message(payload)})
        )
        return Draft(id=result["id"])

    async def get_draft(self, draft_id: str) -> Draft:
        gmail = await self._gmail()
        result = await self._execute(
            gmail.users().drafts().get(userId="me", id=draft_id, format="raw")
        )
        message = result.get("message")
        return Draft(
            id=result["id"],
            message=self._parse_raw(message) if message and message.get("raw") else None,
        )

    async def send_draft(self, draft_id: str) -> SentMessage:
        gmail = await self._gmail()
        result = await self._execute(
            gmail.users().drafts().send(userId="me", body={"id": draft_id})
        )
        return SentMessage(id=result["id"], thread_id=result.get("threadId"))

    async def get_email_count(self) -> list[LabelCount]:
        gmail = await self._gmail()
        counts = []
        for label_id in COUNTED_LABELS:
            item = await self._execute(gmail.users().labels().get(userId="me", id=label_id))
            counts.append(
                LabelCount(
                    label=label_id,
                    total=int(item.get("messagesTotal", 0)),
                    unread=int(item.get("messagesUnread", 0)),
                )
            )
        return counts

    async def test_connection(self) -> bool:
        try:
            async with asyncio.timeout(self.settings.health_check_timeout_seconds):
                await self.get_user_info()
        except (HttpError, TimeoutError, OSError) as e:
            logger.info("Gmail connection test failed for %s: %s", self.config.id, e)
            return False
        return True

    # Calendar

    async def sync_calendar(self, params: SyncCollectionParams) -> CalendarSyncPage:
        if not self.config.supports_calendar:
            raise self._unsupported("calendar")
        if params.sync_type is SyncType.INCREMENTAL and params.cursor:
            try:
                return await self._list_events(params.cursor)
            except HistoryExpiredError:
                logger.info("Calendar sync token expired for %s, running full sync", self.config.id)
                page = await self._list_events(None)
                page.full_resync = True
                return page
        return await self._list_events(None)

    async def _list_events(self, sync_token: str | None) -> CalendarSyncPage:
        calendar = await self._service("calendar", "v3")
        events: list[CalendarEvent] = []
        deleted: list[str] = []
        page_token: str | None = None
        next_sync_token: str | None = None
        try:
            while True:
                kwargs: dict[str, Any] = {
                    "calendarId": "primary",
                    "maxResults": 250,
                    "singleEvents": True,
                    "showDeleted": True,
                }
                if sync_token:
                    kwargs["syncToken"] = sync_token
                else:
                    window = timedelta(days=self.settings.calendar_sync_window_days)
                    kwargs["timeMin"] = (utc_now() - window).isoformat()
                if page_token:
                    kwargs["pageToken"] = page_token
                result = await self._execute(calendar.events().list(**kwargs))
                for item in result.get("items", []):
                    if item.get("status") == "cancelled":
                        deleted.append(item["id"])
                    else:
                        events.append(self._parse_event(item))
                page_token = result.get("nextPageToken")
                if not page_token:
                    next_sync_token = result.get("nextSyncToken")
                    break
        except HttpError as e:
            if sync_token and _is_expired_token_error(e):
                raise HistoryExpiredError(sync_token) from e
            raise
        return CalendarSyncPage(events=events, next_cursor=next_sync_token, deleted_ids=deleted)

    @staticmethod
    def _parse_event(item: dict[str, Any]) -> CalendarEvent:
        start = item.get("start", {})
        end = item.get("end", {})
        all_day = "date" in start and "dateTime" not in start
        return CalendarEvent(
            external_id=item["id"],
            title=item.get("summary", ""),
            starts_at=parse_iso_datetime(start.get("dateTime") or start.get("date")),
            ends_at=parse_iso_datetime(end.get("dateTime") or end.get("date")),
            calendar_id="primary",
            description=item.get("description"),
            location=item.get("location"),
            all_day=all_day,
            status=item.get("status"),
            organizer=item.get("organizer", {}).get("email"),
            attendees=[a["email"] for a in item.get("attendees", []) if a.get("email")],
            updated_at=parse_iso_datetime(item.get("updated")),
            provider_metadata={"ical_uid": item.get("iCalUID"), "html_link": item.get("htmlLink")},
        )

    # Contacts

    async def sync_contacts(self, params: SyncCollectionParams) -> ContactSyncPage:
        if not self.config.supports_contacts:
            raise self._unsupported("contacts")
        if params.sync_type is SyncType.INCREMENTAL and params.cursor:
            try:
                return await self._list_connections(params.cursor)
            except HistoryExpiredError:
                logger.info("Contacts sync token expired for %s, running full sync", self.config.id)
                page = await self._list_connections(None)
                page.full_resync = True
                return page
        return await self._list_connections(None)

    async def _list_connections(self, sync_token: str | None) -> ContactSyncPage:
        people = await self._service("people", "v1")
        contacts: list[Contact] = []
        deleted: list[str] = []
        page_token: str | None = None
        next_sync_token: str | None = None
        try:
            while True:
                kwargs: dict[str, Any] = {
                    "resourceName": "people/me",
                    "personFields": PERSON_FIELDS,
                    "pageSize": 1000,
                    "requestSyncToken": True,
                }
                if sync_token:
                    kwargs["syncToken"] = sync_token
                if page_token:
                    kwargs["pageToken"] = page_token
                result = await self._execute(people.people().connections().list(**kwargs))
                for person in result.get("connections", []):
                    if person.get("metadata", {}).get("deleted"):
                        deleted.append(person["resourceName"])
                    else:
                        contacts.append(self._parse_person(person))
                page_token = result.get("nextPageToken")
                if not page_token:
                    next_sync_token = result.get("nextSyncToken")
                    break
        except HttpError as e:
            if sync_token and _is_expired_token_error(e):
                raise HistoryExpiredError(sync_token) from e
            raise
        return ContactSyncPage(contacts=contacts, next_cursor=next_sync_token, deleted_ids=deleted)

    @staticmethod
    def _parse_person(person: dict[str, Any]) -> Contact:
        names = person.get("names", [])
        emails = [e["value"] for e in person.get("emailAddresses", []) if e.get("value")]
        orgs = person.get("organizations", [])
        sources = person.get("metadata", {}).get("sources", [])
        display_name = names[0].get("displayName") if names else None
        return Contact(
            external_id=person["resourceName"],
            display_name=display_name or (emails[0] if emails else ""),
            emails=emails,
            phones=[p["value"] for p in person.get("phoneNumbers", []) if p.get("value")],
            organization=orgs[0].get("name") if orgs else None,
            updated_at=parse_iso_datetime(sources[0].get("updateTime")) if sources else None,
            provider_metadata={"etag": person.get("etag")},
        )
