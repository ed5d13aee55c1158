"""Microsoft 365 adapter using Microsoft Graph over httpx.

Incremental sync uses Graph delta queries: the cursor is the
@odata.deltaLink, or the @odata.nextLink when a full sync stopped at
max_messages so the next run resumes where it left off.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx

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
from mailsync.infrastructure.external.mailbox.providers.base import (
    BaseMailboxAdapter,
    folder_special_use,
)
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import parse_iso_datetime, utc_now

logger = get_logger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,receivedDateTime,"
    "isRead,flag,hasAttachments,bodyPreview,body,internetMessageId,categories,parentFolderId"
)
COUNTED_FOLDERS = ("inbox", "sentitems", "drafts", "junkemail", "deleteditems")
DELTA_PAGE_SIZE = 50
FOLDER_FIELDS = "id,displayName,parentFolderId,totalItemCount,unreadItemCount"


class DeltaExpiredError(Exception):
    """Raised when Graph answers 410 Gone for a stored delta link."""


def _address(recipient: dict[str, Any] | None) -> str:
    return ((recipient or {}).get("emailAddress") or {}).get("address", "")


def _recipients(addresses: list[str]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


class MicrosoftMailboxAdapter(BaseMailboxAdapter):
    """Outlook mailbox, calendar and contacts through Graph."""

    PROVIDER_TYPE = ProviderType.MICROSOFT

    def __init__(
        self,
        config: ProviderConfig,
        credential: AccessCredential,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        graph_url: str = GRAPH_URL,
    ) -> None:
        super().__init__(config, credential, settings=settings)
        self._graph_url = graph_url
        self._shared_http = http_client

    @asynccontextmanager
    async def _http_cm(self):
        """Yield shared HTTP client or a short-lived one (connection reuse when shared)."""
        if self._shared_http is not None:
            yield self._shared_http
            return
        async with httpx.AsyncClient(timeout=self.settings.http_timeout_seconds) as client:
            yield client

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.credential.reveal()}"}
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("https://") or path_or_url.startswith("http://"):
            return path_or_url
        return f"{self._graph_url}{path_or_url}"

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path_or_url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        response = await client.request(
            method,
            self._url(path_or_url),
            params=params,
            json=json,
            headers=self._headers(headers),
        )
        response.raise_for_status()
        return response

    async def _get_json(self, path_or_url: str, **kwargs: Any) -> dict[str, Any]:
        async with self._http_cm() as client:
            response = await self._request(client, "GET", path_or_url, **kwargs)
        return response.json()

    # Mailbox

    async def get_user_info(self) -> UserInfo:
        data = await self._get_json(
            "/me", params={"$select": "id,mail,userPrincipalName,displayName"}
        )
        return UserInfo(
            email=data.get("mail") or data.get("userPrincipalName") or self.email,
            name=data.get("displayName"),
            provider_user_id=data.get("id"),
        )

    async def list_threads(self, params: ListThreadsParams) -> ThreadPage:
        """List conversations; Graph has no thread resource, so messages are grouped."""
        if params.page_token:
            data = await self._get_json(params.page_token)
        else:
            folder = params.label_ids[0] if params.label_ids else "inbox"
            query: dict[str, Any] = {
                "$select": "id,conversationId,subject,bodyPreview,receivedDateTime",
                "$top": params.max_results,
            }
            if params.query:
                query["$search"] = f'"{params.query}"'
            else:
                query["$orderby"] = "receivedDateTime desc"
            if params.unread_only:
                query["$filter"] = "isRead eq false"
            data = await self._get_json(f"/me/mailFolders/{folder}/messages", params=query)
        threads: dict[str, ThreadSummary] = {}
        for item in data.get("value", []):
            conversation = item.get("conversationId") or item["id"]
            if conversation not in threads:
                threads[conversation] = ThreadSummary(
                    id=conversation,
                    snippet=item.get("bodyPreview", ""),
                    subject=item.get("subject"),
                    last_message_at=parse_iso_datetime(item.get("receivedDateTime")),
                )
        return ThreadPage(
            threads=list(threads.values()), next_page_token=data.get("@odata.nextLink")
        )

    async def get_message(self, message_id: str) -> MailMessage:
        data = await self._get_json(
            f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}
        )
        return self._parse_message(data)

    def _parse_message(self, item: dict[str, Any]) -> MailMessage:
        """Parse Graph API message into MailMessage."""
        body = item.get("body") or {}
        is_html = (body.get("contentType") or "").lower() == "html"
        return MailMessage(
            external_id=item["id"],
            thread_id=item.get("conversationId"),
            from_address=_address(item.get("from")),
            to_addresses=[_address(r) for r in item.get("toRecipients", [])],
            cc_addresses=[_address(r) for r in item.get("ccRecipients", [])],
            subject=item.get("subject") or "",
            received_at=parse_iso_datetime(item.get("receivedDateTime")) or utc_now(),
            snippet=item.get("bodyPreview", ""),
            body_text=None if is_html else body.get("content"),
            body_html=body.get("content") if is_html else None,
            labels=item.get("categories", []),
            is_read=item.get("isRead", False),
            is_starred=(item.get("flag") or {}).get("flagStatus") == "flagged",
            has_attachments=item.get("hasAttachments", False),
            internet_message_id=item.get("internetMessageId"),
            provider_metadata={
                "outlook_id": item["id"],
                "conversation_id": item.get("conversationId"),
                "folder_id": item.get("parentFolderId"),
            },
        )

    def _message_body(self, payload: OutgoingEmail) -> dict[str, Any]:
        if payload.body_html:
            body = {"contentType": "HTML", "content": payload.body_html}
        else:
            body = {"contentType": "Text", "content": payload.body_text}
        return {
            "subject": payload.subject,
            "body": body,
            "toRecipients": _recipients(payload.to),
            "ccRecipients": _recipients(payload.cc),
            "bccRecipients": _recipients(payload.bcc),
        }

    async def _create_draft_item(
        self, client: httpx.AsyncClient, payload: OutgoingEmail
    ) -> dict[str, Any]:
        """Create a draft; a reply draft when in_reply_to names a Graph message id."""
        if payload.in_reply_to:
            response = await self._request(
                client, "POST", f"/me/messages/{payload.in_reply_to}/createReply"
            )
            draft = response.json()
            response = await self._request(
                client, "PATCH", f"/me/messages/{draft['id']}", json=self._message_body(payload)
            )
            return response.json()
        response = await self._request(
            client, "POST", "/me/messages", json=self._message_body(payload)
        )
        return response.json()

    async def send_email(self, payload: OutgoingEmail) -> SentMessage:
        """Send through a draft so the sent message id is known."""
        async with self._http_cm() as client:
            draft = await self._create_draft_item(client, payload)
            await self._request(client, "POST", f"/me/messages/{draft['id']}/send")
        return SentMessage(id=draft["id"], thread_id=draft.get("conversationId"))

    async def _delta(
        self,
        start: str,
        params: dict[str, Any] | None,
        limit: int | None,
    ) -> tuple[list[dict[str, Any]], list[str], str | None]:
        """Follow a delta query. Returns (items, removed_ids, cursor).

        Stops early at limit and returns the nextLink as the cursor.

        Raises:
            DeltaExpiredError: The stored link is no longer valid (410).
        """
        items: list[dict[str, Any]] = []
        removed: list[str] = []
        url: str | None = start
        query = params
        prefer = {"Prefer": f"odata.maxpagesize={DELTA_PAGE_SIZE}"}
        async with self._http_cm() as client:
            while url:
                try:
                    response = await self._request(
                        client, "GET", url, params=query, headers=prefer
                    )
                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 410:
                        raise DeltaExpiredError(url) from e
                    raise
                query = None
                data = response.json()
                for item in data.get("value", []):
                    if "@removed" in item:
                        removed.append(item["id"])
                    else:
                        items.append(item)
                if "@odata.deltaLink" in data:
                    return items, removed, data["@odata.deltaLink"]
                url = data.get("@odata.nextLink")
                if limit is not None and len(items) >= limit:
                    return items, removed, url
        return items, removed, None

    async def _run_delta(
        self,
        path: str,
        params: dict[str, Any],
        sync_type: SyncType,
        cursor: str | None,
        limit: int | None,
    ) -> tuple[list[dict[str, Any]], list[str], str | None, bool]:
        """Incremental from cursor when possible, else full; 410 falls back to full.

        Incremental and full passes alike stop at limit; the returned
        nextLink is the cursor the next pass resumes from.
        """
        if sync_type is SyncType.INCREMENTAL and cursor:
            try:
                items, removed, next_cursor = await self._delta(cursor, None, limit)
                return items, removed, next_cursor, False
            except DeltaExpiredError:
                logger.info("Graph delta link expired for %s, running full sync", self.config.id)
                items, removed, next_cursor = await self._delta(path, params, limit)
                return items, removed, next_cursor, True
        items, removed, next_cursor = await self._delta(path, params, limit)
        return items, removed, next_cursor, False

    async def sync_emails(self, params: SyncEmailsParams) -> EmailSyncPage:
        items, removed, cursor, resync = await self._run_delta(
            "/me/mailFolders/inbox/messages/delta",
            {"$select": MESSAGE_FIELDS},
            params.sync_type,
            params.cursor,
            params.max_messages,
        )
        return EmailSyncPage(
            messages=[self._parse_message(i) for i in items],
            next_cursor=cursor,
            deleted_ids=removed,
            full_resync=resync,
        )

    async def get_labels(self) -> list[Label]:
        data = await self._get_json(
            "/me/mailFolders", params={"$top": 100, "$select": "id,displayName"}
        )
        return [
            Label(id=item["id"], name=item.get("displayName", ""), type="folder")
            for item in data.get("value", [])
        ]

    async def list_folders(self) -> list[MailFolder]:
        """Top-level mail folders, following @odata.nextLink."""
        folders = []
        data = await self._get_json(
            "/me/mailFolders", params={"$top": 100, "$select": FOLDER_FIELDS}
        )
        while True:
            for item in data.get("value", []):
                name = item.get("displayName") or item["id"]
                folders.append(
                    MailFolder(
                        external_id=item["id"],
                        name=name,
                        special_use=folder_special_use(name),
                        parent_id=item.get("parentFolderId"),
                        total_count=item.get("totalItemCount"),
                        unread_count=item.get("unreadItemCount"),
                    )
                )
            next_link = data.get("@odata.nextLink")
            if not next_link:
                return folders
            data = await self._get_json(next_link)

    async def create_label(self, name: str) -> Label:
        async with self._http_cm() as client:
            response = await self._request(
                client, "POST", "/me/mailFolders", json={"displayName": name}
            )
        item = response.json()
        return Label(id=item["id"], name=item.get("displayName", name), type="folder")

    async def _set_read(self, ids: list[str], is_read: bool) -> None:
        async with self._http_cm() as client:
            for message_id in self.normalize_ids(ids):
                await self._request(
                    client, "PATCH", f"/me/messages/{message_id}", json={"isRead": is_read}
                )

    async def mark_as_read(self, ids: list[str]) -> None:
        await self._set_read(ids, True)

    async def mark_as_unread(self, ids: list[str]) -> None:
        await self._set_read(ids, False)

    async def create_draft(self, payload: OutgoingEmail) -> Draft:
        async with self._http_cm() as client:
            item = await self._create_draft_item(client, payload)
        return Draft(id=item["id"], message=self._parse_message(item))

    async def get_draft(self, draft_id: str) -> Draft:
        message = await self.get_message(draft_id)
        return Draft(id=draft_id, message=message)

    async def send_draft(self, draft_id: str) -> SentMessage:
        async with self._http_cm() as client:
            await self._request(client, "POST", f"/me/messages/{draft_id}/send")
        return SentMessage(id=draft_id)

    async def get_email_count(self) -> list[LabelCount]:
        counts = []
        async with self._http_cm() as client:
            for folder in COUNTED_FOLDERS:
                response = await self._request(
                    client,
                    "GET",
                    f"/me/mailFolders/{folder}",
                    params={"$select": "displayName,totalItemCount,unreadItemCount"},
                )
                data = response.json()
                counts.append(
                    LabelCount(
                        label=folder,
                        total=int(data.get("totalItemCount", 0)),
                        unread=int(data.get("unreadItemCount", 0)),
                    )
                )
        return counts

    async def test_connection(self) -> bool:
        try:
            async with self._http_cm() as client:
                await self._request(client, "GET", "/me", params={"$select": "id"})
        except httpx.HTTPError as e:
            logger.info("Graph connection test failed for %s: %s", self.config.id, e)
            return False
        return True

    # Calendar

    async def sync_calendar(self, params: SyncCollectionParams) -> CalendarSyncPage:
        if not self.config.supports_calendar:
            raise self._unsupported("calendar")
        now = utc_now()
        window = timedelta(days=self.settings.calendar_sync_window_days)
        items, removed, cursor, resync = await self._run_delta(
            "/me/calendarView/delta",
            {
                "startDateTime": (now - window).isoformat(),
                "endDateTime": (now + window).isoformat(),
            },
            params.sync_type,
            params.cursor,
            None,
        )
        events = []
        for item in items:
            if item.get("isCancelled"):
                removed.append(item["id"])
            else:
                events.append(self._parse_event(item))
        return CalendarSyncPage(
            events=events, next_cursor=cursor, deleted_ids=removed, full_resync=resync
        )

    @staticmethod
    def _parse_event(item: dict[str, Any]) -> CalendarEvent:
        def when(value: dict[str, Any] | None):
            if not value or not value.get("dateTime"):
                return None
            # Graph returns UTC wall time without an offset unless a Prefer timezone is set.
            text = value["dateTime"]
            if (value.get("timeZone") or "UTC").upper() == "UTC" and not text.endswith("Z"):
                text += "Z"
            return parse_iso_datetime(text)

        return CalendarEvent(
            external_id=item["id"],
            title=item.get("subject") or "",
            starts_at=when(item.get("start")),
            ends_at=when(item.get("end")),
            calendar_id="default",
            description=item.get("bodyPreview"),
            location=(item.get("location") or {}).get("displayName") or None,
            all_day=bool(item.get("isAllDay")),
            status=item.get("showAs"),
            organizer=_address(item.get("organizer")) or None,
            attendees=[a for a in (_address(x) for x in item.get("attendees", [])) if a],
            updated_at=parse_iso_datetime(item.get("lastModifiedDateTime")),
            provider_metadata={"ical_uid": item.get("iCalUId"), "web_link": item.get("webLink")},
        )

    # Contacts

    async def sync_contacts(self, params: SyncCollectionParams) -> ContactSyncPage:
        if not self.config.supports_contacts:
            raise self._unsupported("contacts")
        items, removed, cursor, resync = await self._run_delta(
            "/me/contacts/delta",
            {"$select": "id,displayName,emailAddresses,mobilePhone,businessPhones,"
             "homePhones,companyName,lastModifiedDateTime"},
            params.sync_type,
            params.cursor,
            None,
        )
        return ContactSyncPage(
            contacts=[self._parse_contact(i) for i in items],
            next_cursor=cursor,
            deleted_ids=removed,
            full_resync=resync,
        )

    @staticmethod
    def _parse_contact(item: dict[str, Any]) -> Contact:
        emails = [e["address"] for e in item.get("emailAddresses", []) if e.get("address")]
        phones = [
            p
            for p in [item.get("mobilePhone"), *item.get("businessPhones", []),
                      *item.get("homePhones", [])]
            if p
        ]
        return Contact(
            external_id=item["id"],
            display_name=item.get("displayName") or (emails[0] if emails else ""),
            emails=emails,
            phones=phones,
            organization=item.get("companyName"),
            updated_at=parse_iso_datetime(item.get("lastModifiedDateTime")),
        )
