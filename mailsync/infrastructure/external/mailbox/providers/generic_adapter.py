"""Generic provider: IMAP for mail, SMTP for sending, CalDAV for calendars.

Message ids are "<uidvalidity>:<uid>" for INBOX and
"<mailbox>|<uidvalidity>:<uid>" elsewhere. The email cursor is
"<uidvalidity>:<highest synced uid>"; a UIDVALIDITY change invalidates
every stored uid and forces a full sync. IMAP offers no cheap change
feed for expunged messages, so deleted_ids is always empty.
"""

from __future__ import annotations

import email
import re
from dataclasses import dataclass, field
from datetime import datetime
from email.policy import default as default_policy
from typing import Any

import aioimaplib
import aiosmtplib
from aioimaplib.aioimaplib import Abort as ImapAbort
from aioimaplib.aioimaplib import CommandTimeout as ImapCommandTimeout

from mailsync.application.dtos.credentials import AccessCredential
from mailsync.application.dtos.mailbox import (
    CalendarSyncPage,
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
from mailsync.infrastructure.external.mailbox.providers.caldav_client import CalDavClient
from mailsync.infrastructure.external.mailbox.providers.imap_errors import (
    ImapCommandError,
    check_imap_response,
    response_text,
)
from mailsync.infrastructure.external.mailbox.providers.mime import (
    build_mime_message,
    envelope_recipients,
    parse_rfc822,
)
from mailsync.shared.telemetry.logging import get_logger
from mailsync.shared.utils.datetime import ensure_utc

logger = get_logger(__name__)

INBOX = "INBOX"
FETCH_CHUNK = 50
FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"
DEFAULT_FOLDERS = {
    "sent": "Sent",
    "drafts": "Drafts",
    "junk": "Junk",
    "trash": "Trash",
}

_FETCH_START_RE = re.compile(r"^\d+ FETCH \(", re.IGNORECASE)
_UID_RE = re.compile(r"\bUID (\d+)", re.IGNORECASE)
_FLAGS_RE = re.compile(r"\bFLAGS \(([^)]*)\)", re.IGNORECASE)
_INTERNALDATE_RE = re.compile(r'\bINTERNALDATE "([^"]+)"', re.IGNORECASE)
_UIDVALIDITY_RE = re.compile(r"\bUIDVALIDITY (\d+)", re.IGNORECASE)
_APPENDUID_RE = re.compile(r"\bAPPENDUID (\d+) (\d+)", re.IGNORECASE)
_LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\) (?P<delim>"[^"]*"|NIL) (?P<name>.+)$')
_STATUS_ITEM_RE = re.compile(r"\b(MESSAGES|UNSEEN) (\d+)", re.IGNORECASE)
_SPECIAL_USE = {"\\sent", "\\drafts", "\\junk", "\\trash", "\\all", "\\archive", "\\flagged"}


@dataclass
class FetchedMessage:
    """One FETCH record: uid, flags, internal date and the raw RFC 822 bytes."""

    uid: int
    flags: list[str] = field(default_factory=list)
    internal_date: datetime | None = None
    raw: bytes = b""


def quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == name[-1] == '"':
        return name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return name


def parse_list(lines: list[bytes | str]) -> list[MailFolder]:
    """Folders from LIST response lines; parents follow the hierarchy delimiter."""
    folders = []
    for line in lines:
        match = _LIST_RE.match(response_text([line]))
        if match is None:
            continue
        path = _unquote(match.group("name"))
        attributes = match.group("flags").split()
        delimiter = None if match.group("delim") == "NIL" else _unquote(match.group("delim"))
        parent, name = None, path
        if delimiter and delimiter in path:
            parent, _, name = path.rpartition(delimiter)
        folders.append(
            MailFolder(
                external_id=path,
                name=name,
                special_use=(
                    "INBOX" if path.upper() == INBOX else folder_special_use(name, attributes)
                ),
                parent_id=parent,
                is_selectable=not any(
                    a.lower() in ("\\noselect", "\\nonexistent") for a in attributes
                ),
            )
        )
    return folders


def format_message_id(mailbox: str, uidvalidity: int, uid: int) -> str:
    if mailbox == INBOX:
        return f"{uidvalidity}:{uid}"
    return f"{mailbox}|{uidvalidity}:{uid}"


def parse_message_id(message_id: str) -> tuple[str, int, int]:
    """Split a message id into (mailbox, uidvalidity, uid).

    Raises:
        ValueError: message_id is not in either id format.
    """
    mailbox, sep, rest = message_id.rpartition("|")
    if not sep:
        mailbox = INBOX
    validity, _, uid = rest.partition(":")
    return mailbox, int(validity), int(uid)


def parse_cursor(cursor: str | None) -> tuple[int | None, int]:
    """Return (uidvalidity, last uid); (None, 0) for a missing or malformed cursor."""
    if not cursor:
        return None, 0
    validity, sep, last = cursor.partition(":")
    if not sep or not validity.isdigit() or not last.isdigit():
        return None, 0
    return int(validity), int(last)


def _parse_internal_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z"))
    except ValueError:
        return None


def parse_search(lines: list[Any]) -> list[int]:
    """UIDs from a (UID) SEARCH response; the completion line is ignored."""
    uids: list[int] = []
    for line in lines or []:
        tokens = response_text([line]).split()
        if tokens and tokens[0].upper() == "SEARCH":
            tokens = tokens[1:]
        if tokens and all(t.isdigit() for t in tokens):
            uids.extend(int(t) for t in tokens)
    return uids


def parse_fetch(lines: list[Any]) -> list[FetchedMessage]:
    """Group FETCH response lines into records.

    aioimaplib yields the header line as bytes, the message literal as a
    bytearray, then the closing text (which may carry UID or FLAGS).
    """
    records: list[tuple[list[str], bytes]] = []
    for line in lines or []:
        if isinstance(line, bytearray):
            if records:
                records[-1] = (records[-1][0], bytes(line))
            continue
        text = response_text([line])
        if _FETCH_START_RE.match(text):
            records.append(([text], b""))
        elif records:
            records[-1][0].append(text)
    messages = []
    for texts, raw in records:
        meta = " ".join(texts)
        uid = _UID_RE.search(meta)
        if uid is None:
            continue
        flags = _FLAGS_RE.search(meta)
        date = _INTERNALDATE_RE.search(meta)
        messages.append(
            FetchedMessage(
                uid=int(uid.group(1)),
                flags=flags.group(1).split() if flags else [],
                internal_date=_parse_internal_date(date.group(1) if date else None),
                raw=raw,
            )
        )
    return messages


def _uid_set(uids: list[int]) -> str:
    return ",".join(str(u) for u in uids)


class GenericMailboxAdapter(BaseMailboxAdapter):
    """IMAP/SMTP mailbox with optional CalDAV calendar."""

    PROVIDER_TYPE = ProviderType.GENERIC

    def __init__(
        self,
        config: ProviderConfig,
        credential: AccessCredential,
        *,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(config, credential, settings=settings)
        self.params: dict[str, Any] = dict(config.connection_params or {})
        self._client: aioimaplib.IMAP4 | None = None

    @property
    def username(self) -> str:
        return self.params.get("username") or self.email

    def folder(self, kind: str) -> str:
        return self.params.get(f"{kind}_mailbox") or DEFAULT_FOLDERS[kind]

    # Connections

    async def _imap(self) -> aioimaplib.IMAP4:
        """Connect and log in on first use."""
        if self._client is not None:
            return self._client
        host = self.params.get("imap_server")
        port = int(self.params.get("imap_port", 993))
        use_ssl = self.params.get("imap_use_ssl", True)
        client_cls = aioimaplib.IMAP4_SSL if use_ssl else aioimaplib.IMAP4
        logger.debug("Connecting to IMAP server %s:%s", host, port)
        client = client_cls(host=host, port=port, timeout=self.settings.http_timeout_seconds)
        await client.wait_hello_from_server()
        check_imap_response("LOGIN", await client.login(self.username, self.credential.reveal()))
        self._client = client
        return client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.logout()
        except (ImapAbort, ImapCommandTimeout, OSError) as e:
            logger.debug("IMAP logout failed for %s: %s", self.config.id, e)

    def _smtp_options(self) -> dict[str, Any]:
        port = int(self.params.get("smtp_port", 587))
        use_tls = bool(self.params.get("smtp_use_tls", port == 465))
        return {
            "hostname": self.params.get("smtp_server"),
            "port": port,
            "username": self.username,
            "password": self.credential.reveal(),
            "use_tls": use_tls,
            "start_tls": not use_tls,
            "timeout": self.settings.http_timeout_seconds,
        }

    async def _select(self, client: aioimaplib.IMAP4, mailbox: str) -> int:
        """SELECT mailbox and return its UIDVALIDITY."""
        response = check_imap_response("SELECT", await client.select(quote_mailbox(mailbox)))
        match = _UIDVALIDITY_RE.search(response_text(response.lines))
        return int(match.group(1)) if match else 0

    async def _search(self, client: aioimaplib.IMAP4, *criteria: str) -> list[int]:
        response = check_imap_response(
            "UID SEARCH", await client.uid_search(*criteria, charset=None)
        )
        return parse_search(response.lines)

    async def _fetch_raw(self, client: aioimaplib.IMAP4, uids: list[int]) -> list[FetchedMessage]:
        fetched: list[FetchedMessage] = []
        for start in range(0, len(uids), FETCH_CHUNK):
            chunk = uids[start : start + FETCH_CHUNK]
            response = check_imap_response(
                "UID FETCH", await client.uid("fetch", _uid_set(chunk), FETCH_ITEMS)
            )
            fetched.extend(parse_fetch(response.lines))
        return fetched

    def _to_message(self, mailbox: str, uidvalidity: int, item: FetchedMessage) -> MailMessage:
        flags = {f.lower() for f in item.flags}
        return parse_rfc822(
            item.raw,
            external_id=format_message_id(mailbox, uidvalidity, item.uid),
            labels=[mailbox],
            is_read="\\seen" in flags,
            is_starred="\\flagged" in flags,
            received_at=item.internal_date,
            provider_metadata={
                "mailbox": mailbox,
                "uid": item.uid,
                "uidvalidity": uidvalidity,
                "flags": item.flags,
            },
        )

    async def _fetch_messages(
        self, client: aioimaplib.IMAP4, mailbox: str, uidvalidity: int, uids: list[int]
    ) -> list[MailMessage]:
        fetched = await self._fetch_raw(client, uids)
        return [self._to_message(mailbox, uidvalidity, item) for item in fetched if item.raw]

    # Mailbox

    async def get_user_info(self) -> UserInfo:
        await self._imap()
        return UserInfo(email=self.email, name=self.params.get("display_name"))

    async def list_threads(self, params: ListThreadsParams) -> ThreadPage:
        """Newest messages first; IMAP has no thread model, so each message is a thread.

        page_token is the offset into the newest-first uid list.
        """
        client = await self._imap()
        mailbox = params.label_ids[0] if params.label_ids else INBOX
        validity = await self._select(client, mailbox)
        criteria = ["UNSEEN" if params.unread_only else "ALL"]
        if params.query:
            criteria.append(f"TEXT {quote_mailbox(params.query)}")
        uids = sorted(await self._search(client, *criteria), reverse=True)
        offset = int(params.page_token or 0)
        page = uids[offset : offset + params.max_results]
        messages = await self._fetch_messages(client, mailbox, validity, page)
        messages.sort(key=lambda m: m.received_at, reverse=True)
        next_offset = offset + len(page)
        return ThreadPage(
            threads=[
                ThreadSummary(
                    id=m.external_id,
                    snippet=m.snippet,
                    subject=m.subject,
                    last_message_at=m.received_at,
                    message_count=1,
                )
                for m in messages
            ],
            next_page_token=str(next_offset) if next_offset < len(uids) else None,
            result_size_estimate=len(uids),
        )

    async def _locate(self, message_id: str) -> tuple[aioimaplib.IMAP4, str, int, int]:
        """Select the message's mailbox; raises when its UIDVALIDITY has moved on."""
        mailbox, validity, uid = parse_message_id(message_id)
        client = await self._imap()
        current = await self._select(client, mailbox)
        if current != validity:
            raise ImapCommandError("SELECT", "NO", f"UIDVALIDITY of {mailbox} changed")
        return client, mailbox, validity, uid

    async def get_message(self, message_id: str) -> MailMessage:
        client, mailbox, validity, uid = await self._locate(message_id)
        messages = await self._fetch_messages(client, mailbox, validity, [uid])
        if not messages:
            raise ImapCommandError("UID FETCH", "NO", f"message {message_id} not found")
        return messages[0]

    async def send_email(self, payload: OutgoingEmail) -> SentMessage:
        message = build_mime_message(payload, self.email)
        await aiosmtplib.send(
            message,
            sender=self.email,
            recipients=envelope_recipients(payload),
            **self._smtp_options(),
        )
        logger.info("Sent message via SMTP for provider %s", self.config.id)
        return SentMessage(id=message["Message-ID"], thread_id=payload.thread_id)

    async def sync_emails(self, params: SyncEmailsParams) -> EmailSyncPage:
        client = await self._imap()
        validity = await self._select(client, INBOX)
        limit = params.max_messages
        full_resync = False

        if params.sync_type is SyncType.INCREMENTAL and params.cursor:
            last_validity, last_uid = parse_cursor(params.cursor)
            if last_validity == validity:
                # UID n:* always matches the highest uid, even when it is <= n.
                uids = sorted(
                    u for u in await self._search(client, f"UID {last_uid + 1}:*") if u > last_uid
                )
                if limit and len(uids) > limit:
                    uids = uids[:limit]
                messages = await self._fetch_messages(client, INBOX, validity, uids)
                next_uid = uids[-1] if uids else last_uid
                return EmailSyncPage(messages=messages, next_cursor=f"{validity}:{next_uid}")
            logger.info(
                "UIDVALIDITY changed for provider %s (%s -> %s), running full sync",
                self.config.id,
                last_validity,
                validity,
            )
            full_resync = True

        uids = sorted(await self._search(client, "ALL"))
        highest = uids[-1] if uids else 0
        if limit:
            uids = uids[-limit:]
        messages = await self._fetch_messages(client, INBOX, validity, uids)
        return EmailSyncPage(
            messages=messages,
            next_cursor=f"{validity}:{highest}",
            full_resync=full_resync,
        )

    async def get_labels(self) -> list[Label]:
        client = await self._imap()
        response = check_imap_response("LIST", await client.list('""', "*"))
        labels = []
        for line in response.lines:
            match = _LIST_RE.match(response_text([line]))
            if match is None:
                continue
            name = _unquote(match.group("name"))
            flags = {f.lower() for f in match.group("flags").split()}
            if "\\noselect" in flags:
                continue
            system = name.upper() == INBOX or bool(flags & _SPECIAL_USE)
            labels.append(Label(id=name, name=name, type="system" if system else "user"))
        return labels

    async def list_folders(self) -> list[MailFolder]:
        client = await self._imap()
        response = check_imap_response("LIST", await client.list('""', "*"))
        return parse_list(response.lines)

    async def create_label(self, name: str) -> Label:
        client = await self._imap()
        check_imap_response("CREATE", await client.create(quote_mailbox(name)))
        return Label(id=name, name=name, type="user")

    async def _store_flags(self, ids: list[str], operation: str, flags: str) -> None:
        by_mailbox: dict[tuple[str, int], list[int]] = {}
        for message_id in self.normalize_ids(ids):
            mailbox, validity, uid = parse_message_id(message_id)
            by_mailbox.setdefault((mailbox, validity), []).append(uid)
        client = await self._imap()
        for (mailbox, validity), uids in by_mailbox.items():
            if await self._select(client, mailbox) != validity:
                logger.warning(
                    "Skipping %d stale ids in %s for provider %s",
                    len(uids),
                    mailbox,
                    self.config.id,
                )
                continue
            check_imap_response(
                "UID STORE", await client.uid("store", _uid_set(uids), operation, flags)
            )

    async def mark_as_read(self, ids: list[str]) -> None:
        await self._store_flags(ids, "+FLAGS.SILENT", "(\\Seen)")

    async def mark_as_unread(self, ids: list[str]) -> None:
        await self._store_flags(ids, "-FLAGS.SILENT", "(\\Seen)")

    async def create_draft(self, payload: OutgoingEmail) -> Draft:
        """APPEND the message to the drafts mailbox with the \\Draft flag."""
        mailbox = self.folder("drafts")
        message = build_mime_message(payload, self.email)
        raw = message.as_bytes()
        client = await self._imap()
        response = check_imap_response(
            "APPEND",
            await client.append(raw, mailbox=quote_mailbox(mailbox), flags="(\\Draft)"),
        )
        appended = _APPENDUID_RE.search(response_text(response.lines))
        if appended:
            validity, uid = int(appended.group(1)), int(appended.group(2))
        else:
            validity = await self._select(client, mailbox)
            found = await self._search(
                client, f"HEADER Message-ID {quote_mailbox(message['Message-ID'])}"
            )
            if not found:
                raise ImapCommandError("APPEND", "NO", "appended draft not found")
            uid = max(found)
        draft_id = format_message_id(mailbox, validity, uid)
        return Draft(id=draft_id, message=parse_rfc822(raw, external_id=draft_id))

    async def get_draft(self, draft_id: str) -> Draft:
        return Draft(id=draft_id, message=await self.get_message(draft_id))

    async def send_draft(self, draft_id: str) -> SentMessage:
        """Send the stored draft over SMTP, then remove it from the drafts mailbox."""
        client, _, _, uid = await self._locate(draft_id)
        fetched = await self._fetch_raw(client, [uid])
        if not fetched or not fetched[0].raw:
            raise ImapCommandError("UID FETCH", "NO", f"draft {draft_id} not found")
        message = email.message_from_bytes(fetched[0].raw, policy=default_policy)
        await aiosmtplib.send(message, **self._smtp_options())
        check_imap_response(
            "UID STORE", await client.uid("store", str(uid), "+FLAGS.SILENT", "(\\Deleted)")
        )
        check_imap_response("EXPUNGE", await client.expunge())
        return SentMessage(id=message.get("Message-ID") or draft_id)

    async def get_email_count(self) -> list[LabelCount]:
        client = await self._imap()
        counts = []
        for mailbox in (INBOX, *(self.folder(kind) for kind in DEFAULT_FOLDERS)):
            response = await client.status(quote_mailbox(mailbox), "(MESSAGES UNSEEN)")
            if response.result != "OK":
                logger.debug("No STATUS for %s: %s", mailbox, response_text(response.lines))
                continue
            values = {
                k.upper(): int(v) for k, v in _STATUS_ITEM_RE.findall(response_text(response.lines))
            }
            counts.append(
                LabelCount(
                    label=mailbox,
                    total=values.get("MESSAGES", 0),
                    unread=values.get("UNSEEN", 0),
                )
            )
        return counts

    async def test_connection(self) -> bool:
        """Log in to IMAP and SMTP (and reach CalDAV when calendars are enabled)."""
        try:
            await self._imap()
            smtp = aiosmtplib.SMTP(**self._smtp_options())
            async with smtp:
                pass
            if self.config.supports_calendar and self.params.get("caldav_url"):
                return await self._caldav().check()
        except ImapCommandError as e:
            logger.info("IMAP login failed for %s: %s", self.email, e)
            return False
        except (
            aiosmtplib.SMTPException,
            ImapAbort,
            ImapCommandTimeout,
            TimeoutError,
            OSError,
        ) as e:
            logger.info("Connection test failed for %s: %s", self.email, e)
            return False
        return True

    # Calendar and contacts

    def _caldav(self) -> CalDavClient:
        return CalDavClient(
            self.params["caldav_url"],
            self.params.get("caldav_username") or self.username,
            self.credential.reveal(),
            timeout=self.settings.http_timeout_seconds,
        )

    async def sync_calendar(self, params: SyncCollectionParams) -> CalendarSyncPage:
        if not self.config.supports_calendar or not self.params.get("caldav_url"):
            raise self._unsupported("calendar")
        token = params.cursor if params.sync_type is SyncType.INCREMENTAL else None
        return await self._caldav().sync(token)

    async def sync_contacts(self, params: SyncCollectionParams) -> ContactSyncPage:
        raise self._unsupported("contacts")
