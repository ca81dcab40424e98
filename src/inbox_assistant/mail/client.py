"""Mail client abstraction.

Provides a protocol and implementations for browsing the inbox.
MemoryMailClient is used for testing and simulator mode.
GmailClient connects to the Gmail API for production use.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from email.utils import parsedate_to_datetime
from typing import Any, Protocol, runtime_checkable

from inbox_assistant.conventions import GMAIL_PAGE_SIZE

from .auth import AccessTokenProvider, Unauthenticated
from .models import EmailDetail, EmailSummary, MailAttachment, MessagePage

logger = logging.getLogger(__name__)

_FR_MONTHS = [
    "janv.",
    "févr.",
    "mars",
    "avr.",
    "mai",
    "juin",
    "juil.",
    "août",
    "sept.",
    "oct.",
    "nov.",
    "déc.",
]


class MailError(Exception):
    """A mail operation failed for a reason other than authentication."""


class MessageNotFound(MailError):
    """The requested message id does not exist."""


class InvalidMailRequest(MailError):
    """The request was rejected as malformed (e.g. an unknown page token)."""


@runtime_checkable
class MailClient(Protocol):
    """Protocol for inbox operations."""

    async def list_messages(
        self, query: str = "", page_token: str | None = None
    ) -> MessagePage:
        """List one page of inbox messages matching a Gmail query."""
        ...

    async def get_message(self, message_id: str) -> EmailDetail:
        """Fetch a full message with body and attachment data."""
        ...

    async def delete_messages(self, ids: list[str]) -> int:
        """Delete messages. Returns the number deleted."""
        ...


class MemoryMailClient:
    """In-memory mail client for testing and simulation."""

    def __init__(self, page_size: int = GMAIL_PAGE_SIZE) -> None:
        self._page_size = page_size
        self.inbox: list[EmailDetail] = []
        self.unread: set[str] = set()
        self.queries: list[str] = []

    def inject_email(self, message: EmailDetail, *, unread: bool = True) -> None:
        """Add an email to the inbox (test helper)."""
        self.inbox.append(message)
        if unread:
            self.unread.add(message.id)

    async def list_messages(
        self, query: str = "", page_token: str | None = None
    ) -> MessagePage:
        self.queries.append(query)
        try:
            start = int(page_token) if page_token else 0
        except ValueError as e:
            raise InvalidMailRequest(f"Invalid page token: {page_token!r}") from e
        if start < 0:
            raise InvalidMailRequest(f"Invalid page token: {page_token!r}")
        end = start + self._page_size
        page = [
            EmailSummary(
                id=m.id,
                subject=m.subject,
                sender=_display_sender(m.sender),
                preview=m.body[:100],
                has_attachment=bool(m.attachments),
                is_unread=m.id in self.unread,
            )
            for m in self.inbox[start:end]
        ]
        next_token = str(end) if end < len(self.inbox) else None
        return MessagePage(messages=page, next_page_token=next_token)

    async def get_message(self, message_id: str) -> EmailDetail:
        for m in self.inbox:
            if m.id == message_id:
                return m
        raise MessageNotFound(f"Unknown message: {message_id}")

    async def delete_messages(self, ids: list[str]) -> int:
        wanted = set(ids)
        before = len(self.inbox)
        self.inbox = [m for m in self.inbox if m.id not in wanted]
        self.unread -= wanted
        return before - len(self.inbox)


# --- Gmail payload parsing ---


def _header(headers: list[dict[str, Any]], name: str, default: str = "") -> str:
    for h in headers:
        if h.get("name") == name:
            return h.get("value") or default
    return default


def _display_sender(raw: str) -> str:
    """'Alice <alice@example.com>' -> 'Alice'."""
    return re.sub(r"<.*>", "", raw).strip() or raw.strip()


def _format_date_label(raw: str) -> str:
    """RFC 2822 date header -> short French label like '12 janv.'."""
    if not raw:
        return ""
    try:
        dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return ""
    return f"{dt.day} {_FR_MONTHS[dt.month - 1]}"


def _decode_b64(data: str) -> str:
    """Decode Gmail's base64url body data (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_part(parts: list[dict[str, Any]] | None, mime_type: str) -> str | None:
    """Depth-first search for the first part of mime_type with body data."""
    if not parts:
        return None
    for part in parts:
        data = part.get("body", {}).get("data")
        if part.get("mimeType") == mime_type and data:
            return _decode_b64(data)
        nested = _find_part(part.get("parts"), mime_type)
        if nested:
            return nested
    return None


def _extract_body(payload: dict[str, Any]) -> str:
    """HTML preferred, then plain text, then the top-level body."""
    parts = payload.get("parts")
    body = _find_part(parts, "text/html") or _find_part(parts, "text/plain") or ""
    if not body and payload.get("body", {}).get("data"):
        body = _decode_b64(payload["body"]["data"])
    return body


def _attachment_refs(parts: list[dict[str, Any]] | None) -> list[dict[str, str]]:
    """Collect {filename, mime_type, attachment_id} for every attachment part."""
    refs: list[dict[str, str]] = []
    for part in parts or []:
        attachment_id = part.get("body", {}).get("attachmentId")
        if part.get("filename") and attachment_id:
            refs.append(
                {
                    "filename": part["filename"],
                    "mime_type": part.get("mimeType", ""),
                    "attachment_id": attachment_id,
                }
            )
        refs.extend(_attachment_refs(part.get("parts")))
    return refs


def _parse_summary(msg: dict[str, Any]) -> EmailSummary:
    """Parse a Gmail API metadata message into an EmailSummary."""
    payload = msg.get("payload", {})
    headers = payload.get("headers", [])
    date = _header(headers, "Date")
    labels = msg.get("labelIds", [])
    return EmailSummary(
        id=msg.get("id", ""),
        subject=_header(headers, "Subject", "No Subject"),
        sender=_display_sender(_header(headers, "From", "Unknown Sender")),
        date=date,
        date_label=_format_date_label(date),
        preview=msg.get("snippet", ""),
        has_attachment=any(p.get("filename") for p in payload.get("parts", [])),
        is_unread="UNREAD" in labels,
        is_starred="STARRED" in labels,
    )


def _parse_detail(msg: dict[str, Any]) -> EmailDetail:
    """Parse a Gmail API full message into an EmailDetail (no attachment data)."""
    payload = msg.get("payload") or {}
    headers = payload.get("headers", [])
    return EmailDetail(
        id=msg.get("id", ""),
        subject=_header(headers, "Subject", "No Subject"),
        sender=_header(headers, "From"),
        to=_header(headers, "To"),
        body=_extract_body(payload),
    )


class GmailClient:
    """Gmail API client for production use.

    Every call asks the token provider for a valid access token first, so
    refresh happens just-in-time. A 401 from Gmail means the token is dead
    and surfaces as Unauthenticated.
    """

    def __init__(
        self, auth: AccessTokenProvider, page_size: int = GMAIL_PAGE_SIZE
    ) -> None:
        self._auth = auth
        self._page_size = page_size
        self._service: Any = None
        self._service_token = ""

    async def _get_service(self) -> Any:
        token = await self._auth.get_valid_access_token()
        if self._service is None or token != self._service_token:
            from google.oauth2.credentials import (
                Credentials,  # type: ignore[import-untyped]
            )
            from googleapiclient.discovery import build  # type: ignore[import-untyped]

            self._service = build(
                "gmail",
                "v1",
                credentials=Credentials(token=token),
                cache_discovery=False,
            )
            self._service_token = token
        return self._service

    async def _execute(self, call: Any) -> Any:
        from googleapiclient.errors import HttpError  # type: ignore[import-untyped]

        try:
            return await asyncio.to_thread(call.execute)
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            if status == 401 or "invalid_grant" in str(e):
                raise Unauthenticated(
                    "Gmail rejected the access token. Please re-authenticate."
                ) from e
            if status == 404:
                raise MessageNotFound(str(e)) from e
            if status == 400:
                raise InvalidMailRequest(str(e)) from e
            raise MailError(str(e)) from e

    async def list_messages(
        self, query: str = "", page_token: str | None = None
    ) -> MessagePage:
        service = await self._get_service()
        opts: dict[str, Any] = {
            "userId": "me",
            "labelIds": ["INBOX"],
            "maxResults": self._page_size,
            "q": query,
        }
        if page_token:
            opts["pageToken"] = page_token
        listing = await self._execute(service.users().messages().list(**opts))

        # Sequential: the discovery service's http object is not thread-safe.
        summaries = []
        for ref in listing.get("messages", []):
            msg = await self._execute(
                service.users()
                .messages()
                .get(
                    userId="me",
                    id=ref["id"],
                    format="metadata",
                    metadataHeaders=["Subject", "From", "Date"],
                )
            )
            summaries.append(_parse_summary(msg))
        return MessagePage(
            messages=summaries,
            next_page_token=listing.get("nextPageToken"),
        )

    async def get_message(self, message_id: str) -> EmailDetail:
        service = await self._get_service()
        msg = await self._execute(
            service.users().messages().get(userId="me", id=message_id, format="full")
        )
        detail = _parse_detail(msg)
        detail.id = detail.id or message_id

        for ref in _attachment_refs((msg.get("payload") or {}).get("parts")):
            try:
                data = await self._execute(
                    service.users()
                    .messages()
                    .attachments()
                    .get(userId="me", messageId=message_id, id=ref["attachment_id"])
                )
            except MailError:
                logger.warning(
                    "Error fetching attachment %s of %s",
                    ref["filename"],
                    message_id,
                    exc_info=True,
                )
                continue
            detail.attachments.append(
                MailAttachment(
                    filename=ref["filename"],
                    mime_type=ref["mime_type"],
                    size=data.get("size"),
                    data=data.get("data"),
                )
            )
        return detail

    async def delete_messages(self, ids: list[str]) -> int:
        service = await self._get_service()
        await self._execute(
            service.users().messages().batchDelete(userId="me", body={"ids": ids})
        )
        return len(ids)
