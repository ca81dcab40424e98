"""Data models for the mail collaborator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class MailAttachment:
    """An attachment as fetched from Gmail (data is base64url)."""

    filename: str
    mime_type: str = ""
    size: int | None = None
    data: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "data": self.data,
        }


@dataclass
class EmailSummary:
    """One row of the inbox list."""

    id: str
    subject: str
    sender: str
    date: str = ""
    date_label: str = ""  # e.g. "12 janv."
    preview: str = ""
    has_attachment: bool = False
    is_unread: bool = False
    is_starred: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "sender": self.sender,
            "date": self.date,
            "timestamp": self.date_label,
            "preview": self.preview,
            "hasAttachment": self.has_attachment,
            "isUnread": self.is_unread,
            "isStarred": self.is_starred,
        }


@dataclass
class EmailDetail:
    """A fully fetched message: the shape generation requests are built from."""

    id: str
    subject: str
    sender: str
    to: str = ""
    body: str = ""
    attachments: list[MailAttachment] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "from": self.sender,
            "to": self.to,
            "body": self.body,
            "attachments": [a.to_dict() for a in self.attachments],
        }


@dataclass
class MessagePage:
    """One page of the inbox list."""

    messages: list[EmailSummary]
    next_page_token: str | None = None
