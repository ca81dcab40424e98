"""Data models for the assistant chat panel."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Role = Literal["user", "assistant"]


@dataclass
class Message:
    """One turn in a conversation.

    An assistant message is created empty and grows by fragment appends
    until it is marked complete; after that its text never changes.
    """

    id: str
    role: Role
    text: str = ""
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    complete: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "created_at": self.created_at,
            "complete": self.complete,
        }


@dataclass
class Conversation:
    """Ordered message history for one context key (email id or sentinel)."""

    key: str
    messages: list[Message] = field(default_factory=list)
    pending_message_id: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.pending_message_id is not None

    def find(self, message_id: str) -> Message | None:
        for message in reversed(self.messages):
            if message.id == message_id:
                return message
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "pending": self.is_pending,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class DispatchResult:
    """Outcome of one dispatched generation, delivered once to the caller."""

    message_id: str
    context_key: str
    text: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "context_key": self.context_key,
            "text": self.text,
            "ok": self.ok,
            "error": self.error,
        }
