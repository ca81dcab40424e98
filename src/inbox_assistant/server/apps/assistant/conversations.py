"""Conversation store for the chat panel.

Provides ConversationStore: an in-memory mapping from context key (the open
email's id, or DEFAULT_CONTEXT_KEY when no email is open) to an ordered
message history, plus the single "active" pointer.

Invariants:
- At most one Conversation per key; messages keep insertion order.
- Switching context never mutates inactive conversations.
- Streamed fragments target the message id returned by
  begin_assistant_message(), not whatever conversation is active when the
  fragment arrives, so a context switch mid-stream cannot corrupt another
  conversation.

Thread safety: none needed. All mutations happen on the event loop and
never await.
"""

from __future__ import annotations

import itertools
import logging

from inbox_assistant.conventions import DEFAULT_CONTEXT_KEY
from inbox_assistant.mail.models import EmailDetail

from .models import Conversation, Message, Role

logger = logging.getLogger(__name__)

DEFAULT_GREETING = (
    "Bonjour! Je suis votre assistant intelligent Orange. "
    "Comment puis-je vous aider aujourd'hui?"
)


def greeting_for(key: str, email: EmailDetail | None = None) -> str:
    """Deterministic first assistant message for a new conversation."""
    if email is not None:
        return (
            f"Vous consultez l'email de {email.sender} concernant "
            f'"{email.subject}". Comment puis-je vous aider avec cet email?'
        )
    if key == DEFAULT_CONTEXT_KEY:
        return DEFAULT_GREETING
    return f"Vous consultez l'email {key}. Comment puis-je vous aider avec cet email?"


class ConversationStore:
    """Per-context message histories with one active conversation.

    The default (no email) conversation is created and activated on
    construction so there is always an active conversation.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        # message_id -> owning conversation
        self._owners: dict[str, Conversation] = {}
        self._ids = itertools.count(1)
        self._active_key = DEFAULT_CONTEXT_KEY
        self.switch_context(DEFAULT_CONTEXT_KEY)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    @property
    def active_key(self) -> str:
        return self._active_key

    @property
    def active(self) -> Conversation:
        return self._conversations[self._active_key]

    def switch_context(
        self, key: str | None = None, email: EmailDetail | None = None
    ) -> Conversation:
        """Activate the conversation for key, creating it on first use.

        An existing conversation is returned as-is (no new greeting).
        """
        key = key or DEFAULT_CONTEXT_KEY
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = Conversation(key=key)
            self._conversations[key] = conversation
            self._add(conversation, "assistant", greeting_for(key, email))
            logger.debug("Created conversation %s", key)
        self._active_key = key
        return conversation

    def get(self, key: str) -> Conversation | None:
        return self._conversations.get(key)

    def keys(self) -> list[str]:
        return list(self._conversations)

    def discard(self, key: str) -> bool:
        """Forget a conversation. Returns False if the key is unknown.

        Discarding the active conversation falls back to the default one.
        """
        conversation = self._conversations.pop(key, None)
        if conversation is None:
            return False
        for message in conversation.messages:
            self._owners.pop(message.id, None)
        if key == self._active_key:
            self.switch_context(DEFAULT_CONTEXT_KEY)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append_user_message(self, text: str) -> str:
        """Append a user turn to the active conversation. Returns its id."""
        return self._add(self.active, "user", text).id

    def begin_assistant_message(self) -> str:
        """Start an empty, in-flight assistant turn in the active conversation.

        Must be called exactly once before streaming a generation.
        """
        conversation = self.active
        message = self._add(conversation, "assistant", "", complete=False)
        conversation.pending_message_id = message.id
        return message.id

    def append_fragment(self, message_id: str, text: str) -> None:
        """Concatenate text onto an in-flight message, in place.

        No-op if the message is unknown, its conversation was discarded,
        or the message is already complete.
        """
        message = self._find(message_id)
        if message is None or message.complete:
            logger.debug("Dropping fragment for inactive message %s", message_id)
            return
        message.text += text

    def complete_message(self, message_id: str) -> None:
        """Freeze a message and clear its conversation's pending marker."""
        conversation = self._owners.get(message_id)
        message = self._find(message_id)
        if conversation is None or message is None:
            return
        message.complete = True
        if conversation.pending_message_id == message_id:
            conversation.pending_message_id = None

    def fail_message(self, message_id: str, error: str) -> None:
        """Resolve a message to an inline error and complete it.

        Text already streamed into the message is kept; the error follows it.
        """
        message = self._find(message_id)
        if message is None:
            return
        if not message.complete:
            if message.text:
                message.text += f"\nErreur: {error}"
            else:
                message.text = f"Erreur: {error}"
        self.complete_message(message_id)

    def get_message(self, message_id: str) -> Message | None:
        return self._find(message_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _add(
        self,
        conversation: Conversation,
        role: Role,
        text: str,
        *,
        complete: bool = True,
    ) -> Message:
        message = Message(
            id=f"msg-{next(self._ids)}",
            role=role,
            text=text,
            complete=complete,
        )
        conversation.messages.append(message)
        self._owners[message.id] = conversation
        return message

    def _find(self, message_id: str) -> Message | None:
        conversation = self._owners.get(message_id)
        if conversation is None:
            return None
        if self._conversations.get(conversation.key) is not conversation:
            return None
        return conversation.find(message_id)
