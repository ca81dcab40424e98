"""Action dispatcher - turns chat-panel intents into streamed generations.

An intent plus a selection of emails is synthesized into one
GenerationRequest (prompt, concatenated email content, flattened
attachments) and handed to a TextGenerator. The resulting fragments are
appended to the conversation store as they arrive.

Lifecycle of one dispatch:
    begin_assistant_message()
        -> append_fragment() per fragment
        -> fail_message() on error or empty output
        -> complete_message()
        -> on_complete(result), exactly once
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Sequence
from enum import Enum
from typing import Protocol

import httpx

from inbox_assistant.mail.models import EmailDetail, MailAttachment
from inbox_assistant.server.relay import (
    Attachment,
    BadRequest,
    GenerationRequest,
    UpstreamError,
)

from .client import RelayHTTPError
from .conversations import ConversationStore
from .models import DispatchResult

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_ERROR = "réponse vide du modèle"
INTERRUPTED_ERROR = "génération interrompue"

_GENERATION_ERRORS: tuple[type[BaseException], ...] = (
    BadRequest,
    UpstreamError,
    RelayHTTPError,
    httpx.HTTPError,
    OSError,
)


class Intent(str, Enum):
    SUMMARY = "summary"
    REPLY = "reply"
    SCHEDULE = "schedule"
    ARCHIVE = "archive-suggest"


_INTENT_ALIASES = {
    "planifier": Intent.SCHEDULE,
    "archiver": Intent.ARCHIVE,
    "archive": Intent.ARCHIVE,
}


def parse_intent(raw: str) -> Intent:
    """Parse an intent name (case-insensitive, French aliases accepted)."""
    value = (raw or "").strip().lower()
    if value in _INTENT_ALIASES:
        return _INTENT_ALIASES[value]
    try:
        return Intent(value)
    except ValueError:
        raise ValueError(f"Unknown intent: {raw!r}") from None


class DispatchInProgress(RuntimeError):
    """The target conversation already has an in-flight assistant message."""

    def __init__(self, context_key: str) -> None:
        self.context_key = context_key
        super().__init__(f"A generation is already in progress for {context_key}")


class TextGenerator(Protocol):
    """Anything that turns a GenerationRequest into streamed text."""

    def stream(self, request: GenerationRequest) -> AsyncIterator[str]: ...


# --- Request synthesis ---


def _attachments(email: EmailDetail) -> list[Attachment]:
    return [_to_relay_attachment(a) for a in email.attachments]


def _to_relay_attachment(attachment: MailAttachment) -> Attachment:
    return Attachment(data=attachment.data, filename=attachment.filename)


def _segment(index: int, email: EmailDetail) -> str:
    header = f"--- Email {index} - From: {email.sender} Subject: {email.subject}"
    return f"{header}\n\n{email.body}"


def _single_prompt(intent: Intent, email: EmailDetail) -> str:
    if intent is Intent.SUMMARY:
        return (
            "Please provide a concise summary (in French) of the following email:"
            f"\n\nSubject: {email.subject}\nFrom: {email.sender}"
        )
    if intent is Intent.REPLY:
        return (
            f"Draft a polite reply in French to this email from {email.sender} "
            f'about "{email.subject}". Keep it short and professional.'
        )
    if intent is Intent.SCHEDULE:
        return (
            "Analyze this email and propose a meeting time and brief agenda "
            "in French."
        )
    return (
        "Suggest an archive folder name and short tags (in French) for this "
        "email based on its content."
    )


def _group_prompt(intent: Intent, count: int) -> str:
    if intent is Intent.SUMMARY:
        return (
            f"Please provide a concise summary (in French) of these {count} "
            "emails. For each, give one-line summary and recommended action."
        )
    return f"Draft a short group reply in French addressing these {count} emails."


def build_action_request(
    intent: Intent, emails: Sequence[EmailDetail]
) -> GenerationRequest:
    """Synthesize the generation request for an intent over a selection.

    schedule and archive-suggest only look at the first selected email.
    Raises ValueError on an empty selection.
    """
    if not emails:
        raise ValueError("No emails selected")

    if len(emails) == 1 or intent in (Intent.SCHEDULE, Intent.ARCHIVE):
        email = emails[0]
        return GenerationRequest(
            prompt=_single_prompt(intent, email),
            email_content=email.body,
            attachments=_attachments(email),
        )

    return GenerationRequest(
        prompt=_group_prompt(intent, len(emails)),
        email_content="\n\n".join(
            _segment(i, email) for i, email in enumerate(emails, start=1)
        ),
        attachments=[a for email in emails for a in _attachments(email)],
    )


def build_ask_request(
    text: str, current_email: EmailDetail | None = None
) -> GenerationRequest:
    """Free-form question, with the open email's body as context.

    Attachments are only sent with the explicit actions, never with a
    free-form question.
    """
    if current_email is None:
        return GenerationRequest(prompt=text)
    return GenerationRequest(prompt=text, email_content=current_email.body)


# --- Dispatch ---


class ActionDispatcher:
    """Runs generations against the active conversation of a store.

    One dispatch per conversation at a time: a second dispatch while the
    active conversation has a pending message raises DispatchInProgress
    before anything is appended.
    """

    def __init__(self, store: ConversationStore, generator: TextGenerator) -> None:
        self._store = store
        self._generator = generator

    @property
    def store(self) -> ConversationStore:
        return self._store

    async def dispatch(
        self,
        intent: Intent,
        emails: Sequence[EmailDetail],
        on_complete: Callable[[DispatchResult], None] | None = None,
    ) -> DispatchResult:
        """Run a batch action over the selected emails."""
        self._check_idle()
        request = build_action_request(intent, emails)
        logger.info(
            "Dispatching %s over %d email(s)",
            intent.value,
            len(emails),
            extra={"intent": intent.value, "context_key": self._store.active_key},
        )
        return await self._run(request, on_complete)

    async def ask(
        self,
        text: str,
        current_email: EmailDetail | None = None,
        on_complete: Callable[[DispatchResult], None] | None = None,
    ) -> DispatchResult:
        """Record the user's question, then stream the answer."""
        self._check_idle()
        self._store.append_user_message(text)
        return await self._run(build_ask_request(text, current_email), on_complete)

    def _check_idle(self) -> None:
        active = self._store.active
        if active.is_pending:
            raise DispatchInProgress(active.key)

    async def _run(
        self,
        request: GenerationRequest,
        on_complete: Callable[[DispatchResult], None] | None,
    ) -> DispatchResult:
        context_key = self._store.active_key
        message_id = self._store.begin_assistant_message()
        error: str | None = INTERRUPTED_ERROR
        received = False
        try:
            async for fragment in self._generator.stream(request):
                if fragment:
                    received = True
                    self._store.append_fragment(message_id, fragment)
            error = None if received else EMPTY_OUTPUT_ERROR
        except _GENERATION_ERRORS as e:
            logger.warning(
                "Generation for %s failed: %s",
                context_key,
                e,
                extra={"context_key": context_key},
            )
            error = str(e)
        finally:
            # Also reached on cancellation, so the pending marker never leaks.
            result = self._finish(message_id, context_key, error)
            if on_complete is not None:
                on_complete(result)
        return result

    def _finish(
        self, message_id: str, context_key: str, error: str | None
    ) -> DispatchResult:
        if error is not None:
            self._store.fail_message(message_id, error)
        self._store.complete_message(message_id)
        message = self._store.get_message(message_id)
        return DispatchResult(
            message_id=message_id,
            context_key=context_key,
            text=message.text if message is not None else "",
            error=error,
        )
