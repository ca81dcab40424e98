"""Tests for the action dispatcher: intent parsing, prompt synthesis,
attachment flattening, and the dispatch lifecycle against the store."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import httpx
import pytest

from conftest import chunked, make_email, make_relay
from inbox_assistant.conventions import STREAM_ERROR_MARKER
from inbox_assistant.mail.models import MailAttachment
from inbox_assistant.server.apps.assistant.client import RelayHTTPError
from inbox_assistant.server.apps.assistant.conversations import ConversationStore
from inbox_assistant.server.apps.assistant.dispatcher import (
    EMPTY_OUTPUT_ERROR,
    ActionDispatcher,
    DispatchInProgress,
    Intent,
    build_action_request,
    build_ask_request,
    parse_intent,
)
from inbox_assistant.server.apps.assistant.models import DispatchResult
from inbox_assistant.server.relay import GenerationRequest, UpstreamError


class FakeGenerator:
    """Scripted TextGenerator recording every request it receives."""

    def __init__(
        self, fragments: list[str] | None = None, error: Exception | None = None
    ) -> None:
        self.fragments = fragments or []
        self.error = error
        self.requests: list[GenerationRequest] = []
        self.release: asyncio.Event | None = None

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        for fragment in self.fragments:
            if self.release is not None:
                await self.release.wait()
            yield fragment
        if self.error is not None:
            raise self.error


def _att(name: str) -> MailAttachment:
    return MailAttachment(filename=name, data=f"data-{name}")


# ===================================================================
# Intents
# ===================================================================


class TestParseIntent:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("summary", Intent.SUMMARY),
            ("REPLY", Intent.REPLY),
            ("schedule", Intent.SCHEDULE),
            ("planifier", Intent.SCHEDULE),
            ("archive-suggest", Intent.ARCHIVE),
            ("archiver", Intent.ARCHIVE),
            (" archive ", Intent.ARCHIVE),
        ],
    )
    def test_known(self, raw: str, expected: Intent) -> None:
        assert parse_intent(raw) is expected

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown intent"):
            parse_intent("translate")


# ===================================================================
# Request synthesis
# ===================================================================


class TestBuildActionRequest:
    def test_empty_selection(self) -> None:
        with pytest.raises(ValueError):
            build_action_request(Intent.SUMMARY, [])

    def test_single_summary(self) -> None:
        email = make_email(sender="Alice", subject="Budget", body="Corps")
        req = build_action_request(Intent.SUMMARY, [email])
        assert "summary" in req.prompt
        assert "French" in req.prompt
        assert "Subject: Budget" in req.prompt
        assert "From: Alice" in req.prompt
        assert req.email_content == "Corps"

    def test_single_reply_mentions_sender_and_subject(self) -> None:
        email = make_email(sender="Alice", subject="Budget")
        req = build_action_request(Intent.REPLY, [email])
        assert "reply" in req.prompt
        assert "Alice" in req.prompt
        assert '"Budget"' in req.prompt

    def test_single_email_attachments(self) -> None:
        email = make_email(attachments=[_att("a.png"), _att("b.pdf")])
        req = build_action_request(Intent.SUMMARY, [email])
        assert [a.filename for a in req.attachments] == ["a.png", "b.pdf"]
        assert req.attachments[0].data == "data-a.png"

    def test_multi_email_summary_segments_in_selection_order(self) -> None:
        first = make_email("e1", sender="Alice", subject="Budget", body="Corps A")
        second = make_email("e2", sender="Bob", subject="Facture", body="Corps B")
        req = build_action_request(Intent.SUMMARY, [second, first])

        assert "2 emails" in req.prompt
        header_b = "--- Email 1 - From: Bob Subject: Facture"
        header_a = "--- Email 2 - From: Alice Subject: Budget"
        assert header_b in req.email_content
        assert header_a in req.email_content
        assert req.email_content.index(header_b) < req.email_content.index(header_a)
        assert req.email_content.index("Corps B") < req.email_content.index(header_a)

    def test_multi_email_attachments_flattened_in_order(self) -> None:
        emails = [
            make_email("e1", attachments=[_att("1a"), _att("1b")]),
            make_email("e2"),
            make_email("e3", attachments=[_att("3a")]),
        ]
        req = build_action_request(Intent.REPLY, emails)
        assert [a.filename for a in req.attachments] == ["1a", "1b", "3a"]
        assert "group reply" in req.prompt

    @pytest.mark.parametrize("intent", [Intent.SCHEDULE, Intent.ARCHIVE])
    def test_single_only_intents_use_first_email(self, intent: Intent) -> None:
        emails = [
            make_email("e1", body="premier", attachments=[_att("x")]),
            make_email("e2", body="second", attachments=[_att("y")]),
        ]
        req = build_action_request(intent, emails)
        assert req.email_content == "premier"
        assert [a.filename for a in req.attachments] == ["x"]

    def test_schedule_prompt(self) -> None:
        req = build_action_request(Intent.SCHEDULE, [make_email()])
        assert "meeting" in req.prompt

    def test_archive_prompt(self) -> None:
        req = build_action_request(Intent.ARCHIVE, [make_email()])
        assert "folder" in req.prompt


class TestBuildAskRequest:
    def test_without_email(self) -> None:
        req = build_ask_request("Quel temps fait-il ?")
        assert req.prompt == "Quel temps fait-il ?"
        assert req.email_content == ""
        assert req.attachments == []

    def test_with_open_email_sends_body_only(self) -> None:
        email = make_email(body="Contenu", attachments=[_att("p.png")])
        req = build_ask_request("Résume", email)
        assert req.prompt == "Résume"
        assert req.email_content == "Contenu"
        assert req.attachments == []


# ===================================================================
# Dispatch lifecycle
# ===================================================================


class TestDispatch:
    async def test_streams_into_one_assistant_message(self) -> None:
        store = ConversationStore()
        dispatcher = ActionDispatcher(store, FakeGenerator(["Bonj", "our"]))

        result = await dispatcher.dispatch(Intent.SUMMARY, [make_email()])

        assert result.ok
        assert result.text == "Bonjour"
        msg = store.get_message(result.message_id)
        assert msg.role == "assistant"
        assert msg.text == "Bonjour"
        assert msg.complete
        assert not store.active.is_pending

    async def test_on_complete_called_exactly_once(self) -> None:
        calls: list[DispatchResult] = []
        dispatcher = ActionDispatcher(ConversationStore(), FakeGenerator(["x"]))
        result = await dispatcher.dispatch(
            Intent.REPLY, [make_email()], on_complete=calls.append
        )
        assert calls == [result]

    async def test_on_complete_called_once_on_failure(self) -> None:
        calls: list[DispatchResult] = []
        generator = FakeGenerator(error=UpstreamError(500, "boom"))
        dispatcher = ActionDispatcher(ConversationStore(), generator)
        result = await dispatcher.dispatch(
            Intent.REPLY, [make_email()], on_complete=calls.append
        )
        assert calls == [result]
        assert not result.ok

    async def test_upstream_error_becomes_inline_error(self) -> None:
        store = ConversationStore()
        generator = FakeGenerator(error=UpstreamError(None, "connection refused"))
        result = await ActionDispatcher(store, generator).dispatch(
            Intent.SUMMARY, [make_email()]
        )
        msg = store.get_message(result.message_id)
        assert msg.text.startswith("Erreur: ")
        assert "connection refused" in msg.text
        assert msg.complete
        assert result.text == msg.text

    async def test_relay_http_error(self) -> None:
        store = ConversationStore()
        generator = FakeGenerator(error=RelayHTTPError(401, "sign in"))
        result = await ActionDispatcher(store, generator).ask("hi")
        assert "401" in result.error

    async def test_empty_output_is_an_error(self) -> None:
        store = ConversationStore()
        result = await ActionDispatcher(store, FakeGenerator([])).dispatch(
            Intent.SUMMARY, [make_email()]
        )
        assert result.error == EMPTY_OUTPUT_ERROR
        assert store.get_message(result.message_id).text == (
            f"Erreur: {EMPTY_OUTPUT_ERROR}"
        )

    async def test_begin_before_generator_runs(self) -> None:
        store = ConversationStore()
        seen_pending: list[bool] = []

        class PendingCheck:
            async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
                seen_pending.append(store.active.is_pending)
                yield "ok"

        await ActionDispatcher(store, PendingCheck()).ask("hi")
        assert seen_pending == [True]

    async def test_ask_appends_user_then_assistant(self) -> None:
        store = ConversationStore()
        generator = FakeGenerator(["Réponse"])
        email = make_email("e1", body="Corps")
        store.switch_context("e1", email)

        await ActionDispatcher(store, generator).ask("Question ?", email)

        roles = [m.role for m in store.active.messages]
        assert roles == ["assistant", "user", "assistant"]
        assert store.active.messages[1].text == "Question ?"
        assert generator.requests[0].email_content == "Corps"

    async def test_generator_receives_synthesized_request(self) -> None:
        generator = FakeGenerator(["x"])
        emails = [make_email("e1", sender="A"), make_email("e2", sender="B")]
        await ActionDispatcher(ConversationStore(), generator).dispatch(
            Intent.SUMMARY, emails
        )
        assert generator.requests[0] == build_action_request(Intent.SUMMARY, emails)

    async def test_concurrent_dispatch_rejected(self) -> None:
        store = ConversationStore()
        generator = FakeGenerator(["a", "b"])
        generator.release = asyncio.Event()
        dispatcher = ActionDispatcher(store, generator)

        first = asyncio.create_task(dispatcher.dispatch(Intent.SUMMARY, [make_email()]))
        await asyncio.sleep(0)
        assert store.active.is_pending

        with pytest.raises(DispatchInProgress):
            await dispatcher.ask("encore ?")
        # The rejected ask left no user message behind.
        assert [m.role for m in store.active.messages] == ["assistant", "assistant"]

        generator.release.set()
        result = await first
        assert result.text == "ab"
        assert not store.active.is_pending

    async def test_other_context_not_blocked(self) -> None:
        store = ConversationStore()
        generator = FakeGenerator(["a"])
        generator.release = asyncio.Event()
        dispatcher = ActionDispatcher(store, generator)

        first = asyncio.create_task(dispatcher.ask("q1"))
        await asyncio.sleep(0)
        store.switch_context("e2")
        generator.release.set()
        second = await dispatcher.ask("q2")
        first_result = await first

        assert first_result.context_key != second.context_key
        assert store.get_message(first_result.message_id).text == "a"

    async def test_cancellation_resolves_pending_message(self) -> None:
        store = ConversationStore()
        generator = FakeGenerator(["never"])
        generator.release = asyncio.Event()
        calls: list[DispatchResult] = []

        task = asyncio.create_task(
            ActionDispatcher(store, generator).ask("q", on_complete=calls.append)
        )
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not store.active.is_pending
        assert len(calls) == 1
        assert store.active.messages[-1].text.startswith("Erreur: ")


class TestDispatchOverRelay:
    """Dispatcher wired to a real InferenceRelay with a fake upstream."""

    async def test_bonjour_split_mid_line(self) -> None:
        body = b'{"message":{"content":"Bonj"}}\n{"message":{"content":"our"}}\n'
        relay = make_relay(
            lambda r: httpx.Response(200, content=chunked([body[:7], body[7:]]))
        )
        store = ConversationStore()
        result = await ActionDispatcher(store, relay).dispatch(
            Intent.SUMMARY, [make_email()]
        )
        assert store.get_message(result.message_id).text == "Bonjour"

    async def test_mid_stream_drop_keeps_partial_answer(self) -> None:
        relay = make_relay(
            lambda r: httpx.Response(
                200,
                content=chunked(
                    [b'{"message":{"content":"Hello"}}\n'],
                    error=httpx.ReadError("reset"),
                ),
            )
        )
        store = ConversationStore()
        result = await ActionDispatcher(store, relay).ask("hi")
        msg = store.get_message(result.message_id)
        assert msg.text == "Hello" + STREAM_ERROR_MARKER
        assert msg.complete

    async def test_upstream_down(self) -> None:
        relay = make_relay(lambda r: httpx.Response(503, text="loading model"))
        store = ConversationStore()
        result = await ActionDispatcher(store, relay).ask("hi")
        assert "503" in store.get_message(result.message_id).text
