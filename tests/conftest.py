"""Shared test fixtures for inbox-assistant tests."""

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator, Callable, Iterable

import httpx
import pytest

from inbox_assistant.mail.auth import StaticTokenProvider
from inbox_assistant.mail.client import MemoryMailClient
from inbox_assistant.mail.models import EmailDetail, MailAttachment
from inbox_assistant.schema import AssistantConfig
from inbox_assistant.server.relay import InferenceRelay
from inbox_assistant.server.services import init_services, reset_services

Handler = Callable[[httpx.Request], httpx.Response]


def chunked(
    chunks: Iterable[bytes], error: Exception | None = None
) -> AsyncIterator[bytes]:
    """Async byte source for httpx.Response(content=...).

    Yields each chunk in turn, then raises ``error`` if one is given
    (simulates a connection dropped mid-body).
    """

    async def _gen() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk
        if error is not None:
            raise error

    return _gen()


def make_relay(handler: Handler) -> InferenceRelay:
    """InferenceRelay whose upstream is an in-process MockTransport."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return InferenceRelay(http_client=client)


def ollama_lines(*contents: str) -> bytes:
    """Ollama-style NDJSON body carrying the given message contents."""
    lines = [
        json.dumps({"message": {"role": "assistant", "content": c}, "done": False})
        for c in contents
    ]
    done = {"message": {"role": "assistant", "content": ""}, "done": True}
    lines.append(json.dumps(done))
    return ("\n".join(lines) + "\n").encode()


def make_email(
    email_id: str = "msg-1",
    sender: str = "Alice <alice@example.com>",
    subject: str = "Réunion budget",
    body: str = "Pouvons-nous parler du budget jeudi ?",
    attachments: list[MailAttachment] | None = None,
) -> EmailDetail:
    return EmailDetail(
        id=email_id,
        subject=subject,
        sender=sender,
        to="me@example.com",
        body=body,
        attachments=attachments or [],
    )


@pytest.fixture(autouse=True)
def _clean_services():
    """Every test starts and ends without shared services."""
    reset_services()
    yield
    reset_services()


@pytest.fixture
def mailbox() -> MemoryMailClient:
    box = MemoryMailClient(page_size=2)
    box.inject_email(make_email("e1", subject="Budget"))
    box.inject_email(
        make_email(
            "e2",
            sender="Bob <bob@example.com>",
            subject="Facture",
            body="Voici la facture.",
            attachments=[
                MailAttachment(
                    filename="facture.pdf",
                    mime_type="application/pdf",
                    data="JVBERi0",
                )
            ],
        )
    )
    box.inject_email(make_email("e3", subject="Déjeuner"), unread=False)
    return box


@pytest.fixture
def upstream_body() -> list[bytes]:
    """Mutable upstream script: the chunks the fake Ollama will send."""
    return [ollama_lines("Bonj", "our")]


@pytest.fixture
def relay(upstream_body: list[bytes]) -> InferenceRelay:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=chunked(list(upstream_body)))

    return make_relay(handler)


@pytest.fixture
async def app_client(relay: InferenceRelay, mailbox: MemoryMailClient):
    """Async httpx client wired to a server with the assistant and mail apps."""
    import inbox_assistant.server.apps.assistant as assistant_app
    from inbox_assistant.server.app import AssistantServer
    from inbox_assistant.server.apps.mail import manifest as mail_manifest

    init_services(
        relay=relay,
        mail=mailbox,
        auth=StaticTokenProvider(),
        config=AssistantConfig(),
    )
    assistant_app.initialize()

    server = AssistantServer()
    server.register_app(assistant_app.manifest)
    server.register_app(mail_manifest)

    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client



@pytest.fixture(autouse=True)
async def _cancel_stray_tasks():
    """Cancel any tasks that leaked from a test."""
    yield
    await asyncio.sleep(0)
    current = asyncio.current_task()
    for task in asyncio.all_tasks():
        if task is not current and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(asyncio.shield(task), timeout=0.1)
