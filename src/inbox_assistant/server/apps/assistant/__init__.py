"""Assistant App - streaming relay and chat panel backend.

Registers FastAPI routes for:
- The inference relay (/generate): prompt + email content + attachments in,
  normalized plain text streamed out
- The chat panel (/chat/*): per-email conversation histories, free-form
  questions and batch actions over selected emails

Architecture:
    POST /generate -> InferenceRelay -> Ollama /api/chat
        -> FrameDecoder -> text/plain stream

    POST /chat/actions -> ActionDispatcher -> InferenceRelay.stream()
        -> ConversationStore.append_fragment()

Error boundary for /generate:
    400 malformed body, 401 no usable Gmail token, 502 upstream failure
    before streaming. Once the body has started, failures are inline text.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from inbox_assistant.mail.auth import Unauthenticated
from inbox_assistant.mail.client import MailError, MessageNotFound
from inbox_assistant.mail.models import EmailDetail
from inbox_assistant.server.app import AppManifest
from inbox_assistant.server.relay import (
    BadRequest,
    GenerationRequest,
    InferenceRelay,
    UpstreamError,
)
from inbox_assistant.server.services import get_services

from .conversations import ConversationStore
from .dispatcher import ActionDispatcher, DispatchInProgress, TextGenerator, parse_intent

logger = logging.getLogger(__name__)

router = APIRouter()

# --- Global app state (initialized on startup) ---

_state: dict[str, Any] = {}
_state_lock = threading.Lock()


def _get_state() -> dict[str, Any]:
    """Get the initialized app state."""
    with _state_lock:
        if not _state:
            raise RuntimeError("Assistant not initialized. Call on_startup() first.")
        return _state


def initialize(
    store: ConversationStore | None = None,
    generator: TextGenerator | None = None,
) -> dict[str, Any]:
    """Initialize the chat components.

    Separated from on_startup() so tests can inject a store or a fake
    generator.

    Generator resolution order:
    1. Explicit generator parameter (tests)
    2. Shared server relay (production)
    3. Fallback: own InferenceRelay with default config (standalone)
    """
    if store is None:
        store = ConversationStore()

    if generator is None:
        try:
            generator = get_services().relay
        except RuntimeError:
            generator = InferenceRelay()
            logger.info("Assistant using own inference relay (standalone mode)")

    state = {
        "store": store,
        "dispatcher": ActionDispatcher(store, generator),
        "current_email": None,
    }
    with _state_lock:
        _state.clear()
        _state.update(state)
    return state


async def on_startup() -> None:
    initialize()
    logger.info("Assistant initialized")


async def on_shutdown() -> None:
    with _state_lock:
        _state.clear()
    logger.info("Assistant shut down")


def _error(status: int, message: str, /, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise BadRequest("Request body must be valid JSON") from None


# --- Relay ---


@router.post("/generate", response_model=None)
async def generate(request: Request) -> Response:
    """Relay one generation upstream and stream the decoded text back."""
    try:
        generation = GenerationRequest.from_payload(await _json_body(request))
    except BadRequest as e:
        return _error(400, str(e))

    services = get_services()
    try:
        await services.auth.get_valid_access_token()
    except Unauthenticated as e:
        return _error(401, str(e))

    try:
        stream = await services.relay.open(generation)
    except UpstreamError as e:
        return _error(
            502, "Inference server error", status=e.status, details=e.details
        )

    return StreamingResponse(
        stream, media_type=stream.media_type, headers=stream.headers
    )


# --- Chat panel ---


@router.get("/chat")
async def get_chat() -> dict[str, Any]:
    """The active conversation."""
    store: ConversationStore = _get_state()["store"]
    return {"active_key": store.active_key, "conversation": store.active.to_dict()}


@router.post("/chat/context", response_model=None)
async def switch_context(request: Request) -> JSONResponse:
    """Open an email's conversation (or the default one with no email_id)."""
    try:
        body = await _json_body(request)
    except BadRequest as e:
        return _error(400, str(e))
    email_id = body.get("email_id") if isinstance(body, dict) else None

    state = _get_state()
    store: ConversationStore = state["store"]
    email: EmailDetail | None = None
    if email_id:
        try:
            email = await get_services().mail.get_message(email_id)
        except Unauthenticated as e:
            return _error(401, str(e))
        except MessageNotFound as e:
            return _error(404, str(e))
        except MailError as e:
            logger.warning("Could not load email %s: %s", email_id, e)
            return _error(500, "Failed to fetch email", details=str(e))

    conversation = store.switch_context(email_id, email)
    with _state_lock:
        _state["current_email"] = email
    return JSONResponse(
        content={"active_key": store.active_key, "conversation": conversation.to_dict()}
    )


@router.delete("/chat/{key}", response_model=None)
async def discard_conversation(key: str) -> JSONResponse:
    """Forget one conversation's history."""
    store: ConversationStore = _get_state()["store"]
    if not store.discard(key):
        return _error(404, f"Unknown conversation: {key}")
    with _state_lock:
        current = _state.get("current_email")
        if current is not None and current.id == key:
            _state["current_email"] = None
    return JSONResponse(content={"discarded": key, "active_key": store.active_key})


@router.post("/chat/ask", response_model=None)
async def ask(request: Request) -> JSONResponse:
    """Free-form question against the active conversation's email."""
    try:
        body = await _json_body(request)
    except BadRequest as e:
        return _error(400, str(e))
    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, str) or not message.strip():
        return _error(400, "message is required")

    state = _get_state()
    dispatcher: ActionDispatcher = state["dispatcher"]
    current = state.get("current_email")
    if current is not None and current.id != dispatcher.store.active_key:
        current = None

    try:
        result = await dispatcher.ask(message.strip(), current)
    except DispatchInProgress as e:
        return _error(409, str(e))
    return JSONResponse(content=result.to_dict())


@router.post("/chat/actions", response_model=None)
async def run_action(request: Request) -> JSONResponse:
    """Batch action (summary, reply, schedule, archive-suggest) over emails."""
    try:
        body = await _json_body(request)
        if not isinstance(body, dict):
            raise BadRequest("Request body must be a JSON object")
        intent = parse_intent(body.get("intent") or "")
    except (BadRequest, ValueError) as e:
        return _error(400, str(e))

    email_ids = body.get("email_ids") or []
    if not isinstance(email_ids, list) or not email_ids:
        return _error(400, "email_ids must be a non-empty list")

    dispatcher: ActionDispatcher = _get_state()["dispatcher"]
    if dispatcher.store.active.is_pending:
        return _error(409, str(DispatchInProgress(dispatcher.store.active_key)))

    mail = get_services().mail
    try:
        emails = [await mail.get_message(str(i)) for i in email_ids]
    except Unauthenticated as e:
        return _error(401, str(e))
    except MessageNotFound as e:
        return _error(404, str(e))
    except MailError as e:
        logger.warning("Could not load selected emails: %s", e)
        return _error(500, "Failed to fetch emails", details=str(e))

    try:
        result = await dispatcher.dispatch(intent, emails)
    except DispatchInProgress as e:
        return _error(409, str(e))
    return JSONResponse(content=result.to_dict())


# --- Manifest ---


manifest = AppManifest(
    name="assistant",
    description="Streaming inference relay and per-email chat panel",
    router=router,
    on_startup=on_startup,
    on_shutdown=on_shutdown,
)
