"""Mail App - inbox browsing over the shared mail client.

Routes:
    GET    /emails        - one page of the inbox, filtered
    GET    /emails/{id}   - full message with body and attachments
    DELETE /emails        - batch delete {ids}

Filters (query string): subject, contains, singleDate, dateStart, dateEnd,
senders (comma separated), pageToken. They are translated into a Gmail
search query on top of the configured base query.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from inbox_assistant.mail.auth import Unauthenticated
from inbox_assistant.mail.client import InvalidMailRequest, MailError, MessageNotFound
from inbox_assistant.mail.query import MailFilter, build_query
from inbox_assistant.server.app import AppManifest, verify_api_key
from inbox_assistant.server.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


@router.get("/emails", response_model=None)
async def list_emails(request: Request) -> JSONResponse:
    """List inbox messages matching the filter form."""
    params = dict(request.query_params)
    services = get_services()
    try:
        query = build_query(
            MailFilter.from_params(params), base=services.config.mail.base_query
        )
    except ValueError as e:
        return _error(400, str(e))

    try:
        page = await services.mail.list_messages(
            query=query, page_token=params.get("pageToken") or None
        )
    except Unauthenticated as e:
        return _error(401, str(e))
    except InvalidMailRequest as e:
        return _error(400, str(e))
    except MailError as e:
        logger.warning("Inbox listing failed: %s", e)
        return _error(500, "Failed to fetch emails", details=str(e))
    except Exception as e:  # noqa: BLE001
        logger.warning("Inbox listing failed unexpectedly: %s", e, exc_info=True)
        return _error(500, str(e), type=type(e).__name__)

    return JSONResponse(
        content={
            "emails": [m.to_dict() for m in page.messages],
            "nextPageToken": page.next_page_token,
        }
    )


@router.get("/emails/{message_id}", response_model=None)
async def get_email(message_id: str) -> JSONResponse:
    """Full message detail including attachment data."""
    try:
        detail = await get_services().mail.get_message(message_id)
    except Unauthenticated as e:
        return _error(401, str(e))
    except MessageNotFound as e:
        return _error(404, str(e))
    except MailError as e:
        logger.warning("Fetching email %s failed: %s", message_id, e)
        return _error(500, "Failed to fetch email", details=str(e))
    except Exception as e:  # noqa: BLE001
        logger.warning("Fetching email failed unexpectedly: %s", e, exc_info=True)
        return _error(500, str(e), type=type(e).__name__)
    return JSONResponse(content=detail.to_dict())


@router.delete(
    "/emails", response_model=None, dependencies=[Depends(verify_api_key)]
)
async def delete_emails(request: Request) -> JSONResponse:
    """Delete the given message ids."""
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be valid JSON")

    ids = body.get("ids") if isinstance(body, dict) else None
    if not isinstance(ids, list) or not ids:
        return _error(400, "Invalid or empty ids array")

    try:
        deleted = await get_services().mail.delete_messages([str(i) for i in ids])
    except Unauthenticated as e:
        return _error(401, str(e))
    except MailError as e:
        logger.warning("Batch delete failed: %s", e)
        return _error(500, "Failed to delete emails", details=str(e))
    except Exception as e:  # noqa: BLE001
        logger.warning("Batch delete failed unexpectedly: %s", e, exc_info=True)
        return _error(500, str(e), type=type(e).__name__)

    logger.info("Deleted %d email(s)", deleted)
    return JSONResponse(content={"success": True, "deleted": deleted})


manifest = AppManifest(
    name="mail",
    description="Gmail inbox listing, detail and batch delete",
    router=router,
)
