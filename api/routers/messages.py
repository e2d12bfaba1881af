"""
Public send endpoints. Each request resolves the recipient, records a `queued` outbound
message and enqueues one delivery job; the delivery worker does the actual send.

Guards, in order: per-client rate limit, API key, WhatsApp connected.
Resolution: see `recipient_resolver`. Ambiguous group names are a 409 with candidates.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from context import AppContext, get_context
from recipient_resolver import AmbiguousRecipientError, RecipientError, resolve_recipient
from schemas import (
    ErrorResponse,
    SendDocumentRequest,
    SendImageRequest,
    SendResponse,
    SendTextRequest,
)
from security import limit_public, require_api_key, require_connected

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/send",
    tags=["send"],
    dependencies=[Depends(limit_public), Depends(require_api_key), Depends(require_connected)],
    responses={
        400: {"model": ErrorResponse, "description": "Invalid body or unresolved recipient"},
        401: {"model": ErrorResponse, "description": "Bad or missing x-api-key"},
        409: {"model": ErrorResponse, "description": "Group name matched several groups"},
        429: {"model": ErrorResponse, "description": "Rate limited"},
        503: {"model": ErrorResponse, "description": "WhatsApp not connected"},
    },
)


def resolve_or_http(ctx: AppContext, to: str) -> str:
    try:
        return resolve_recipient(to, ctx.contacts, ctx.groups, country_code=ctx.country_code)
    except AmbiguousRecipientError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": str(e), "code": e.code, "matches": e.matches},
        ) from None
    except RecipientError as e:
        raise HTTPException(status_code=400, detail={"error": str(e), "code": e.code}) from None


def _queue(ctx: AppContext, to: str, payload: dict[str, Any]) -> SendResponse:
    jid = resolve_or_http(ctx, to)
    job_id, msg_id = ctx.outbox.queue_message(jid, payload)
    logger.info("send queued jid=%s job_id=%s msg_id=%s", jid, job_id, msg_id)
    return SendResponse(to=to, jid=jid, job_id=job_id, msg_id=msg_id)


@router.post("", response_model=SendResponse, summary="Queue a text message")
async def send_text(body: SendTextRequest, ctx: AppContext = Depends(get_context)) -> SendResponse:
    return _queue(ctx, body.to, {"text": body.message})


@router.post("/image", response_model=SendResponse, summary="Queue an image by URL")
async def send_image(body: SendImageRequest, ctx: AppContext = Depends(get_context)) -> SendResponse:
    payload = {"image": {"url": body.image_url}, "caption": body.caption}
    return _queue(ctx, body.to, payload)


@router.post("/document", response_model=SendResponse, summary="Queue a document by URL")
async def send_document(body: SendDocumentRequest, ctx: AppContext = Depends(get_context)) -> SendResponse:
    payload = {
        "document": {"url": body.document_url},
        "mimetype": body.mimetype or "application/octet-stream",
        "file_name": body.file_name or "file",
    }
    return _queue(ctx, body.to, payload)
