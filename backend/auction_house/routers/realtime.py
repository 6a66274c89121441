from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials

from auction_house.config import settings
from auction_house.models_sqlalchemy import SessionLocal
from auction_house.services.auth import resolve_caller, security
from auction_house.services.realtime import ChangeEvent, Subscription, change_feed
from auction_house.utils.logger import logger

router = APIRouter(prefix="/api/realtime", tags=["realtime"])


def format_sse(change: ChangeEvent) -> str:
    payload = jsonable_encoder(change.to_payload())
    return f"event: {change.type}\ndata: {json.dumps(payload)}\n\n"


async def change_stream(request: Request, subscription: Subscription, event: str = "*", filter: Optional[str] = None):
    """SSE frames for one subscription until the client disconnects."""

    try:
        yield f"event: subscribed\ndata: {json.dumps({'table': subscription.table, 'event': event, 'filter': filter})}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                change = await asyncio.wait_for(
                    subscription.get(), timeout=settings.REALTIME_KEEPALIVE_SECONDS
                )
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(change)
    finally:
        subscription.close()
        logger.info("Realtime stream closed for %s (subscription=%s)", subscription.table, subscription.id)


@router.get("/{table}")
async def stream_changes(
    table: str,
    request: Request,
    event: str = Query("*", description="INSERT, UPDATE, DELETE or *"),
    filter: Optional[str] = Query(None, description="Single equality predicate, e.g. id=eq.<uuid>"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Query(None, description="JWT token for SSE authentication"),
):
    """
    Stream row changes for one table using Server-Sent Events (SSE).

    Each event only signals that matching rows changed; clients re-fetch the
    state they display. Rows the caller cannot select are never sent.

    NOTE: This endpoint supports token query parameter for EventSource compatibility.
    The caller is resolved on a short-lived session that is closed before
    streaming starts, so open streams hold no pooled connection.
    """
    db = SessionLocal()
    try:
        caller = resolve_caller(db, credentials.credentials if credentials else token)
    finally:
        db.close()

    try:
        subscription = change_feed.subscribe(table, event=event, filter=filter, caller=caller)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return StreamingResponse(
        change_stream(request, subscription, event=event, filter=filter),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )
