from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import sessionmaker

from order_board.auth import Principal
from order_board.db import get_session_factory
from order_board.dependencies import tenant_principal
from order_board.services.change_feed_service import ChangeFeedSubscriber, format_sse

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/tenants/{tenant_id}', tags=['events'])


async def event_frames(request: Request, subscriber: ChangeFeedSubscriber) -> AsyncIterator[str]:
    """SSE frames from ``subscriber`` until the client goes away."""
    async with aclosing(subscriber.events()) as events:
        async for event in events:
            if await request.is_disconnected():
                break
            yield format_sse(event)


@router.get('/events')
async def stream_events(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(tenant_principal),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    subscriber = ChangeFeedSubscriber.from_settings(tenant_id=tenant_id, session_factory=session_factory)
    logger.info('Change feed subscriber %s connected for tenant %s', principal.username, tenant_id)

    async def event_stream():
        async for frame in event_frames(request, subscriber):
            yield frame
        logger.info('Change feed subscriber %s disconnected for tenant %s', principal.username, tenant_id)

    return StreamingResponse(
        event_stream(),
        media_type='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
