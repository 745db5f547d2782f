"""订阅变更推送（SSE），每个连接一条队列。"""

from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from entitlements.auth import AuthenticatedUser, get_current_user
from entitlements.services.subscription_events import SubscriptionChangeEvent, SubscriptionEventBroker
from entitlements.settings.config import get_settings

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

CHANGE_EVENT = "subscription_changed"


def _frame(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def stream_changes(
    broker: SubscriptionEventBroker,
    user_id: str,
    queue: "asyncio.Queue[Optional[SubscriptionChangeEvent]]",
    *,
    heartbeat_interval: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    try:
        yield _frame("ready", {"user_id": user_id})
        while True:
            if await is_disconnected():
                break
            try:
                item = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield _frame("heartbeat", {"user_id": user_id})
                continue

            if item is None:
                break
            yield _frame(CHANGE_EVENT, item.to_payload())
    finally:
        await broker.unsubscribe(user_id, queue)


@router.get("/events")
async def subscription_events(
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> StreamingResponse:
    broker: SubscriptionEventBroker = request.app.state.subscription_broker
    queue = await broker.subscribe(current_user.uid)
    heartbeat_interval = max(get_settings().event_stream_heartbeat_seconds, 0.5)

    return StreamingResponse(
        stream_changes(
            broker,
            current_user.uid,
            queue,
            heartbeat_interval=heartbeat_interval,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
