"""Keeps the per-user change stream open and invalidates the context cache on every event."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from entitlements.client.api_client import EntitlementApiClient, ServerEvent
from entitlements.client.context import EntitlementContext, EntitlementSession
from entitlements.errors import ChannelDisconnectedError, NotAuthenticatedError

logger = logging.getLogger(__name__)

CHANGE_EVENT = "subscription_changed"
READY_EVENT = "ready"

ChangeCallback = Callable[[dict[str, Any]], None]


class SubscriptionChangeListener:
    """后台任务：订阅变更流，断线指数退避重连。

    连接状态写回 ``ctx.channel_connected``；未连接期间网关每次都走核验路径。
    """

    def __init__(
        self,
        api: EntitlementApiClient,
        ctx: EntitlementContext,
        *,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
    ) -> None:
        self._api = api
        self._ctx = ctx
        self._initial_backoff = max(initial_backoff_seconds, 0.01)
        self._max_backoff = max(max_backoff_seconds, self._initial_backoff)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._session: Optional[EntitlementSession] = None
        self._callbacks: list[ChangeCallback] = []
        self._reconnects = 0
        self._connected = asyncio.Event()

    @property
    def reconnects(self) -> int:
        return self._reconnects

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait_connected(self, timeout: float) -> bool:
        """Wait until the stream has sent ``ready``; False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def add_callback(self, callback: ChangeCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def start(self, session: EntitlementSession) -> None:
        if self.is_running():
            if self._session == session:
                return
            await self.stop()
        self._session = session
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(session))
        logger.debug("Subscription change listener started user_id=%s", session.user_id)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._stop_event.set()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.debug("Subscription change listener stopped")
        self._task = None
        self._session = None
        self._connected.clear()
        self._ctx.channel_connected = False

    def _owns_context(self, session: EntitlementSession) -> bool:
        return self._ctx.user_id == session.user_id

    def _dispatch(self, session: EntitlementSession, event: ServerEvent) -> None:
        if event.event == READY_EVENT:
            if self._owns_context(session):
                # 连上之前拉取的缓存可能漏掉了期间的变更事件
                self._ctx.invalidate()
            self._ctx.channel_connected = True
            self._connected.set()
            return
        if event.event != CHANGE_EVENT:
            return
        if not self._owns_context(session):
            return
        # 只标记失效，不依据 payload 修补缓存
        self._ctx.invalidate()
        logger.debug("Subscription change received user_id=%s type=%s", session.user_id, event.data.get("event_type"))
        for callback in list(self._callbacks):
            try:
                callback(event.data)
            except Exception:
                logger.exception("Subscription change callback failed")

    async def _consume(self, session: EntitlementSession) -> None:
        async for event in self._api.iter_change_events(session):
            if event.event == READY_EVENT:
                self._reconnects = 0
            self._dispatch(session, event)
        raise ChannelDisconnectedError("Subscription change stream ended")

    async def _run_loop(self, session: EntitlementSession) -> None:
        backoff = self._initial_backoff
        try:
            while not self._stop_event.is_set():
                try:
                    await self._consume(session)
                except NotAuthenticatedError:
                    logger.warning("Change channel rejected session user_id=%s; not reconnecting", session.user_id)
                    return
                except (ChannelDisconnectedError, httpx.HTTPError) as exc:
                    logger.info("Change channel disconnected user_id=%s: %s", session.user_id, exc)
                finally:
                    if self._ctx.channel_connected and self._owns_context(session):
                        # 断线期间可能漏掉事件
                        self._ctx.invalidate()
                    self._ctx.channel_connected = False
                    self._connected.clear()

                if self._reconnects == 0:
                    # 上一次连接成功过，退避从头开始
                    backoff = self._initial_backoff
                self._reconnects += 1
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                backoff = min(backoff * 2, self._max_backoff)
        except asyncio.CancelledError:
            logger.debug("Subscription change listener loop cancelled")
            raise
