"""Realtime refresh for one admin view.

A view usually reads several collections. The coordinator subscribes to all
of them, owns the subscription handles, and turns any burst of change events
into a single reload of the view.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from resource_client import ChangeEvent, RemoteResourceClient, Subscription

logger = logging.getLogger("shelter.change_feed")

ReloadCallback = Callable[[], Awaitable[None]]


class ChangeFeedCoordinator:
    def __init__(
        self,
        client: RemoteResourceClient,
        collections: Sequence[str],
        on_reload: ReloadCallback,
        coalesce_seconds: float = 0.0,
    ):
        self.client = client
        # a collection listed twice is subscribed once
        self.collections: List[str] = list(dict.fromkeys(collections))
        self.on_reload = on_reload
        self.coalesce_seconds = max(0.0, coalesce_seconds)
        self._subscriptions: List[Subscription] = []
        self._pending = False
        self._scheduled: Optional[asyncio.Handle] = None
        self._task: Optional[asyncio.Task] = None
        self.events_seen = 0
        self.reloads_run = 0

    @property
    def started(self) -> bool:
        return bool(self._subscriptions)

    @property
    def pending(self) -> bool:
        return self._pending

    def start(self) -> None:
        if self._subscriptions:
            return
        for name in self.collections:
            self._subscriptions.append(self.client.subscribe_changes(name, self.notify))
        logger.debug("Subscribed to %s", ", ".join(self.collections))

    def stop(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            sub.unsubscribe()
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        self._pending = False

    def notify(self, event: ChangeEvent) -> None:
        if not self._subscriptions:
            return
        self.events_seen += 1
        if self._pending:
            return
        self._pending = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # picked up by the next flush()
            return
        if self.coalesce_seconds:
            self._scheduled = loop.call_later(self.coalesce_seconds, self._fire)
        else:
            self._scheduled = loop.call_soon(self._fire)

    def mark_dirty(self) -> None:
        """Leave a reload pending for the next flush() without scheduling it."""
        if self._subscriptions:
            self._pending = True

    def _fire(self) -> None:
        self._scheduled = None
        if not self._pending:
            return
        self._task = asyncio.get_running_loop().create_task(self._reload())

    async def _reload(self) -> None:
        self._pending = False
        self.reloads_run += 1
        try:
            await self.on_reload()
        except Exception:
            logger.exception("Feed-triggered reload of %s failed", ", ".join(self.collections))

    async def flush(self) -> bool:
        """Run a pending reload now. Returns whether one ran."""
        if not self._pending:
            return False
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        await self._reload()
        return True
