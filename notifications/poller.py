"""
Notification Poller — periodic pull of due notifications into the delivery queue.

Runs as a background task inside the FastAPI lifespan.

Flow:
    webhook_notifications (pending / retrying)
    → NotificationSelector picks candidates by priority, type, age
    → for each call in that order, all of the call's due rows (oldest first)
    → rendered and handed to the per-call DeliveryQueue

The first cycle runs at start-up, which rehydrates the in-memory queue from
the table after a restart. Retention cleanup runs every cleanup_interval_s.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Optional

from database.store_base import BaseLedgerStore
from notifications.delivery_queue import DeliveryQueue
from notifications.renderer import render_notification
from notifications.selector import NotificationSelector

logger = structlog.get_logger()


class NotificationPoller:
    """
    Polls the notification table and feeds the delivery queue.

    Configure in settings:
        notifications:
          poll_interval_s: 3
          batch_size: 50
          cleanup_interval_s: 1800
    """

    def __init__(
        self,
        store: BaseLedgerStore,
        selector: NotificationSelector,
        queue: DeliveryQueue,
        poll_interval_s: float = 3.0,
        cleanup_interval_s: float = 1800,
        retention_days: int = 30,
        sent_retention_days: int = 7,
    ):
        self.store = store
        self.selector = selector
        self.queue = queue
        self.poll_interval_s = poll_interval_s
        self.cleanup_interval_s = cleanup_interval_s
        self.retention_days = retention_days
        self.sent_retention_days = sent_retention_days
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[float] = None

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="notification_poller")
        logger.info("notification_poller_started", interval_s=self.poll_interval_s)

    async def stop(self) -> None:
        """Gracefully stop the poller and the delivery queue."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.queue.close()
        logger.info("notification_poller_stopped")

    async def _poll_loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while self._running:
            try:
                await self.poll_cycle()
                await self._maybe_cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("notification_poll_error", error=str(e))

            await asyncio.sleep(self.poll_interval_s)

    async def poll_cycle(self) -> dict[str, int]:
        """
        Single poll cycle:
        1. Select due candidates in priority/type/age order
        2. Visit their calls in that order
        3. Enqueue each call's due rows in creation order

        Returns counts: {"selected": N, "calls": N, "enqueued": N, "skipped": N, "errors": N}
        """
        stats = {"selected": 0, "calls": 0, "enqueued": 0, "skipped": 0, "errors": 0}

        candidates = await self.selector.select_pending()
        stats["selected"] = len(candidates)

        call_order: list[str] = []
        for row in candidates:
            if row["call_sid"] not in call_order:
                call_order.append(row["call_sid"])

        for call_sid in call_order:
            try:
                rows = await self.selector.select_for_call(call_sid)
                call = await self.store.get_call(call_sid)
                messages = [render_notification(row, call) for row in rows]
            except Exception as e:
                logger.error("notification_render_error", call_sid=call_sid, error=str(e))
                stats["errors"] += 1
                continue

            stats["calls"] += 1
            # no awaits below: the call's whole batch is queued before its drain runs
            for message in messages:
                if self.queue.enqueue(call_sid, message):
                    stats["enqueued"] += 1
                else:
                    stats["skipped"] += 1

        if stats["enqueued"] > 0 or stats["errors"] > 0:
            logger.info("notification_poll_complete", **stats)

        return stats

    async def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval_s:
            return
        self._last_cleanup = now
        await self.run_cleanup()

    async def run_cleanup(self) -> dict[str, Any]:
        deleted = await self.store.cleanup_old_records(
            days_to_keep=self.retention_days,
            sent_days_to_keep=self.sent_retention_days,
        )
        logger.info("retention_cleanup_complete", **deleted)
        return deleted
