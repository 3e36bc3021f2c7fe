"""
Per-call delivery queue — ordered, deduplicated, threaded chat delivery.

Guarantees:
  - at most one in-flight send per call (one drain task per call_sid)
  - within a call, messages go out in (created_at, id) order
  - different calls drain concurrently and independently

Drain step for each message:
  1. Re-read the row; skip it if it is no longer due (sent elsewhere, capped)
  2. Dedup: identical to the last text delivered for this call → mark sent
     with error_message="duplicate_skipped", no network call, no metric
  3. Ensure the call's header message exists (stored on the call row)
  4. Send as a reply to the header
  5. Record sent / retrying / failed plus a delivery metric
  6. Sleep pacing_ms before the next network send

A failed send never blocks the queue. The queue is a cache of the
webhook_notifications table and is rebuilt from it by the poller.
"""
from __future__ import annotations

import asyncio
import bisect
import structlog
from typing import Any, Optional

from channels.base import ChannelError
from database.store_base import BaseLedgerStore
from models.schemas import NotificationStatus, RenderedMessage
from notifications.keyed_store import InMemoryKeyedStore, KeyedStore
from notifications.metrics import MetricsAggregator
from notifications.renderer import call_buttons, render_header

logger = structlog.get_logger()

DUPLICATE_MARKER = "duplicate_skipped"

_DUE = (NotificationStatus.PENDING.value, NotificationStatus.RETRYING.value)


class DeliveryQueue:
    """
    In-memory per-call FIFO in front of a chat client.

    `client` needs `send(chat_id, text, thread_id=None, buttons=None)`
    returning {"message_id": ...} and raising ChannelError subclasses.
    """

    def __init__(
        self,
        store: BaseLedgerStore,
        client,
        metrics: MetricsAggregator,
        last_delivered: Optional[KeyedStore] = None,
        headers: Optional[KeyedStore] = None,
        pacing_ms: int = 200,
        max_retries: int = 3,
    ):
        self.store = store
        self.client = client
        self.metrics = metrics
        self.last_delivered = last_delivered if last_delivered is not None else InMemoryKeyedStore()
        self.headers = headers if headers is not None else InMemoryKeyedStore()
        self.pacing_s = max(pacing_ms, 0) / 1000.0
        self.max_retries = max_retries

        self._queues: dict[str, list[RenderedMessage]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._known: set[int] = set()          # notification ids queued or in flight
        self._stats = {"sent": 0, "duplicates": 0, "failed": 0, "retrying": 0, "stale": 0}

    # ── Public API ─────────────────────────────────────────

    def enqueue(self, call_sid: str, message: RenderedMessage) -> bool:
        """
        Queue a rendered notification. Returns False if it is already queued
        or in flight. Starts the call's drain task when the call is idle.
        """
        if message.notification_id in self._known:
            return False
        self._known.add(message.notification_id)

        queue = self._queues.setdefault(call_sid, [])
        bisect.insort(queue, message, key=lambda m: m.order_key)

        task = self._tasks.get(call_sid)
        if task is None or task.done():
            self._tasks[call_sid] = asyncio.create_task(
                self._drain(call_sid), name=f"deliver:{call_sid}",
            )
        return True

    def is_draining(self, call_sid: str) -> bool:
        task = self._tasks.get(call_sid)
        return task is not None and not task.done()

    async def wait_idle(self) -> None:
        """Wait until every call's queue has drained."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel drains; unsent rows stay due in the table for the next process."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._queues.clear()
        self._known.clear()
        logger.info("delivery_queue_closed", cancelled=len(tasks))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "active_calls": len(self._tasks),
            "queued": sum(len(q) for q in self._queues.values()),
        }

    # ── Drain loop ─────────────────────────────────────────

    async def _drain(self, call_sid: str) -> None:
        queue = self._queues.get(call_sid, [])
        try:
            while queue:
                message = queue.pop(0)
                try:
                    outcome = await self._deliver(call_sid, message)
                except Exception as e:
                    outcome = "error"
                    logger.error("delivery_step_error", call_sid=call_sid,
                                 notification_id=message.notification_id, error=str(e))
                finally:
                    self._known.discard(message.notification_id)

                if outcome in ("sent", "retrying", "failed") and self.pacing_s:
                    await asyncio.sleep(self.pacing_s)
        finally:
            if not queue:
                self._queues.pop(call_sid, None)
            if self._tasks.get(call_sid) is asyncio.current_task():
                del self._tasks[call_sid]

    async def _deliver(self, call_sid: str, message: RenderedMessage) -> str:
        nid = message.notification_id
        current = await self.store.get_notification(nid)
        if (current is None or current["status"] not in _DUE
                or current["retry_count"] >= self.max_retries):
            self._stats["stale"] += 1
            logger.debug("notification_not_due", call_sid=call_sid, notification_id=nid)
            return "stale"

        if await self.last_delivered.get(call_sid) == message.text:
            await self.store.mark_notification_sent(nid, error_message=DUPLICATE_MARKER)
            self._stats["duplicates"] += 1
            logger.info("notification_duplicate_skipped", call_sid=call_sid,
                        notification_id=nid, type=message.notification_type)
            return "duplicate"

        thread_id = await self._ensure_header(call_sid, message.chat_id)

        try:
            result = await self.client.send(
                message.chat_id, message.text,
                thread_id=thread_id, buttons=message.buttons or None,
            )
        except ChannelError as e:
            return await self._on_failure(message, str(e), e.retryable)
        except Exception as e:
            # unexpected client errors are treated as transient
            return await self._on_failure(message, f"{type(e).__name__}: {e}", True)

        latency = await self.store.mark_notification_sent(
            nid, chat_message_id=result.get("message_id"),
        )
        await self.last_delivered.set(call_sid, message.text)
        await self.metrics.record_delivery(message.notification_type, True, latency)
        self._stats["sent"] += 1
        logger.info("notification_delivered", call_sid=call_sid, notification_id=nid,
                    type=message.notification_type, latency_ms=latency,
                    threaded=thread_id is not None)
        return "sent"

    async def _on_failure(self, message: RenderedMessage, error: str, retryable: bool) -> str:
        status = await self.store.mark_notification_failed(
            message.notification_id, error,
            retryable=retryable, max_retries=self.max_retries,
        )
        await self.metrics.record_delivery(message.notification_type, False)
        self._stats[status] = self._stats.get(status, 0) + 1
        log = logger.warning if status == NotificationStatus.RETRYING.value else logger.error
        log("notification_delivery_failed", call_sid=message.call_sid,
            notification_id=message.notification_id, type=message.notification_type,
            status=status, retryable=retryable, error=error)
        return status

    # ── Threading ──────────────────────────────────────────

    async def _ensure_header(self, call_sid: str, chat_id: str) -> Optional[str]:
        """Return the header message id for the call, creating the header if needed."""
        cached = await self.headers.get(call_sid)
        if cached:
            return cached

        call = await self.store.get_call(call_sid)
        if call is None:
            return None
        if call.get("chat_header_message_id"):
            await self.headers.set(call_sid, call["chat_header_message_id"])
            return call["chat_header_message_id"]

        try:
            result = await self.client.send(
                chat_id, render_header(call), buttons=call_buttons(call_sid),
            )
        except ChannelError as e:
            # the message still goes out, just unthreaded
            logger.warning("chat_header_failed", call_sid=call_sid, error=str(e))
            return None

        header_id = result.get("message_id")
        if header_id:
            await self.store.update_call(call_sid, chat_header_message_id=header_id)
            await self.headers.set(call_sid, header_id)
            logger.info("chat_header_created", call_sid=call_sid, message_id=header_id)
        if self.pacing_s:
            await asyncio.sleep(self.pacing_s)
        return header_id
