"""
Tests for notification selection, polling, rendering and metrics aggregation.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from notifications.delivery_queue import DeliveryQueue
from notifications.keyed_store import InMemoryKeyedStore
from notifications.metrics import MetricsAggregator
from notifications.poller import NotificationPoller
from notifications.renderer import render_notification, render_text
from models.schemas import type_rank
from notifications.selector import NotificationSelector
from tests.conftest import make_chat_client, sent_texts


def _fixed_clock():
    return datetime(2026, 10, 19, 12, tzinfo=timezone.utc)


def _poller(store, client, max_retries=3):
    metrics = MetricsAggregator(store, clock=_fixed_clock)
    queue = DeliveryQueue(store, client, metrics, pacing_ms=0, max_retries=max_retries)
    selector = NotificationSelector(store, max_retries=max_retries, batch_size=50)
    return NotificationPoller(store, selector, queue, poll_interval_s=0.01)


async def _call(store, call_sid, chat_id="-1001"):
    await store.create_call(call_sid, to_number="+14155550123", scenario_key="otp", chat_id=chat_id)


# ──── Selector ────

class TestSelector:

    @pytest.mark.asyncio
    async def test_capped_rows_are_never_selected(self, store):
        await _call(store, "CA1")
        row = await store.create_notification("CA1", "call_ringing", "-1001")
        for _ in range(2):
            await store.mark_notification_failed(row["id"], "timeout", max_retries=2)

        selector = NotificationSelector(store, max_retries=2)
        assert await selector.select_pending() == []
        assert await selector.select_for_call("CA1") == []

    @pytest.mark.asyncio
    async def test_batch_size(self, store):
        await _call(store, "CA1")
        for _ in range(4):
            await store.create_notification("CA1", "call_ringing", "-1001")
        selector = NotificationSelector(store, batch_size=3)
        assert len(await selector.select_pending()) == 3
        assert len(await selector.select_pending(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_hangup_outranks_earlier_completion(self, store):
        await _call(store, "CA1")
        completed = await store.create_notification("CA1", "call_completed", "-1001", priority="high")
        ended = await store.create_notification("CA1", "call_ended", "-1001", priority="high")

        rows = await NotificationSelector(store).select_pending()
        assert [r["id"] for r in rows] == [ended["id"], completed["id"]]
        assert type_rank("call_ended") == type_rank("call_input_failed") == 0


# ──── Poller ────

class TestPoller:

    @pytest.mark.asyncio
    async def test_poll_cycle_delivers_every_call(self, store):
        client = make_chat_client()
        poller = _poller(store, client)
        await _call(store, "CA1")
        await _call(store, "CA2")
        await store.create_notification("CA1", "call_ringing", "-1001", priority="low")
        await store.create_notification("CA1", "call_answered", "-1001")
        await store.create_notification("CA2", "call_failed", "-1001", priority="high")

        stats = await poller.poll_cycle()
        await poller.queue.wait_idle()

        assert stats == {"selected": 3, "calls": 2, "enqueued": 3, "skipped": 0, "errors": 0}
        assert await store.get_pending_notifications() == []
        # two headers plus three messages
        assert client.send.await_count == 5

    @pytest.mark.asyncio
    async def test_call_rows_drain_in_creation_order(self, store):
        client = make_chat_client()
        poller = _poller(store, client)
        await _call(store, "CA1")
        await store.create_notification("CA1", "call_ringing", "-1001", priority="low")
        await store.create_notification("CA1", "call_answered", "-1001")
        await store.create_notification("CA1", "call_input_failed", "-1001", priority="high",
                                        payload={"stage": "Code", "attempts": 3, "reason": "length"})

        await poller.poll_cycle()
        await poller.queue.wait_idle()

        texts = sent_texts(client)[1:]
        assert texts[0] == "🔔 Ringing"
        assert texts[1] == "📲 Call answered"
        assert texts[2].startswith("❌ Code not captured")

    @pytest.mark.asyncio
    async def test_in_flight_rows_are_not_requeued(self, store):
        poller = _poller(store, make_chat_client())
        await _call(store, "CA1")
        await store.create_notification("CA1", "call_ringing", "-1001")

        first = await poller.poll_cycle()
        second = await poller.poll_cycle()
        await poller.queue.wait_idle()

        assert first["enqueued"] == 1
        assert second["enqueued"] == 0
        assert second["skipped"] == 1

    @pytest.mark.asyncio
    async def test_retrying_rows_rehydrate_after_restart(self, store):
        await _call(store, "CA1")
        row = await store.create_notification("CA1", "call_ringing", "-1001")
        await store.mark_notification_failed(row["id"], "timeout", max_retries=3)

        client = make_chat_client()
        poller = _poller(store, client)
        await poller.poll_cycle()
        await poller.queue.wait_idle()

        stored = await store.get_notification(row["id"])
        assert stored["status"] == "sent"
        assert stored["retry_count"] == 1
        assert "🔔 Ringing" in sent_texts(client)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        client = make_chat_client()
        poller = _poller(store, client)
        await _call(store, "CA1")
        row = await store.create_notification("CA1", "call_ringing", "-1001")

        await poller.start()
        for _ in range(50):
            await asyncio.sleep(0.01)
            if (await store.get_notification(row["id"]))["status"] == "sent":
                break
        await poller.stop()

        assert (await store.get_notification(row["id"]))["status"] == "sent"

    @pytest.mark.asyncio
    async def test_cleanup(self, store):
        poller = _poller(store, make_chat_client())
        await store.record_notification_metric(
            (datetime.now(timezone.utc) - timedelta(days=90)).date().isoformat(),
            "call_ringing", True, 10,
        )
        deleted = await poller.run_cleanup()
        assert deleted["metrics"] == 1


# ──── Rendering ────

class TestRenderer:

    def test_retry_text(self):
        text = render_text({
            "notification_type": "call_input_retry",
            "payload": {"stage": "Code", "reason": "length", "attempt": 1, "max_retries": 2},
        })
        assert text == "⚠️ Code: wrong number of digits (retry 1/2)"

    def test_final_outcome_has_buttons(self):
        row = {
            "id": 7, "call_sid": "CA1", "chat_id": -1001,
            "notification_type": "call_final_outcome",
            "payload": {"outcome": "answered_with_input"},
            "created_at": _fixed_clock(),
        }
        call = {"call_sid": "CA1", "duration_seconds": 75, "latest_input_preview": "••••••"}
        message = render_notification(row, call)

        assert message.chat_id == "-1001"
        assert message.text.splitlines() == [
            "🏁 ✅ Answered, input captured", "Duration: 1m 15s", "Last input: ••••••",
        ]
        assert message.buttons[0][0]["callback_data"] == "details:CA1"

    def test_rendering_is_deterministic(self):
        row = {"notification_type": "call_input_success",
               "payload": {"inputs": [{"stage": "otp", "value": "••••••"}]}}
        assert render_text(row) == render_text(row)
        assert "654321" not in render_text(row)

    def test_unknown_type_falls_back(self):
        assert render_text({"notification_type": "call_transferred"}) == "ℹ️ call transferred"


# ──── Metrics aggregation ────

class TestMetricsAggregator:

    @pytest.mark.asyncio
    async def test_failures_carry_no_latency(self, store):
        metrics = MetricsAggregator(store, clock=_fixed_clock)
        await metrics.record_delivery("call_ringing", True, 100)
        await metrics.record_delivery("call_ringing", False, 9999)
        await metrics.record_delivery("call_ringing", True, 300)

        [row] = await metrics.get_metrics(days=1)
        assert row["avg_delivery_time_ms"] == pytest.approx(200.0)
        assert row["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_summary_weights_by_successes(self, store):
        metrics = MetricsAggregator(store, clock=_fixed_clock)
        await metrics.record_delivery("call_ringing", True, 100)
        await metrics.record_delivery("call_answered", True, 400)
        await metrics.record_delivery("call_answered", True, 400)

        summary = await metrics.summary(days=7)
        assert summary["success_rate"] == 1.0
        assert summary["avg_delivery_time_ms"] == pytest.approx(300.0)
        assert len(summary["by_type"]) == 2


class TestKeyedStore:

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        cache = InMemoryKeyedStore(max_size=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)
        assert await cache.get("a") is None
        assert await cache.get("c") == 3
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_delete(self):
        cache = InMemoryKeyedStore(ttl_seconds=None)
        await cache.set("a", 1)
        await cache.delete("a")
        assert await cache.get("a") is None
