"""
Tests for ledger store backends: InMemoryLedgerStore and SqlLedgerStore (SQLite).

Both backends run the same contract tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from database.store_factory import create_store, get_store, reset_store


# ──── Fixtures ────

@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request, tmp_path):
    if request.param == "memory":
        from database.store_memory import InMemoryLedgerStore
        yield InMemoryLedgerStore()
        return

    from database.session import close_db, init_db
    from database.store import SqlLedgerStore
    await close_db()
    await init_db(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield SqlLedgerStore()
    await close_db()


async def _call(store, call_sid="CA1", **fields):
    return await store.create_call(call_sid, to_number="+15550001111",
                                   scenario_key="otp", chat_id="-1001", **fields)


# ──── Calls ────

class TestCalls:

    @pytest.mark.asyncio
    async def test_create_and_get(self, backend):
        created = await _call(backend, metadata={"campaign": "spring"})
        assert created["status"] == "initiated"
        assert created["final_outcome"] is None

        fetched = await backend.get_call("CA1")
        assert fetched["to_number"] == "+15550001111"
        assert fetched["metadata"] == {"campaign": "spring"}
        assert fetched["created_at"].tzinfo is not None
        assert await backend.get_call("CA_NOPE") is None

    @pytest.mark.asyncio
    async def test_duplicate_call_raises(self, backend):
        await _call(backend)
        with pytest.raises(ValueError):
            await _call(backend)

    @pytest.mark.asyncio
    async def test_update(self, backend):
        await _call(backend)
        await backend.update_call("CA1", status="ringing", chat_header_message_id="77")
        call = await backend.get_call("CA1")
        assert call["status"] == "ringing"
        assert call["chat_header_message_id"] == "77"

    @pytest.mark.asyncio
    async def test_final_outcome_written_once(self, backend):
        await _call(backend)
        assert await backend.set_final_outcome("CA1", "busy") is True
        assert await backend.set_final_outcome("CA1", "failed") is False
        assert (await backend.get_call("CA1"))["final_outcome"] == "busy"

    @pytest.mark.asyncio
    async def test_list_recent(self, backend):
        for i in range(3):
            await _call(backend, f"CA{i}")
        calls = await backend.list_recent_calls(limit=2)
        assert len(calls) == 2


# ──── Ledger ────

class TestCallStates:

    @pytest.mark.asyncio
    async def test_sequences_start_at_one(self, backend):
        await _call(backend)
        assert await backend.append_call_state("CA1", "initiated") == 1
        assert await backend.append_call_state("CA1", "gathering", {"stage": 0}) == 2

        entries = await backend.get_call_states("CA1")
        assert [(e["state"], e["sequence_number"]) for e in entries] == [
            ("initiated", 1), ("gathering", 2),
        ]
        assert entries[1]["data"] == {"stage": 0}

    @pytest.mark.asyncio
    async def test_sequences_are_per_call(self, backend):
        await _call(backend, "CA1")
        await _call(backend, "CA2")
        await backend.append_call_state("CA1", "a")
        await backend.append_call_state("CA1", "b")
        assert await backend.append_call_state("CA2", "a") == 1

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_gap_free(self, backend):
        await _call(backend)
        sequences = await asyncio.gather(*[
            backend.append_call_state("CA1", "status", {"n": i}) for i in range(12)
        ])
        assert sorted(sequences) == list(range(1, 13))

        stored = [e["sequence_number"] for e in await backend.get_call_states("CA1")]
        assert stored == list(range(1, 13))

    @pytest.mark.asyncio
    async def test_latest_call_state(self, backend):
        await _call(backend)
        assert await backend.get_latest_call_state("CA1") is None

        await backend.append_call_state("CA1", "gathering", {"stage": 0})
        await backend.append_call_state("CA1", "retry", {"stage": 0, "attempt": 1})
        await backend.append_call_state("CA1", "gathering", {"stage": 1})

        latest = await backend.get_latest_call_state("CA1")
        assert latest["sequence_number"] == 3
        assert latest["data"] == {"stage": 1}

        retry = await backend.get_latest_call_state("CA1", state="retry")
        assert retry["sequence_number"] == 2
        assert await backend.get_latest_call_state("CA1", state="failed") is None

    @pytest.mark.asyncio
    async def test_input_steps(self, backend):
        await _call(backend)
        steps = await asyncio.gather(*[
            backend.add_call_input("CA1", "•••", stage_key=f"s{i}") for i in range(4)
        ])
        assert sorted(steps) == [1, 2, 3, 4]
        inputs = await backend.get_call_inputs("CA1")
        assert [i["step"] for i in inputs] == [1, 2, 3, 4]
        assert inputs[0]["input_type"] == "digit"


# ──── Notifications ────

class TestNotifications:

    @pytest.mark.asyncio
    async def test_selection_order(self, backend):
        await _call(backend)
        low = await backend.create_notification("CA1", "call_ringing", "-1001", priority="low")
        progress = await backend.create_notification("CA1", "call_answered", "-1001")
        retry = await backend.create_notification("CA1", "call_input_retry", "-1001")
        success = await backend.create_notification("CA1", "call_completed", "-1001")
        failed = await backend.create_notification("CA1", "call_failed", "-1001")
        urgent = await backend.create_notification("CA1", "call_answered", "-1001", priority="urgent")

        rows = await backend.get_pending_notifications(limit=10)
        assert [r["id"] for r in rows] == [
            urgent["id"], failed["id"], success["id"],
            progress["id"], retry["id"], low["id"],
        ]

    @pytest.mark.asyncio
    async def test_hangup_ranks_with_failures(self, backend):
        await _call(backend)
        completed = await backend.create_notification("CA1", "call_completed", "-1001")
        ended = await backend.create_notification("CA1", "call_ended", "-1001")

        rows = await backend.get_pending_notifications(limit=10)
        assert [r["id"] for r in rows] == [ended["id"], completed["id"]]

    @pytest.mark.asyncio
    async def test_limit(self, backend):
        await _call(backend)
        for _ in range(5):
            await backend.create_notification("CA1", "call_ringing", "-1001")
        assert len(await backend.get_pending_notifications(limit=3)) == 3

    @pytest.mark.asyncio
    async def test_for_call_is_creation_order(self, backend):
        await _call(backend, "CA1")
        await _call(backend, "CA2")
        a = await backend.create_notification("CA1", "call_ringing", "-1001", priority="low")
        await backend.create_notification("CA2", "call_ringing", "-1001")
        b = await backend.create_notification("CA1", "call_failed", "-1001", priority="high")

        rows = await backend.get_pending_notifications_for_call("CA1")
        assert [r["id"] for r in rows] == [a["id"], b["id"]]

    @pytest.mark.asyncio
    async def test_mark_sent(self, backend):
        await _call(backend)
        row = await backend.create_notification("CA1", "call_ringing", "-1001")
        sent_at = row["created_at"] + timedelta(milliseconds=250)

        latency = await backend.mark_notification_sent(row["id"], chat_message_id="42",
                                                       sent_at=sent_at)
        assert latency == 250

        stored = await backend.get_notification(row["id"])
        assert stored["status"] == "sent"
        assert stored["chat_message_id"] == "42"
        assert stored["delivery_time_ms"] == 250
        assert await backend.get_pending_notifications() == []

    @pytest.mark.asyncio
    async def test_retry_accounting(self, backend):
        await _call(backend)
        row = await backend.create_notification("CA1", "call_ringing", "-1001")

        assert await backend.mark_notification_failed(row["id"], "timeout", max_retries=3) == "retrying"
        assert len(await backend.get_pending_notifications(max_retries=3)) == 1
        assert await backend.mark_notification_failed(row["id"], "timeout", max_retries=3) == "retrying"
        assert await backend.mark_notification_failed(row["id"], "timeout", max_retries=3) == "failed"

        stored = await backend.get_notification(row["id"])
        assert stored["retry_count"] == 3
        assert stored["error_message"] == "timeout"
        assert await backend.get_pending_notifications(max_retries=3) == []

    @pytest.mark.asyncio
    async def test_permanent_failure(self, backend):
        await _call(backend)
        row = await backend.create_notification("CA1", "call_ringing", "-1001")
        status = await backend.mark_notification_failed(row["id"], "chat not found", retryable=False)
        assert status == "failed"
        assert await backend.get_pending_notifications_for_call("CA1") == []


# ──── Metrics ────

class TestMetrics:

    @pytest.mark.asyncio
    async def test_mean_over_successes(self, backend):
        for latency in (100, 200, 600):
            await backend.record_notification_metric("2026-10-19", "call_ringing", True, latency)
        await backend.record_notification_metric("2026-10-19", "call_ringing", False)
        await backend.record_notification_metric("2026-10-19", "call_ringing", False)

        [row] = await backend.get_notification_metrics()
        assert row["total_count"] == 5
        assert row["success_count"] == 3
        assert row["failure_count"] == 2
        assert row["avg_delivery_time_ms"] == pytest.approx(300.0)

    @pytest.mark.asyncio
    async def test_failure_first_then_success(self, backend):
        await backend.record_notification_metric("2026-10-19", "call_failed", False)
        await backend.record_notification_metric("2026-10-19", "call_failed", True, 80)
        [row] = await backend.get_notification_metrics()
        assert row["avg_delivery_time_ms"] == pytest.approx(80.0)

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_not_lost(self, backend):
        await asyncio.gather(*[
            backend.record_notification_metric("2026-10-19", "call_answered", True, 50)
            for _ in range(8)
        ])
        [row] = await backend.get_notification_metrics()
        assert row["total_count"] == 8
        assert row["avg_delivery_time_ms"] == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_since_date(self, backend):
        await backend.record_notification_metric("2026-10-01", "call_answered", True, 10)
        await backend.record_notification_metric("2026-10-19", "call_answered", True, 10)
        rows = await backend.get_notification_metrics(since_date="2026-10-10")
        assert [r["date"] for r in rows] == ["2026-10-19"]


# ──── Retention and stats ────

class TestRetention:

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recent_and_undelivered(self, backend):
        await _call(backend)
        await backend.append_call_state("CA1", "initiated")
        pending = await backend.create_notification("CA1", "call_ringing", "-1001")
        sent = await backend.create_notification("CA1", "call_answered", "-1001")
        await backend.mark_notification_sent(sent["id"])
        old_day = (datetime.now(timezone.utc) - timedelta(days=60)).date().isoformat()
        await backend.record_notification_metric(old_day, "call_answered", True, 10)

        deleted = await backend.cleanup_old_records(days_to_keep=30, sent_days_to_keep=7)

        assert deleted == {"call_states": 0, "notifications": 0, "metrics": 1}
        assert len(await backend.get_call_states("CA1")) == 1
        assert await backend.get_notification(pending["id"]) is not None
        assert await backend.get_notification(sent["id"]) is not None

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_sent(self, backend):
        await _call(backend)
        sent = await backend.create_notification("CA1", "call_answered", "-1001")
        await backend.mark_notification_sent(sent["id"])

        deleted = await backend.cleanup_old_records(days_to_keep=30, sent_days_to_keep=-1)
        assert deleted["notifications"] == 1
        assert await backend.get_notification(sent["id"]) is None

    @pytest.mark.asyncio
    async def test_stats(self, backend):
        await _call(backend)
        await backend.append_call_state("CA1", "initiated")
        await backend.create_notification("CA1", "call_ringing", "-1001")
        stats = await backend.get_stats()
        assert stats["calls"] == 1
        assert stats["call_states"] == 1
        assert stats["notifications"] == {"pending": 1}


# ──── Factory ────

class TestStoreFactory:

    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_memory_backend(self):
        from database.store_memory import InMemoryLedgerStore
        assert isinstance(create_store({"store_backend": "memory"}), InMemoryLedgerStore)

    def test_sql_backend(self):
        from database.store import SqlLedgerStore
        assert isinstance(create_store({"store_backend": "sql"}), SqlLedgerStore)

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_memory import InMemoryLedgerStore
        assert isinstance(create_store({"store_backend": "redis"}), InMemoryLedgerStore)

    def test_singleton(self):
        store = create_store({"store_backend": "memory"})
        assert get_store() is store
        assert create_store({"store_backend": "sql"}) is store


class TestAsyncUrl:

    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("sqlite:///./ivr.db", "sqlite+aiosqlite:///./ivr.db"),
        ("sqlite+aiosqlite:///./ivr.db", "sqlite+aiosqlite:///./ivr.db"),
    ])
    def test_conversion(self, url, expected):
        from database.session import _to_async_url
        assert _to_async_url(url) == expected
