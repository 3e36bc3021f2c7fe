"""
Tests for the call ledger writer and final-outcome derivation.
"""
import pytest

from ledger.outcome import derive_final_outcome, normalize_answered_by, normalize_status
from models.schemas import AnsweredBy, CallStatus, FinalOutcome


# ──── Outcome table ────

class TestFinalOutcome:

    @pytest.mark.parametrize("status,answered_by,has_input,expected", [
        (CallStatus.COMPLETED, AnsweredBy.HUMAN, True, FinalOutcome.ANSWERED_WITH_INPUT),
        (CallStatus.COMPLETED, AnsweredBy.MACHINE, True, FinalOutcome.ANSWERED_WITH_INPUT),
        (CallStatus.COMPLETED, AnsweredBy.HUMAN, False, FinalOutcome.ANSWERED_NO_INPUT_HUMAN),
        (CallStatus.COMPLETED, AnsweredBy.UNKNOWN, False, FinalOutcome.ANSWERED_NO_INPUT_HUMAN),
        (CallStatus.COMPLETED, AnsweredBy.MACHINE, False, FinalOutcome.ANSWERED_NO_INPUT_MACHINE),
        (CallStatus.BUSY, AnsweredBy.UNKNOWN, False, FinalOutcome.BUSY),
        (CallStatus.NO_ANSWER, AnsweredBy.MACHINE, False, FinalOutcome.NO_ANSWER),
        (CallStatus.FAILED, AnsweredBy.HUMAN, True, FinalOutcome.FAILED),
        (CallStatus.CANCELED, AnsweredBy.UNKNOWN, False, FinalOutcome.CANCELED),
    ])
    def test_decision_table(self, status, answered_by, has_input, expected):
        assert derive_final_outcome(status, answered_by, has_input) == expected

    @pytest.mark.parametrize("status", [
        CallStatus.INITIATED, CallStatus.RINGING, CallStatus.IN_PROGRESS,
    ])
    def test_non_terminal_has_no_outcome(self, status):
        assert derive_final_outcome(status, AnsweredBy.HUMAN, True) is None

    def test_deterministic(self):
        results = {derive_final_outcome(CallStatus.COMPLETED, AnsweredBy.MACHINE, False)
                   for _ in range(5)}
        assert results == {FinalOutcome.ANSWERED_NO_INPUT_MACHINE}


class TestNormalisation:

    @pytest.mark.parametrize("raw,expected", [
        ("ringing", CallStatus.RINGING),
        ("In-Progress", CallStatus.IN_PROGRESS),
        ("answered", CallStatus.IN_PROGRESS),
        ("queued", CallStatus.INITIATED),
        ("no-answer", CallStatus.NO_ANSWER),
        ("cancelled", CallStatus.CANCELED),
        ("bogus", None),
        ("", None),
        (None, None),
    ])
    def test_status(self, raw, expected):
        assert normalize_status(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("human", AnsweredBy.HUMAN),
        ("machine_end_beep", AnsweredBy.MACHINE),
        ("fax", AnsweredBy.MACHINE),
        ("unknown", AnsweredBy.UNKNOWN),
        ("", AnsweredBy.UNKNOWN),
    ])
    def test_answered_by(self, raw, expected):
        assert normalize_answered_by(raw) == expected

    def test_status_rank_is_monotonic(self):
        assert CallStatus.INITIATED.rank < CallStatus.RINGING.rank < CallStatus.IN_PROGRESS.rank
        assert all(s.rank == 3 for s in CallStatus if s.is_terminal)


# ──── Ledger writer ────

class TestCallLedger:

    @pytest.mark.asyncio
    async def test_register_call(self, ledger, store):
        call = await ledger.register_call("CA1", "+15550001111", "otp", chat_id="-1001")
        assert call["status"] == "initiated"
        entries = await store.get_call_states("CA1")
        assert [(e["state"], e["sequence_number"]) for e in entries] == [("initiated", 1)]
        rows = await store.get_pending_notifications_for_call("CA1")
        assert [(r["notification_type"], r["priority"]) for r in rows] == [("call_initiated", "low")]

    @pytest.mark.asyncio
    async def test_duplicate_registration_rejected(self, ledger):
        await ledger.register_call("CA1", "+15550001111", "otp")
        with pytest.raises(ValueError):
            await ledger.register_call("CA1", "+15550001111", "otp")

    @pytest.mark.asyncio
    async def test_status_only_moves_forward(self, ledger, store):
        await ledger.register_call("CA1", "+15550001111", "otp")
        await ledger.record_transition("CA1", "status", {"CallStatus": "in-progress"})
        await ledger.record_transition("CA1", "status", {"CallStatus": "ringing"})

        call = await store.get_call("CA1")
        assert call["status"] == "in-progress"
        assert call["provider_status"] == "ringing"
        assert call["started_at"] is not None

    @pytest.mark.asyncio
    async def test_terminal_row_is_frozen(self, ledger, store):
        await ledger.register_call("CA1", "+15550001111", "otp", chat_id="-1001")
        await ledger.record_transition("CA1", "status", {
            "CallStatus": "in-progress", "AnsweredBy": "machine_start",
        })
        await ledger.record_transition("CA1", "ended", {
            "CallStatus": "completed", "CallDuration": "42",
        })
        await ledger.record_transition("CA1", "ended", {"CallStatus": "failed"})

        call = await store.get_call("CA1")
        assert call["status"] == "completed"
        assert call["answered_by"] == "machine"
        assert call["duration_seconds"] == 42
        assert call["ended_at"] is not None
        assert call["final_outcome"] == "answered_no_input_machine"

        types = [r["notification_type"]
                 for r in await store.get_pending_notifications_for_call("CA1")]
        assert types.count("call_final_outcome") == 1
        assert "call_failed" not in types

    @pytest.mark.asyncio
    async def test_entry_carries_provider_codes(self, ledger, store):
        await ledger.register_call("CA1", "+15550001111", "otp")
        seq = await ledger.record_transition("CA1", "ended", {
            "CallStatus": "failed", "SipResponseCode": "486", "ErrorCode": "31486",
        }, {"note": "carrier"})

        entry = (await store.get_call_states("CA1"))[-1]
        assert seq == entry["sequence_number"] == 2
        assert entry["data"] == {
            "note": "carrier", "provider_status": "failed",
            "sip_response_code": 486, "error_code": "31486",
        }
        assert (await store.get_call("CA1"))["final_outcome"] == "failed"

    @pytest.mark.asyncio
    async def test_unknown_call_returns_none(self, ledger, store):
        assert await ledger.record_transition("CA_NOPE", "status", {"CallStatus": "ringing"}) is None
        assert await store.get_call_states("CA_NOPE") == []

    @pytest.mark.asyncio
    async def test_no_chat_means_no_notifications(self, ledger, store):
        await ledger.register_call("CA1", "+15550001111", "otp")
        await ledger.record_transition("CA1", "status", {"CallStatus": "completed"})
        assert await store.get_pending_notifications_for_call("CA1") == []
        assert (await store.get_call("CA1"))["final_outcome"] == "answered_no_input_human"

    @pytest.mark.asyncio
    async def test_record_input_steps(self, ledger, store):
        await ledger.register_call("CA1", "+15550001111", "card_payment")
        assert await ledger.record_input("CA1", "••••1111", stage_key="card_number") == 1
        assert await ledger.record_input("CA1", "•••••", stage_key="zip_code") == 2

        call = await store.get_call("CA1")
        assert call["has_input"] is True
        assert call["latest_input_preview"] == "•••••"
