"""
Call Ledger Writer — Translates provider webhooks into call rows and
sequenced call_states entries.

Flow:
  Provider webhook fields (CallStatus, AnsweredBy, CallDuration, ...)
    → call row columns (forward-only status, answered-by, timestamps)
    → one call_states entry with the next per-call sequence number
    → status / final-outcome notifications for the call's operator chat

Usage:
    ledger = CallLedger(store)
    await ledger.register_call("CA123", to_number="+14155550123",
                               scenario_key="otp", chat_id="-100123")
    seq = await ledger.record_transition("CA123", "gathering",
                                         {"CallStatus": "in-progress"})
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.twilio_webhook import parse_status_webhook
from database.store_base import BaseLedgerStore
from ledger.outcome import derive_final_outcome, normalize_answered_by, normalize_status
from models.schemas import (
    AnsweredBy, CallStateLabel, CallStatus,
    NotificationPriority, NotificationType,
)

logger = structlog.get_logger()


# Status → (notification type, priority) emitted when the status is first reached
STATUS_NOTIFICATIONS: dict[CallStatus, tuple[NotificationType, NotificationPriority]] = {
    CallStatus.RINGING: (NotificationType.CALL_RINGING, NotificationPriority.LOW),
    CallStatus.IN_PROGRESS: (NotificationType.CALL_ANSWERED, NotificationPriority.NORMAL),
    CallStatus.COMPLETED: (NotificationType.CALL_COMPLETED, NotificationPriority.NORMAL),
    CallStatus.FAILED: (NotificationType.CALL_FAILED, NotificationPriority.HIGH),
    CallStatus.BUSY: (NotificationType.CALL_BUSY, NotificationPriority.NORMAL),
    CallStatus.NO_ANSWER: (NotificationType.CALL_NO_ANSWER, NotificationPriority.NORMAL),
    CallStatus.CANCELED: (NotificationType.CALL_CANCELED, NotificationPriority.NORMAL),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallLedger:
    """Single writer of call rows, call_states entries and call notifications."""

    def __init__(self, store: BaseLedgerStore):
        self.store = store

    # ── Placement ──────────────────────────────────────────

    async def register_call(
        self,
        call_sid: str,
        to_number: str,
        scenario_key: str,
        chat_id: Optional[str] = None,
        from_number: str = "",
        requires_input: bool = True,
        metadata: dict[str, Any] = None,
    ) -> dict[str, Any]:
        """Create the call row for a placed call and log its first entry."""
        call = await self.store.create_call(
            call_sid,
            to_number=to_number,
            from_number=from_number,
            scenario_key=scenario_key,
            chat_id=chat_id,
            requires_input=requires_input,
            status=CallStatus.INITIATED.value,
            metadata=metadata or {},
        )
        await self.store.append_call_state(
            call_sid, CallStateLabel.INITIATED.value, {"scenario": scenario_key},
        )
        await self.notify(call, NotificationType.CALL_INITIATED, NotificationPriority.LOW)
        logger.info("call_registered", call_sid=call_sid, scenario=scenario_key)
        return call

    # ── Transitions ────────────────────────────────────────

    async def record_transition(
        self,
        call_sid: str,
        state: str,
        fields: dict[str, Any] = None,
        data: dict[str, Any] = None,
    ) -> Optional[int]:
        """
        Apply provider fields to the call row and append one call_states entry.

        Returns the entry's sequence number, or None for an unknown call.
        """
        call = await self.store.get_call(call_sid)
        if call is None:
            logger.warning("ledger_unknown_call", call_sid=call_sid, state=state)
            return None

        parsed = parse_status_webhook(fields or {}) if fields else {}
        updates, reached = self._column_updates(call, parsed)
        if updates:
            await self.store.update_call(call_sid, **updates)
            call.update(updates)

        entry = dict(data or {})
        if parsed.get("status"):
            entry.setdefault("provider_status", parsed["status"])
        for key in ("sip_response_code", "error_code", "answered_by"):
            if parsed.get(key):
                entry.setdefault(key, parsed[key])

        sequence = await self.store.append_call_state(call_sid, str(state), entry)
        logger.info("call_state_recorded", call_sid=call_sid, state=str(state),
                    sequence=sequence, status=call["status"])

        if reached is not None and reached in STATUS_NOTIFICATIONS:
            ntype, priority = STATUS_NOTIFICATIONS[reached]
            await self.notify(call, ntype, priority, {"status": reached.value})

        if CallStatus(call["status"]).is_terminal and not call.get("final_outcome"):
            await self._finalize(call)

        return sequence

    def _column_updates(
        self, call: dict[str, Any], parsed: dict[str, Any],
    ) -> tuple[dict[str, Any], Optional[CallStatus]]:
        """Column changes implied by a webhook, plus the status newly reached (if any)."""
        current = CallStatus(call["status"])
        if current.is_terminal:
            # terminal rows are frozen apart from the one-time outcome write
            return {}, None

        updates: dict[str, Any] = {}
        reached: Optional[CallStatus] = None
        now = _utcnow()

        if parsed.get("status"):
            updates["provider_status"] = parsed["status"]

        new_status = normalize_status(parsed.get("status"))
        if new_status is not None and new_status.rank > current.rank:
            updates["status"] = new_status.value
            reached = new_status
            if new_status == CallStatus.IN_PROGRESS and not call.get("started_at"):
                updates["started_at"] = now
            if new_status.is_terminal:
                updates["ended_at"] = now
                if parsed.get("duration") is not None:
                    updates["duration_seconds"] = parsed["duration"]

        answered_by = normalize_answered_by(parsed.get("answered_by"))
        if answered_by != AnsweredBy.UNKNOWN and answered_by.value != call.get("answered_by"):
            updates["answered_by"] = answered_by.value

        return updates, reached

    async def _finalize(self, call: dict[str, Any]) -> None:
        outcome = derive_final_outcome(
            CallStatus(call["status"]),
            AnsweredBy(call.get("answered_by") or AnsweredBy.UNKNOWN.value),
            bool(call.get("has_input")),
        )
        if outcome is None:
            return
        if not await self.store.set_final_outcome(call["call_sid"], outcome.value):
            return
        call["final_outcome"] = outcome.value
        logger.info("call_final_outcome", call_sid=call["call_sid"], outcome=outcome.value)
        await self.notify(
            call, NotificationType.CALL_FINAL_OUTCOME, NotificationPriority.HIGH,
            {"outcome": outcome.value, "status": call["status"]},
        )

    # ── Inputs ─────────────────────────────────────────────

    async def record_input(self, call_sid: str, masked_value: str, stage_key: str = "",
                           input_type: str = "digit", confidence: float = None) -> int:
        """Store a masked capture and flag the call as having input."""
        step = await self.store.add_call_input(
            call_sid, masked_value, input_type=input_type,
            stage_key=stage_key, confidence=confidence,
        )
        await self.store.update_call(call_sid, has_input=True, latest_input_preview=masked_value)
        return step

    # ── Notifications ──────────────────────────────────────

    async def notify(
        self,
        call: dict[str, Any],
        notification_type: NotificationType | str,
        priority: NotificationPriority | str = NotificationPriority.NORMAL,
        payload: dict[str, Any] = None,
    ) -> Optional[dict[str, Any]]:
        """Queue a notification for the call's operator chat, if it has one."""
        chat_id = call.get("chat_id")
        if not chat_id:
            return None
        ntype = NotificationType(notification_type).value
        row = await self.store.create_notification(
            call["call_sid"], ntype, str(chat_id),
            priority=NotificationPriority(priority).value,
            payload=payload or {},
        )
        logger.debug("notification_created", call_sid=call["call_sid"],
                     notification_id=row["id"], type=ntype)
        return row
