"""
InMemoryLedgerStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlLedgerStore
  - Atomic via asyncio (single event loop, no await inside a read-modify-write)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import itertools
import structlog
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from database.store_base import BaseLedgerStore
from models.schemas import (
    NotificationStatus, priority_rank, type_rank,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CALL_DEFAULTS: dict[str, Any] = {
    "to_number": "",
    "from_number": "",
    "scenario_key": "",
    "chat_id": None,
    "status": "initiated",
    "provider_status": "",
    "answered_by": "unknown",
    "final_outcome": None,
    "requires_input": True,
    "has_input": False,
    "latest_input_preview": "",
    "chat_header_message_id": None,
    "duration_seconds": None,
    "metadata": {},
    "started_at": None,
    "ended_at": None,
}

_DUE = (NotificationStatus.PENDING.value, NotificationStatus.RETRYING.value)


class InMemoryLedgerStore(BaseLedgerStore):
    """
    Full-featured in-memory store with the same interface as SqlLedgerStore.
    Returns copies so callers never mutate stored state.
    """

    def __init__(self):
        self._calls: dict[str, dict] = {}                          # call_sid → call dict
        self._states: dict[str, list[dict]] = defaultdict(list)    # call_sid → [entries]
        self._inputs: dict[str, list[dict]] = defaultdict(list)    # call_sid → [inputs]
        self._notifications: dict[int, dict] = {}                  # id → notification dict
        self._metrics: dict[tuple[str, str], dict] = {}            # (date, type) → metric dict

        self._state_ids = itertools.count(1)
        self._input_ids = itertools.count(1)
        self._notification_ids = itertools.count(1)
        self._metric_ids = itertools.count(1)
        logger.info("inmemory_store_initialized")

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, call_sid: str, **fields) -> dict[str, Any]:
        if call_sid in self._calls:
            raise ValueError(f"call already exists: {call_sid}")
        now = _utcnow()
        row = {**copy.deepcopy(_CALL_DEFAULTS), **fields,
               "call_sid": call_sid, "created_at": now, "updated_at": now}
        self._calls[call_sid] = row
        return copy.deepcopy(row)

    async def get_call(self, call_sid: str) -> Optional[dict[str, Any]]:
        row = self._calls.get(call_sid)
        return copy.deepcopy(row) if row else None

    async def update_call(self, call_sid: str, **fields) -> None:
        row = self._calls.get(call_sid)
        if row is None:
            logger.warning("update_unknown_call", call_sid=call_sid)
            return
        row.update(fields)
        row["updated_at"] = _utcnow()

    async def set_final_outcome(self, call_sid: str, outcome: str) -> bool:
        row = self._calls.get(call_sid)
        if row is None or row.get("final_outcome"):
            return False
        row["final_outcome"] = outcome
        row["updated_at"] = _utcnow()
        return True

    async def list_recent_calls(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = sorted(self._calls.values(), key=lambda c: c["created_at"], reverse=True)
        return [copy.deepcopy(r) for r in rows[:limit]]

    # ── Call state ledger ─────────────────────────────────

    async def append_call_state(self, call_sid: str, state: str,
                                data: dict[str, Any] = None) -> int:
        entries = self._states[call_sid]
        sequence = (entries[-1]["sequence_number"] if entries else 0) + 1
        entries.append({
            "id": next(self._state_ids),
            "call_sid": call_sid,
            "state": state,
            "data": copy.deepcopy(data or {}),
            "sequence_number": sequence,
            "timestamp": _utcnow(),
        })
        return sequence

    async def get_call_states(self, call_sid: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._states.get(call_sid, []))

    async def get_latest_call_state(self, call_sid: str,
                                    state: Optional[str] = None) -> Optional[dict[str, Any]]:
        for entry in reversed(self._states.get(call_sid, [])):
            if state is None or entry["state"] == state:
                return copy.deepcopy(entry)
        return None

    # ── Collected inputs ──────────────────────────────────

    async def add_call_input(self, call_sid: str, value: str, input_type: str = "digit",
                             stage_key: str = "", confidence: float = None) -> int:
        inputs = self._inputs[call_sid]
        step = max((i["step"] for i in inputs), default=0) + 1
        inputs.append({
            "id": next(self._input_ids),
            "call_sid": call_sid,
            "step": step,
            "stage_key": stage_key,
            "input_type": input_type,
            "value": value,
            "confidence": confidence,
            "captured_at": _utcnow(),
        })
        return step

    async def get_call_inputs(self, call_sid: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._inputs.get(call_sid, []))

    # ── Notifications ─────────────────────────────────────

    async def create_notification(self, call_sid: str, notification_type: str, chat_id: str,
                                  priority: str = "normal",
                                  payload: dict[str, Any] = None) -> dict[str, Any]:
        nid = next(self._notification_ids)
        row = {
            "id": nid,
            "call_sid": call_sid,
            "notification_type": notification_type,
            "chat_id": chat_id,
            "status": NotificationStatus.PENDING.value,
            "priority": priority,
            "retry_count": 0,
            "error_message": None,
            "payload": copy.deepcopy(payload or {}),
            "chat_message_id": None,
            "delivery_time_ms": None,
            "created_at": _utcnow(),
            "sent_at": None,
        }
        self._notifications[nid] = row
        return copy.deepcopy(row)

    async def get_notification(self, notification_id: int) -> Optional[dict[str, Any]]:
        row = self._notifications.get(notification_id)
        return copy.deepcopy(row) if row else None

    def _due(self, max_retries: int) -> list[dict]:
        return [
            n for n in self._notifications.values()
            if n["status"] in _DUE and n["retry_count"] < max_retries
        ]

    async def get_pending_notifications(self, limit: int = 50,
                                        max_retries: int = 3) -> list[dict[str, Any]]:
        rows = sorted(
            self._due(max_retries),
            key=lambda n: (priority_rank(n["priority"]), type_rank(n["notification_type"]),
                           n["created_at"], n["id"]),
        )
        return [copy.deepcopy(n) for n in rows[:limit]]

    async def get_pending_notifications_for_call(self, call_sid: str,
                                                 max_retries: int = 3) -> list[dict[str, Any]]:
        rows = sorted(
            (n for n in self._due(max_retries) if n["call_sid"] == call_sid),
            key=lambda n: (n["created_at"], n["id"]),
        )
        return [copy.deepcopy(n) for n in rows]

    async def mark_notification_sent(self, notification_id: int,
                                     chat_message_id: str = None,
                                     error_message: str = None,
                                     sent_at: datetime = None) -> Optional[int]:
        row = self._notifications.get(notification_id)
        if row is None:
            return None
        sent_at = sent_at or _utcnow()
        latency = max(0, int((sent_at - row["created_at"]).total_seconds() * 1000))
        row.update(
            status=NotificationStatus.SENT.value,
            sent_at=sent_at,
            delivery_time_ms=latency,
            chat_message_id=chat_message_id,
            error_message=error_message,
        )
        return latency

    async def mark_notification_failed(self, notification_id: int, error_message: str,
                                       retryable: bool = True, max_retries: int = 3) -> str:
        row = self._notifications.get(notification_id)
        if row is None:
            return NotificationStatus.FAILED.value
        row["retry_count"] += 1
        exhausted = not retryable or row["retry_count"] >= max_retries
        row["status"] = (NotificationStatus.FAILED if exhausted else NotificationStatus.RETRYING).value
        row["error_message"] = error_message
        return row["status"]

    # ── Metrics ───────────────────────────────────────────

    async def record_notification_metric(self, date: str, notification_type: str,
                                         success: bool, latency_ms: float = None) -> None:
        now = _utcnow()
        key = (date, notification_type)
        row = self._metrics.get(key)
        if row is None:
            row = {
                "id": next(self._metric_ids),
                "date": date,
                "notification_type": notification_type,
                "total_count": 0,
                "success_count": 0,
                "failure_count": 0,
                "avg_delivery_time_ms": 0.0,
                "created_at": now,
            }
            self._metrics[key] = row
        if success:
            if latency_ms is not None:
                samples = row["success_count"]
                row["avg_delivery_time_ms"] = (
                    (row["avg_delivery_time_ms"] * samples + latency_ms) / (samples + 1)
                )
            row["success_count"] += 1
        else:
            row["failure_count"] += 1
        row["total_count"] += 1
        row["updated_at"] = now

    async def get_notification_metrics(self, since_date: str = None) -> list[dict[str, Any]]:
        rows = [
            m for m in self._metrics.values()
            if since_date is None or m["date"] >= since_date
        ]
        rows.sort(key=lambda m: (m["date"], m["notification_type"]), reverse=True)
        return copy.deepcopy(rows)

    # ── Retention ─────────────────────────────────────────

    async def cleanup_old_records(self, days_to_keep: int = 30,
                                  sent_days_to_keep: int = 7) -> dict[str, int]:
        now = _utcnow()
        cutoff = now - timedelta(days=days_to_keep)
        sent_cutoff = now - timedelta(days=sent_days_to_keep)
        cutoff_date = cutoff.date().isoformat()

        states_deleted = 0
        for call_sid, entries in self._states.items():
            kept = [e for e in entries if e["timestamp"] >= cutoff]
            states_deleted += len(entries) - len(kept)
            self._states[call_sid] = kept

        sent_ids = [
            nid for nid, n in self._notifications.items()
            if n["status"] == NotificationStatus.SENT.value and n["created_at"] < sent_cutoff
        ]
        for nid in sent_ids:
            del self._notifications[nid]

        metric_keys = [k for k in self._metrics if k[0] < cutoff_date]
        for k in metric_keys:
            del self._metrics[k]

        return {
            "call_states": states_deleted,
            "notifications": len(sent_ids),
            "metrics": len(metric_keys),
        }

    # ── Stats ─────────────────────────────────────────────

    async def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = defaultdict(int)
        for n in self._notifications.values():
            by_status[n["status"]] += 1
        return {
            "backend": "memory",
            "calls": len(self._calls),
            "call_states": sum(len(v) for v in self._states.values()),
            "notifications": dict(by_status),
        }
