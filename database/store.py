"""
SqlLedgerStore — Portable SQL queries for PostgreSQL and SQLite.

Write-ordering guarantees:
  - call_states.sequence_number and call_inputs.step are computed by a
    COALESCE(MAX(..), 0) + 1 subquery inside the INSERT itself, after the
    parent call row is locked (SELECT ... FOR UPDATE on PostgreSQL; SQLite
    transactions start with BEGIN IMMEDIATE, see database/session.py).
  - notification_metrics is updated with a single UPDATE whose SET clause
    reads the old values, falling back to INSERT when the row is absent.
  - Priority / type ordering uses case() expressions instead of
    database-specific array functions.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, insert, and_, case, func
from sqlalchemy.exc import IntegrityError

from database.models import (
    CallRow, CallStateRow, CallInputRow, WebhookNotificationRow, NotificationMetricRow,
)
from database.session import get_session
from database.store_base import BaseLedgerStore
from models.schemas import (
    NotificationStatus, PRIORITY_RANK, FAILURE_TYPES, SUCCESS_TYPES, TYPE_RANK_DEFAULT,
)

logger = structlog.get_logger()

_DUE = (NotificationStatus.PENDING.value, NotificationStatus.RETRYING.value)

# Call dict key → ORM attribute, where they differ
_CALL_ATTRS = {"metadata": "metadata_"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _priority_order():
    return case(PRIORITY_RANK, value=WebhookNotificationRow.priority, else_=99)


def _type_order():
    col = WebhookNotificationRow.notification_type
    return case(
        (col.in_(sorted(FAILURE_TYPES)), 0),
        (col.in_(sorted(SUCCESS_TYPES)), 1),
        else_=TYPE_RANK_DEFAULT,
    )


class SqlLedgerStore(BaseLedgerStore):
    """
    Persistent ledger store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite (3.35+ for RETURNING).
    """

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, call_sid: str, **fields) -> dict[str, Any]:
        async with get_session() as db:
            if await db.get(CallRow, call_sid) is not None:
                raise ValueError(f"call already exists: {call_sid}")
            row = CallRow(call_sid=call_sid, **{_CALL_ATTRS.get(k, k): v for k, v in fields.items()})
            db.add(row)
            await db.flush()
            return self._call_to_dict(row)

    async def get_call(self, call_sid: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            row = await db.get(CallRow, call_sid)
            return self._call_to_dict(row) if row else None

    async def update_call(self, call_sid: str, **fields) -> None:
        async with get_session() as db:
            row = await db.get(CallRow, call_sid)
            if row is None:
                logger.warning("update_unknown_call", call_sid=call_sid)
                return
            for key, value in fields.items():
                setattr(row, _CALL_ATTRS.get(key, key), value)

    async def set_final_outcome(self, call_sid: str, outcome: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(CallRow)
                .where(and_(CallRow.call_sid == call_sid, CallRow.final_outcome.is_(None)))
                .values(final_outcome=outcome, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def list_recent_calls(self, limit: int = 50) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(CallRow).order_by(CallRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._call_to_dict(r) for r in result.scalars()]

    # ── Call state ledger ─────────────────────────────────

    async def _lock_call(self, db, call_sid: str) -> None:
        # FOR UPDATE is dropped by the SQLite compiler; BEGIN IMMEDIATE covers it there
        await db.execute(
            select(CallRow.call_sid).where(CallRow.call_sid == call_sid).with_for_update()
        )

    async def append_call_state(self, call_sid: str, state: str,
                                data: dict[str, Any] = None) -> int:
        async with get_session() as db:
            await self._lock_call(db, call_sid)
            next_sequence = (
                select(func.coalesce(func.max(CallStateRow.sequence_number), 0) + 1)
                .where(CallStateRow.call_sid == call_sid)
                .scalar_subquery()
            )
            result = await db.execute(
                insert(CallStateRow)
                .values(
                    call_sid=call_sid,
                    state=state,
                    data=data or {},
                    sequence_number=next_sequence,
                    timestamp=_utcnow(),
                )
                .returning(CallStateRow.sequence_number)
            )
            return result.scalar_one()

    async def get_call_states(self, call_sid: str) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(CallStateRow)
                .where(CallStateRow.call_sid == call_sid)
                .order_by(CallStateRow.sequence_number)
            )
            result = await db.execute(stmt)
            return [self._state_to_dict(r) for r in result.scalars()]

    async def get_latest_call_state(self, call_sid: str,
                                    state: Optional[str] = None) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(CallStateRow).where(CallStateRow.call_sid == call_sid)
            if state:
                stmt = stmt.where(CallStateRow.state == state)
            stmt = stmt.order_by(CallStateRow.sequence_number.desc()).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._state_to_dict(row) if row else None

    # ── Collected inputs ──────────────────────────────────

    async def add_call_input(self, call_sid: str, value: str, input_type: str = "digit",
                             stage_key: str = "", confidence: float = None) -> int:
        async with get_session() as db:
            await self._lock_call(db, call_sid)
            next_step = (
                select(func.coalesce(func.max(CallInputRow.step), 0) + 1)
                .where(CallInputRow.call_sid == call_sid)
                .scalar_subquery()
            )
            result = await db.execute(
                insert(CallInputRow)
                .values(
                    call_sid=call_sid,
                    step=next_step,
                    stage_key=stage_key,
                    input_type=input_type,
                    value=value,
                    confidence=confidence,
                    captured_at=_utcnow(),
                )
                .returning(CallInputRow.step)
            )
            return result.scalar_one()

    async def get_call_inputs(self, call_sid: str) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(CallInputRow)
                .where(CallInputRow.call_sid == call_sid)
                .order_by(CallInputRow.step)
            )
            result = await db.execute(stmt)
            return [
                {
                    "id": r.id, "call_sid": r.call_sid, "step": r.step,
                    "stage_key": r.stage_key, "input_type": r.input_type,
                    "value": r.value, "confidence": r.confidence,
                    "captured_at": _aware(r.captured_at),
                }
                for r in result.scalars()
            ]

    # ── Notifications ─────────────────────────────────────

    async def create_notification(self, call_sid: str, notification_type: str, chat_id: str,
                                  priority: str = "normal",
                                  payload: dict[str, Any] = None) -> dict[str, Any]:
        async with get_session() as db:
            row = WebhookNotificationRow(
                call_sid=call_sid,
                notification_type=notification_type,
                chat_id=chat_id,
                status=NotificationStatus.PENDING.value,
                priority=priority,
                retry_count=0,
                payload=payload or {},
                created_at=_utcnow(),
            )
            db.add(row)
            await db.flush()
            return self._notification_to_dict(row)

    async def get_notification(self, notification_id: int) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            row = await db.get(WebhookNotificationRow, notification_id)
            return self._notification_to_dict(row) if row else None

    def _due_filter(self, max_retries: int):
        return and_(
            WebhookNotificationRow.status.in_(_DUE),
            WebhookNotificationRow.retry_count < max_retries,
        )

    async def get_pending_notifications(self, limit: int = 50,
                                        max_retries: int = 3) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(WebhookNotificationRow)
                .where(self._due_filter(max_retries))
                .order_by(
                    _priority_order(),
                    _type_order(),
                    WebhookNotificationRow.created_at.asc(),
                    WebhookNotificationRow.id.asc(),
                )
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._notification_to_dict(r) for r in result.scalars()]

    async def get_pending_notifications_for_call(self, call_sid: str,
                                                 max_retries: int = 3) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(WebhookNotificationRow)
                .where(and_(
                    WebhookNotificationRow.call_sid == call_sid,
                    self._due_filter(max_retries),
                ))
                .order_by(WebhookNotificationRow.created_at.asc(), WebhookNotificationRow.id.asc())
            )
            result = await db.execute(stmt)
            return [self._notification_to_dict(r) for r in result.scalars()]

    async def mark_notification_sent(self, notification_id: int,
                                     chat_message_id: str = None,
                                     error_message: str = None,
                                     sent_at: datetime = None) -> Optional[int]:
        async with get_session() as db:
            row = await db.get(WebhookNotificationRow, notification_id)
            if row is None:
                return None
            sent_at = sent_at or _utcnow()
            latency = max(0, int((sent_at - _aware(row.created_at)).total_seconds() * 1000))
            row.status = NotificationStatus.SENT.value
            row.sent_at = sent_at
            row.delivery_time_ms = latency
            row.chat_message_id = chat_message_id
            row.error_message = error_message
            return latency

    async def mark_notification_failed(self, notification_id: int, error_message: str,
                                       retryable: bool = True, max_retries: int = 3) -> str:
        async with get_session() as db:
            stmt = (
                select(WebhookNotificationRow)
                .where(WebhookNotificationRow.id == notification_id)
                .with_for_update()
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return NotificationStatus.FAILED.value
            row.retry_count = (row.retry_count or 0) + 1
            exhausted = not retryable or row.retry_count >= max_retries
            row.status = (NotificationStatus.FAILED if exhausted else NotificationStatus.RETRYING).value
            row.error_message = error_message
            return row.status

    # ── Metrics ───────────────────────────────────────────

    async def record_notification_metric(self, date: str, notification_type: str,
                                         success: bool, latency_ms: float = None) -> None:
        m = NotificationMetricRow
        values: dict[str, Any] = {
            "total_count": m.total_count + 1,
            "updated_at": _utcnow(),
        }
        if success:
            values["success_count"] = m.success_count + 1
            if latency_ms is not None:
                values["avg_delivery_time_ms"] = (
                    (m.avg_delivery_time_ms * m.success_count + latency_ms) / (m.success_count + 1)
                )
        else:
            values["failure_count"] = m.failure_count + 1

        stmt = (
            update(m)
            .where(and_(m.date == date, m.notification_type == notification_type))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with get_session() as db:
            result = await db.execute(stmt)
            if result.rowcount:
                return
            try:
                async with db.begin_nested():
                    db.add(NotificationMetricRow(
                        date=date,
                        notification_type=notification_type,
                        total_count=1,
                        success_count=1 if success else 0,
                        failure_count=0 if success else 1,
                        avg_delivery_time_ms=float(latency_ms) if success and latency_ms is not None else 0.0,
                    ))
            except IntegrityError:
                # another writer inserted the row first
                await db.execute(stmt)

    async def get_notification_metrics(self, since_date: str = None) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(NotificationMetricRow)
            if since_date:
                stmt = stmt.where(NotificationMetricRow.date >= since_date)
            stmt = stmt.order_by(
                NotificationMetricRow.date.desc(), NotificationMetricRow.notification_type.desc(),
            )
            result = await db.execute(stmt)
            return [
                {
                    "id": r.id, "date": r.date, "notification_type": r.notification_type,
                    "total_count": r.total_count, "success_count": r.success_count,
                    "failure_count": r.failure_count,
                    "avg_delivery_time_ms": r.avg_delivery_time_ms,
                    "created_at": _aware(r.created_at), "updated_at": _aware(r.updated_at),
                }
                for r in result.scalars()
            ]

    # ── Retention ─────────────────────────────────────────

    async def cleanup_old_records(self, days_to_keep: int = 30,
                                  sent_days_to_keep: int = 7) -> dict[str, int]:
        now = _utcnow()
        cutoff = now - timedelta(days=days_to_keep)
        sent_cutoff = now - timedelta(days=sent_days_to_keep)

        async with get_session() as db:
            states = await db.execute(
                delete(CallStateRow).where(CallStateRow.timestamp < cutoff)
            )
            notifications = await db.execute(
                delete(WebhookNotificationRow).where(and_(
                    WebhookNotificationRow.status == NotificationStatus.SENT.value,
                    WebhookNotificationRow.created_at < sent_cutoff,
                ))
            )
            metrics = await db.execute(
                delete(NotificationMetricRow).where(
                    NotificationMetricRow.date < cutoff.date().isoformat()
                )
            )
            return {
                "call_states": states.rowcount,
                "notifications": notifications.rowcount,
                "metrics": metrics.rowcount,
            }

    # ── Stats ─────────────────────────────────────────────

    async def get_stats(self) -> dict[str, Any]:
        async with get_session() as db:
            calls = (await db.execute(select(func.count()).select_from(CallRow))).scalar_one()
            states = (await db.execute(select(func.count()).select_from(CallStateRow))).scalar_one()
            rows = await db.execute(
                select(WebhookNotificationRow.status, func.count())
                .group_by(WebhookNotificationRow.status)
            )
            return {
                "backend": "sql",
                "calls": calls,
                "call_states": states,
                "notifications": {status: count for status, count in rows.all()},
            }

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _call_to_dict(row: CallRow) -> dict[str, Any]:
        return {
            "call_sid": row.call_sid,
            "to_number": row.to_number,
            "from_number": row.from_number,
            "scenario_key": row.scenario_key,
            "chat_id": row.chat_id,
            "status": row.status,
            "provider_status": row.provider_status,
            "answered_by": row.answered_by,
            "final_outcome": row.final_outcome,
            "requires_input": row.requires_input,
            "has_input": row.has_input,
            "latest_input_preview": row.latest_input_preview,
            "chat_header_message_id": row.chat_header_message_id,
            "duration_seconds": row.duration_seconds,
            "metadata": row.metadata_ or {},
            "created_at": _aware(row.created_at),
            "updated_at": _aware(row.updated_at),
            "started_at": _aware(row.started_at),
            "ended_at": _aware(row.ended_at),
        }

    @staticmethod
    def _state_to_dict(row: CallStateRow) -> dict[str, Any]:
        return {
            "id": row.id,
            "call_sid": row.call_sid,
            "state": row.state,
            "data": row.data or {},
            "sequence_number": row.sequence_number,
            "timestamp": _aware(row.timestamp),
        }

    @staticmethod
    def _notification_to_dict(row: WebhookNotificationRow) -> dict[str, Any]:
        return {
            "id": row.id,
            "call_sid": row.call_sid,
            "notification_type": row.notification_type,
            "chat_id": row.chat_id,
            "status": row.status,
            "priority": row.priority,
            "retry_count": row.retry_count,
            "error_message": row.error_message,
            "payload": row.payload or {},
            "chat_message_id": row.chat_message_id,
            "delivery_time_ms": row.delivery_time_ms,
            "created_at": _aware(row.created_at),
            "sent_at": _aware(row.sent_at),
        }
