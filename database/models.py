"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type for opaque payload columns — on PG the dialect maps JSON to
    json; on SQLite it serializes to TEXT.
  - Integer autoincrement ids for ledger and notification rows so that
    (created_at, id) is a total insertion order.
  - Per-call ordering columns (sequence_number, step) are unique per call
    and assigned inside the INSERT statement, see database/store.py.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Calls
# ──────────────────────────────────────────────────────────────

class CallRow(Base):
    __tablename__ = "calls"

    call_sid: Mapped[str] = mapped_column(String(64), primary_key=True)
    to_number: Mapped[str] = mapped_column(String(32), default="")
    from_number: Mapped[str] = mapped_column(String(32), default="")
    scenario_key: Mapped[str] = mapped_column(String(64), default="")
    chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(32), default="initiated")
    provider_status: Mapped[str] = mapped_column(String(64), default="")
    answered_by: Mapped[str] = mapped_column(String(16), default="unknown")
    final_outcome: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    requires_input: Mapped[bool] = mapped_column(Boolean, default=True)
    has_input: Mapped[bool] = mapped_column(Boolean, default=False)
    latest_input_preview: Mapped[str] = mapped_column(String(64), default="")
    chat_header_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_calls_status", "status"),
        Index("ix_calls_created", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Call state ledger
# ──────────────────────────────────────────────────────────────

class CallStateRow(Base):
    __tablename__ = "call_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_sid: Mapped[str] = mapped_column(String(64), ForeignKey("calls.call_sid"), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    data: Mapped[Any] = mapped_column(JSON, default=dict)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("call_sid", "sequence_number", name="uq_call_states_sequence"),
        Index("ix_call_states_timestamp", "timestamp"),
    )


# ──────────────────────────────────────────────────────────────
#  Collected inputs
# ──────────────────────────────────────────────────────────────

class CallInputRow(Base):
    __tablename__ = "call_inputs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_sid: Mapped[str] = mapped_column(String(64), ForeignKey("calls.call_sid"), nullable=False)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_key: Mapped[str] = mapped_column(String(64), default="")
    input_type: Mapped[str] = mapped_column(String(16), default="digit")
    value: Mapped[str] = mapped_column(String(64), default="")          # masked
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("call_sid", "step", name="uq_call_inputs_step"),
    )


# ──────────────────────────────────────────────────────────────
#  Webhook notifications
# ──────────────────────────────────────────────────────────────

class WebhookNotificationRow(Base):
    __tablename__ = "webhook_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_sid: Mapped[str] = mapped_column(String(64), ForeignKey("calls.call_sid"), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    priority: Mapped[str] = mapped_column(String(16), default="normal")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    chat_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivery_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_notifications_status_retry", "status", "retry_count"),
        Index("ix_notifications_call", "call_sid", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Notification metrics
# ──────────────────────────────────────────────────────────────

class NotificationMetricRow(Base):
    __tablename__ = "notification_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)      # YYYY-MM-DD (UTC)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_delivery_time_ms: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("date", "notification_type", name="uq_metrics_date_type"),
    )
