"""
Abstract Ledger Store — Interface for all storage backends.

Implementations:
  - SqlLedgerStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryLedgerStore (dict-based, single-process, no persistence)

Rows are exchanged as plain dicts keyed by column name. Datetimes are
timezone-aware UTC on every backend.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional


class BaseLedgerStore(ABC):
    """Interface that all ledger store backends must implement."""

    # ── Calls ─────────────────────────────────────────────────

    @abstractmethod
    async def create_call(self, call_sid: str, **fields) -> dict[str, Any]:
        """Insert a call row. Raises ValueError if the call_sid already exists."""
        ...

    @abstractmethod
    async def get_call(self, call_sid: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def update_call(self, call_sid: str, **fields) -> None:
        ...

    @abstractmethod
    async def set_final_outcome(self, call_sid: str, outcome: str) -> bool:
        """Write final_outcome only if it is still null. Returns True if written."""
        ...

    @abstractmethod
    async def list_recent_calls(self, limit: int = 50) -> list[dict[str, Any]]:
        ...

    # ── Call state ledger ─────────────────────────────────────

    @abstractmethod
    async def append_call_state(self, call_sid: str, state: str,
                                data: dict[str, Any] = None) -> int:
        """Append a ledger entry and return its per-call sequence number."""
        ...

    @abstractmethod
    async def get_call_states(self, call_sid: str) -> list[dict[str, Any]]:
        """All entries for a call in sequence order."""
        ...

    @abstractmethod
    async def get_latest_call_state(self, call_sid: str,
                                    state: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Highest-sequence entry for a call, optionally restricted to one state label."""
        ...

    # ── Collected inputs ──────────────────────────────────────

    @abstractmethod
    async def add_call_input(self, call_sid: str, value: str, input_type: str = "digit",
                             stage_key: str = "", confidence: float = None) -> int:
        """Store a masked capture and return its per-call step index."""
        ...

    @abstractmethod
    async def get_call_inputs(self, call_sid: str) -> list[dict[str, Any]]:
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def create_notification(self, call_sid: str, notification_type: str, chat_id: str,
                                  priority: str = "normal",
                                  payload: dict[str, Any] = None) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_notification(self, notification_id: int) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_pending_notifications(self, limit: int = 50,
                                        max_retries: int = 3) -> list[dict[str, Any]]:
        """Due rows ordered by priority, type rank, created_at, id."""
        ...

    @abstractmethod
    async def get_pending_notifications_for_call(self, call_sid: str,
                                                 max_retries: int = 3) -> list[dict[str, Any]]:
        """Due rows of one call in creation order."""
        ...

    @abstractmethod
    async def mark_notification_sent(self, notification_id: int,
                                     chat_message_id: str = None,
                                     error_message: str = None,
                                     sent_at: datetime = None) -> Optional[int]:
        """Mark delivered. Returns delivery latency in ms (sent_at - created_at)."""
        ...

    @abstractmethod
    async def mark_notification_failed(self, notification_id: int, error_message: str,
                                       retryable: bool = True, max_retries: int = 3) -> str:
        """Bump retry_count and return the resulting status (retrying | failed)."""
        ...

    # ── Metrics ───────────────────────────────────────────────

    @abstractmethod
    async def record_notification_metric(self, date: str, notification_type: str,
                                         success: bool, latency_ms: float = None) -> None:
        """Atomic per-(date, type) upsert with an incremental latency mean."""
        ...

    @abstractmethod
    async def get_notification_metrics(self, since_date: str = None) -> list[dict[str, Any]]:
        ...

    # ── Retention ─────────────────────────────────────────────

    @abstractmethod
    async def cleanup_old_records(self, days_to_keep: int = 30,
                                  sent_days_to_keep: int = 7) -> dict[str, int]:
        ...

    # ── Stats ─────────────────────────────────────────────────

    async def get_stats(self) -> dict[str, Any]:
        """Override in backends that can count cheaply."""
        return {}
