"""
Metrics aggregator — daily delivery counters per notification type.

Each delivery attempt updates the (UTC date, type) row atomically:
total/success/failure counts plus a running mean of delivery latency.
Only successful sends carry a latency sample; the mean is taken over
success_count, so it equals the arithmetic mean of recorded latencies.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from database.store_base import BaseLedgerStore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricsAggregator:

    def __init__(self, store: BaseLedgerStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    def today(self) -> str:
        return self._clock().date().isoformat()

    async def record_delivery(self, notification_type: str, success: bool,
                              latency_ms: Optional[float] = None) -> None:
        date = self.today()
        await self.store.record_notification_metric(
            date, notification_type, success,
            latency_ms if success else None,
        )
        logger.debug("delivery_metric_recorded", date=date, type=notification_type,
                     success=success, latency_ms=latency_ms)

    async def get_metrics(self, days: int = 7) -> list[dict[str, Any]]:
        since = (self._clock() - timedelta(days=max(days - 1, 0))).date().isoformat()
        return await self.store.get_notification_metrics(since_date=since)

    async def summary(self, days: int = 7) -> dict[str, Any]:
        """Totals across types, with a success-weighted mean latency."""
        rows = await self.get_metrics(days)
        total = sum(r["total_count"] for r in rows)
        success = sum(r["success_count"] for r in rows)
        failure = sum(r["failure_count"] for r in rows)
        weighted = sum(r["avg_delivery_time_ms"] * r["success_count"] for r in rows)
        return {
            "days": days,
            "total": total,
            "success": success,
            "failure": failure,
            "success_rate": round(success / total, 4) if total else 0.0,
            "avg_delivery_time_ms": round(weighted / success, 2) if success else 0.0,
            "by_type": rows,
        }
