"""
Notification candidate selector.

Due rows are `pending` or `retrying` with retry_count below the cap, in a
fixed total order:

    priority   urgent < high < normal < low
    type       failure types < success/terminal types < progress types
    created_at ascending
    id         ascending (insertion order breaks remaining ties)

Rows that reached the cap are never selected again.
"""
from __future__ import annotations

from typing import Any, Optional

from database.store_base import BaseLedgerStore


class NotificationSelector:

    def __init__(self, store: BaseLedgerStore, max_retries: int = 3, batch_size: int = 50):
        self.store = store
        self.max_retries = max_retries
        self.batch_size = batch_size

    async def select_pending(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        return await self.store.get_pending_notifications(
            limit=limit or self.batch_size, max_retries=self.max_retries,
        )

    async def select_for_call(self, call_sid: str) -> list[dict[str, Any]]:
        """All due rows of one call, oldest first, so a started call drains in creation order."""
        return await self.store.get_pending_notifications_for_call(
            call_sid, max_retries=self.max_retries,
        )
