"""
Notification pipeline — ledger rows to ordered, threaded chat messages.

    webhook_notifications → NotificationSelector → NotificationPoller
      → DeliveryQueue (per call) → TelegramClient → MetricsAggregator
"""
from notifications.delivery_queue import DeliveryQueue, DUPLICATE_MARKER
from notifications.keyed_store import InMemoryKeyedStore, KeyedStore
from notifications.metrics import MetricsAggregator
from notifications.poller import NotificationPoller
from notifications.renderer import render_header, render_notification, render_text
from notifications.selector import NotificationSelector

__all__ = [
    "DeliveryQueue", "DUPLICATE_MARKER",
    "InMemoryKeyedStore", "KeyedStore",
    "MetricsAggregator",
    "NotificationPoller",
    "render_header", "render_notification", "render_text",
    "NotificationSelector",
]
