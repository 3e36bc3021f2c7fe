"""
Channel errors — structured error hierarchy for outbound chat delivery.

The delivery queue decides retry accounting from `retryable`:
  - ChatNetworkError: transport failure, timeout, 5xx, 429 → retry later
  - ChatRejectedError: the platform refused the request → permanent
"""
from __future__ import annotations

from typing import Optional


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ChatNetworkError(ChannelError):
    def __init__(self, message: str, channel: str = "telegram",
                 status_code: Optional[int] = None, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message, channel, retryable=True)


class ChatRejectedError(ChannelError):
    def __init__(self, message: str, channel: str = "telegram",
                 status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, channel, retryable=False)
