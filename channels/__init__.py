"""Provider-facing channels: Telegram delivery and Twilio voice webhooks."""
from channels.base import (
    ChannelError,
    ChatNetworkError,
    ChatRejectedError,
)
from channels.telegram_client import TelegramClient
from channels.twilio_webhook import (
    compute_signature,
    parse_status_webhook,
    validate_signature,
)

__all__ = [
    "ChannelError", "ChatNetworkError", "ChatRejectedError",
    "TelegramClient",
    "compute_signature", "parse_status_webhook", "validate_signature",
]
