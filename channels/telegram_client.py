"""
Telegram Bot API client — operator notifications for call progress.

Only `sendMessage` is used:
  - text messages with optional inline keyboard buttons
  - replies to the call's header message so one call reads as one thread

Failures are split for retry accounting:
  - transport errors, timeouts, HTTP 5xx and 429 → ChatNetworkError
  - other HTTP 4xx or {"ok": false} → ChatRejectedError

API Docs: https://core.telegram.org/bots/api#sendmessage
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import ChatNetworkError, ChatRejectedError

logger = structlog.get_logger()


class TelegramClient:
    """Async Bot API client used by the delivery queue."""

    def __init__(
        self,
        bot_token: str,
        api_base_url: str = "https://api.telegram.org",
        timeout_s: float = 5.0,
        parse_mode: str = "",
        max_attempts: int = 2,
        retry_wait_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.base_url = f"{api_base_url.rstrip('/')}/bot{bot_token}"
        self.timeout_s = timeout_s
        self.parse_mode = parse_mode
        self.max_attempts = max(1, max_attempts)
        self.retry_wait_s = retry_wait_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s, connect=min(self.timeout_s, 5.0)),
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}/{method}"
        try:
            resp = await client.post(url, json=payload)
        except httpx.TransportError as e:
            raise ChatNetworkError(f"{type(e).__name__}: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code == 429 or resp.status_code >= 500:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            logger.warning("telegram_api_unavailable", status=resp.status_code,
                           method=method, retry_after=retry_after)
            raise ChatNetworkError(
                body.get("description") or f"HTTP {resp.status_code}",
                status_code=resp.status_code, retry_after=retry_after,
            )
        if resp.status_code >= 400 or not body.get("ok", False):
            logger.error("telegram_api_error", status=resp.status_code,
                         method=method, body=resp.text[:500])
            raise ChatRejectedError(
                body.get("description") or f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return body.get("result") or {}

    async def _request_with_retry(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_s, max=5),
            retry=retry_if_exception_type(ChatNetworkError),
            reraise=True,
        ):
            with attempt:
                return await self._request(method, payload)

    # ── Messaging ───────────────────────────────────────────

    async def send(
        self,
        chat_id: str,
        text: str,
        thread_id: Optional[str] = None,
        buttons: Optional[list[list[dict[str, str]]]] = None,
    ) -> dict[str, Any]:
        """
        Send a message, optionally as a reply to `thread_id`.

        Returns {"message_id": "<id>"}.
        """
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if self.parse_mode:
            payload["parse_mode"] = self.parse_mode
        if thread_id:
            payload["reply_parameters"] = {
                "message_id": int(thread_id) if str(thread_id).isdigit() else thread_id,
                "allow_sending_without_reply": True,
            }
        if buttons:
            payload["reply_markup"] = {"inline_keyboard": buttons}

        result = await self._request_with_retry("sendMessage", payload)
        message_id = result.get("message_id")
        logger.debug("telegram_message_sent", chat_id=chat_id, message_id=message_id,
                     threaded=bool(thread_id))
        return {"message_id": str(message_id) if message_id is not None else None}

    # ── Helpers ─────────────────────────────────────────────

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
