"""
Notification renderer — turns notification rows into operator chat text.

Rendering only reads the notification payload and the (by then frozen)
call columns, so re-rendering a row always yields the same text; the
delivery queue relies on that for dedup.
"""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import FinalOutcome, NotificationType, RenderedMessage
from utils.masking import mask_phone

OUTCOME_LABELS = {
    FinalOutcome.ANSWERED_WITH_INPUT.value: "✅ Answered, input captured",
    FinalOutcome.ANSWERED_NO_INPUT_HUMAN.value: "🙋 Answered by a person, no input",
    FinalOutcome.ANSWERED_NO_INPUT_MACHINE.value: "📠 Answered by a machine, no input",
    FinalOutcome.NO_ANSWER.value: "🔕 No answer",
    FinalOutcome.BUSY.value: "📵 Busy",
    FinalOutcome.FAILED.value: "🚫 Failed",
    FinalOutcome.CANCELED.value: "✖️ Canceled",
}

REASON_LABELS = {
    "empty": "nothing entered",
    "length": "wrong number of digits",
    "pattern": "invalid characters",
    "mismatch": "did not match",
}

_SIMPLE_TEXT = {
    NotificationType.CALL_RINGING.value: "🔔 Ringing",
    NotificationType.CALL_FAILED.value: "🚫 Call failed",
    NotificationType.CALL_BUSY.value: "📵 Line busy",
    NotificationType.CALL_NO_ANSWER.value: "🔕 No answer",
    NotificationType.CALL_CANCELED.value: "✖️ Call canceled",
}


def call_buttons(call_sid: str) -> list[list[dict[str, str]]]:
    return [[
        {"text": "Details", "callback_data": f"details:{call_sid}"},
        {"text": "Timeline", "callback_data": f"timeline:{call_sid}"},
    ]]


def render_header(call: dict[str, Any]) -> str:
    """First message of a call's thread; every later message replies to it."""
    lines = [
        f"📞 Call to {mask_phone(call.get('to_number', '')) or 'unknown'}",
        f"Scenario: {call.get('scenario_key') or '-'}",
        f"SID: {call['call_sid']}",
    ]
    return "\n".join(lines)


def _duration(call: Optional[dict[str, Any]]) -> str:
    seconds = (call or {}).get("duration_seconds")
    if seconds is None:
        return ""
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s" if minutes else f"{secs}s"


def render_text(notification: dict[str, Any], call: Optional[dict[str, Any]] = None) -> str:
    ntype = notification["notification_type"]
    payload = notification.get("payload") or {}

    if ntype in _SIMPLE_TEXT:
        return _SIMPLE_TEXT[ntype]

    if ntype == NotificationType.CALL_INITIATED.value:
        number = mask_phone((call or {}).get("to_number", ""))
        return f"📤 Call placed{f' to {number}' if number else ''}"

    if ntype == NotificationType.CALL_ANSWERED.value:
        return "📲 Call answered"

    if ntype == NotificationType.CALL_COMPLETED.value:
        duration = _duration(call)
        return f"☎️ Call completed{f' ({duration})' if duration else ''}"

    if ntype == NotificationType.CALL_INPUT_RETRY.value:
        reason = REASON_LABELS.get(payload.get("reason", ""), "invalid entry")
        return (
            f"⚠️ {payload.get('stage', 'Input')}: {reason} "
            f"(retry {payload.get('attempt', '?')}/{payload.get('max_retries', '?')})"
        )

    if ntype == NotificationType.CALL_INPUT_FAILED.value:
        reason = REASON_LABELS.get(payload.get("reason", ""), "invalid entry")
        return (
            f"❌ {payload.get('stage', 'Input')} not captured after "
            f"{payload.get('attempts', '?')} attempts ({reason})"
        )

    if ntype == NotificationType.CALL_ENDED.value:
        attempts = payload.get("attempt") or 0
        suffix = f" after {attempts} invalid attempt{'s' if attempts != 1 else ''}" if attempts else ""
        return f"📴 Caller hung up during {payload.get('stage', 'input')}{suffix}"

    if ntype == NotificationType.CALL_INPUT_SUCCESS.value:
        lines = ["🔐 Input captured"]
        for item in payload.get("inputs", []):
            lines.append(f"• {item.get('stage', '')}: {item.get('value', '')}")
        return "\n".join(lines)

    if ntype == NotificationType.CALL_FINAL_OUTCOME.value:
        outcome = payload.get("outcome", "")
        lines = [f"🏁 {OUTCOME_LABELS.get(outcome, outcome or 'Call ended')}"]
        duration = _duration(call)
        if duration:
            lines.append(f"Duration: {duration}")
        if call and call.get("latest_input_preview"):
            lines.append(f"Last input: {call['latest_input_preview']}")
        return "\n".join(lines)

    return f"ℹ️ {ntype.replace('_', ' ')}"


def render_notification(notification: dict[str, Any],
                        call: Optional[dict[str, Any]] = None) -> RenderedMessage:
    ntype = notification["notification_type"]
    buttons = (
        call_buttons(notification["call_sid"])
        if ntype == NotificationType.CALL_FINAL_OUTCOME.value else []
    )
    return RenderedMessage(
        notification_id=notification["id"],
        call_sid=notification["call_sid"],
        chat_id=str(notification["chat_id"]),
        notification_type=ntype,
        text=render_text(notification, call),
        buttons=buttons,
        created_at=notification["created_at"],
    )
