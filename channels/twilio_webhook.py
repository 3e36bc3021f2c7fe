"""
Twilio voice webhooks — payload normalisation and request signing.

Twilio posts form-encoded callbacks to the voice URL (Gather actions) and
to the status callback URL:
  - CallSid, CallStatus, Digits?, From, To, Direction, CallDuration,
    AnsweredBy (when AMD is enabled), SipResponseCode, ErrorCode, etc.

Signature scheme (X-Twilio-Signature):
  base64(HMAC-SHA1(auth_token, url + "".join(k + v for k, v in sorted(params))))

API Docs: https://www.twilio.com/docs/usage/webhooks/webhooks-security
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

logger = structlog.get_logger()


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_status_webhook(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Normalize a Twilio voice/status webhook into our internal format.

    Status spellings are kept raw here; ledger.outcome.normalize_status maps
    them onto the call lifecycle.
    """
    status_raw = str(payload.get("CallStatus", payload.get("Status", "")) or "").strip().lower()

    # Twilio direction format: "outbound-api", "inbound", "outbound-dial"
    direction = payload.get("Direction", "outbound-api") or "outbound-api"
    if "-" in direction:
        direction = direction.split("-")[0]

    digits = payload.get("Digits")
    return {
        "call_sid": payload.get("CallSid", ""),
        "status": status_raw,
        "direction": direction.lower(),
        "from": payload.get("From", ""),
        "to": payload.get("To", ""),
        # Digits="" is a real submission (actionOnEmptyResult), absence is not
        "digits": None if digits is None else str(digits),
        "duration": _to_int(payload.get("CallDuration", payload.get("Duration"))),
        "answered_by": payload.get("AnsweredBy", ""),
        "sip_response_code": _to_int(payload.get("SipResponseCode")),
        "error_code": payload.get("ErrorCode", ""),
        "timestamp": payload.get(
            "Timestamp", datetime.now(timezone.utc).isoformat()
        ),
    }


def compute_signature(auth_token: str, url: str, params: dict[str, Any]) -> str:
    data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    mac = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1)
    return base64.b64encode(mac.digest()).decode()


def validate_signature(auth_token: str, url: str, params: dict[str, Any],
                       signature: Optional[str]) -> bool:
    """Check X-Twilio-Signature for a form-encoded POST."""
    if not auth_token or not signature:
        return False
    expected = compute_signature(auth_token, url, params)
    valid = hmac.compare_digest(expected, signature)
    if not valid:
        logger.warning("twilio_signature_mismatch", url=url)
    return valid
