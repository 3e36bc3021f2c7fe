"""
TwiML builders — the voice-response markup returned to Twilio webhooks.

Shapes:
  gather()       → <Gather> with the stage prompt (optionally preceded by a
                   spoken failure preamble on retries)
  end_call()     → <Say> + <Hangup/>
  empty()        → <Response/> (terminal statuses, ignored redeliveries)
  redirect()     → <Redirect> to another TwiML URL

All text and attribute values are XML-escaped.
"""
from __future__ import annotations

from typing import Optional
from xml.sax.saxutils import escape, quoteattr

XML_HEADER = '<?xml version="1.0" encoding="UTF-8"?>'
MEDIA_TYPE = "application/xml"


def _say(text: str, voice: str = "") -> str:
    voice_attr = f" voice={quoteattr(voice)}" if voice else ""
    return f"<Say{voice_attr}>{escape(text)}</Say>"


def _document(body: str) -> str:
    return f"{XML_HEADER}\n<Response>{body}</Response>"


def gather(
    prompt: str,
    num_digits: int,
    action_url: str,
    timeout_s: int = 10,
    finish_on_key: str = "#",
    preamble: Optional[str] = None,
    voice: str = "",
) -> str:
    """
    Collect exactly `num_digits` DTMF digits, terminated early by `finish_on_key`.

    actionOnEmptyResult makes Twilio post back even when nothing was typed,
    so a silent caller is charged an attempt like any other invalid entry.
    """
    says = _say(preamble, voice) if preamble else ""
    says += _say(prompt, voice)
    return _document(
        f'<Gather input="dtmf" numDigits="{int(num_digits)}" '
        f'finishOnKey={quoteattr(finish_on_key)} timeout="{int(timeout_s)}" '
        f'action={quoteattr(action_url)} method="POST" actionOnEmptyResult="true">'
        f"{says}</Gather>"
    )


def end_call(message: str, voice: str = "") -> str:
    return _document(f"{_say(message, voice)}<Hangup/>")


def error(message: str) -> str:
    """Generic safe hangup for unknown calls and internal faults."""
    return end_call(message)


def empty() -> str:
    return f"{XML_HEADER}\n<Response/>"


def redirect(url: str) -> str:
    return _document(f'<Redirect method="POST">{escape(url)}</Redirect>')
