"""
Final-outcome derivation and provider value normalisation.

Everything here is pure: the same terminal event always yields the same
outcome, so redelivered webhooks can recompute it safely.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import AnsweredBy, CallStatus, FinalOutcome

HUMAN_VALUES = frozenset({"human", "person", "live", "positive_human"})

MACHINE_VALUES = frozenset({
    "machine", "machine_start", "machine_end_beep", "machine_end_silence",
    "machine_end_other", "fax", "positive_machine", "unknown_machine",
    "answering_machine",
})

# Provider spellings that differ from our lifecycle enum
STATUS_ALIASES = {
    "queued": CallStatus.INITIATED,
    "initiating": CallStatus.INITIATED,
    "answered": CallStatus.IN_PROGRESS,
    "in_progress": CallStatus.IN_PROGRESS,
    "no_answer": CallStatus.NO_ANSWER,
    "cancelled": CallStatus.CANCELED,
}


def normalize_status(raw: Optional[str]) -> Optional[CallStatus]:
    """Map a provider CallStatus to the lifecycle enum; None when unrecognised."""
    if not raw:
        return None
    value = raw.strip().lower()
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    try:
        return CallStatus(value)
    except ValueError:
        return None


def normalize_answered_by(raw: Optional[str]) -> AnsweredBy:
    if not raw:
        return AnsweredBy.UNKNOWN
    value = raw.strip().lower()
    if value in HUMAN_VALUES:
        return AnsweredBy.HUMAN
    if value in MACHINE_VALUES:
        return AnsweredBy.MACHINE
    return AnsweredBy.UNKNOWN


def derive_final_outcome(
    status: CallStatus,
    answered_by: AnsweredBy = AnsweredBy.UNKNOWN,
    has_input: bool = False,
) -> Optional[FinalOutcome]:
    """
    Decision table, first match wins:

        busy        → busy
        failed      → failed
        canceled    → canceled
        no-answer   → no_answer
        completed + input captured      → answered_with_input
        completed + machine answered    → answered_no_input_machine
        completed                       → answered_no_input_human

    Returns None for non-terminal statuses.
    """
    status = CallStatus(status)
    if not status.is_terminal:
        return None
    if status == CallStatus.BUSY:
        return FinalOutcome.BUSY
    if status == CallStatus.FAILED:
        return FinalOutcome.FAILED
    if status == CallStatus.CANCELED:
        return FinalOutcome.CANCELED
    if status == CallStatus.NO_ANSWER:
        return FinalOutcome.NO_ANSWER
    if has_input:
        return FinalOutcome.ANSWERED_WITH_INPUT
    if AnsweredBy(answered_by) == AnsweredBy.MACHINE:
        return FinalOutcome.ANSWERED_NO_INPUT_MACHINE
    return FinalOutcome.ANSWERED_NO_INPUT_HUMAN
