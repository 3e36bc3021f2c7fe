"""
Call ledger — forward-only call rows and the sequenced call_states history.
"""
from ledger.outcome import (
    derive_final_outcome, normalize_answered_by, normalize_status,
)
from ledger.writer import CallLedger, STATUS_NOTIFICATIONS

__all__ = [
    "CallLedger", "STATUS_NOTIFICATIONS",
    "derive_final_outcome", "normalize_answered_by", "normalize_status",
]
