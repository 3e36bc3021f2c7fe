"""
Core data models for the IVR relay.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle; all terminal statuses share the top rank."""
        if self.is_terminal:
            return 3
        return _STATUS_RANK[self]


_STATUS_RANK = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
}

TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.BUSY,
    CallStatus.NO_ANSWER, CallStatus.CANCELED,
})


class AnsweredBy(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"
    UNKNOWN = "unknown"


class FinalOutcome(str, Enum):
    ANSWERED_WITH_INPUT = "answered_with_input"
    ANSWERED_NO_INPUT_HUMAN = "answered_no_input_human"
    ANSWERED_NO_INPUT_MACHINE = "answered_no_input_machine"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    FAILED = "failed"
    CANCELED = "canceled"


class CallStateLabel(str, Enum):
    """Vocabulary of the call_states ledger."""
    INITIATED = "initiated"
    RINGING = "ringing"
    GATHERING = "gathering"
    VALIDATING = "validating"
    RETRY = "retry"
    COMPLETE = "complete"
    FAILED = "failed"
    STATUS = "status"
    ENDED = "ended"
    IGNORED = "ignored"
    ERROR = "error"


class InputType(str, Enum):
    DIGIT = "digit"
    SPEECH = "speech"


class NotificationType(str, Enum):
    CALL_INITIATED = "call_initiated"
    CALL_RINGING = "call_ringing"
    CALL_ANSWERED = "call_answered"
    CALL_INPUT_SUCCESS = "call_input_success"
    CALL_INPUT_RETRY = "call_input_retry"
    CALL_INPUT_FAILED = "call_input_failed"
    CALL_COMPLETED = "call_completed"
    CALL_FAILED = "call_failed"
    CALL_BUSY = "call_busy"
    CALL_NO_ANSWER = "call_no_answer"
    CALL_CANCELED = "call_canceled"
    CALL_ENDED = "call_ended"                  # hung up mid-collection
    CALL_FINAL_OUTCOME = "call_final_outcome"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class NotificationPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Ordering ranks shared by the SQL and in-memory selectors
PRIORITY_RANK = {
    NotificationPriority.URGENT.value: 0,
    NotificationPriority.HIGH.value: 1,
    NotificationPriority.NORMAL.value: 2,
    NotificationPriority.LOW.value: 3,
}

FAILURE_TYPES = frozenset({
    NotificationType.CALL_FAILED.value,
    NotificationType.CALL_INPUT_FAILED.value,
    NotificationType.CALL_ENDED.value,
    NotificationType.CALL_BUSY.value,
    NotificationType.CALL_NO_ANSWER.value,
    NotificationType.CALL_CANCELED.value,
})

SUCCESS_TYPES = frozenset({
    NotificationType.CALL_FINAL_OUTCOME.value,
    NotificationType.CALL_COMPLETED.value,
    NotificationType.CALL_INPUT_SUCCESS.value,
})

TYPE_RANK_DEFAULT = 2


def type_rank(notification_type: str) -> int:
    if notification_type in FAILURE_TYPES:
        return 0
    if notification_type in SUCCESS_TYPES:
        return 1
    return TYPE_RANK_DEFAULT


def priority_rank(priority: str) -> int:
    return PRIORITY_RANK.get(priority, 99)


# ──────────────────────────────────────────────────────────────
#  Scenario — tagged configuration record for one IVR flow
# ──────────────────────────────────────────────────────────────

class StagePrompts(BaseModel):
    initial: str = "Please enter your code, followed by the pound key."
    retry: str = "Sorry, that entry was not valid."
    success: str = "Thank you. Goodbye."
    failure: str = "We could not verify your entry. Goodbye."


class ScenarioStage(BaseModel):
    """One digit-collection step (e.g. card number, then ZIP)."""
    key: str = "code"
    label: str = "Code"
    digits: int = Field(6, ge=1, le=32)
    pattern: Optional[str] = None            # full-match regex; defaults to ^\d{N}$
    mask: str = "full"                       # full | last4
    prompts: StagePrompts = Field(default_factory=StagePrompts)

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, v: Optional[str]) -> Optional[str]:
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid pattern {v!r}: {e}") from e
        return v or None

    @field_validator("mask")
    @classmethod
    def _mask_style(cls, v: str) -> str:
        if v not in ("full", "last4"):
            raise ValueError(f"unknown mask style: {v}")
        return v

    @property
    def effective_pattern(self) -> str:
        return self.pattern or rf"\d{{{self.digits}}}"


class Scenario(BaseModel):
    """Scenario key → digit count, pattern, prompts and retry budget."""
    key: str
    name: str = ""
    max_retries: int = Field(2, ge=0, le=10)
    timeout_s: int = Field(10, ge=1, le=60)
    stages: list[ScenarioStage] = []

    @model_validator(mode="before")
    @classmethod
    def _single_stage_shorthand(cls, data: Any) -> Any:
        # `digits` / `prompts` / `pattern` at top level describe a one-stage scenario
        if isinstance(data, dict) and not data.get("stages") and "digits" in data:
            data = dict(data)
            stage = {"key": data.get("key", "code"), "label": data.get("name") or "Code"}
            for k in ("digits", "pattern", "mask", "prompts"):
                if k in data:
                    stage[k] = data.pop(k)
            data["stages"] = [stage]
        return data

    @model_validator(mode="after")
    def _has_stages(self) -> "Scenario":
        if not self.stages:
            raise ValueError(f"scenario {self.key!r} defines no stages")
        keys = [s.key for s in self.stages]
        if len(set(keys)) != len(keys):
            raise ValueError(f"scenario {self.key!r} has duplicate stage keys")
        return self

    @property
    def is_multi_stage(self) -> bool:
        return len(self.stages) > 1

    def stage(self, index: int) -> ScenarioStage:
        return self.stages[min(max(index, 0), len(self.stages) - 1)]


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class RenderedMessage(BaseModel):
    """A notification turned into chat text, ready for the delivery queue."""
    notification_id: int
    call_sid: str
    chat_id: str
    notification_type: str
    text: str
    buttons: list[list[dict[str, str]]] = []
    created_at: datetime

    @property
    def order_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.notification_id)
