"""
Scenario registry — named digit-collection flows and their validation.

A scenario is resolved once per call and passed through the state machine;
each stage carries its own digit count, pattern and prompts while the retry
budget belongs to the scenario.

Usage:
    registry = ScenarioRegistry.from_config(settings.scenarios)
    scenario = registry.get("otp")
    result = validate_digits(scenario.stages[0], "123456")
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from models.schemas import Scenario, ScenarioStage
from utils.masking import matches_digest

logger = structlog.get_logger()


class ScenarioError(ValueError):
    """Raised when a scenario definition cannot be registered."""


# ──────────────────────────────────────────────────────────────
#  Built-in scenarios
# ──────────────────────────────────────────────────────────────

BUILTIN_SCENARIOS: list[dict[str, Any]] = [
    {
        "key": "otp",
        "name": "One-time passcode",
        "max_retries": 2,
        "timeout_s": 10,
        "digits": 6,
        "prompts": {
            "initial": "Please enter the 6 digit code we just sent you, followed by the pound key.",
            "retry": "That code was not valid.",
            "success": "Thank you. Your code has been verified. Goodbye.",
            "failure": "We could not verify your code. Goodbye.",
        },
    },
    {
        "key": "pin",
        "name": "PIN",
        "max_retries": 3,
        "timeout_s": 10,
        "digits": 4,
        "prompts": {
            "initial": "Please enter your 4 digit PIN, followed by the pound key.",
            "retry": "That PIN was not valid.",
            "success": "Thank you. Your PIN has been confirmed. Goodbye.",
            "failure": "We could not confirm your PIN. Goodbye.",
        },
    },
    {
        "key": "card_payment",
        "name": "Card payment",
        "max_retries": 2,
        "timeout_s": 15,
        "stages": [
            {
                "key": "card_number",
                "label": "Card number",
                "digits": 16,
                "mask": "last4",
                "prompts": {
                    "initial": "Please enter your 16 digit card number, followed by the pound key.",
                    "retry": "That card number was not valid.",
                    "success": "Thank you.",
                    "failure": "We could not read your card number. Goodbye.",
                },
            },
            {
                "key": "zip_code",
                "label": "ZIP code",
                "digits": 5,
                "prompts": {
                    "initial": "Please enter the 5 digit ZIP code of your billing address.",
                    "retry": "That ZIP code was not valid.",
                    "success": "Thank you. Your details have been received. Goodbye.",
                    "failure": "We could not read your ZIP code. Goodbye.",
                },
            },
        ],
    },
]


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str = ""

    def __bool__(self):
        return self.valid


_pattern_cache: dict[str, re.Pattern] = {}


def _compiled(pattern: str) -> re.Pattern:
    compiled = _pattern_cache.get(pattern)
    if compiled is None:
        compiled = _pattern_cache[pattern] = re.compile(pattern)
    return compiled


def validate_digits(stage: ScenarioStage, digits: Optional[str],
                    expected_digest: Optional[str] = None) -> ValidationResult:
    """
    Exact-length, full-match validation of a digit submission.

    Reasons: empty | length | pattern | mismatch
    """
    if not digits:
        return ValidationResult(False, "empty")
    if len(digits) != stage.digits:
        return ValidationResult(False, "length")
    if not _compiled(stage.effective_pattern).fullmatch(digits):
        return ValidationResult(False, "pattern")
    if expected_digest and not matches_digest(digits, expected_digest):
        return ValidationResult(False, "mismatch")
    return ValidationResult(True)


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class ScenarioRegistry:
    """Scenario key → validated Scenario."""

    def __init__(self):
        self._scenarios: dict[str, Scenario] = {}

    @classmethod
    def from_config(cls, definitions: list[dict[str, Any]] = None,
                    include_builtins: bool = True) -> "ScenarioRegistry":
        registry = cls()
        if include_builtins:
            registry.register_many(BUILTIN_SCENARIOS)
        if definitions:
            registry.register_many(definitions)
        return registry

    def register(self, definition: dict[str, Any] | Scenario) -> Scenario:
        if isinstance(definition, Scenario):
            scenario = definition
        else:
            try:
                scenario = Scenario.model_validate(definition)
            except ValidationError as e:
                raise ScenarioError(
                    f"invalid scenario {definition.get('key', '?')!r}: {e}"
                ) from e
        replaced = scenario.key in self._scenarios
        self._scenarios[scenario.key] = scenario
        logger.debug("scenario_registered", key=scenario.key,
                     stages=len(scenario.stages), replaced=replaced)
        return scenario

    def register_many(self, definitions: list[dict[str, Any]]) -> None:
        for definition in definitions:
            self.register(definition)

    def get(self, key: Optional[str]) -> Optional[Scenario]:
        if not key:
            return None
        return self._scenarios.get(key)

    def list_scenarios(self) -> list[Scenario]:
        return list(self._scenarios.values())

    def __contains__(self, key: str) -> bool:
        return key in self._scenarios

    def __len__(self) -> int:
        return len(self._scenarios)
