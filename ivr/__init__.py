"""
IVR — Digit-collection dialogue driven by Twilio webhooks.

Quick start:
  from ivr import IvrStateMachine, ScenarioRegistry
  machine = IvrStateMachine(store, ledger, ScenarioRegistry.from_config())
  twiml = await machine.on_webhook("CA123", "ringing")
"""
from ivr.scenarios import (
    BUILTIN_SCENARIOS, ScenarioError, ScenarioRegistry, ValidationResult, validate_digits,
)
from ivr.sessions import IvrSession, SessionStore
from ivr.state_machine import IvrStateMachine, DEFAULT_ERROR_MESSAGE

__all__ = [
    "BUILTIN_SCENARIOS", "ScenarioError", "ScenarioRegistry",
    "ValidationResult", "validate_digits",
    "IvrSession", "SessionStore",
    "IvrStateMachine", "DEFAULT_ERROR_MESSAGE",
]
