"""
IVR State Machine — Drives digit collection from Twilio webhooks.

States (per call):
    RINGING → GATHERING → VALIDATING → COMPLETE
                              │
                              └→ RETRY → GATHERING   (attempts ≤ max_retries)
                              └→ FAILED              (attempts > max_retries)

RINGING and GATHERING look the same to the caller (a <Gather> is playing);
VALIDATING only exists while a submission is being checked and is never
written to the ledger. Every webhook appends exactly one call_states entry,
including no-op branches, so the ledger replays what the IVR believed.

Usage:
    machine = IvrStateMachine(store, ledger, scenarios, action_url=...)
    twiml = await machine.on_webhook("CA123", "in-progress", digits="123456")
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseLedgerStore
from ivr import voice_response as twiml
from ivr.scenarios import ScenarioRegistry, validate_digits
from ivr.sessions import IvrSession, SessionStore
from ledger.outcome import normalize_status
from ledger.writer import CallLedger
from models.schemas import (
    CallStateLabel, CallStatus, NotificationPriority, NotificationType,
)
from utils.locks import KeyedLocks
from utils.masking import mask_digits

logger = structlog.get_logger()

DEFAULT_ERROR_MESSAGE = "We encountered an error. The call will now end. Goodbye."


class IvrStateMachine:
    """
    Per-call digit-collection dialogue.

    Webhooks for one call are serialised by a per-call lock; different calls
    run concurrently. on_webhook never raises: any fault becomes the generic
    error markup so the provider always receives valid TwiML.
    """

    def __init__(
        self,
        store: BaseLedgerStore,
        ledger: CallLedger,
        scenarios: ScenarioRegistry,
        action_url: str = "/webhooks/twilio/voice",
        finish_on_key: str = "#",
        error_message: str = DEFAULT_ERROR_MESSAGE,
    ):
        self.store = store
        self.ledger = ledger
        self.scenarios = scenarios
        self.action_url = action_url
        self.finish_on_key = finish_on_key
        self.error_message = error_message
        self.sessions = SessionStore(store)
        self._locks = KeyedLocks()

    async def on_webhook(
        self,
        call_sid: str,
        status: str,
        digits: Optional[str] = None,
        fields: dict[str, Any] = None,
    ) -> str:
        """Handle one provider callback and return the TwiML to answer with."""
        try:
            async with self._locks.hold(call_sid):
                return await self._handle(call_sid, status, digits, dict(fields or {}))
        except Exception as e:
            logger.error("ivr_webhook_error", call_sid=call_sid, status=status,
                         error=str(e), exc_info=True)
            return twiml.error(self.error_message)

    # ── Dispatch ───────────────────────────────────────────

    async def _handle(self, call_sid: str, status: str, digits: Optional[str],
                      fields: dict[str, Any]) -> str:
        fields.setdefault("CallSid", call_sid)
        fields["CallStatus"] = status or fields.get("CallStatus", "")

        call = await self.store.get_call(call_sid)
        if call is None:
            logger.warning("ivr_unknown_call", call_sid=call_sid, status=status)
            return twiml.error(self.error_message)

        incoming = normalize_status(status)

        if CallStatus(call["status"]).is_terminal:
            # Redelivery after the call ended: history only, no state change
            label = CallStateLabel.ENDED if incoming and incoming.is_terminal else CallStateLabel.IGNORED
            await self.ledger.record_transition(
                call_sid, label.value, fields, {"redelivered": True},
            )
            self.sessions.discard(call_sid)
            return twiml.empty()

        if incoming is not None and incoming.is_terminal:
            return await self._on_terminal(call, fields)

        scenario = self.scenarios.get(call.get("scenario_key"))
        if scenario is None:
            logger.error("ivr_scenario_missing", call_sid=call_sid,
                         scenario=call.get("scenario_key"))
            await self.ledger.record_transition(
                call_sid, CallStateLabel.ERROR.value, fields,
                {"error": "scenario_missing", "scenario": call.get("scenario_key")},
            )
            return twiml.error(self.error_message)

        session = await self.sessions.resolve(call_sid, scenario)

        if session.finished:
            await self.ledger.record_transition(
                call_sid, CallStateLabel.IGNORED.value, fields, session.snapshot(replayed=True),
            )
            return self._finished_markup(session)

        if incoming == CallStatus.IN_PROGRESS and digits is not None:
            return await self._on_digits(call, session, digits, fields)

        if incoming is None:
            logger.info("ivr_unrecognized_status", call_sid=call_sid, status=status)
            return await self._prompt(session, fields, unrecognized_status=status)

        return await self._prompt(session, fields)

    # ── Branches ───────────────────────────────────────────

    async def _on_terminal(self, call: dict[str, Any], fields: dict[str, Any]) -> str:
        call_sid = call["call_sid"]
        session = self.sessions.discard(call_sid)
        if session is not None:
            data = session.snapshot()
        else:
            latest = await self.store.get_latest_call_state(call_sid)
            data = dict(latest["data"]) if latest and "stage" in (latest["data"] or {}) else {}

        if data and not data.get("finished"):
            # caller hung up while a stage was still being collected
            scenario = self.scenarios.get(call.get("scenario_key"))
            label = scenario.stage(int(data["stage"])).label if scenario else data.get("stage_key")
            await self.ledger.notify(
                call, NotificationType.CALL_ENDED, NotificationPriority.NORMAL,
                {"stage": label, "attempt": data.get("attempt", 0)},
            )

        await self.ledger.record_transition(call_sid, CallStateLabel.ENDED.value, fields, data)
        logger.info("ivr_call_ended", call_sid=call_sid, status=fields.get("CallStatus"))
        return twiml.empty()

    async def _prompt(self, session: IvrSession, fields: dict[str, Any], **extra) -> str:
        session.state = CallStateLabel.GATHERING.value
        await self.ledger.record_transition(
            session.call_sid, CallStateLabel.GATHERING.value, fields, session.snapshot(**extra),
        )
        return self._gather(session)

    async def _on_digits(self, call: dict[str, Any], session: IvrSession,
                         digits: str, fields: dict[str, Any]) -> str:
        session.state = CallStateLabel.VALIDATING.value
        stage = session.stage
        expected = (call.get("metadata") or {}).get("expected_digests", {}).get(stage.key)
        result = validate_digits(stage, digits, expected)

        if result:
            return await self._on_valid(call, session, digits, fields)

        attempt = session.attempts + 1
        scenario = session.scenario
        call_sid = session.call_sid

        if attempt <= scenario.max_retries:
            await self.ledger.record_transition(
                call_sid, CallStateLabel.RETRY.value, fields,
                session.snapshot(attempt=attempt, reason=result.reason),
            )
            session.attempts = attempt
            session.state = CallStateLabel.RETRY.value
            logger.info("ivr_input_rejected", call_sid=call_sid, stage=stage.key,
                        reason=result.reason, attempt=attempt, max_retries=scenario.max_retries)
            await self.ledger.notify(
                call, NotificationType.CALL_INPUT_RETRY, NotificationPriority.NORMAL,
                {"stage": stage.label, "attempt": attempt,
                 "max_retries": scenario.max_retries, "reason": result.reason},
            )
            return self._gather(session, preamble=stage.prompts.retry)

        await self.ledger.record_transition(
            call_sid, CallStateLabel.FAILED.value, fields,
            session.snapshot(attempt=attempt, reason=result.reason, finished=True, success=False),
        )
        session.attempts = attempt
        session.finished = True
        session.success = False
        session.state = CallStateLabel.FAILED.value
        logger.info("ivr_input_failed", call_sid=call_sid, stage=stage.key,
                    reason=result.reason, attempts=attempt)
        await self.ledger.notify(
            call, NotificationType.CALL_INPUT_FAILED, NotificationPriority.HIGH,
            {"stage": stage.label, "attempts": attempt, "reason": result.reason},
        )
        return twiml.end_call(stage.prompts.failure)

    async def _on_valid(self, call: dict[str, Any], session: IvrSession, digits: str,
                        fields: dict[str, Any]) -> str:
        stage = session.stage
        call_sid = session.call_sid
        masked = mask_digits(digits, stage.mask)
        step = await self.ledger.record_input(call_sid, masked, stage_key=stage.key)
        logger.info("ivr_input_accepted", call_sid=call_sid, stage=stage.key,
                    step=step, value=masked)

        if not session.is_last_stage:
            next_index = session.stage_index + 1
            await self.ledger.record_transition(
                call_sid, CallStateLabel.GATHERING.value, fields,
                session.snapshot(stage=next_index,
                                 stage_key=session.scenario.stages[next_index].key,
                                 attempt=0, completed_stage=stage.key, step=step),
            )
            session.stage_index = next_index
            session.attempts = 0
            session.state = CallStateLabel.GATHERING.value
            return self._gather(session, preamble=stage.prompts.success)

        await self.ledger.record_transition(
            call_sid, CallStateLabel.COMPLETE.value, fields,
            session.snapshot(finished=True, success=True, step=step),
        )
        session.finished = True
        session.success = True
        session.state = CallStateLabel.COMPLETE.value

        inputs = await self.store.get_call_inputs(call_sid)
        await self.ledger.notify(
            call, NotificationType.CALL_INPUT_SUCCESS, NotificationPriority.HIGH,
            {"stage": stage.label,
             "inputs": [{"stage": i["stage_key"], "value": i["value"]} for i in inputs]},
        )
        return twiml.end_call(stage.prompts.success)

    # ── Markup ─────────────────────────────────────────────

    def _gather(self, session: IvrSession, preamble: Optional[str] = None) -> str:
        stage = session.stage
        return twiml.gather(
            prompt=stage.prompts.initial,
            num_digits=stage.digits,
            action_url=self.action_url,
            timeout_s=session.scenario.timeout_s,
            finish_on_key=self.finish_on_key,
            preamble=preamble,
        )

    def _finished_markup(self, session: IvrSession) -> str:
        stage = session.stage
        message = stage.prompts.success if session.success else stage.prompts.failure
        return twiml.end_call(message)
