"""
FastAPI Application — Twilio webhooks + operator REST API.

Provides:
- Twilio voice webhook (Gather actions) answered with TwiML
- Twilio status callback feeding the same state machine
- Call registration for calls placed by an external dialer
- Read APIs for calls, ledger replay, scenarios and delivery metrics
- Notification poller lifecycle (Telegram delivery)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from config.settings import get_settings
from channels.telegram_client import TelegramClient
from channels.twilio_webhook import parse_status_webhook, validate_signature
from database.session import init_db, close_db
from database.store_factory import create_store
from ivr import voice_response as twiml
from ivr.scenarios import ScenarioRegistry
from ivr.state_machine import IvrStateMachine
from ledger.writer import CallLedger
from notifications.delivery_queue import DeliveryQueue
from notifications.keyed_store import InMemoryKeyedStore
from notifications.metrics import MetricsAggregator
from notifications.poller import NotificationPoller
from notifications.selector import NotificationSelector
from utils.masking import digest_value

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

store = create_store({"store_backend": _settings_boot.database.store_backend})
ledger = CallLedger(store)
scenario_registry = ScenarioRegistry.from_config(_settings_boot.scenarios)

ivr_machine = IvrStateMachine(
    store, ledger, scenario_registry,
    action_url=f"{_settings_boot.telephony.public_base_url}/webhooks/twilio/voice",
    finish_on_key=_settings_boot.telephony.finish_on_key,
    error_message=_settings_boot.telephony.error_message,
)

chat_client = TelegramClient(
    bot_token=_settings_boot.chat.bot_token,
    api_base_url=_settings_boot.chat.api_base_url,
    timeout_s=_settings_boot.chat.timeout_s,
    parse_mode=_settings_boot.chat.parse_mode,
)
delivery_metrics = MetricsAggregator(store)
delivery_queue = DeliveryQueue(
    store, chat_client, delivery_metrics,
    last_delivered=InMemoryKeyedStore(ttl_seconds=_settings_boot.notifications.dedup_ttl_s),
    headers=InMemoryKeyedStore(ttl_seconds=None),
    pacing_ms=_settings_boot.notifications.pacing_ms,
    max_retries=_settings_boot.notifications.max_retries,
)
notification_poller = NotificationPoller(
    store,
    NotificationSelector(
        store,
        max_retries=_settings_boot.notifications.max_retries,
        batch_size=_settings_boot.notifications.batch_size,
    ),
    delivery_queue,
    poll_interval_s=_settings_boot.notifications.poll_interval_s,
    cleanup_interval_s=_settings_boot.notifications.cleanup_interval_s,
    retention_days=_settings_boot.notifications.retention_days,
    sent_retention_days=_settings_boot.notifications.sent_retention_days,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()

    poller_enabled = settings.notifications.enabled and bool(settings.chat.bot_token)
    if poller_enabled:
        await notification_poller.start()
    else:
        logger.info("notification_poller_disabled",
                    enabled=settings.notifications.enabled,
                    bot_token_set=bool(settings.chat.bot_token))

    logger.info("ivr_relay_started", scenarios=len(scenario_registry),
                store_backend=settings.database.store_backend)
    yield

    if poller_enabled:
        await notification_poller.stop()
    await chat_client.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("ivr_relay_stopped")


app = FastAPI(
    title="IVR Relay",
    description="Digit-collection IVR driven by Twilio webhooks with Telegram call notifications",
    version="1.0.0",
    lifespan=lifespan,
)


# ──────────────────────────────────────────────────────────────
#  Request models
# ──────────────────────────────────────────────────────────────

class RegisterCallRequest(BaseModel):
    call_sid: str = Field(..., min_length=1, max_length=64)
    to: str
    from_number: str = ""
    scenario: str
    chat_id: Optional[str] = None
    expected_value: Optional[str] = None                 # first stage
    expected_values: dict[str, str] = {}                 # stage key → value
    metadata: dict[str, Any] = {}


def _public_call(call: dict[str, Any]) -> dict[str, Any]:
    call = dict(call)
    metadata = dict(call.get("metadata") or {})
    metadata.pop("expected_digests", None)
    call["metadata"] = metadata
    return call


async def _webhook_form(request: Request) -> dict[str, Any]:
    """Read a Twilio form body, enforcing X-Twilio-Signature when configured."""
    body = {k: v for k, v in (await request.form()).items()}
    settings = get_settings()
    if settings.telephony.validate_signatures:
        url = f"{settings.telephony.public_base_url}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        if not validate_signature(settings.telephony.auth_token, url, body,
                                  request.headers.get("X-Twilio-Signature")):
            raise HTTPException(403, "Invalid Twilio signature")
    return body


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scenarios": len(scenario_registry),
        "delivery": delivery_queue.stats,
    }


@app.get("/api/v1/stats")
async def get_stats():
    stats = await store.get_stats()
    stats["active_sessions"] = len(ivr_machine.sessions)
    stats["delivery"] = delivery_queue.stats
    return stats


# ══════════════════════════════════════════════════════════════
#  TWILIO WEBHOOKS
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/twilio/voice")
async def twilio_voice_webhook(request: Request):
    """
    Twilio voice URL and <Gather action>. Always answers with TwiML.

    Digits is absent on the initial fetch and present (possibly empty, via
    actionOnEmptyResult) when a Gather completes.
    """
    body = await _webhook_form(request)
    normalized = parse_status_webhook(body)
    markup = await ivr_machine.on_webhook(
        normalized["call_sid"], normalized["status"], normalized["digits"], fields=body,
    )
    return Response(content=markup, media_type=twiml.MEDIA_TYPE)


@app.post("/webhooks/twilio/status")
async def twilio_status_webhook(request: Request):
    """Twilio status callback. Twilio ignores the body; the ledger still records it."""
    body = await _webhook_form(request)
    normalized = parse_status_webhook(body)
    await ivr_machine.on_webhook(
        normalized["call_sid"], normalized["status"], None, fields=body,
    )
    return Response(content=twiml.empty(), media_type=twiml.MEDIA_TYPE)


# ══════════════════════════════════════════════════════════════
#  CALLS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/calls", status_code=201)
async def register_call(req: RegisterCallRequest):
    """Register a call placed by the dialer so its webhooks can be handled."""
    scenario = scenario_registry.get(req.scenario)
    if scenario is None:
        raise HTTPException(404, f"Unknown scenario: {req.scenario}")

    expected = dict(req.expected_values)
    if req.expected_value:
        expected.setdefault(scenario.stages[0].key, req.expected_value)
    unknown = set(expected) - {s.key for s in scenario.stages}
    if unknown:
        raise HTTPException(422, f"Unknown stage keys: {sorted(unknown)}")

    metadata = dict(req.metadata)
    if expected:
        metadata["expected_digests"] = {k: digest_value(v) for k, v in expected.items()}

    try:
        call = await ledger.register_call(
            req.call_sid,
            to_number=req.to,
            from_number=req.from_number,
            scenario_key=scenario.key,
            chat_id=req.chat_id,
            metadata=metadata,
        )
    except ValueError:
        raise HTTPException(409, f"Call already registered: {req.call_sid}")
    return _public_call(call)


@app.get("/api/v1/calls")
async def list_calls(limit: int = Query(50, ge=1, le=500)):
    calls = await store.list_recent_calls(limit)
    return {"calls": [_public_call(c) for c in calls], "count": len(calls)}


@app.get("/api/v1/calls/{call_sid}")
async def get_call(call_sid: str):
    call = await store.get_call(call_sid)
    if not call:
        raise HTTPException(404, "Call not found")
    result = _public_call(call)
    result["inputs"] = await store.get_call_inputs(call_sid)
    return result


@app.get("/api/v1/calls/{call_sid}/states")
async def get_call_states(call_sid: str):
    """Ledger replay for one call, in sequence order."""
    if not await store.get_call(call_sid):
        raise HTTPException(404, "Call not found")
    states = await store.get_call_states(call_sid)
    return {"call_sid": call_sid, "states": states, "count": len(states)}


# ══════════════════════════════════════════════════════════════
#  SCENARIOS & METRICS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/scenarios")
async def list_scenarios():
    return {"scenarios": [s.model_dump() for s in scenario_registry.list_scenarios()]}


@app.get("/api/v1/metrics/notifications")
async def notification_metrics(days: int = Query(7, ge=1, le=90)):
    return await delivery_metrics.summary(days)
