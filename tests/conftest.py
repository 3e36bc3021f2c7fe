"""Shared test fixtures for the IVR relay."""
import itertools
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from database.store_memory import InMemoryLedgerStore
from ivr.scenarios import ScenarioRegistry
from ivr.state_machine import IvrStateMachine
from ledger.writer import CallLedger
from utils.masking import digest_value


OTP_SCENARIO: dict[str, Any] = {
    "key": "otp_test",
    "name": "Test OTP",
    "max_retries": 2,
    "timeout_s": 8,
    "digits": 6,
    "prompts": {
        "initial": "Enter the 6 digit code.",
        "retry": "That code was not valid.",
        "success": "Code verified. Goodbye.",
        "failure": "Too many attempts. Goodbye.",
    },
}

ACTION_URL = "https://ivr.example.com/webhooks/twilio/voice"


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(store):
    return CallLedger(store)


@pytest.fixture
def scenarios():
    return ScenarioRegistry.from_config([OTP_SCENARIO])


@pytest.fixture
def machine(store, ledger, scenarios):
    return IvrStateMachine(store, ledger, scenarios, action_url=ACTION_URL)


@pytest_asyncio.fixture
async def otp_call(ledger):
    """Registered OTP call whose expected code is 654321."""
    return await ledger.register_call(
        "CA_OTP_001",
        to_number="+14155550123",
        scenario_key="otp_test",
        chat_id="-1001",
        metadata={"expected_digests": {"otp_test": digest_value("654321")}},
    )


def make_chat_client(fail: dict[str, Exception] = None):
    """
    AsyncMock chat client. `fail` maps message text → exception to raise
    (one-shot per text). Message ids count up from 1000.
    """
    counter = itertools.count(1000)
    failures = dict(fail or {})

    async def send(chat_id, text, thread_id=None, buttons=None):
        if text in failures:
            raise failures.pop(text)
        return {"message_id": str(next(counter))}

    client = MagicMock()
    client.send = AsyncMock(side_effect=send)
    return client


def sent_texts(client) -> list[str]:
    return [c.args[1] for c in client.send.await_args_list]


async def states_of(store, call_sid: str) -> list[str]:
    return [e["state"] for e in await store.get_call_states(call_sid)]
