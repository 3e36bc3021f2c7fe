"""
IVR sessions — process-local scenario progress per call.

The session is a cache. Every ledger entry the state machine writes carries
a snapshot ({scenario, stage, attempt, finished, success}), so after a
restart the session is rebuilt from the call's latest snapshot and a retry
already charged is never charged again.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from database.store_base import BaseLedgerStore
from models.schemas import CallStateLabel, Scenario, ScenarioStage

logger = structlog.get_logger()


@dataclass
class IvrSession:
    call_sid: str
    scenario: Scenario
    stage_index: int = 0
    attempts: int = 0                    # invalid submissions in the current stage
    state: str = CallStateLabel.GATHERING.value
    finished: bool = False
    success: bool = False

    @property
    def stage(self) -> ScenarioStage:
        return self.scenario.stage(self.stage_index)

    @property
    def is_last_stage(self) -> bool:
        return self.stage_index >= len(self.scenario.stages) - 1

    def snapshot(self, **extra) -> dict[str, Any]:
        data = {
            "scenario": self.scenario.key,
            "stage": self.stage_index,
            "stage_key": self.stage.key,
            "attempt": self.attempts,
            "finished": self.finished,
            "success": self.success,
        }
        data.update(extra)
        return data


class SessionStore:
    """call_sid → IvrSession, rebuilt from the ledger on a cache miss."""

    def __init__(self, store: BaseLedgerStore):
        self.store = store
        self._sessions: dict[str, IvrSession] = {}

    async def resolve(self, call_sid: str, scenario: Scenario) -> IvrSession:
        session = self._sessions.get(call_sid)
        if session is not None and session.scenario.key == scenario.key:
            return session
        session = await self._restore(call_sid, scenario)
        self._sessions[call_sid] = session
        return session

    async def _restore(self, call_sid: str, scenario: Scenario) -> IvrSession:
        session = IvrSession(call_sid=call_sid, scenario=scenario)
        entries = await self.store.get_call_states(call_sid)
        snapshot = self._latest_snapshot(entries, scenario.key)
        if snapshot is None:
            return session

        session.stage_index = min(int(snapshot.get("stage", 0)), len(scenario.stages) - 1)
        session.attempts = int(snapshot.get("attempt", 0))
        session.finished = bool(snapshot.get("finished", False))
        session.success = bool(snapshot.get("success", False))
        if session.finished:
            session.state = (CallStateLabel.COMPLETE if session.success else CallStateLabel.FAILED).value
        logger.info("ivr_session_restored", call_sid=call_sid, scenario=scenario.key,
                    stage=session.stage_index, attempts=session.attempts,
                    finished=session.finished)
        return session

    @staticmethod
    def _latest_snapshot(entries: list[dict[str, Any]], scenario_key: str) -> Optional[dict[str, Any]]:
        for entry in sorted(entries, key=lambda e: e["sequence_number"], reverse=True):
            data = entry.get("data") or {}
            if data.get("scenario") == scenario_key and "stage" in data:
                return data
        return None

    def get(self, call_sid: str) -> Optional[IvrSession]:
        return self._sessions.get(call_sid)

    def discard(self, call_sid: str) -> Optional[IvrSession]:
        return self._sessions.pop(call_sid, None)

    def __len__(self) -> int:
        return len(self._sessions)
