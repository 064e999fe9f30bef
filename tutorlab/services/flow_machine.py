"""
flow_machine.py - Per-participant stage state machine

Stages run terms -> pre-test -> lesson -> tetris-break -> post-test ->
final-test -> completed. The only backward edge is reset_flow(), which
returns to terms with the condition and lesson cursor cleared.

Every mutation is written to the StageStore before the in-memory state
changes: the machine adopts the stored record only once the store has
acknowledged it, so a failed write leaves the machine exactly where it
was. Mutations for one participant serialize on a per-machine lock.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional

from tutorlab.config import settings
from tutorlab.errors import (
    ParticipantNotFound,
    PersistenceError,
    StaleTransition,
    TerminalStage,
)
from tutorlab.models.flow import Condition, FlowStage, ParticipantFlowState
from tutorlab.services.scenario_assigner import ScenarioAssigner
from tutorlab.services.stage_store import StageStore

logger = logging.getLogger(__name__)


class FlowStateMachine:
    def __init__(self, state: ParticipantFlowState, store: StageStore, assigner: ScenarioAssigner):
        self._state = state
        self._store = store
        self._assigner = assigner
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, participant_id: str, store: StageStore, assigner: ScenarioAssigner) -> "FlowStateMachine":
        """Load a participant's flow, creating it at terms on first contact."""
        try:
            state = await store.load(participant_id)
        except ParticipantNotFound:
            condition = assigner.assign(participant_id)
            logger.info(f"New participant {participant_id}: starting at terms, condition {condition.value}")
            try:
                state = await store.upsert(participant_id, {
                    "stage": FlowStage.TERMS,
                    "condition": condition,
                    "lesson_question_index": 0,
                })
            except Exception as e:
                raise PersistenceError(f"Could not create flow for {participant_id}: {e}") from e
        return cls(state, store, assigner)

    # ── Read-only accessors ──────────────────────────────────────────

    @property
    def participant_id(self) -> str:
        return self._state.participant_id

    def current_stage(self) -> FlowStage:
        return self._state.stage

    def current_condition(self) -> Optional[Condition]:
        return self._state.condition

    def lesson_question_index(self) -> int:
        return self._state.lesson_question_index

    def snapshot(self) -> ParticipantFlowState:
        return self._state.model_copy()

    def in_flight(self) -> bool:
        return self._lock.locked()

    # ── Transitions ──────────────────────────────────────────────────

    async def advance(self, from_stage: FlowStage) -> FlowStage:
        """Move one step forward from from_stage, which must be the current stage."""
        from_stage = FlowStage(from_stage)
        async with self._lock:
            await self._sync()
            current = self._state.stage
            if from_stage != current:
                raise StaleTransition(self.participant_id, from_stage.value, current.value)

            target = current.next()
            if target is None:
                raise TerminalStage(f"Participant {self.participant_id} has already completed the flow")

            patch: Dict[str, Any] = {"stage": target}
            if target == FlowStage.LESSON and self._state.condition is None:
                patch["condition"] = self._assigner.assign(self.participant_id)

            await self._commit(patch, f"advance {current.value} -> {target.value}", expected_stage=current)
            logger.info(f"Participant {self.participant_id} advanced {current.value} -> {target.value}")
            return self._state.stage

    async def advance_lesson_question(self, from_index: int) -> int:
        """Move the lesson cursor forward by one. Only valid during the lesson stage."""
        async with self._lock:
            await self._sync()
            if self._state.stage != FlowStage.LESSON:
                raise StaleTransition(self.participant_id, FlowStage.LESSON.value, self._state.stage.value)
            if from_index != self._state.lesson_question_index:
                raise StaleTransition(
                    self.participant_id,
                    f"question {from_index}",
                    f"question {self._state.lesson_question_index}",
                )
            await self._commit(
                {"lesson_question_index": from_index + 1},
                f"lesson question {from_index} -> {from_index + 1}",
                expected_stage=FlowStage.LESSON,
            )
            return self._state.lesson_question_index

    async def override_condition(self, condition: Condition) -> Condition:
        """Force a condition for this participant. Development only."""
        condition = Condition(condition)
        async with self._lock:
            # Raises NotPermitted outside development before anything is written
            self._assigner.override(self.participant_id, condition)
            try:
                await self._commit({"condition": condition}, f"override condition -> {condition.value}")
            except PersistenceError:
                self._assigner.clear_override(self.participant_id)
                raise
            return self._state.condition

    async def reset_flow(self) -> ParticipantFlowState:
        """Return to terms, clearing the condition and the lesson cursor."""
        async with self._lock:
            previous = self._state.stage
            await self._commit(
                {"stage": FlowStage.TERMS, "condition": None, "lesson_question_index": 0},
                "reset",
            )
            logger.warning(f"Participant {self.participant_id} flow reset from {previous.value}")
            return self._state.model_copy()

    async def refresh(self) -> ParticipantFlowState:
        """
        Re-read the stored record.

        A read whose revision is older than the one this machine last wrote
        is stale, so the cached state wins. A store error also keeps the
        cached state.
        """
        stored = await self._load_newer()
        if stored is not None and not self._lock.locked():
            self._state = stored
        return self._state.model_copy()

    async def _sync(self) -> None:
        """Adopt writes made outside this machine. Caller holds the lock."""
        stored = await self._load_newer()
        if stored is not None:
            self._state = stored

    async def _load_newer(self) -> Optional[ParticipantFlowState]:
        try:
            stored = await self._store.load(self.participant_id)
        except ParticipantNotFound:
            logger.warning(f"Flow record for {self.participant_id} missing on refresh, keeping cached state")
            return None
        except Exception as e:
            logger.warning(f"Refresh failed for {self.participant_id}, keeping cached state: {e}")
            return None

        if stored.revision < self._state.revision:
            logger.debug(
                f"Stale read for {self.participant_id}: stored revision {stored.revision} "
                f"< cached {self._state.revision}"
            )
            return None
        return stored

    async def wait_until_settled(self, timeout: float) -> bool:
        """Wait up to timeout seconds for an in-flight transition. True if none is pending."""
        if not self._lock.locked():
            return True
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError:
            return False
        self._lock.release()
        return True

    async def _commit(
        self,
        patch: Dict[str, Any],
        action: str,
        expected_stage: Optional[FlowStage] = None,
    ) -> None:
        try:
            stored = await self._store.upsert(self.participant_id, patch, expected_stage=expected_stage)
        except StaleTransition:
            logger.warning(f"'{action}' for {self.participant_id} lost to a concurrent write")
            await self._sync()
            raise
        except Exception as e:
            logger.error(f"Persisting '{action}' for {self.participant_id} failed, state unchanged: {e}")
            raise PersistenceError(f"Could not persist {action} for {self.participant_id}: {e}") from e
        self._state = stored


class FlowRegistry:
    """
    One FlowStateMachine per participant for this process.

    Bounded LRU; an evicted participant is reloaded from the store on its
    next request.
    """

    def __init__(self, store: StageStore, assigner: ScenarioAssigner, max_size: Optional[int] = None):
        self.store = store
        self.assigner = assigner
        self.max_size = max_size or settings.max_cached_flows
        self._machines: "OrderedDict[str, FlowStateMachine]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, participant_id: str) -> FlowStateMachine:
        machine = self._machines.get(participant_id)
        if machine is not None:
            self._machines.move_to_end(participant_id)
            return machine

        async with self._lock:
            machine = self._machines.get(participant_id)
            if machine is None:
                machine = await FlowStateMachine.open(participant_id, self.store, self.assigner)
                self._machines[participant_id] = machine
                while len(self._machines) > self.max_size:
                    evicted, _ = self._machines.popitem(last=False)
                    logger.debug(f"Evicted cached flow for {evicted}")
            return machine

    def cached(self, participant_id: str) -> Optional[FlowStateMachine]:
        return self._machines.get(participant_id)

    def __len__(self) -> int:
        return len(self._machines)
