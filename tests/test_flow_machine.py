"""
test_flow_machine.py - Tests for the per-participant stage state machine

Tests:
- canonical stage order and the terminal stage
- stale transitions are rejected without a write, including from a stale machine
- failed writes leave the machine where it was
- reset returns to terms with the condition cleared
- stale reads never roll the cached state back
"""

import asyncio

import pytest

from tutorlab.errors import NotPermitted, PersistenceError, StaleTransition, TerminalStage
from tutorlab.models.flow import STAGE_ORDER, Condition, FlowStage
from tutorlab.services.flow_machine import FlowRegistry, FlowStateMachine
from tutorlab.services.scenario_assigner import ScenarioAssigner, hash_condition
from tutorlab.services.stage_store import InMemoryStageStore


class FlakyStore(InMemoryStageStore):
    """Store whose writes can be switched off, and whose reads can be pinned to an old record."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False
        self.pinned = None
        self.writes = 0

    async def upsert(self, participant_id, patch, expected_stage=None):
        if self.fail_writes:
            raise RuntimeError("disk unavailable")
        self.writes += 1
        return await super().upsert(participant_id, patch, expected_stage=expected_stage)

    async def load(self, participant_id):
        if self.pinned is not None:
            return self.pinned.model_copy()
        return await super().load(participant_id)


def _open(store, pid="abc123", development=False):
    return FlowStateMachine.open(pid, store, ScenarioAssigner(development=development))


class TestFlowOrder:
    def test_walks_canonical_order(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            assert machine.current_stage() == FlowStage.TERMS
            visited = [machine.current_stage()]
            while machine.current_stage() != FlowStage.COMPLETED:
                visited.append(await machine.advance(machine.current_stage()))
            assert visited == STAGE_ORDER

        asyncio.run(run())

    def test_completed_has_no_successor(self, memory_store):
        async def run():
            await memory_store.upsert("abc123", {"stage": FlowStage.COMPLETED})
            machine = await _open(memory_store)
            with pytest.raises(TerminalStage):
                await machine.advance(FlowStage.COMPLETED)
            assert machine.current_stage() == FlowStage.COMPLETED

        asyncio.run(run())

    def test_first_contact_assigns_condition(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            assert machine.current_condition() == hash_condition("abc123")
            stored = await memory_store.load("abc123")
            assert stored.stage == FlowStage.TERMS

        asyncio.run(run())

    def test_existing_record_is_resumed(self, memory_store):
        async def run():
            await memory_store.upsert("abc123", {"stage": FlowStage.POST_TEST, "condition": Condition.MULTI})
            machine = await _open(memory_store)
            assert machine.current_stage() == FlowStage.POST_TEST
            assert machine.current_condition() == Condition.MULTI

        asyncio.run(run())


class TestTransitions:
    def test_stale_transition_writes_nothing(self):
        async def run():
            store = FlakyStore()
            machine = await _open(store)
            await machine.advance(FlowStage.TERMS)
            writes = store.writes

            with pytest.raises(StaleTransition) as exc:
                await machine.advance(FlowStage.TERMS)
            assert exc.value.actual == FlowStage.PRE_TEST.value
            assert store.writes == writes
            assert machine.current_stage() == FlowStage.PRE_TEST

        asyncio.run(run())

    def test_failed_write_rolls_back(self):
        async def run():
            store = FlakyStore()
            machine = await _open(store)
            await machine.advance(FlowStage.TERMS)
            before = machine.snapshot()

            store.fail_writes = True
            with pytest.raises(PersistenceError):
                await machine.advance(FlowStage.PRE_TEST)
            assert machine.snapshot() == before

            store.fail_writes = False
            assert await machine.advance(FlowStage.PRE_TEST) == FlowStage.LESSON

        asyncio.run(run())

    def test_reset_clears_condition_and_cursor(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            await machine.advance(FlowStage.TERMS)
            await machine.advance(FlowStage.PRE_TEST)
            await machine.advance_lesson_question(0)
            assert machine.lesson_question_index() == 1

            state = await machine.reset_flow()
            assert state.stage == FlowStage.TERMS
            assert state.condition is None
            assert state.lesson_question_index == 0

            stored = await memory_store.load("abc123")
            assert stored.stage == FlowStage.TERMS
            assert stored.condition is None

        asyncio.run(run())

    def test_condition_reassigned_on_lesson_entry_after_reset(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            await machine.reset_flow()
            await machine.advance(FlowStage.TERMS)
            await machine.advance(FlowStage.PRE_TEST)
            assert machine.current_stage() == FlowStage.LESSON
            assert machine.current_condition() == hash_condition("abc123")

        asyncio.run(run())

    def test_lesson_cursor_only_in_lesson(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            with pytest.raises(StaleTransition):
                await machine.advance_lesson_question(0)

            await machine.advance(FlowStage.TERMS)
            await machine.advance(FlowStage.PRE_TEST)
            assert await machine.advance_lesson_question(0) == 1
            with pytest.raises(StaleTransition):
                await machine.advance_lesson_question(0)

        asyncio.run(run())

    def test_concurrent_advances_serialize(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            results = await asyncio.gather(
                machine.advance(FlowStage.TERMS),
                machine.advance(FlowStage.TERMS),
                return_exceptions=True,
            )
            assert sum(1 for r in results if isinstance(r, StaleTransition)) == 1
            assert machine.current_stage() == FlowStage.PRE_TEST

        asyncio.run(run())

    def test_stale_machine_cannot_move_stage_backward(self, memory_store):
        async def run():
            stale = await _open(memory_store)
            live = await _open(memory_store)
            await live.advance(FlowStage.TERMS)
            await live.advance(FlowStage.PRE_TEST)

            with pytest.raises(StaleTransition):
                await stale.advance(FlowStage.TERMS)
            stored = await memory_store.load("abc123")
            assert stored.stage == FlowStage.LESSON
            assert stale.current_stage() == FlowStage.LESSON

        asyncio.run(run())

    def test_stale_lesson_cursor_is_rejected(self, memory_store):
        async def run():
            await memory_store.upsert("abc123", {"stage": FlowStage.LESSON})
            stale = await _open(memory_store)
            live = await _open(memory_store)
            assert await live.advance_lesson_question(0) == 1

            with pytest.raises(StaleTransition):
                await stale.advance_lesson_question(0)
            assert (await memory_store.load("abc123")).lesson_question_index == 1

        asyncio.run(run())


class TestOverrideCondition:
    def test_not_permitted_outside_development(self, memory_store):
        async def run():
            machine = await _open(memory_store, development=False)
            with pytest.raises(NotPermitted):
                await machine.override_condition(Condition.SOLO)

        asyncio.run(run())

    def test_override_persists_in_development(self, memory_store):
        async def run():
            machine = await _open(memory_store, development=True)
            await machine.override_condition(Condition.SOLO)
            assert machine.current_condition() == Condition.SOLO
            assert (await memory_store.load("abc123")).condition == Condition.SOLO

        asyncio.run(run())

    def test_failed_override_is_cleared(self):
        async def run():
            store = FlakyStore()
            machine = await _open(store, development=True)
            store.fail_writes = True
            with pytest.raises(PersistenceError):
                await machine.override_condition(Condition.SOLO)
            assert machine._assigner.assign("abc123") == hash_condition("abc123")

        asyncio.run(run())


class TestRefresh:
    def test_stale_read_keeps_cached_state(self):
        async def run():
            store = FlakyStore()
            machine = await _open(store)
            old = await store.load("abc123")
            await machine.advance(FlowStage.TERMS)

            store.pinned = old
            state = await machine.refresh()
            assert state.stage == FlowStage.PRE_TEST

        asyncio.run(run())

    def test_newer_external_write_is_adopted(self, memory_store):
        async def run():
            machine = await _open(memory_store)
            await memory_store.upsert("abc123", {"stage": FlowStage.POST_TEST})
            state = await machine.refresh()
            assert state.stage == FlowStage.POST_TEST
            assert machine.current_stage() == FlowStage.POST_TEST

        asyncio.run(run())


class TestFlowRegistry:
    def test_one_machine_per_participant(self, memory_store):
        async def run():
            registry = FlowRegistry(memory_store, ScenarioAssigner(development=False), max_size=2)
            a1, a2 = await asyncio.gather(registry.get("a"), registry.get("a"))
            assert a1 is a2

            await registry.get("b")
            await registry.get("c")
            assert len(registry) == 2
            assert registry.cached("a") is None
            # Evicted participants come back from the store
            await a1.advance(FlowStage.TERMS)
            reloaded = await registry.get("a")
            assert reloaded.current_stage() == FlowStage.PRE_TEST

        asyncio.run(run())
