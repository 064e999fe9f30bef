"""Tests for the stage guard in front of stage-specific views."""

import asyncio

import pytest

from tutorlab.errors import ResetRequired
from tutorlab.models.flow import ENTRY_PATH, FlowStage
from tutorlab.services.flow_guard import FlowGuard, GuardVerdict, validate
from tutorlab.services.flow_machine import FlowStateMachine
from tutorlab.services.scenario_assigner import ScenarioAssigner
from tutorlab.services.stage_store import InMemoryStageStore


class SlowStore(InMemoryStageStore):
    """Writes take a moment, so a transition stays in flight."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def upsert(self, participant_id, patch, expected_stage=None):
        await asyncio.sleep(self.delay)
        return await super().upsert(participant_id, patch, expected_stage=expected_stage)


async def _machine_at(store, stage, pid="abc123"):
    await store.upsert(pid, {"stage": stage})
    return await FlowStateMachine.open(pid, store, ScenarioAssigner(development=False))


class TestValidate:
    def test_verdicts(self):
        assert validate(FlowStage.LESSON, FlowStage.LESSON) is GuardVerdict.OK
        assert validate(FlowStage.PRE_TEST, FlowStage.LESSON) is GuardVerdict.MISMATCH
        assert validate("post-test", FlowStage.POST_TEST) is GuardVerdict.OK


class TestProtect:
    def test_matching_stage_renders(self, memory_store):
        async def run():
            machine = await _machine_at(memory_store, FlowStage.PRE_TEST)
            guard = FlowGuard(settle_seconds=0.05)
            outcome = await guard.protect(machine, FlowStage.PRE_TEST, lambda s: f"view:{s.stage.value}")
            assert outcome.rendered
            assert outcome.content == "view:pre-test"
            assert outcome.redirect_to is None

        asyncio.run(run())

    def test_async_render_is_awaited(self, memory_store):
        async def run():
            machine = await _machine_at(memory_store, FlowStage.TETRIS_BREAK)

            async def render(state):
                return {"stage": state.stage.value}

            outcome = await FlowGuard(settle_seconds=0.05).protect(machine, FlowStage.TETRIS_BREAK, render)
            assert outcome.content == {"stage": "tetris-break"}

        asyncio.run(run())

    def test_mismatch_resets_and_never_renders(self, memory_store):
        async def run():
            machine = await _machine_at(memory_store, FlowStage.PRE_TEST)
            rendered = []
            outcome = await FlowGuard(settle_seconds=0.05).protect(
                machine, FlowStage.LESSON, lambda s: rendered.append(s)
            )
            assert not outcome.rendered
            assert rendered == []
            assert outcome.redirect_to == ENTRY_PATH
            assert outcome.state.stage == FlowStage.TERMS
            assert outcome.state.condition is None

            stored = await memory_store.load("abc123")
            assert stored.stage == FlowStage.TERMS

        asyncio.run(run())

    def test_check_raises_reset_required(self, memory_store):
        async def run():
            machine = await _machine_at(memory_store, FlowStage.POST_TEST)
            with pytest.raises(ResetRequired) as exc:
                await FlowGuard(settle_seconds=0.05).check(machine, FlowStage.FINAL_TEST)
            assert exc.value.required == "final-test"
            assert exc.value.actual == "post-test"
            # check() alone never resets
            assert machine.current_stage() == FlowStage.POST_TEST

        asyncio.run(run())

    def test_waits_for_in_flight_transition(self):
        async def run():
            store = SlowStore(delay=0.05)
            machine = await _machine_at(store, FlowStage.PRE_TEST)

            # Navigation to the lesson view lands while pre-test -> lesson is still being written
            pending = asyncio.create_task(machine.advance(FlowStage.PRE_TEST))
            await asyncio.sleep(0)
            assert machine.in_flight()

            outcome = await FlowGuard(settle_seconds=1.0).protect(machine, FlowStage.LESSON, lambda s: "lesson")
            await pending
            assert outcome.rendered
            assert outcome.state.stage == FlowStage.LESSON

        asyncio.run(run())
