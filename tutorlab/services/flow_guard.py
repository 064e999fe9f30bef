"""
flow_guard.py - Stage integrity check for stage-specific views

A view declares the stage it belongs to. Before its content is produced the
guard waits briefly for any in-flight transition (the settle window), then
compares the participant's live stage to the required one. On a mismatch
the flow is reset and the caller is sent back to the entry path; the
view's content is never produced.

Navigation can reach a view without going through the state machine
(typed URLs, back/forward, stale tabs), which is why the check runs on
every view entry.
"""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from tutorlab.config import settings
from tutorlab.errors import ResetRequired
from tutorlab.models.flow import ENTRY_PATH, FlowStage, ParticipantFlowState
from tutorlab.services.flow_machine import FlowStateMachine

logger = logging.getLogger(__name__)

RenderFn = Callable[[ParticipantFlowState], Union[Any, Awaitable[Any]]]


class GuardVerdict(str, Enum):
    OK = "ok"
    MISMATCH = "mismatch"


def validate(current_stage: FlowStage, required_stage: FlowStage) -> GuardVerdict:
    if FlowStage(current_stage) == FlowStage(required_stage):
        return GuardVerdict.OK
    return GuardVerdict.MISMATCH


@dataclass
class GuardOutcome:
    rendered: bool
    state: ParticipantFlowState
    content: Any = None
    redirect_to: Optional[str] = None


class FlowGuard:
    def __init__(self, settle_seconds: Optional[float] = None):
        self.settle_seconds = settings.guard_settle_seconds if settle_seconds is None else settle_seconds

    async def check(self, machine: FlowStateMachine, required_stage: FlowStage) -> ParticipantFlowState:
        """Return the settled state, or raise ResetRequired when it is not at required_stage."""
        settled = await machine.wait_until_settled(self.settle_seconds)
        if not settled:
            logger.debug(f"Transition for {machine.participant_id} still in flight after settle window")
        state = await machine.refresh()
        if validate(state.stage, required_stage) is GuardVerdict.MISMATCH:
            raise ResetRequired(FlowStage(required_stage).value, state.stage.value)
        return state

    async def protect(
        self,
        machine: FlowStateMachine,
        required_stage: FlowStage,
        render_fn: RenderFn,
    ) -> GuardOutcome:
        try:
            state = await self.check(machine, required_stage)
        except ResetRequired as e:
            logger.warning(
                f"Flow protection: expected {e.required}, got {e.actual} for "
                f"{machine.participant_id}. Resetting flow."
            )
            state = await machine.reset_flow()
            return GuardOutcome(rendered=False, state=state, redirect_to=ENTRY_PATH)

        content = render_fn(state)
        if inspect.isawaitable(content):
            content = await content
        return GuardOutcome(rendered=True, state=state, content=content)
