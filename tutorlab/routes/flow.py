"""Flow engine endpoints: start, advance, reset, override and guarded stage views."""

import logging
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tutorlab.errors import (
    NotPermitted,
    ParticipantNotFound,
    PersistenceError,
    StaleTransition,
    TerminalStage,
)
from tutorlab.models.flow import Condition, FlowStage, ParticipantFlowState, stage_path
from tutorlab.routes.deps import get_flows, get_guard, load_machine
from tutorlab.services.flow_guard import FlowGuard
from tutorlab.services.flow_machine import FlowRegistry
from tutorlab.services.scenario_assigner import SCENARIO_DESCRIPTIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/flow", tags=["flow"])
dev_router = APIRouter(prefix="/api/dev", tags=["dev"])


# ── Request / response models ───────────────────────────────────────

class AdvanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_stage: FlowStage = Field(alias="fromStage")


class QuestionAdvanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_index: int = Field(alias="fromIndex", ge=0)


class OverrideRequest(BaseModel):
    condition: Condition


# ── Helpers ──────────────────────────────────────────────────────────

def _flow_response(state: ParticipantFlowState) -> dict:
    return {**state.to_public(), "path": stage_path(state.stage, state.condition)}


def _stale(e: StaleTransition, current: FlowStage) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"error": "stale_transition", "message": str(e), "currentStage": current.value},
    )


_TEST_TYPES = {
    FlowStage.PRE_TEST: "pre",
    FlowStage.POST_TEST: "post",
    FlowStage.FINAL_TEST: "final",
}


def render_stage_view(state: ParticipantFlowState) -> dict:
    """Payload the client needs to render the participant's current stage."""
    view = {
        "stage": state.stage.value,
        "path": stage_path(state.stage, state.condition),
    }
    if state.stage in _TEST_TYPES:
        view["testType"] = _TEST_TYPES[state.stage]
    if state.stage == FlowStage.LESSON:
        view["lessonType"] = state.condition.value if state.condition else None
        view["lessonQuestionIndex"] = state.lesson_question_index
        if state.condition:
            view["scenario"] = SCENARIO_DESCRIPTIONS[state.condition]
    return view


# ── Flow endpoints ───────────────────────────────────────────────────

@router.post("/{participant_id}/start")
async def start_flow(participant_id: str, flows: FlowRegistry = Depends(get_flows)):
    """Load the participant's flow, creating it at terms on first contact."""
    machine = await load_machine(flows, participant_id)
    return _flow_response(machine.snapshot())


@router.get("/{participant_id}")
async def get_flow(participant_id: str, flows: FlowRegistry = Depends(get_flows)):
    machine = flows.cached(participant_id)
    if machine is not None:
        return _flow_response(await machine.refresh())
    try:
        state = await flows.store.load(participant_id)
    except ParticipantNotFound:
        raise HTTPException(status_code=404, detail="Participant not found")
    return _flow_response(state)


@router.post("/{participant_id}/advance")
async def advance_flow(
    participant_id: str,
    body: AdvanceRequest,
    flows: FlowRegistry = Depends(get_flows),
):
    """
    Complete the caller's current stage and move to the next one.

    Request body:
    {
        "fromStage": "pre-test"
    }
    """
    machine = await load_machine(flows, participant_id)
    try:
        await machine.advance(body.from_stage)
    except StaleTransition as e:
        raise _stale(e, machine.current_stage())
    except TerminalStage as e:
        raise HTTPException(status_code=409, detail={"error": "terminal_stage", "message": str(e)})
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))

    state = machine.snapshot()
    return {**_flow_response(state), "nextPath": stage_path(state.stage, state.condition)}


@router.post("/{participant_id}/lesson-question/advance")
async def advance_lesson_question(
    participant_id: str,
    body: QuestionAdvanceRequest,
    flows: FlowRegistry = Depends(get_flows),
):
    machine = await load_machine(flows, participant_id)
    try:
        await machine.advance_lesson_question(body.from_index)
    except StaleTransition as e:
        raise _stale(e, machine.current_stage())
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _flow_response(machine.snapshot())


@router.post("/{participant_id}/reset")
async def reset_flow(participant_id: str, flows: FlowRegistry = Depends(get_flows)):
    machine = await load_machine(flows, participant_id)
    try:
        state = await machine.reset_flow()
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _flow_response(state)


@router.post("/{participant_id}/override")
async def override_condition(
    participant_id: str,
    body: OverrideRequest,
    flows: FlowRegistry = Depends(get_flows),
):
    machine = await load_machine(flows, participant_id)
    try:
        await machine.override_condition(body.condition)
    except NotPermitted as e:
        raise HTTPException(status_code=403, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _flow_response(machine.snapshot())


@router.get("/{participant_id}/views/{stage}")
async def stage_view(
    participant_id: str,
    stage: FlowStage,
    flows: FlowRegistry = Depends(get_flows),
    guard: FlowGuard = Depends(get_guard),
):
    """Guarded stage view. A stage mismatch resets the flow and answers 409 with a redirect."""
    machine = await load_machine(flows, participant_id)
    try:
        outcome = await guard.protect(machine, stage, render_stage_view)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if not outcome.rendered:
        return JSONResponse(
            status_code=409,
            content={
                "detail": f"Flow reset: {stage.value} is not the current stage",
                "redirect": outcome.redirect_to,
                "flow": _flow_response(outcome.state),
            },
        )
    return {"view": outcome.content, "flow": _flow_response(outcome.state)}


# ── Development helpers ──────────────────────────────────────────────

@dev_router.get("/scenarios")
async def list_scenarios(flows: FlowRegistry = Depends(get_flows)):
    """Scenario list for the development override picker."""
    if not flows.assigner.development:
        raise HTTPException(status_code=404, detail="Not found")
    return {"scenarios": flows.assigner.scenarios()}
