"""User/flow persistence endpoints: upsert, fetch and finalize."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from tutorlab.errors import ParticipantNotFound
from tutorlab.models.flow import Condition, FlowStage
from tutorlab.routes.deps import get_flows, get_recorder
from tutorlab.services.flow_machine import FlowRegistry
from tutorlab.services.telemetry_recorder import TelemetryRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


class UserUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    flow_stage: Optional[FlowStage] = Field(default=None, alias="flowStage")
    lesson_type: Optional[Condition] = Field(default=None, alias="lessonType")
    lesson_question_index: Optional[int] = Field(default=None, alias="lessonQuestionIndex", ge=0)


@router.post("")
async def upsert_user(body: UserUpsert, flows: FlowRegistry = Depends(get_flows)):
    """
    Create or update a participant's flow record. Replaying the same body is a no-op.

    Request body:
    {
        "userId": "abc123",
        "flowStage": "pre-test",
        "lessonType": "group",
        "lessonQuestionIndex": 0
    }
    """
    patch = {}
    if body.flow_stage is not None:
        patch["stage"] = body.flow_stage
    if "lesson_type" in body.model_fields_set:
        patch["condition"] = body.lesson_type
    if body.lesson_question_index is not None:
        patch["lesson_question_index"] = body.lesson_question_index

    try:
        state = await flows.store.upsert(body.user_id, patch)
    except Exception as e:
        logger.error(f"Error saving user data for {body.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save user data")

    # Keep a cached machine in step with a write that bypassed it
    machine = flows.cached(body.user_id)
    if machine is not None:
        state = await machine.refresh()

    return {"success": True, "data": state.to_public()}


@router.get("/{user_id}")
async def get_user(user_id: str, flows: FlowRegistry = Depends(get_flows)):
    try:
        state = await flows.store.load(user_id)
    except ParticipantNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": state.to_public()}


@router.post("/{user_id}/finalize")
async def finalize_user(user_id: str, recorder: TelemetryRecorder = Depends(get_recorder)):
    """Close out every open session for the user. Safe to repeat."""
    try:
        result = await recorder.finalize(user_id)
    except ParticipantNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "success": True,
        "userId": user_id,
        "updatedSessionCount": result["closedSessions"],
        "data": result["participant"].to_public(),
    }
