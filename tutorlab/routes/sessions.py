"""Lesson transcript endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from tutorlab.models.telemetry import TranscriptMessage, TranscriptRecord
from tutorlab.routes.deps import get_recorder
from tutorlab.services.telemetry_recorder import APPENDED, TelemetryRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class MessageAppend(BaseModel):
    messages: list[TranscriptMessage]


@router.post("")
async def create_session(body: TranscriptRecord, recorder: TelemetryRecorder = Depends(get_recorder)):
    """Store the transcript of one lesson question. Resubmitting replaces it."""
    record, status = await recorder.record_transcript(body)
    return {"success": True, "status": status, "data": record}


@router.get("")
async def list_sessions(
    user_id: str = Query(alias="userId", min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    recorder: TelemetryRecorder = Depends(get_recorder),
):
    sessions = await recorder.list_transcripts(user_id, limit)
    return {"success": True, "data": sessions}


@router.post("/{user_id}/{stage_key}/messages")
async def append_session_messages(
    user_id: str,
    stage_key: str,
    body: MessageAppend,
    recorder: TelemetryRecorder = Depends(get_recorder),
):
    """Append turns to an in-progress transcript. Ordinals must continue past the stored ones."""
    try:
        record = await recorder.append_messages(user_id, stage_key, body.messages)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "status": APPENDED, "data": record}
