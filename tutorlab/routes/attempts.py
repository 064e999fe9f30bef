"""Test attempt endpoints (pre, post and final tests)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from tutorlab.errors import StageNotReached
from tutorlab.models.telemetry import TestAttemptSubmission, TestType
from tutorlab.routes.deps import get_recorder
from tutorlab.services.telemetry_recorder import TelemetryRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tests", tags=["tests"])


@router.post("")
async def submit_test(body: TestAttemptSubmission, recorder: TelemetryRecorder = Depends(get_recorder)):
    """
    Store a test attempt. The score is recomputed from the questions.

    Request body:
    {
        "userId": "abc123",
        "testType": "pre",
        "questions": [
            {"questionId": 1, "questionText": "...", "userAnswer": "12", "correctAnswer": "12", "isCorrect": true}
        ],
        "duration": 94000
    }
    """
    try:
        record, status = await recorder.record_test_attempt(body)
    except StageNotReached as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "status": status, "data": record}


@router.get("")
async def list_tests(
    user_id: str = Query(alias="userId", min_length=1),
    test_type: Optional[TestType] = Query(default=None, alias="testType"),
    recorder: TelemetryRecorder = Depends(get_recorder),
):
    attempts = await recorder.list_test_attempts(user_id, test_type.value if test_type else None)
    return {"success": True, "data": attempts}
