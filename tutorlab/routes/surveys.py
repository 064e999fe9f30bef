import logging
from fastapi import APIRouter, Depends, Query

from tutorlab.models.telemetry import SurveySubmission
from tutorlab.routes.deps import get_recorder
from tutorlab.services.telemetry_recorder import TelemetryRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/surveys", tags=["surveys"])


@router.post("")
async def submit_survey(body: SurveySubmission, recorder: TelemetryRecorder = Depends(get_recorder)):
    survey_id = await recorder.record_survey(body)
    return {"success": True, "surveyId": survey_id}


@router.get("")
async def list_surveys(
    user_id: str = Query(alias="userId", min_length=1),
    recorder: TelemetryRecorder = Depends(get_recorder),
):
    surveys = await recorder.list_surveys(user_id)
    return {"success": True, "data": surveys}
