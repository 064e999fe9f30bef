"""Model endpoint proxy used by the lesson chat."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from tutorlab.config import settings
from tutorlab.errors import GenerationFailed
from tutorlab.models.telemetry import TranscriptMessage
from tutorlab.routes.deps import get_generator
from tutorlab.services.response_generator import GenerationOptions, ResponseGenerator, UseCase

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["generate"])


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[TranscriptMessage] = []
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    use_case: Optional[UseCase] = Field(default=None, alias="useCase")


@router.post("/generate")
async def generate(body: GenerateRequest, generator: ResponseGenerator = Depends(get_generator)):
    options = GenerationOptions(
        system_prompt=body.system_prompt,
        model=body.model,
        temperature=body.temperature,
        use_case=body.use_case,
    )
    try:
        text = await asyncio.wait_for(
            generator.generate(body.messages, options),
            timeout=settings.generation_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(f"Model call exceeded {settings.generation_timeout_seconds}s")
        raise HTTPException(status_code=504, detail="Model endpoint timed out")
    except GenerationFailed as e:
        raise HTTPException(
            status_code=502,
            detail={"error": "generation_failed", "status": e.status, "message": e.message},
        )
    return {"message": text}
