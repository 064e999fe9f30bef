"""Response generation pipeline for tutor and agent turns.

Usage:
    from tutorlab.services.response_generator import ResponseGenerator, GenerationOptions

    generator = ResponseGenerator()
    text = await generator.generate(
        transcript=[
            {"id": -1, "sender": "system", "text": "Problem: 3/4 + 1/8"},
            {"id": 1, "sender": "user", "text": "Is it 4/12?"},
        ],
        options=GenerationOptions(
            system_prompt="You are Bob, a patient math tutor.",
            use_case="tutoring",
        ),
    )

One transcript in, one model call out. Shaping rules:
  - an optional system entry comes first
  - transcript messages follow in ordinal order; "user" speakers map to the
    user role, every other speaker to assistant
  - messages with negative ordinals are scaffolding context and are dropped
  - a request with no user entry gets a fixed fallback user entry appended

The generator never retries and sets no timeout of its own; callers decide
how to bound and recover from a GenerationFailed.
"""

import logging
from enum import Enum
from typing import Any, Iterable, Optional, Union

import openai
from pydantic import BaseModel

from tutorlab.config import settings
from tutorlab.errors import GenerationFailed
from tutorlab.models.telemetry import TranscriptMessage

logger = logging.getLogger(__name__)

FALLBACK_USER_TEXT = "Please help with this."


class UseCase(str, Enum):
    TUTORING = "tutoring"
    EVALUATION = "evaluation"


class GenerationOptions(BaseModel):
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    use_case: Optional[UseCase] = None


def _coerce(message: Union[TranscriptMessage, dict]) -> TranscriptMessage:
    if isinstance(message, TranscriptMessage):
        return message
    return TranscriptMessage.model_validate(message)


def shape_messages(
    transcript: Iterable[Union[TranscriptMessage, dict]],
    system_prompt: Optional[str] = None,
) -> list[dict]:
    """Turn a transcript into the ordered role/content list sent to the model."""
    shaped: list[dict] = []
    if system_prompt:
        shaped.append({"role": "system", "content": system_prompt})

    messages = sorted((_coerce(m) for m in transcript), key=lambda m: m.ordinal)
    for msg in messages:
        if msg.is_internal:
            continue
        shaped.append({
            "role": "user" if msg.speaker_role == "user" else "assistant",
            "content": msg.text,
        })

    # The endpoint rejects conversations without a user turn
    if not any(m["role"] == "user" for m in shaped):
        shaped.append({"role": "user", "content": FALLBACK_USER_TEXT})
    return shaped


def resolve_model(options: GenerationOptions) -> str:
    return options.model or settings.model_name


def resolve_temperature(options: GenerationOptions) -> float:
    """Explicit temperature first, then the configured default for the use case."""
    if options.temperature is not None:
        return options.temperature
    if options.use_case == UseCase.TUTORING:
        return settings.tutoring_temperature
    if options.use_case == UseCase.EVALUATION:
        return settings.evaluation_temperature
    return settings.default_temperature


def _first_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None) or ""


class ResponseGenerator:
    def __init__(self, client: Any = None):
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs: dict = {"api_key": settings.api_key or None, "max_retries": 0}
            if settings.api_base_url:
                kwargs["base_url"] = settings.api_base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    def build_request(
        self,
        transcript: Iterable[Union[TranscriptMessage, dict]],
        options: Optional[GenerationOptions] = None,
    ) -> dict:
        options = options or GenerationOptions()
        return {
            "model": resolve_model(options),
            "messages": shape_messages(transcript, options.system_prompt),
            "temperature": resolve_temperature(options),
            "max_tokens": settings.max_tokens,
            "presence_penalty": settings.presence_penalty,
            "frequency_penalty": settings.frequency_penalty,
        }

    async def generate(
        self,
        transcript: Iterable[Union[TranscriptMessage, dict]],
        options: Optional[GenerationOptions] = None,
    ) -> str:
        """Send one chat completion and return the generated text ("" when none came back)."""
        request = self.build_request(transcript, options)
        try:
            client = self._get_client()
            response = await client.chat.completions.create(**request)
        except openai.APIStatusError as e:
            message = getattr(e, "message", None) or str(e)
            logger.error("Model endpoint returned %s for %s: %s", e.status_code, request["model"], message)
            raise GenerationFailed(e.status_code, message) from e
        except openai.OpenAIError as e:
            logger.error("Model call to %s failed: %s", request["model"], e)
            raise GenerationFailed(None, str(e)) from e

        return _first_text(response)
