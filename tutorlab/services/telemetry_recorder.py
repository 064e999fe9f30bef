"""
telemetry_recorder.py - Transcript, test-attempt and survey persistence

Provides:
- record_transcript(record) - upsert keyed on (participant, stage key)
- append_messages(participant_id, stage_key, messages) - append-only turns
- record_test_attempt(submission) - server-scored upsert keyed on (participant, test type)
- record_survey(submission), list_surveys(participant_id)
- finalize(participant_id) - close out every open transcript

Resubmitting identical data is a no-op. Resubmitting divergent data for the
same key replaces the stored record, bumps attempt_count and logs a warning,
so a replaced attempt is always visible.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tutorlab.db import experiment_data as ed
from tutorlab.db.database import open_db
from tutorlab.errors import ParticipantNotFound, StageNotReached
from tutorlab.models.flow import FlowStage
from tutorlab.models.telemetry import (
    SurveySubmission,
    TestAttemptSubmission,
    TestType,
    TranscriptMessage,
    TranscriptRecord,
)
from tutorlab.services.answer_scoring import score_questions
from tutorlab.services.stage_store import StageStore

logger = logging.getLogger(__name__)

CREATED = "created"
UNCHANGED = "unchanged"
REPLACED = "replaced"
APPENDED = "appended"

# SQLite reports a busy writer as OperationalError("database is locked")
_retry_locked_writes = retry(
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception_type(sqlite3.OperationalError),
    before_sleep=lambda retry_state: logger.warning(
        "Database write failed (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    ),
    reraise=True,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _message_dict(msg: TranscriptMessage, written_at: str) -> Dict[str, Any]:
    return {
        "id": msg.ordinal,
        "sender": msg.speaker_role,
        "agentId": msg.speaker_agent_id,
        "text": msg.text,
        "timestamp": _iso(msg.timestamp) or written_at,
    }


def _without_timestamps(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{k: v for k, v in m.items() if k != "timestamp"} for m in messages or []]


def _session_fields(record: TranscriptRecord) -> Dict[str, Any]:
    written_at = _now()
    return {
        "question_text": record.question_text,
        "start_time": _iso(record.start_time),
        "end_time": _iso(record.end_time),
        "duration_ms": record.duration_ms,
        "final_answer": record.final_answer,
        "scratchboard_content": record.scratch_construct,
        "messages_json": json.dumps([_message_dict(m, written_at) for m in record.messages]),
        "is_correct": None if record.is_correct is None else int(record.is_correct),
        "timeout_occurred": int(record.timed_out),
    }


def _same_session(row: Dict[str, Any], fields: Dict[str, Any]) -> bool:
    for column, value in fields.items():
        if column == "messages_json":
            stored = row.get("messages_json") or []
            if _without_timestamps(stored) != _without_timestamps(json.loads(value)):
                return False
        elif row.get(column) != value:
            return False
    return True


def session_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "userId": row["participant_id"],
        "questionId": row["stage_key"],
        "questionText": row["question_text"],
        "startTime": row["start_time"],
        "endTime": row["end_time"],
        "duration": row["duration_ms"],
        "finalAnswer": row["final_answer"],
        "scratchboardContent": row["scratchboard_content"],
        "messages": row["messages_json"] or [],
        "isCorrect": None if row["is_correct"] is None else bool(row["is_correct"]),
        "timeoutOccurred": bool(row["timeout_occurred"]),
        "attemptCount": row["attempt_count"],
        "finalized": bool(row["finalized"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def attempt_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "userId": row["participant_id"],
        "testType": row["test_type"],
        "score": row["score"],
        "questions": row["questions_json"] or [],
        "duration": row["duration_ms"],
        "metadata": row["metadata_json"],
        "lessonType": row["lesson_type"],
        "attemptCount": row["attempt_count"],
        "completedAt": row["completed_at"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def survey_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "userId": row["participant_id"],
        "section": row["section"],
        "data": row["data_json"],
        "lessonType": row["lesson_type"],
        "submittedAt": row["submitted_at"],
    }


class TelemetryRecorder:
    def __init__(self, stage_store: StageStore, database_path: Optional[str] = None):
        self.stage_store = stage_store
        self.database_path = database_path

    # ── Transcripts ──────────────────────────────────────────────────

    @_retry_locked_writes
    async def record_transcript(self, record: TranscriptRecord) -> Tuple[Dict[str, Any], str]:
        """Store a lesson transcript. Returns (stored record, created|unchanged|replaced)."""
        fields = _session_fields(record)
        async with open_db(self.database_path) as db:
            existing = await ed.get_lesson_session(db, record.participant_id, record.stage_key)
            if existing is None and await ed.insert_lesson_session(
                db, record.participant_id, record.stage_key, fields
            ):
                status = CREATED
            else:
                if existing is None:
                    # A concurrent first submission inserted the row; compare against it
                    existing = await ed.get_lesson_session(db, record.participant_id, record.stage_key)
                if _same_session(existing, fields):
                    status = UNCHANGED
                else:
                    logger.warning(
                        f"Transcript {record.stage_key} for {record.participant_id} resubmitted with "
                        f"different data; replacing attempt {existing['attempt_count']}"
                    )
                    await ed.replace_lesson_session(db, existing["id"], fields)
                    status = REPLACED
            stored = await ed.get_lesson_session(db, record.participant_id, record.stage_key)

        logger.info(
            f"Transcript {record.stage_key} for {record.participant_id}: {status} "
            f"({len(record.messages)} messages)"
        )
        return session_payload(stored), status

    @_retry_locked_writes
    async def append_messages(
        self,
        participant_id: str,
        stage_key: str,
        messages: List[TranscriptMessage],
    ) -> Dict[str, Any]:
        """
        Append turns to the transcript of an in-progress attempt.

        Every new ordinal must be greater than the largest stored one; the
        transcript is created on the first append.
        """
        new = sorted(messages, key=lambda m: m.ordinal)
        for prev, cur in zip(new, new[1:]):
            if prev.ordinal == cur.ordinal:
                raise ValueError(f"Duplicate message ordinal {cur.ordinal}")

        written_at = _now()
        async with open_db(self.database_path) as db:
            existing = await ed.get_lesson_session(db, participant_id, stage_key)
            if existing is None:
                record = TranscriptRecord(
                    participant_id=participant_id, stage_key=stage_key, messages=new
                )
                if not await ed.insert_lesson_session(db, participant_id, stage_key, _session_fields(record)):
                    existing = await ed.get_lesson_session(db, participant_id, stage_key)
            if existing is not None:
                stored_messages = existing["messages_json"] or []
                last = max((m["id"] for m in stored_messages), default=None)
                if new and last is not None and new[0].ordinal <= last:
                    raise ValueError(
                        f"Message ordinal {new[0].ordinal} does not follow stored ordinal {last}"
                    )
                combined = stored_messages + [_message_dict(m, written_at) for m in new]
                await ed.update_session_messages(db, existing["id"], combined)
            stored = await ed.get_lesson_session(db, participant_id, stage_key)

        logger.debug(f"Appended {len(new)} messages to {stage_key} for {participant_id}")
        return session_payload(stored)

    async def list_transcripts(self, participant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with open_db(self.database_path) as db:
            rows = await ed.list_lesson_sessions(db, participant_id, limit)
        return [session_payload(r) for r in rows]

    # ── Test attempts ────────────────────────────────────────────────

    async def _require_final_stage(self, participant_id: str) -> None:
        try:
            state = await self.stage_store.load(participant_id)
        except ParticipantNotFound:
            raise StageNotReached(f"Participant {participant_id} has no flow record; final test not allowed")
        if not state.stage.has_reached(FlowStage.FINAL_TEST):
            raise StageNotReached(
                f"Participant {participant_id} is at {state.stage.value}; final test requires final-test"
            )

    @_retry_locked_writes
    async def record_test_attempt(self, submission: TestAttemptSubmission) -> Tuple[Dict[str, Any], str]:
        """Score and store a test attempt. Returns (stored record, created|unchanged|replaced)."""
        if submission.test_type == TestType.FINAL:
            await self._require_final_stage(submission.participant_id)

        questions, score = score_questions(submission.questions)
        if submission.score is not None and submission.score != score:
            logger.warning(
                f"Client score {submission.score} for {submission.participant_id} "
                f"{submission.test_type.value} test ignored; recomputed {score}"
            )

        questions_payload = [q.model_dump(mode="json", by_alias=True) for q in questions]
        metadata = dict(submission.metadata or {})
        metadata.setdefault("submissionId", str(int(datetime.now(timezone.utc).timestamp() * 1000)))
        metadata["submittedAt"] = _now()
        lesson_type = submission.lesson_type.value if submission.lesson_type else None
        test_type = submission.test_type.value

        async with open_db(self.database_path) as db:
            existing = await ed.get_test_attempt(db, submission.participant_id, test_type)
            if existing is None and await ed.insert_test_attempt(
                db, submission.participant_id, test_type, score, questions_payload,
                submission.duration_ms, metadata, lesson_type
            ):
                status = CREATED
            else:
                if existing is None:
                    existing = await ed.get_test_attempt(db, submission.participant_id, test_type)
                if (
                    existing["score"] == score
                    and existing["questions_json"] == questions_payload
                    and existing["duration_ms"] == submission.duration_ms
                ):
                    status = UNCHANGED
                else:
                    logger.warning(
                        f"{test_type} test for {submission.participant_id} resubmitted with different "
                        f"answers; replacing attempt {existing['attempt_count']}"
                    )
                    await ed.replace_test_attempt(
                        db, existing["id"], score, questions_payload,
                        submission.duration_ms, metadata, lesson_type
                    )
                    status = REPLACED
            stored = await ed.get_test_attempt(db, submission.participant_id, test_type)

        logger.info(f"{test_type} test for {submission.participant_id}: {status}, score {score}/{len(questions)}")
        return attempt_payload(stored), status

    async def list_test_attempts(self, participant_id: str, test_type: Optional[str] = None) -> List[Dict[str, Any]]:
        async with open_db(self.database_path) as db:
            rows = await ed.list_test_attempts(db, participant_id, test_type)
        return [attempt_payload(r) for r in rows]

    # ── Surveys and finalization ─────────────────────────────────────

    @_retry_locked_writes
    async def record_survey(self, submission: SurveySubmission) -> int:
        try:
            state = await self.stage_store.load(submission.participant_id)
            lesson_type = state.condition.value if state.condition else None
        except ParticipantNotFound:
            lesson_type = None

        async with open_db(self.database_path) as db:
            survey_id = await ed.create_survey(
                db, submission.participant_id, submission.section, submission.data, lesson_type
            )
        logger.info(f"Survey {survey_id} ({submission.section}) saved for {submission.participant_id}")
        return survey_id

    async def list_surveys(self, participant_id: str) -> List[Dict[str, Any]]:
        async with open_db(self.database_path) as db:
            rows = await ed.list_surveys(db, participant_id)
        return [survey_payload(r) for r in rows]


    @_retry_locked_writes
    async def finalize(self, participant_id: str) -> Dict[str, Any]:
        """Close all open transcripts for a participant. Safe to call repeatedly."""
        state = await self.stage_store.finalize(participant_id)
        async with open_db(self.database_path) as db:
            closed = await ed.finalize_lesson_sessions(db, participant_id)
        logger.info(f"Finalized participant {participant_id}: closed {closed} sessions")
        return {"participant": state, "closedSessions": closed}
