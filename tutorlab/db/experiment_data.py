"""
experiment_data.py - Database helper queries for experiment records

Provides insert/fetch functions for:
- participants (flow state)
- lesson_sessions (lesson transcripts)
- test_attempts
- surveys
"""

import json
from typing import Optional, List, Dict, Any
import aiosqlite


# ══════════════════════════════════════════════════════════════════════════════
# PARTICIPANTS
# ══════════════════════════════════════════════════════════════════════════════

async def get_participant(db: aiosqlite.Connection, participant_id: str) -> Optional[Dict[str, Any]]:
    """Get the flow record for a participant."""
    cursor = await db.execute(
        "SELECT * FROM participants WHERE participant_id = ?",
        (participant_id,)
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row)


async def upsert_participant(
    db: aiosqlite.Connection,
    participant_id: str,
    flow_stage: str,
    lesson_type: Optional[str],
    lesson_question_index: int,
    expected_stage: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Insert or update a participant's flow record and return the stored row.

    The update only fires when a value actually changes, so replaying the
    same values leaves revision and updated_at untouched. With expected_stage
    set, an existing row is only updated while it is still at that stage;
    the caller compares the returned row to detect a lost precondition.
    """
    await db.execute(
        """INSERT INTO participants (participant_id, flow_stage, lesson_type, lesson_question_index)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(participant_id) DO UPDATE SET
               flow_stage = excluded.flow_stage,
               lesson_type = excluded.lesson_type,
               lesson_question_index = excluded.lesson_question_index,
               revision = participants.revision + 1,
               updated_at = CURRENT_TIMESTAMP
           WHERE (participants.flow_stage IS NOT excluded.flow_stage
              OR participants.lesson_type IS NOT excluded.lesson_type
              OR participants.lesson_question_index IS NOT excluded.lesson_question_index)
             AND (? IS NULL OR participants.flow_stage = ?)""",
        (participant_id, flow_stage, lesson_type, lesson_question_index, expected_stage, expected_stage)
    )
    await db.commit()
    return await get_participant(db, participant_id)



async def finalize_participant(db: aiosqlite.Connection, participant_id: str) -> Optional[Dict[str, Any]]:
    """Stamp finalized_at once. Later calls keep the first timestamp."""
    await db.execute(
        """UPDATE participants
           SET finalized_at = COALESCE(finalized_at, CURRENT_TIMESTAMP)
           WHERE participant_id = ?""",
        (participant_id,)
    )
    await db.commit()
    return await get_participant(db, participant_id)


# ══════════════════════════════════════════════════════════════════════════════
# LESSON SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

_SESSION_COLUMNS = (
    "question_text",
    "start_time",
    "end_time",
    "duration_ms",
    "final_answer",
    "scratchboard_content",
    "messages_json",
    "is_correct",
    "timeout_occurred",
)


async def get_lesson_session(
    db: aiosqlite.Connection,
    participant_id: str,
    stage_key: str
) -> Optional[Dict[str, Any]]:
    """Get the transcript stored for one (participant, stage key) pair."""
    cursor = await db.execute(
        "SELECT * FROM lesson_sessions WHERE participant_id = ? AND stage_key = ?",
        (participant_id, stage_key)
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=['messages_json'])


async def insert_lesson_session(
    db: aiosqlite.Connection,
    participant_id: str,
    stage_key: str,
    fields: Dict[str, Any]
) -> bool:
    """
    Create a transcript row unless one already exists for the key.

    Returns False when a concurrent submission created it first; the caller
    then re-reads the row and compares against it.
    """
    values = [fields.get(c) for c in _SESSION_COLUMNS]
    cursor = await db.execute(
        f"""INSERT INTO lesson_sessions (participant_id, stage_key, {", ".join(_SESSION_COLUMNS)})
            VALUES (?, ?, {", ".join("?" for _ in _SESSION_COLUMNS)})
            ON CONFLICT(participant_id, stage_key) DO NOTHING""",
        (participant_id, stage_key, *values)
    )
    await db.commit()
    return cursor.rowcount > 0


async def replace_lesson_session(
    db: aiosqlite.Connection,
    session_id: int,
    fields: Dict[str, Any]
) -> None:
    """Overwrite a transcript with a resubmitted attempt and bump its attempt counter."""
    assignments = ", ".join(f"{c} = ?" for c in _SESSION_COLUMNS)
    await db.execute(
        f"""UPDATE lesson_sessions
            SET {assignments},
                attempt_count = attempt_count + 1,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?""",
        (*[fields.get(c) for c in _SESSION_COLUMNS], session_id)
    )
    await db.commit()


async def update_session_messages(db: aiosqlite.Connection, session_id: int, messages: List[Dict[str, Any]]) -> None:
    await db.execute(
        """UPDATE lesson_sessions
           SET messages_json = ?, updated_at = CURRENT_TIMESTAMP
           WHERE id = ?""",
        (json.dumps(messages), session_id)
    )
    await db.commit()


async def list_lesson_sessions(
    db: aiosqlite.Connection,
    participant_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get transcripts for a participant, newest first."""
    cursor = await db.execute(
        """SELECT * FROM lesson_sessions
           WHERE participant_id = ?
           ORDER BY created_at DESC, id DESC
           LIMIT ?""",
        (participant_id, limit)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=['messages_json']) for r in rows]


async def finalize_lesson_sessions(db: aiosqlite.Connection, participant_id: str) -> int:
    """Close every open transcript for a participant. Returns how many were closed."""
    cursor = await db.execute(
        """UPDATE lesson_sessions
           SET finalized = 1, updated_at = CURRENT_TIMESTAMP
           WHERE participant_id = ? AND finalized = 0""",
        (participant_id,)
    )
    await db.commit()
    return cursor.rowcount


# ══════════════════════════════════════════════════════════════════════════════
# TEST ATTEMPTS
# ══════════════════════════════════════════════════════════════════════════════

async def get_test_attempt(
    db: aiosqlite.Connection,
    participant_id: str,
    test_type: str
) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM test_attempts WHERE participant_id = ? AND test_type = ?",
        (participant_id, test_type)
    )
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=['questions_json', 'metadata_json'])


async def insert_test_attempt(
    db: aiosqlite.Connection,
    participant_id: str,
    test_type: str,
    score: int,
    questions: List[Dict[str, Any]],
    duration_ms: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    lesson_type: Optional[str] = None
) -> bool:
    """Create a test attempt unless one exists for (participant, test type). False on conflict."""
    cursor = await db.execute(
        """INSERT INTO test_attempts
           (participant_id, test_type, score, questions_json, duration_ms, metadata_json, lesson_type)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(participant_id, test_type) DO NOTHING""",
        (
            participant_id,
            test_type,
            score,
            json.dumps(questions),
            duration_ms,
            json.dumps(metadata) if metadata else None,
            lesson_type
        )
    )
    await db.commit()
    return cursor.rowcount > 0


async def replace_test_attempt(
    db: aiosqlite.Connection,
    attempt_id: int,
    score: int,
    questions: List[Dict[str, Any]],
    duration_ms: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    lesson_type: Optional[str] = None
) -> None:
    await db.execute(
        """UPDATE test_attempts
           SET score = ?, questions_json = ?, duration_ms = ?, metadata_json = ?, lesson_type = ?,
               attempt_count = attempt_count + 1,
               completed_at = CURRENT_TIMESTAMP,
               updated_at = CURRENT_TIMESTAMP
           WHERE id = ?""",
        (
            score,
            json.dumps(questions),
            duration_ms,
            json.dumps(metadata) if metadata else None,
            lesson_type,
            attempt_id
        )
    )
    await db.commit()


async def list_test_attempts(
    db: aiosqlite.Connection,
    participant_id: str,
    test_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Get test attempts for a participant, most recently completed first."""
    if test_type:
        cursor = await db.execute(
            """SELECT * FROM test_attempts
               WHERE participant_id = ? AND test_type = ?
               ORDER BY completed_at DESC""",
            (participant_id, test_type)
        )
    else:
        cursor = await db.execute(
            """SELECT * FROM test_attempts
               WHERE participant_id = ?
               ORDER BY completed_at DESC, id DESC""",
            (participant_id,)
        )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=['questions_json', 'metadata_json']) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# SURVEYS
# ══════════════════════════════════════════════════════════════════════════════

async def create_survey(
    db: aiosqlite.Connection,
    participant_id: str,
    section: str,
    data: Dict[str, Any],
    lesson_type: Optional[str] = None
) -> int:
    cursor = await db.execute(
        """INSERT INTO surveys (participant_id, section, data_json, lesson_type)
           VALUES (?, ?, ?, ?)""",
        (participant_id, section, json.dumps(data), lesson_type)
    )
    await db.commit()
    return cursor.lastrowid


async def list_surveys(db: aiosqlite.Connection, participant_id: str) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM surveys WHERE participant_id = ? ORDER BY submitted_at DESC, id DESC",
        (participant_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=['data_json']) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def _row_to_dict(row: aiosqlite.Row, parse_json_fields: List[str] = None) -> Dict[str, Any]:
    """Convert a database row to a dictionary, optionally parsing JSON fields."""
    if row is None:
        return None

    result = dict(row)

    if parse_json_fields:
        for field in parse_json_fields:
            if field in result and result[field]:
                try:
                    result[field] = json.loads(result[field])
                except (json.JSONDecodeError, TypeError):
                    pass  # Keep original value if JSON parsing fails

    return result
