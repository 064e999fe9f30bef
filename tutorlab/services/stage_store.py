"""
stage_store.py - Durable per-participant flow records

Contract used by the flow state machine:
- load(participant_id) -> ParticipantFlowState, raises ParticipantNotFound
- upsert(participant_id, patch, expected_stage=None) -> ParticipantFlowState, idempotent;
  with expected_stage set, raises StaleTransition when the stored record is no
  longer at that stage
- finalize(participant_id) -> ParticipantFlowState, idempotent

A patch is a dict with any of "stage", "condition", "lesson_question_index".
Keys that are absent keep their stored value; a missing record starts from
stage terms, no condition, cursor 0. Applying the same patch twice leaves
one record with the same revision.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tutorlab.db import experiment_data as ed
from tutorlab.db.database import open_db
from tutorlab.errors import ParticipantNotFound, StaleTransition
from tutorlab.models.flow import Condition, FlowStage, ParticipantFlowState

logger = logging.getLogger(__name__)

PATCH_FIELDS = ("stage", "condition", "lesson_question_index")


def _merge(current: Optional[ParticipantFlowState], patch: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - set(PATCH_FIELDS)
    if unknown:
        raise ValueError(f"Unknown flow fields: {', '.join(sorted(unknown))}")

    merged = {
        "stage": current.stage if current else FlowStage.TERMS,
        "condition": current.condition if current else None,
        "lesson_question_index": current.lesson_question_index if current else 0,
    }
    if "stage" in patch:
        merged["stage"] = FlowStage(patch["stage"])
    if "condition" in patch:
        merged["condition"] = Condition(patch["condition"]) if patch["condition"] is not None else None
    if "lesson_question_index" in patch:
        index = int(patch["lesson_question_index"])
        if index < 0:
            raise ValueError("lesson_question_index must be non-negative")
        merged["lesson_question_index"] = index
    return merged


def _state_from_row(row: Dict[str, Any]) -> ParticipantFlowState:
    return ParticipantFlowState(
        participant_id=row["participant_id"],
        stage=FlowStage(row["flow_stage"]),
        condition=Condition(row["lesson_type"]) if row["lesson_type"] else None,
        lesson_question_index=row["lesson_question_index"],
        revision=row["revision"],
        finalized_at=row["finalized_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _check_expected(
    participant_id: str,
    state: Optional[ParticipantFlowState],
    expected_stage: Optional[FlowStage],
) -> None:
    if expected_stage is None or state is None:
        return
    if state.stage != FlowStage(expected_stage):
        raise StaleTransition(participant_id, FlowStage(expected_stage).value, state.stage.value)


class StageStore:

    async def load(self, participant_id: str) -> ParticipantFlowState:
        raise NotImplementedError

    async def upsert(
        self,
        participant_id: str,
        patch: Dict[str, Any],
        expected_stage: Optional[FlowStage] = None,
    ) -> ParticipantFlowState:
        raise NotImplementedError

    async def finalize(self, participant_id: str) -> ParticipantFlowState:
        raise NotImplementedError


class DatabaseStageStore(StageStore):
    """Flow records in the participants table, one connection per operation."""

    def __init__(self, database_path: Optional[str] = None):
        self.database_path = database_path

    async def load(self, participant_id: str) -> ParticipantFlowState:
        async with open_db(self.database_path) as db:
            row = await ed.get_participant(db, participant_id)
        if row is None:
            raise ParticipantNotFound(participant_id)
        return _state_from_row(row)

    async def upsert(
        self,
        participant_id: str,
        patch: Dict[str, Any],
        expected_stage: Optional[FlowStage] = None,
    ) -> ParticipantFlowState:
        async with open_db(self.database_path) as db:
            row = await ed.get_participant(db, participant_id)
            current = _state_from_row(row) if row else None
            _check_expected(participant_id, current, expected_stage)
            merged = _merge(current, patch)
            stored = await ed.upsert_participant(
                db,
                participant_id,
                merged["stage"].value,
                merged["condition"].value if merged["condition"] else None,
                merged["lesson_question_index"],
                expected_stage=FlowStage(expected_stage).value if expected_stage else None,
            )
        state = _state_from_row(stored)
        # Another writer moved the record between the read and the conditional write
        if expected_stage is not None and any(getattr(state, k) != v for k, v in merged.items()):
            raise StaleTransition(participant_id, FlowStage(expected_stage).value, state.stage.value)
        if current is not None and state.revision == current.revision:
            logger.debug(f"Upsert for {participant_id} changed nothing (revision {state.revision})")
        return state

    async def finalize(self, participant_id: str) -> ParticipantFlowState:
        async with open_db(self.database_path) as db:
            row = await ed.finalize_participant(db, participant_id)
        if row is None:
            raise ParticipantNotFound(participant_id)
        return _state_from_row(row)


class InMemoryStageStore(StageStore):
    """Dict-backed store with the same semantics as DatabaseStageStore."""

    def __init__(self):
        self._records: Dict[str, ParticipantFlowState] = {}

    async def load(self, participant_id: str) -> ParticipantFlowState:
        state = self._records.get(participant_id)
        if state is None:
            raise ParticipantNotFound(participant_id)
        return state.model_copy()

    async def upsert(
        self,
        participant_id: str,
        patch: Dict[str, Any],
        expected_stage: Optional[FlowStage] = None,
    ) -> ParticipantFlowState:
        current = self._records.get(participant_id)
        _check_expected(participant_id, current, expected_stage)
        merged = _merge(current, patch)
        now = datetime.now(timezone.utc).isoformat()
        if current is None:
            state = ParticipantFlowState(
                participant_id=participant_id, revision=1, created_at=now, updated_at=now, **merged
            )
        elif all(getattr(current, k) == v for k, v in merged.items()):
            state = current
        else:
            state = current.model_copy(update={**merged, "revision": current.revision + 1, "updated_at": now})
        self._records[participant_id] = state
        return state.model_copy()

    async def finalize(self, participant_id: str) -> ParticipantFlowState:
        current = self._records.get(participant_id)
        if current is None:
            raise ParticipantNotFound(participant_id)
        if current.finalized_at is None:
            current = current.model_copy(update={"finalized_at": datetime.now(timezone.utc).isoformat()})
            self._records[participant_id] = current
        return current.model_copy()
