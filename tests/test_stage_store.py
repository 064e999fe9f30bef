"""Tests for the flow record stores (SQLite and in-memory)."""

import asyncio

import pytest

from tutorlab.db import experiment_data as ed
from tutorlab.db.database import open_db
from tutorlab.errors import ParticipantNotFound, StaleTransition
from tutorlab.models.flow import Condition, FlowStage
from tutorlab.services.stage_store import DatabaseStageStore, InMemoryStageStore


def _stores(db_path):
    return [DatabaseStageStore(db_path), InMemoryStageStore()]


class TestStageStore:
    def test_missing_participant(self, db_path):
        async def run(store):
            with pytest.raises(ParticipantNotFound):
                await store.load("nobody")

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_first_upsert_uses_defaults(self, db_path):
        async def run(store):
            state = await store.upsert("abc123", {"stage": FlowStage.PRE_TEST})
            assert state.stage == FlowStage.PRE_TEST
            assert state.condition is None
            assert state.lesson_question_index == 0
            assert state.revision == 1

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_replaying_a_patch_is_a_noop(self, db_path):
        async def run(store):
            patch = {"stage": FlowStage.LESSON, "condition": Condition.GROUP}
            first = await store.upsert("abc123", patch)
            second = await store.upsert("abc123", patch)
            assert second.revision == first.revision
            assert second.stage == FlowStage.LESSON
            assert second.condition == Condition.GROUP

            third = await store.upsert("abc123", {"lesson_question_index": 2})
            assert third.revision == first.revision + 1
            # Absent keys keep their stored value
            assert third.stage == FlowStage.LESSON
            assert third.condition == Condition.GROUP

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_condition_can_be_cleared(self, db_path):
        async def run(store):
            await store.upsert("abc123", {"condition": Condition.SOLO})
            state = await store.upsert("abc123", {"condition": None})
            assert state.condition is None

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_rejects_bad_patches(self, db_path):
        async def run(store):
            with pytest.raises(ValueError):
                await store.upsert("abc123", {"flowStage": "lesson"})
            with pytest.raises(ValueError):
                await store.upsert("abc123", {"lesson_question_index": -1})
            with pytest.raises(ValueError):
                await store.upsert("abc123", {"stage": "intermission"})

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_finalize_is_idempotent(self, db_path):
        async def run(store):
            await store.upsert("abc123", {"stage": FlowStage.FINAL_TEST})
            first = await store.finalize("abc123")
            second = await store.finalize("abc123")
            assert first.finalized_at is not None
            assert second.finalized_at == first.finalized_at
            # Finalizing stamps the record; it does not move the stage
            assert second.stage == FlowStage.FINAL_TEST
            with pytest.raises(ParticipantNotFound):
                await store.finalize("nobody")

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_expected_stage_guards_the_write(self, db_path):
        async def run(store):
            await store.upsert("abc123", {"stage": FlowStage.TERMS})
            moved = await store.upsert("abc123", {"stage": FlowStage.PRE_TEST}, expected_stage=FlowStage.TERMS)
            assert moved.stage == FlowStage.PRE_TEST

            with pytest.raises(StaleTransition):
                await store.upsert("abc123", {"stage": FlowStage.PRE_TEST}, expected_stage=FlowStage.TERMS)
            state = await store.load("abc123")
            assert state.stage == FlowStage.PRE_TEST
            assert state.revision == moved.revision

        for store in _stores(db_path):
            asyncio.run(run(store))

    def test_conditional_write_skips_moved_rows(self, db_path):
        async def run():
            async with open_db() as db:
                await ed.upsert_participant(db, "abc123", "lesson", "group", 0)
                row = await ed.upsert_participant(db, "abc123", "pre-test", "group", 0, expected_stage="terms")
            assert row["flow_stage"] == "lesson"
            assert row["revision"] == 1

        asyncio.run(run())


class TestMigrations:
    def test_init_db_builds_schema_from_scratch(self, tmp_path, monkeypatch):
        from tutorlab.config import settings
        from tutorlab.db.database import init_db

        path = str(tmp_path / "fresh" / "tutorlab.db")
        monkeypatch.setattr(settings, "database_path", path)

        async def run():
            await init_db()
            async with open_db(path) as db:
                cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
                tables = {row[0] for row in await cursor.fetchall()}
            assert {"participants", "lesson_sessions", "test_attempts", "surveys", "alembic_version"} <= tables
            state = await DatabaseStageStore(path).upsert("abc123", {"stage": FlowStage.PRE_TEST})
            assert state.revision == 1

        asyncio.run(run())
