"""Shared fixtures. Environment is pinned before tutorlab.config is imported."""

import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest

os.environ["ENV"] = "dev"
os.environ["API_KEY"] = ""
os.environ["SCENARIO_OVERRIDE"] = "false"
os.environ["DATABASE_PATH"] = str(Path(tempfile.gettempdir()) / "tutorlab_pytest.db")

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Fresh SQLite file with the schema applied, used as the default database."""
    from tutorlab.config import settings
    from tutorlab.db.database import apply_schema, open_db

    path = str(tmp_path / "tutorlab_test.db")
    monkeypatch.setattr(settings, "database_path", path)

    async def _init():
        async with open_db(path) as db:
            await apply_schema(db)

    asyncio.run(_init())
    return path


@pytest.fixture
def memory_store():
    from tutorlab.services.stage_store import InMemoryStageStore

    return InMemoryStageStore()
