"""initial_schema_baseline

Creates the participants, lesson_sessions, test_attempts and surveys tables
from tutorlab/db/schema.sql.

Revision ID: 3c9d2e7a41f0
Revises:
Create Date: 2026-10-17 09:12:40.118203

"""
from typing import Sequence, Union
from pathlib import Path

from alembic import op
import sqlalchemy as sa


revision: str = "3c9d2e7a41f0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the full initial schema.

    schema.sql uses CREATE TABLE IF NOT EXISTS, so it is safe to run
    against an existing database.
    """
    schema_path = Path(__file__).resolve().parents[2] / "tutorlab" / "db" / "schema.sql"
    schema_sql = schema_path.read_text()
    # Execute each statement individually (op.execute doesn't support executescript)
    for statement in schema_sql.split(";"):
        # Strip comment lines before checking if there's real SQL
        lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        cleaned = "\n".join(lines).strip()
        if cleaned:
            op.execute(sa.text(cleaned))


def downgrade() -> None:
    for table in ("surveys", "test_attempts", "lesson_sessions", "participants"):
        op.execute(sa.text(f"DROP TABLE IF EXISTS {table}"))
