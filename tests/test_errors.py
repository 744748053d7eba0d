from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from prswarm import db
from prswarm.errors import (
    SchemaNotInitializedError,
    UnknownToolError,
    is_schema_missing_error,
    missing_table_name,
    schema_not_initialized_message,
)


def test_missing_table_is_detected_in_exception_chain() -> None:
    try:
        try:
            raise RuntimeError("no such table: pull_requests")
        except RuntimeError as inner:
            raise ValueError("query failed") from inner
    except ValueError as exc:
        assert missing_table_name(exc) == "pull_requests"
        assert is_schema_missing_error(exc)
        message = schema_not_initialized_message(exc)

    assert message.startswith("Database schema is not initialized (missing table `pull_requests`).")
    assert "prswarm init-db" in message


def test_postgres_missing_relation_is_detected() -> None:
    exc = OperationalError("SELECT 1", {}, Exception('relation "experiments" does not exist'))

    assert missing_table_name(exc) == "experiments"


def test_unrelated_errors_are_not_schema_errors() -> None:
    assert not is_schema_missing_error(RuntimeError("connection refused"))


def test_unknown_tool_message() -> None:
    assert str(UnknownToolError("foo-bar")) == "No tool group found to execute tool foo-bar"


@pytest.mark.asyncio
async def test_session_reports_uninitialized_schema(tmp_path: Path) -> None:
    db.init_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        with pytest.raises(SchemaNotInitializedError):
            async with db.get_session() as session:
                await session.execute(text("SELECT * FROM experiments"))
    finally:
        await db.dispose_engine()
