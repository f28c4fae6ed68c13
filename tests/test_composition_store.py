"""
Tests for SqlCompositionStore.

The session factory is replaced by a recording session: every statement the
store executes is compiled for PostgreSQL and checked, and the canned results
stand in for the rows the database would return.
"""

import uuid
from typing import Any

import pytest
from sqlalchemy.dialects import postgresql

from reelcraft.services.composition_store import INTERRUPTED_MESSAGE, SqlCompositionStore


class RecordingResult:
    def __init__(self, rowcount: int, rows: list[Any]):
        self.rowcount = rowcount
        self.rows = rows

    def scalars(self) -> "RecordingResult":
        return self

    def all(self) -> list[Any]:
        return list(self.rows)

    def scalar_one_or_none(self) -> Any:
        return self.rows[0] if self.rows else None


class RecordingSession:
    """Async session stand-in that records statements and commits."""

    def __init__(self, rowcount: int = 1, results: list[list[Any]] | None = None):
        self.rowcount = rowcount
        self.results = list(results or [])
        self.statements: list[Any] = []
        self.commits = 0

    async def __aenter__(self) -> "RecordingSession":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    async def execute(self, statement):
        self.statements.append(statement)
        rows = self.results.pop(0) if self.results else []
        return RecordingResult(self.rowcount, rows)

    async def commit(self) -> None:
        self.commits += 1


def sql(statement) -> str:
    """Statement rendered as PostgreSQL with its values inlined."""
    return str(
        statement.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True})
    )


def make_store(session: RecordingSession) -> SqlCompositionStore:
    return SqlCompositionStore(lambda: session)


class TestStatusUpdates:
    """Status writes are conditional on the current status."""

    @pytest.mark.asyncio
    async def test_mark_processing_only_from_pending(self):
        session = RecordingSession(rowcount=1)

        assert await make_store(session).mark_processing(7) is True

        statement = sql(session.statements[0])
        assert statement.startswith("UPDATE video_compositions SET")
        assert "status='processing'" in statement
        assert "video_compositions.id = 7" in statement
        assert "video_compositions.status IN ('pending')" in statement
        assert session.commits == 1

    @pytest.mark.asyncio
    async def test_mark_completed_sets_output_and_clears_error(self):
        session = RecordingSession(rowcount=1)

        written = await make_store(session).mark_completed(
            7, "uploads/compositions/ws/out.mp4", 12.5
        )

        assert written is True
        statement = sql(session.statements[0])
        assert "status='completed'" in statement
        assert "file_path='uploads/compositions/ws/out.mp4'" in statement
        assert "duration=12.5" in statement
        assert "error_message=NULL" in statement
        assert "video_compositions.status IN ('pending', 'processing')" in statement

    @pytest.mark.asyncio
    async def test_mark_failed_records_message(self):
        session = RecordingSession(rowcount=1)

        assert await make_store(session).mark_failed(7, "concat stage failed: boom") is True

        statement = sql(session.statements[0])
        assert "status='failed'" in statement
        assert "error_message='concat stage failed: boom'" in statement
        assert "video_compositions.status IN ('pending', 'processing')" in statement

    @pytest.mark.asyncio
    async def test_terminal_or_deleted_record_is_not_written(self):
        """No matching row: the write reports False instead of overwriting."""
        session = RecordingSession(rowcount=0)
        store = make_store(session)

        assert await store.mark_processing(7) is False
        assert await store.mark_completed(7, "k.mp4", 1.0) is False
        assert await store.mark_failed(7, "boom") is False


class TestFailInterrupted:
    @pytest.mark.asyncio
    async def test_fails_every_unfinished_composition(self):
        session = RecordingSession(rowcount=3)

        assert await make_store(session).fail_interrupted() == 3

        statement = sql(session.statements[0])
        assert "video_compositions.status NOT IN ('completed', 'failed')" in statement
        assert "status='failed'" in statement
        assert f"error_message='{INTERRUPTED_MESSAGE}'" in statement
        assert session.commits == 1

    @pytest.mark.asyncio
    async def test_nothing_to_fail(self):
        session = RecordingSession(rowcount=0)

        assert await make_store(session).fail_interrupted() == 0


class TestFindMissingMedia:
    """Media lookups are scoped to the workspace."""

    @pytest.mark.asyncio
    async def test_reports_ids_not_found_in_workspace(self):
        workspace_id = uuid.uuid4()
        session = RecordingSession(results=[[1, 3], [10]])

        missing = await make_store(session).find_missing_media(workspace_id, [3, 1, 2, 3], [10, 11])

        assert missing == ([2], [11])

        clip_query, voiceover_query = session.statements
        clip_sql = str(clip_query.compile(dialect=postgresql.dialect()))
        assert "video_clips.workspace_id" in clip_sql
        assert workspace_id in clip_query.compile(dialect=postgresql.dialect()).params.values()

        voiceover_sql = str(voiceover_query.compile(dialect=postgresql.dialect()))
        assert "JOIN scripts ON voiceovers.script_id = scripts.id" in voiceover_sql
        assert "scripts.workspace_id" in voiceover_sql

    @pytest.mark.asyncio
    async def test_no_ids_no_queries(self):
        session = RecordingSession()

        assert await make_store(session).find_missing_media(uuid.uuid4(), [], []) == ([], [])
        assert session.statements == []
