"""Tests for the asyncpg store layer.

The pool is replaced by a recording connection, so these tests cover query
construction and the translation of constraint violations.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager

import asyncpg
import pytest

from voting_api.database import (
    SCHEMA_SQL,
    CandidateNumberConflictError,
    Database,
    DatabaseError,
    DuplicateVoteError,
    ReferenceNotFoundError,
)


class RecordingConnection:
    """Connection that records queries and answers with canned rows."""

    def __init__(self, row=None, error=None):
        self.row = row
        self.error = error
        self.calls = []

    async def fetchrow(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return self.row

    async def fetchval(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return self.row

    async def fetch(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return self.row or []


class RecordingPool:
    def __init__(self, connection):
        self.connection = connection

    @asynccontextmanager
    async def acquire(self):
        yield self.connection


def make_database(row=None, error=None):
    db = Database()
    connection = RecordingConnection(row=row, error=error)
    db.pool = RecordingPool(connection)
    return db, connection


def normalized(query: str) -> str:
    return " ".join(query.split())


class TestSchema:
    def test_fingerprint_is_unique(self):
        assert "CONSTRAINT votes_voter_fingerprint_key UNIQUE (voter_fingerprint)" in SCHEMA_SQL
        assert "voter_fingerprint VARCHAR(255) NOT NULL" in SCHEMA_SQL

    def test_candidate_number_unique_per_school(self):
        assert "UNIQUE (school_id, candidate_number)" in SCHEMA_SQL

    def test_votes_cascade_with_candidate(self):
        assert "candidate_id UUID NOT NULL REFERENCES candidates(id) ON DELETE CASCADE" in SCHEMA_SQL


@pytest.mark.asyncio
class TestInsertVote:
    """Tests for insert_vote."""

    async def insert(self, db):
        return await db.insert_vote(
            candidate_id="c1",
            school_id="s1",
            voter_ip="203.0.113.7",
            voter_fingerprint="fp"
        )

    async def test_returns_row_with_string_ids(self):
        vote_id = uuid.uuid4()
        db, connection = make_database(row={"id": vote_id, "voter_ip": "203.0.113.7"})

        vote = await self.insert(db)

        assert vote == {"id": str(vote_id), "voter_ip": "203.0.113.7"}
        query, args = connection.calls[0]
        assert "INSERT INTO votes" in query
        assert args[:4] == ("c1", "s1", "203.0.113.7", "fp")

    async def test_unique_violation_is_duplicate_vote(self):
        db, _ = make_database(error=asyncpg.UniqueViolationError("duplicate key value"))

        with pytest.raises(DuplicateVoteError):
            await self.insert(db)

    async def test_foreign_key_violation_is_missing_reference(self):
        db, _ = make_database(error=asyncpg.ForeignKeyViolationError("violates foreign key constraint"))

        with pytest.raises(ReferenceNotFoundError):
            await self.insert(db)

    async def test_other_postgres_error_is_database_error(self):
        db, _ = make_database(error=asyncpg.DeadlockDetectedError("deadlock detected"))

        with pytest.raises(DatabaseError) as exc_info:
            await self.insert(db)

        assert type(exc_info.value) is DatabaseError

    async def test_command_timeout_is_database_error(self):
        db, _ = make_database(error=asyncio.TimeoutError())

        with pytest.raises(DatabaseError):
            await self.insert(db)

    async def test_connection_loss_is_database_error(self):
        db, _ = make_database(error=ConnectionResetError("connection reset by peer"))

        with pytest.raises(DatabaseError, match="connection reset by peer"):
            await self.insert(db)


@pytest.mark.asyncio
class TestUpdates:
    """Tests for the dynamic UPDATE builders."""

    async def test_update_school_sets_only_known_fields(self):
        db, connection = make_database(row={"id": "s1", "is_voting_open": False})

        school = await db.update_school("s1", {"is_voting_open": False, "id": "evil", "name": "SMA 2"})

        assert school == {"id": "s1", "is_voting_open": False}
        query, args = connection.calls[0]
        assert normalized(query) == (
            "UPDATE schools SET is_voting_open = $2, name = $3, updated_at = NOW() "
            "WHERE id = $1 RETURNING *"
        )
        assert args == ("s1", False, "SMA 2")

    async def test_update_school_without_changes_reads_row(self):
        db, connection = make_database(row={"id": "s1"})

        await db.update_school("s1", {})

        query, args = connection.calls[0]
        assert normalized(query) == "SELECT * FROM schools WHERE id = $1"
        assert args == ("s1",)

    async def test_update_candidate_query(self):
        db, connection = make_database(row={"id": "c1"})

        await db.update_candidate("c1", {"name": "Budi", "candidate_number": 2, "votes": 99})

        query, args = connection.calls[0]
        assert normalized(query) == (
            "UPDATE candidates SET name = $2, candidate_number = $3, updated_at = NOW() "
            "WHERE id = $1 RETURNING *"
        )
        assert args == ("c1", "Budi", 2)

    async def test_update_missing_candidate_returns_none(self):
        db, _ = make_database(row=None)

        assert await db.update_candidate("c9", {"name": "Nobody"}) is None

    async def test_update_candidate_number_conflict(self):
        db, _ = make_database(error=asyncpg.UniqueViolationError("duplicate key value"))

        with pytest.raises(CandidateNumberConflictError):
            await db.update_candidate("c1", {"candidate_number": 1})


@pytest.mark.asyncio
class TestCandidates:
    async def test_create_candidate_number_conflict(self):
        db, _ = make_database(error=asyncpg.UniqueViolationError("duplicate key value"))

        with pytest.raises(CandidateNumberConflictError):
            await db.create_candidate("s1", {"name": "Ayu", "candidate_number": 1})

    async def test_create_candidate_for_missing_school(self):
        db, _ = make_database(error=asyncpg.ForeignKeyViolationError("violates foreign key constraint"))

        with pytest.raises(ReferenceNotFoundError):
            await db.create_candidate("s9", {"name": "Ayu", "candidate_number": 1})

    async def test_delete_reports_whether_a_row_was_removed(self):
        db, connection = make_database(row=None)

        assert await db.delete_candidate("c9") is False
        assert "DELETE FROM candidates" in connection.calls[0][0]

    async def test_vote_candidate_ids_are_strings(self):
        candidate_id = uuid.uuid4()
        db, _ = make_database(row=[{"candidate_id": candidate_id}, {"candidate_id": candidate_id}])

        assert await db.get_vote_candidate_ids() == [str(candidate_id)] * 2


@pytest.mark.asyncio
class TestHealth:
    async def test_no_pool_is_unhealthy(self):
        assert await Database().check_health() is False

    async def test_failed_ping_is_unhealthy(self):
        db, _ = make_database(error=OSError("connection refused"))

        assert await db.check_health() is False
