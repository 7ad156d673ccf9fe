"""PostgreSQL database connection and queries."""
import asyncio
import asyncpg
from typing import Optional, Dict, List, Any
from datetime import datetime, timezone
from uuid import UUID
import logging

from .config import settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schools (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name TEXT NOT NULL DEFAULT '',
    logo_url TEXT,
    election_title TEXT NOT NULL DEFAULT '',
    election_description TEXT NOT NULL DEFAULT '',
    is_voting_open BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS candidates (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    school_id UUID NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    candidate_number INTEGER NOT NULL,
    photo_url TEXT,
    vision TEXT NOT NULL DEFAULT '',
    mission TEXT NOT NULL DEFAULT '',
    class_grade TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT candidates_school_number_key UNIQUE (school_id, candidate_number)
);

CREATE TABLE IF NOT EXISTS votes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    candidate_id UUID NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
    school_id UUID NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
    voter_ip TEXT NOT NULL,
    voter_fingerprint VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT votes_voter_fingerprint_key UNIQUE (voter_fingerprint)
);

CREATE TABLE IF NOT EXISTS admins (
    id UUID PRIMARY KEY,
    school_id UUID NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
    email TEXT NOT NULL,
    name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'admin',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

SCHOOL_FIELDS = ("name", "logo_url", "election_title", "election_description", "is_voting_open")
CANDIDATE_FIELDS = ("name", "candidate_number", "photo_url", "vision", "mission", "class_grade")


class DatabaseError(Exception):
    """Unclassified data store failure."""
    pass


class DuplicateVoteError(DatabaseError):
    """A vote with the same fingerprint already exists (SQLSTATE 23505)."""
    pass


class ReferenceNotFoundError(DatabaseError):
    """The referenced candidate or school does not exist (SQLSTATE 23503)."""
    pass


class CandidateNumberConflictError(DatabaseError):
    """The candidate number is already used in this school (SQLSTATE 23505)."""
    pass


def _record(row) -> Dict[str, Any]:
    """Convert an asyncpg record into a plain dict with string ids."""
    return {
        key: str(value) if isinstance(value, UUID) else value
        for key, value in dict(row).items()
    }


class Database:
    """Async PostgreSQL database manager."""

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                settings.postgres_dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=60
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                logger.info("PostgreSQL connection verified")

                if settings.AUTO_CREATE_SCHEMA:
                    await conn.execute(SCHEMA_SQL)
                    logger.info("PostgreSQL schema ensured")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    # School

    async def get_first_school(self) -> Optional[Dict]:
        """
        Get the school the election runs for.

        The service is single-school: the first row is the active one.

        Returns:
            Dictionary with school fields or None if no school exists
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM schools ORDER BY created_at, id LIMIT 1"
                )
                return _record(row) if row else None
        except Exception as e:
            logger.error(f"Error fetching school: {e}")
            raise

    async def update_school(self, school_id, fields: Dict[str, Any]) -> Optional[Dict]:
        """
        Update election settings of a school.

        Args:
            school_id: School identifier
            fields: Subset of SCHOOL_FIELDS to change

        Returns:
            Updated school or None if it does not exist
        """
        changes = {k: v for k, v in fields.items() if k in SCHOOL_FIELDS}
        if not changes:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM schools WHERE id = $1", school_id)
                return _record(row) if row else None

        assignments = ", ".join(
            f"{column} = ${index}" for index, column in enumerate(changes, start=2)
        )
        query = f"""
            UPDATE schools
            SET {assignments}, updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, school_id, *changes.values())
                return _record(row) if row else None
        except Exception as e:
            logger.error(f"Error updating school {school_id}: {e}")
            raise

    # Candidates

    async def get_candidates(self) -> List[Dict]:
        """Get all candidates ordered by candidate number."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT * FROM candidates ORDER BY candidate_number"
                )
                return [_record(row) for row in rows]
        except Exception as e:
            logger.error(f"Error fetching candidates: {e}")
            raise

    async def create_candidate(self, school_id, fields: Dict[str, Any]) -> Dict:
        """
        Insert a candidate for a school.

        Raises:
            CandidateNumberConflictError: candidate number already used
            ReferenceNotFoundError: school does not exist
        """
        query = """
            INSERT INTO candidates
            (school_id, name, candidate_number, photo_url, vision, mission, class_grade)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query,
                    school_id,
                    fields["name"],
                    fields["candidate_number"],
                    fields.get("photo_url"),
                    fields.get("vision", ""),
                    fields.get("mission", ""),
                    fields.get("class_grade", "")
                )
                return _record(row)
        except asyncpg.UniqueViolationError as e:
            raise CandidateNumberConflictError(
                f"Candidate number {fields['candidate_number']} is already in use"
            ) from e
        except asyncpg.ForeignKeyViolationError as e:
            raise ReferenceNotFoundError(f"School {school_id} not found") from e
        except Exception as e:
            logger.error(f"Error creating candidate: {e}")
            raise

    async def update_candidate(self, candidate_id, fields: Dict[str, Any]) -> Optional[Dict]:
        """
        Update a candidate.

        Returns:
            Updated candidate or None if it does not exist

        Raises:
            CandidateNumberConflictError: candidate number already used
        """
        changes = {k: v for k, v in fields.items() if k in CANDIDATE_FIELDS}
        assignments = "".join(
            f"{column} = ${index}, " for index, column in enumerate(changes, start=2)
        )
        query = f"""
            UPDATE candidates
            SET {assignments}updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, candidate_id, *changes.values())
                return _record(row) if row else None
        except asyncpg.UniqueViolationError as e:
            raise CandidateNumberConflictError(
                f"Candidate number {changes.get('candidate_number')} is already in use"
            ) from e
        except Exception as e:
            logger.error(f"Error updating candidate {candidate_id}: {e}")
            raise

    async def delete_candidate(self, candidate_id) -> bool:
        """Delete a candidate and, by cascade, its votes."""
        try:
            async with self.pool.acquire() as conn:
                deleted = await conn.fetchval(
                    "DELETE FROM candidates WHERE id = $1 RETURNING id",
                    candidate_id
                )
                return deleted is not None
        except Exception as e:
            logger.error(f"Error deleting candidate {candidate_id}: {e}")
            raise

    # Votes

    async def insert_vote(
        self,
        candidate_id,
        school_id,
        voter_ip: str,
        voter_fingerprint: str,
        created_at: Optional[datetime] = None
    ) -> Dict:
        """
        Insert a single vote row.

        The UNIQUE constraint on voter_fingerprint is the authoritative
        duplicate check; concurrent inserts of one fingerprint are serialized
        by PostgreSQL.

        Raises:
            DuplicateVoteError: fingerprint already voted
            ReferenceNotFoundError: candidate or school missing
            DatabaseError: any other store failure
        """
        query = """
            INSERT INTO votes
            (candidate_id, school_id, voter_ip, voter_fingerprint, created_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query,
                    candidate_id,
                    school_id,
                    voter_ip,
                    voter_fingerprint,
                    created_at or datetime.now(timezone.utc)
                )
                return _record(row)
        except asyncpg.UniqueViolationError as e:
            raise DuplicateVoteError(str(e)) from e
        except asyncpg.ForeignKeyViolationError as e:
            raise ReferenceNotFoundError(str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Error inserting vote: {e}")
            raise DatabaseError(str(e)) from e

    async def has_fingerprint_voted(self, voter_fingerprint: str) -> bool:
        """Check whether a vote with this fingerprint exists."""
        try:
            async with self.pool.acquire() as conn:
                found = await conn.fetchval(
                    "SELECT 1 FROM votes WHERE voter_fingerprint = $1",
                    voter_fingerprint
                )
                return found is not None
        except Exception as e:
            logger.error(f"Error checking vote status: {e}")
            raise

    async def get_vote_candidate_ids(self) -> List[str]:
        """Get the candidate id of every vote."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("SELECT candidate_id FROM votes")
                return [str(row["candidate_id"]) for row in rows]
        except Exception as e:
            logger.error(f"Error fetching votes: {e}")
            raise

    # Admins

    async def get_admin(self, user_id) -> Optional[Dict]:
        """Get the admin record for an authenticated user id."""
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM admins WHERE id = $1", user_id)
                return _record(row) if row else None
        except Exception as e:
            logger.error(f"Error fetching admin data: {e}")
            raise

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")


# Global database instance
database = Database()
