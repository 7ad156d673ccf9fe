"""Pytest fixtures for the voting service tests.

The store, the session store, the IP resolver and the change publisher are
replaced by in-memory fakes that keep the behaviour the vote guard depends
on: the UNIQUE fingerprint constraint and the candidate/school references.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from voting_api.aggregator import ElectionStateAggregator
from voting_api.database import (
    CandidateNumberConflictError,
    DatabaseError,
    DuplicateVoteError,
    ReferenceNotFoundError,
)
from voting_api.fingerprint import ClientSignals
from voting_api.session_store import VoterSession
from voting_api.vote_guard import VoteSubmissionGuard


def _now():
    return datetime.now(timezone.utc)


class FakeDatabase:
    """In-memory stand-in for voting_api.database.Database."""

    def __init__(self):
        self.schools: List[Dict] = []
        self.candidates: List[Dict] = []
        self.votes: List[Dict] = []
        self.admins: Dict[str, Dict] = {}
        self.insert_calls = 0
        self.insert_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None

    def add_school(self, **fields) -> Dict:
        school = {
            "id": str(uuid.uuid4()),
            "name": "SMA Negeri 1",
            "logo_url": None,
            "election_title": "Student Council Election",
            "election_description": "Choose the next council president",
            "is_voting_open": True,
            "created_at": _now(),
            "updated_at": _now(),
        }
        school.update(fields)
        self.schools.append(school)
        return school

    def add_candidate(self, school_id: str, name: str, number: int) -> Dict:
        candidate = {
            "id": str(uuid.uuid4()),
            "school_id": school_id,
            "name": name,
            "candidate_number": number,
            "photo_url": None,
            "vision": "",
            "mission": "",
            "class_grade": "XI IPA 1",
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.candidates.append(candidate)
        return candidate

    async def get_first_school(self):
        if self.read_error:
            raise self.read_error
        return self.schools[0] if self.schools else None

    async def update_school(self, school_id, fields):
        for school in self.schools:
            if school["id"] == str(school_id):
                school.update(fields)
                school["updated_at"] = _now()
                return school
        return None

    async def get_candidates(self):
        if self.read_error:
            raise self.read_error
        return sorted(self.candidates, key=lambda c: c["candidate_number"])

    async def create_candidate(self, school_id, fields):
        if any(
            c["school_id"] == str(school_id) and c["candidate_number"] == fields["candidate_number"]
            for c in self.candidates
        ):
            raise CandidateNumberConflictError("duplicate candidate number")
        candidate = self.add_candidate(str(school_id), fields["name"], fields["candidate_number"])
        candidate.update({k: v for k, v in fields.items() if k not in ("name", "candidate_number")})
        return candidate

    async def update_candidate(self, candidate_id, fields):
        for candidate in self.candidates:
            if candidate["id"] == str(candidate_id):
                candidate.update(fields)
                return candidate
        return None

    async def delete_candidate(self, candidate_id):
        before = len(self.candidates)
        self.candidates = [c for c in self.candidates if c["id"] != str(candidate_id)]
        self.votes = [v for v in self.votes if v["candidate_id"] != str(candidate_id)]
        return len(self.candidates) < before

    async def insert_vote(self, candidate_id, school_id, voter_ip, voter_fingerprint, created_at=None):
        self.insert_calls += 1
        if self.insert_error:
            raise self.insert_error
        if any(v["voter_fingerprint"] == voter_fingerprint for v in self.votes):
            raise DuplicateVoteError('duplicate key value violates unique constraint "votes_voter_fingerprint_key"')
        if not any(c["id"] == str(candidate_id) for c in self.candidates):
            raise ReferenceNotFoundError("insert or update on table \"votes\" violates foreign key constraint")
        if not any(s["id"] == str(school_id) for s in self.schools):
            raise ReferenceNotFoundError("insert or update on table \"votes\" violates foreign key constraint")

        vote = {
            "id": str(uuid.uuid4()),
            "candidate_id": str(candidate_id),
            "school_id": str(school_id),
            "voter_ip": voter_ip,
            "voter_fingerprint": voter_fingerprint,
            "created_at": created_at or _now(),
        }
        self.votes.append(vote)
        return vote

    async def has_fingerprint_voted(self, voter_fingerprint):
        if self.read_error:
            raise self.read_error
        return any(v["voter_fingerprint"] == voter_fingerprint for v in self.votes)

    async def get_vote_candidate_ids(self):
        if self.read_error:
            raise self.read_error
        return [v["candidate_id"] for v in self.votes]

    async def get_admin(self, user_id):
        return self.admins.get(str(user_id))

    async def check_health(self):
        return True


class FakeResolver:
    """Records lookups and answers with a fixed address."""

    def __init__(self, address: str = "203.0.113.7"):
        self.address = address
        self.calls = 0

    async def resolve_client_address(self) -> str:
        self.calls += 1
        return self.address


class FakePublisher:
    """Collects published change events."""

    def __init__(self):
        self.events = []

    async def publish_change(self, event) -> bool:
        self.events.append(event)
        return True

    async def check_health(self) -> bool:
        return True


class FakeSessionStore:
    """Dictionary-backed session store."""

    def __init__(self):
        self.sessions: Dict[str, tuple] = {}

    async def get(self, session_id):
        if session_id not in self.sessions:
            return None
        fingerprint, has_voted = self.sessions[session_id]
        return VoterSession(fingerprint=fingerprint, has_voted=has_voted, session_id=session_id)

    async def save(self, session):
        self.sessions[session.session_id] = (session.fingerprint, session.has_voted)

    async def check_health(self):
        return True


@pytest.fixture
def empty_db() -> FakeDatabase:
    """Store with no school, candidates or votes."""
    return FakeDatabase()


@pytest.fixture
def fake_db() -> FakeDatabase:
    """Store with one open school and two candidates."""
    db = FakeDatabase()
    school = db.add_school()
    db.add_candidate(school["id"], "Ayu Lestari", 1)
    db.add_candidate(school["id"], "Budi Santoso", 2)
    return db


@pytest.fixture
def school(fake_db) -> Dict:
    return fake_db.schools[0]


@pytest.fixture
def candidate_a(fake_db) -> Dict:
    return fake_db.candidates[0]


@pytest.fixture
def candidate_b(fake_db) -> Dict:
    return fake_db.candidates[1]


@pytest.fixture
def aggregator(fake_db) -> ElectionStateAggregator:
    """Aggregator with the school and candidates already loaded."""
    state = ElectionStateAggregator(fake_db)
    state.school = fake_db.schools[0]
    state.candidates = list(fake_db.candidates)
    return state


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def session_store() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture
def guard(fake_db, resolver, aggregator, publisher) -> VoteSubmissionGuard:
    return VoteSubmissionGuard(fake_db, resolver, aggregator, publisher)


@pytest.fixture
def signals() -> ClientSignals:
    """Signals of one browser."""
    return ClientSignals(
        render_signature="data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAASwAAAA",
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
        screen_width=1920,
        screen_height=1080,
        timezone_offset=-420,
    )


@pytest.fixture
def new_session():
    """Factory for fresh, not-yet-voted sessions."""
    def _new(fingerprint: str = "") -> VoterSession:
        return VoterSession(fingerprint=fingerprint)

    return _new


@pytest.fixture
def store_failure() -> DatabaseError:
    return DatabaseError("connection reset by peer")
