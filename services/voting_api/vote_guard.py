"""
Vote submission guard.

Duplicate prevention works in two layers. The session's has-voted flag is an
advisory, optimistic check. The authoritative check is the UNIQUE constraint
on votes.voter_fingerprint: concurrent submissions from one fingerprint (two
tabs, two replicas of this service) are serialized by PostgreSQL, and the
losers see a uniqueness violation that is reported as "already voted".

The guarantee is only as strong as the fingerprint. Two devices with the same
signals collide, and a client reporting different signals gets a new
identity.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from prometheus_client import Counter

from shared import ChangeType, Table, create_change_event
from .database import DatabaseError, DuplicateVoteError, ReferenceNotFoundError
from .fingerprint import ClientSignals, generate_fingerprint, truncate_fingerprint
from .session_store import VoterSession

logger = logging.getLogger(__name__)

vote_outcomes = Counter(
    "votes_submitted_total",
    "Total number of vote submissions",
    ["outcome"]
)


class VoteOutcome(str, Enum):
    """Result of one submission attempt."""
    ACCEPTED = "accepted"
    ALREADY_VOTED = "already_voted"
    SCHOOL_NOT_FOUND = "school_not_found"
    VOTING_CLOSED = "voting_closed"
    REFERENCE_NOT_FOUND = "reference_not_found"
    STORE_ERROR = "store_error"


MESSAGES = {
    VoteOutcome.ACCEPTED: "Vote recorded successfully",
    VoteOutcome.ALREADY_VOTED: "You have already voted",
    VoteOutcome.SCHOOL_NOT_FOUND: "School data not found",
    VoteOutcome.VOTING_CLOSED: "Voting period is closed",
    VoteOutcome.REFERENCE_NOT_FOUND: "Candidate or school not found",
}


@dataclass
class SubmissionResult:
    """
    Outcome of submit_vote.

    Attributes:
        success: True only when a vote row was inserted
        outcome: Classified result
        message: User-facing message
        vote: Inserted vote row on success
    """
    success: bool
    outcome: VoteOutcome
    message: str
    vote: Optional[Dict] = None


def _rejected(outcome: VoteOutcome, message: Optional[str] = None) -> SubmissionResult:
    vote_outcomes.labels(outcome=outcome.value).inc()
    return SubmissionResult(
        success=False,
        outcome=outcome,
        message=message or MESSAGES[outcome]
    )


class VoteSubmissionGuard:
    """Checks preconditions and records at most one vote per fingerprint."""

    def __init__(self, database, resolver, aggregator, publisher=None):
        self.database = database
        self.resolver = resolver
        self.aggregator = aggregator
        self.publisher = publisher

    async def start_session(self, signals: ClientSignals) -> VoterSession:
        """
        Open a voter session, initializing has_voted from the store.

        A failed lookup starts the session as not voted; the UNIQUE constraint
        still rejects a second vote.
        """
        fingerprint = truncate_fingerprint(generate_fingerprint(signals))
        try:
            has_voted = await self.database.has_fingerprint_voted(fingerprint)
        except Exception as e:
            logger.error(f"Error checking vote status: {e}")
            has_voted = False

        return VoterSession(fingerprint=fingerprint, has_voted=has_voted)

    async def submit_vote(
        self,
        session: VoterSession,
        candidate_id,
        signals: ClientSignals
    ) -> SubmissionResult:
        """
        Attempt to record a vote for a candidate.

        Preconditions are checked in order and the first failure returns
        without touching the resolver or the store. A single insert is made;
        nothing is retried.

        Args:
            session: Voter context; its has_voted flag is updated in place
            candidate_id: Candidate being voted for
            signals: Client signals for fingerprinting

        Returns:
            SubmissionResult
        """
        if session.has_voted:
            return _rejected(VoteOutcome.ALREADY_VOTED)

        school = self.aggregator.school
        if not school:
            return _rejected(VoteOutcome.SCHOOL_NOT_FOUND)

        if not school.get("is_voting_open"):
            return _rejected(VoteOutcome.VOTING_CLOSED)

        fingerprint = truncate_fingerprint(generate_fingerprint(signals))
        voter_ip = await self.resolver.resolve_client_address()

        try:
            vote = await self.database.insert_vote(
                candidate_id=candidate_id,
                school_id=school["id"],
                voter_ip=voter_ip,
                voter_fingerprint=fingerprint,
                created_at=datetime.now(timezone.utc)
            )
        except DuplicateVoteError:
            logger.info(f"Duplicate vote rejected for session {session.session_id}")
            session.mark_voted()
            return _rejected(VoteOutcome.ALREADY_VOTED)
        except ReferenceNotFoundError as e:
            logger.warning(f"Vote references missing candidate or school: {e}")
            return _rejected(VoteOutcome.REFERENCE_NOT_FOUND)
        except DatabaseError as e:
            logger.error(f"Error submitting vote: {e}")
            return _rejected(VoteOutcome.STORE_ERROR, f"Error: {e}")

        session.mark_voted()
        vote_outcomes.labels(outcome=VoteOutcome.ACCEPTED.value).inc()
        logger.info(f"Vote submitted: candidate={candidate_id}, vote={vote.get('id')}")

        await self.aggregator.refresh_tally()
        if self.publisher is not None:
            await self.publisher.publish_change(
                create_change_event(Table.VOTES, ChangeType.INSERT, vote.get("id"))
            )

        return SubmissionResult(
            success=True,
            outcome=VoteOutcome.ACCEPTED,
            message=MESSAGES[VoteOutcome.ACCEPTED],
            vote=vote
        )
