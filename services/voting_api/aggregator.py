"""
Election state aggregation.

Holds the loaded school, the candidate list and the vote tally. The tally is
never stored: every refresh re-reads all votes and counts them per candidate.
"""
import asyncio
import logging
import math
from collections import Counter as TallyCounter
from typing import Awaitable, Callable, Dict, List, Optional

from prometheus_client import Counter

from shared import ChangeEvent, Table

logger = logging.getLogger(__name__)

tally_refreshes = Counter(
    "tally_refreshes_total",
    "Total number of tally recomputations",
    ["status"]
)

TallyListener = Callable[[Dict[str, int]], Awaitable[None]]


def vote_percentage(count: int, total: int) -> int:
    """
    Share of the total as a whole percentage, halves rounded up.

    Returns 0 when no votes have been cast.
    """
    if total <= 0:
        return 0
    return math.floor(count / total * 100 + 0.5)


class ElectionStateAggregator:
    """Observable election state: school, candidates and per-candidate tally."""

    def __init__(self, database):
        self.database = database
        self.school: Optional[Dict] = None
        self.candidates: List[Dict] = []
        self.tally: Dict[str, int] = {}
        self._listeners: List[TallyListener] = []
        self._tally_lock = asyncio.Lock()

    def add_listener(self, listener: TallyListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TallyListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def total_votes(self) -> int:
        return sum(self.tally.values())

    async def load(self):
        """Initial load of school, candidates and tally."""
        await asyncio.gather(
            self.refresh_school(),
            self.refresh_candidates(),
            self.refresh_tally(),
        )
        logger.info(
            f"Election state loaded: school={'yes' if self.school else 'none'}, "
            f"candidates={len(self.candidates)}, votes={self.total_votes}"
        )

    async def refresh_school(self) -> Optional[Dict]:
        try:
            self.school = await self.database.get_first_school()
        except Exception as e:
            logger.error(f"Error refreshing school: {e}")
        return self.school

    async def refresh_candidates(self) -> List[Dict]:
        try:
            self.candidates = await self.database.get_candidates()
        except Exception as e:
            logger.error(f"Error refreshing candidates: {e}")
        return self.candidates

    async def refresh_tally(self) -> Dict[str, int]:
        """
        Recompute the tally from every vote record.

        A failed read keeps the previous mapping. Listeners are notified after
        every successful recomputation.

        Returns:
            Mapping of candidate id to vote count
        """
        async with self._tally_lock:
            try:
                candidate_ids = await self.database.get_vote_candidate_ids()
            except Exception as e:
                tally_refreshes.labels(status="error").inc()
                logger.error(f"Error fetching votes: {e}")
                return self.tally

            self.tally = dict(TallyCounter(candidate_ids))
            tally_refreshes.labels(status="ok").inc()
            logger.debug(f"Tally refreshed: {self.total_votes} votes")

        for listener in list(self._listeners):
            try:
                await listener(self.tally)
            except Exception as e:
                logger.error(f"Tally listener failed: {e}", exc_info=True)

        return self.tally

    async def handle_change(self, event: ChangeEvent):
        """Refresh whatever a change event invalidates."""
        if event.table == Table.SCHOOLS:
            await self.refresh_school()
        elif event.table == Table.CANDIDATES:
            await self.refresh_candidates()
            await self.refresh_tally()
        elif event.table == Table.VOTES:
            await self.refresh_tally()

    def results(self) -> Dict:
        """
        Per-candidate counts and percentages for display.

        Returns:
            Dictionary with ``candidates`` (ordered like the candidate list)
            and ``total_votes``
        """
        total = self.total_votes
        entries = []
        for candidate in self.candidates:
            count = self.tally.get(str(candidate["id"]), 0)
            entries.append({
                "candidate_id": str(candidate["id"]),
                "name": candidate["name"],
                "candidate_number": candidate["candidate_number"],
                "votes": count,
                "percentage": vote_percentage(count, total),
            })

        return {
            "candidates": entries,
            "total_votes": total,
        }
