"""Redis-backed storage for voter session context."""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis

from shared import get_redis_key
from .config import settings

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


@dataclass
class VoterSession:
    """
    Per-session voter context.

    Attributes:
        fingerprint: Fingerprint computed when the session started
        has_voted: Whether this voter is known to have voted
        session_id: Opaque identifier handed to the client
    """
    fingerprint: str
    has_voted: bool = False
    session_id: str = field(default_factory=new_session_id)

    def mark_voted(self) -> None:
        self.has_voted = True


class SessionStore:
    """Persists VoterSession objects as Redis hashes with a TTL."""

    def __init__(self, ttl_seconds: int = settings.SESSION_TTL_SECONDS):
        self.client: Optional[redis.Redis] = None
        self.ttl_seconds = ttl_seconds

    async def initialize(self):
        """Connect and verify the Redis connection."""
        try:
            self.client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def get(self, session_id: str) -> Optional[VoterSession]:
        """
        Load a session.

        Args:
            session_id: Identifier returned when the session started

        Returns:
            The session, or None if it is unknown or expired
        """
        try:
            data = await self.client.hgetall(get_redis_key('voter_session', session_id))
        except redis.RedisError as e:
            logger.error(f"Redis error loading session: {e}")
            raise

        if not data:
            return None

        return VoterSession(
            fingerprint=data.get("fingerprint", ""),
            has_voted=data.get("has_voted") == "1",
            session_id=session_id
        )

    async def save(self, session: VoterSession) -> None:
        """Write a session and refresh its TTL."""
        key = get_redis_key('voter_session', session.session_id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping={
                    "fingerprint": session.fingerprint,
                    "has_voted": "1" if session.has_voted else "0",
                })
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
            logger.debug(f"Session {session.session_id} saved (has_voted={session.has_voted})")
        except redis.RedisError as e:
            logger.error(f"Redis error saving session: {e}")
            raise

    async def check_health(self) -> bool:
        try:
            if not self.client:
                return False
            await self.client.ping()
            return True
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        """Close the Redis connection."""
        try:
            if self.client:
                await self.client.aclose()
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")


# Global session store instance
session_store = SessionStore()
