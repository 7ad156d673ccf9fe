"""
Best-effort voter fingerprinting.

A fingerprint is the concatenation of the client's rendering signature (the
data URL of a small canvas drawing), its user agent, screen width, screen
height and timezone offset. It is deterministic for one browser/device
combination, is not globally unique, and is trivially forgeable because
every signal is reported by the client. It is a weak uniqueness key only.
"""
from dataclasses import dataclass
from typing import Mapping, Optional

from .config import settings

FINGERPRINT_MAX_LENGTH = settings.FINGERPRINT_MAX_LENGTH


@dataclass(frozen=True)
class ClientSignals:
    """Rendering and environment signals reported by one browser."""

    render_signature: str = ""
    user_agent: str = ""
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    timezone_offset: Optional[int] = None

    @classmethod
    def from_request(cls, headers: Mapping[str, str], payload) -> 'ClientSignals':
        """Build signals from request headers and a body carrying signal fields."""
        return cls(
            render_signature=payload.render_signature or "",
            user_agent=headers.get("user-agent", ""),
            screen_width=payload.screen_width,
            screen_height=payload.screen_height,
            timezone_offset=payload.timezone_offset,
        )


def _part(value) -> str:
    return "" if value is None else str(value)


def generate_fingerprint(signals: ClientSignals) -> str:
    """
    Derive the fingerprint for a set of client signals.

    Never fails. An unavailable rendering surface leaves the renderer portion
    empty and the remaining signals are still concatenated. The result is not
    length-limited; use truncate_fingerprint before persisting it.

    Args:
        signals: Signals reported by the browser

    Returns:
        str: Concatenated fingerprint
    """
    return (
        _part(signals.render_signature)
        + _part(signals.user_agent)
        + _part(signals.screen_width)
        + _part(signals.screen_height)
        + _part(signals.timezone_offset)
    )


def truncate_fingerprint(fingerprint: str, max_length: int = FINGERPRINT_MAX_LENGTH) -> str:
    """Cap a fingerprint to the width of the persisted column."""
    return fingerprint[:max_length]
