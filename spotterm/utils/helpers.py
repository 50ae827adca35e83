"""
Utility functions and helpers for spotterm
Duration formatting, retry backoff, volume scaling and small string helpers
"""

import base64
import hashlib
import secrets
from typing import Optional, Tuple, Union


# Local engine volume runs on a 16-bit scale, the UI and Web API speak percent.
ENGINE_VOLUME_MAX = 65535


def format_duration(seconds: Union[int, float]) -> str:
    """
    Format duration in seconds to human-readable string

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 0:
        return "0:00"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    else:
        return f"{minutes}:{secs:02d}"


def format_position(position_ms: int, duration_ms: int) -> str:
    """Format a playback position as "1:23 / 3:45"."""
    return f"{format_duration(position_ms / 1000)} / {format_duration(duration_ms / 1000)}"


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    retry_after: Optional[float] = None
) -> float:
    """
    Delay before retry number `attempt` (1-based)

    Exponential backoff (base, 2*base, 4*base...) capped at max_delay. A
    Retry-After hint from the provider wins when it asks for a longer wait.

    Args:
        attempt: Retry number, 1 for the first retry
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for the computed delay
        retry_after: Provider-supplied minimum wait, if any

    Returns:
        Seconds to sleep
    """
    delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))
    if retry_after is not None and retry_after > delay:
        return float(retry_after)
    return delay


def percent_to_engine_volume(percent: int) -> int:
    """Convert 0-100 percent into the engine's 0-65535 volume scale."""
    percent = max(0, min(100, percent))
    return round(percent * ENGINE_VOLUME_MAX / 100)


def engine_volume_to_percent(volume: int) -> int:
    """Convert the engine's 0-65535 volume scale into 0-100 percent."""
    volume = max(0, min(ENGINE_VOLUME_MAX, volume))
    return round(volume * 100 / ENGINE_VOLUME_MAX)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate string to maximum length with suffix

    Args:
        text: Original text
        max_length: Maximum length including suffix
        suffix: Suffix to add when truncating

    Returns:
        Truncated string
    """
    if len(text) <= max_length:
        return text

    truncate_length = max_length - len(suffix)
    if truncate_length <= 0:
        return suffix[:max_length]

    return text[:truncate_length] + suffix


def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge

    Returns:
        (verifier, challenge) both base64url encoded without padding
    """
    verifier = _b64url(secrets.token_bytes(64))
    challenge = _b64url(hashlib.sha256(verifier.encode('ascii')).digest())
    return verifier, challenge


def generate_state() -> str:
    """Random value for the OAuth state parameter (CSRF protection)."""
    return _b64url(secrets.token_bytes(16))


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')
