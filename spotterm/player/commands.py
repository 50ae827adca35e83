"""
Commands sent to the local playback engine worker

Commands are fire-and-forget: the worker answers with events
(see player.events) rather than return values.
"""

from dataclasses import dataclass, field
from typing import Optional

from ..spotify.models import PlayableId


@dataclass(frozen=True)
class EngineCommand:
    """Base type for engine commands."""
    pass


@dataclass(frozen=True)
class Initialize(EngineCommand):
    """Start the audio backend with a bearer token."""
    access_token: str = field(repr=False)
    device: str = ""
    bitrate: int = 320
    normalize_volume: bool = True
    cache_path: Optional[str] = None
    cache_size: Optional[int] = None  # bytes


@dataclass(frozen=True)
class UpdateCredential(EngineCommand):
    """Hand a refreshed access token to the running backend."""
    access_token: str = field(repr=False)


@dataclass(frozen=True)
class Load(EngineCommand):
    """Load an item and optionally start playing it."""
    item: PlayableId
    start_playing: bool = True
    position_ms: int = 0


@dataclass(frozen=True)
class Play(EngineCommand):
    pass


@dataclass(frozen=True)
class Pause(EngineCommand):
    pass


@dataclass(frozen=True)
class Stop(EngineCommand):
    pass


@dataclass(frozen=True)
class Seek(EngineCommand):
    position_ms: int


@dataclass(frozen=True)
class SetVolume(EngineCommand):
    """Volume on the engine's 0-65535 scale."""
    volume: int


@dataclass(frozen=True)
class Preload(EngineCommand):
    """Prepare the next item for gapless playback."""
    item: PlayableId


@dataclass(frozen=True)
class Shutdown(EngineCommand):
    pass
