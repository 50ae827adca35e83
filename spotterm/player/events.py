"""
Events emitted by the local playback engine worker

Acknowledgment events answer a command (Initialized, CredentialUpdated,
Playing, Paused, Stopped, VolumeChanged, Shutdown). The rest are
unsolicited and reach the dispatcher as synthetic intents.
"""

from dataclasses import dataclass
from typing import Optional

from ..spotify.models import PlayableId


@dataclass(frozen=True)
class EngineEvent:
    """Base type for engine events."""

    def is_playing(self) -> bool:
        return isinstance(self, Playing)


@dataclass(frozen=True)
class Initialized(EngineEvent):
    pass


@dataclass(frozen=True)
class InitializationFailed(EngineEvent):
    message: str


@dataclass(frozen=True)
class CredentialUpdated(EngineEvent):
    pass


@dataclass(frozen=True)
class Loading(EngineEvent):
    item: PlayableId


@dataclass(frozen=True)
class Playing(EngineEvent):
    item: Optional[PlayableId]
    position_ms: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class Paused(EngineEvent):
    item: Optional[PlayableId]
    position_ms: int = 0


@dataclass(frozen=True)
class Stopped(EngineEvent):
    pass


@dataclass(frozen=True)
class TrackEnded(EngineEvent):
    item: Optional[PlayableId]


@dataclass(frozen=True)
class Position(EngineEvent):
    """Periodic position update while playing."""
    position_ms: int
    duration_ms: int = 0


@dataclass(frozen=True)
class VolumeChanged(EngineEvent):
    """Volume on the engine's 0-65535 scale."""
    volume: int


@dataclass(frozen=True)
class PreloadNext(EngineEvent):
    """The current item is close to its end; preload the next one."""
    pass


@dataclass(frozen=True)
class EngineError(EngineEvent):
    message: str


@dataclass(frozen=True)
class SessionDisconnected(EngineEvent):
    pass


@dataclass(frozen=True)
class Shutdown(EngineEvent):
    pass
