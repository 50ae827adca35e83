"""
Intents: the requests the dispatcher executes

An intent is a frozen value that carries everything needed to run it again,
so a retry never depends on state read at dispatch time. Toggles are
expressed as absolute values (SetShuffle(enabled=True), never "toggle").

Class attributes describe how the dispatcher treats each intent type:

- routing: which adapter it goes to (see player.routing)
- category: last_error is cleared by the next success in the same category
- retryable: network-class failures are retried with backoff
- superseding: only the newest pending instance is kept in the queue
- best_effort: failures are logged at debug level and otherwise ignored,
  and successes never clear last_error
- origin: Route.LOCAL for intents synthesized from local engine events
"""

from dataclasses import dataclass, field
from typing import ClassVar, Optional, Tuple

from ..player import PlaybackTarget
from ..player import events
from ..player.routing import Route, RoutingClass
from ..spotify.models import PlayableId, RepeatMode


@dataclass(frozen=True)
class Intent:
    """Base type for all intents."""
    routing: ClassVar[RoutingClass] = RoutingClass.PLAYBACK
    category: ClassVar[str] = "playback"
    retryable: ClassVar[bool] = False
    superseding: ClassVar[bool] = False
    best_effort: ClassVar[bool] = False
    origin: ClassVar[Optional[Route]] = None

    @property
    def name(self) -> str:
        return type(self).__name__


# Playback control

@dataclass(frozen=True)
class Play(Intent):
    """
    Start playing items (or a context) from an offset

    Carries the complete target state, so sending it twice converges to the
    same result; network failures are therefore retried.
    """
    items: Tuple[PlayableId, ...] = ()
    context: Optional[PlayableId] = None
    offset: int = 0
    position_ms: int = 0
    retryable = True

    @property
    def starting_item(self) -> Optional[PlayableId]:
        if self.items and 0 <= self.offset < len(self.items):
            return self.items[self.offset]
        return None


@dataclass(frozen=True)
class Pause(Intent):
    pass


@dataclass(frozen=True)
class Resume(Intent):
    pass


@dataclass(frozen=True)
class Seek(Intent):
    position_ms: int
    superseding = True


@dataclass(frozen=True)
class SetVolume(Intent):
    percent: int
    superseding = True


@dataclass(frozen=True)
class NextTrack(Intent):
    pass


@dataclass(frozen=True)
class PreviousTrack(Intent):
    pass


@dataclass(frozen=True)
class SetShuffle(Intent):
    enabled: bool


@dataclass(frozen=True)
class SetRepeat(Intent):
    mode: RepeatMode


@dataclass(frozen=True)
class AddToQueue(Intent):
    item: PlayableId


@dataclass(frozen=True)
class TransferPlayback(Intent):
    """
    Make another target the active one

    Attributes:
        target: New playback target
        carry_over: Continue the current item, position and queue there
        quiet: Do not report a failure as last_error (startup auto mode)
    """
    target: PlaybackTarget
    carry_over: bool = True
    quiet: bool = False
    routing = RoutingClass.TRANSFER


@dataclass(frozen=True)
class RefreshPlayback(Intent):
    """Poll the now-playing state; issued_at is a time.monotonic() value."""
    issued_at: float
    category = "poll"
    superseding = True
    best_effort = True


# Library, devices and search

@dataclass(frozen=True)
class FetchDevices(Intent):
    routing = RoutingClass.LIBRARY
    category = "devices"
    retryable = True


@dataclass(frozen=True)
class FetchPlaylistPage(Intent):
    playlist: PlayableId
    index: int = 0
    routing = RoutingClass.LIBRARY
    category = "library"
    retryable = True


@dataclass(frozen=True)
class FetchSavedTracks(Intent):
    index: int = 0
    routing = RoutingClass.LIBRARY
    category = "library"
    retryable = True


@dataclass(frozen=True)
class FetchRecentlyPlayed(Intent):
    limit: int = 50
    routing = RoutingClass.LIBRARY
    category = "library"
    retryable = True


@dataclass(frozen=True)
class Search(Intent):
    query: str
    index: int = 0
    routing = RoutingClass.LIBRARY
    category = "search"
    retryable = True


@dataclass(frozen=True)
class SetTrackSaved(Intent):
    item: PlayableId
    saved: bool
    routing = RoutingClass.LIBRARY
    category = "library"
    retryable = True


# Synthesized from local engine events

@dataclass(frozen=True)
class AdvanceQueue(Intent):
    """The engine finished `ended`; load the next queued item."""
    ended: Optional[PlayableId] = None
    origin = Route.LOCAL
    category = "engine"


@dataclass(frozen=True)
class PreloadNext(Intent):
    origin = Route.LOCAL
    category = "engine"
    best_effort = True


@dataclass(frozen=True)
class EngineProgress(Intent):
    position_ms: int
    duration_ms: int = 0
    is_playing: Optional[bool] = None
    origin = Route.LOCAL
    category = "engine"
    superseding = True
    best_effort = True


@dataclass(frozen=True)
class EngineFailed(Intent):
    """The engine reported an error or its session went away."""
    message: str
    fatal: bool = False
    routing = RoutingClass.STATE
    category = "engine"


@dataclass(frozen=True)
class CredentialRefreshed(Intent):
    """The session obtained a new access token; hand it to a running engine."""
    access_token: str = field(repr=False)
    routing = RoutingClass.STATE
    category = "engine"
    superseding = True


# UI

@dataclass(frozen=True)
class SetUiFlag(Intent):
    """Set a renderer flag (help overlay, filter visibility...) to a value."""
    flag: str
    value: bool
    routing = RoutingClass.STATE
    category = "ui"


def intent_for_engine_event(event: events.EngineEvent) -> Optional[Intent]:
    """
    Translate an unsolicited engine event into an intent

    Returns:
        The intent to enqueue, or None for events with no follow-up work
    """
    if isinstance(event, events.TrackEnded):
        return AdvanceQueue(event.item)
    if isinstance(event, events.PreloadNext):
        return PreloadNext()
    if isinstance(event, events.Position):
        return EngineProgress(event.position_ms, event.duration_ms)
    if isinstance(event, events.Playing):
        return EngineProgress(event.position_ms, event.duration_ms, is_playing=True)
    if isinstance(event, events.Paused):
        return EngineProgress(event.position_ms, is_playing=False)
    if isinstance(event, events.EngineError):
        return EngineFailed(event.message)
    if isinstance(event, events.SessionDisconnected):
        return EngineFailed("Local engine session disconnected", fatal=True)
    if isinstance(event, events.Shutdown):
        return EngineFailed("Local engine stopped", fatal=True)
    return None
