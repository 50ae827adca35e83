"""
Shared application state

AppState is one frozen aggregate. The dispatcher replaces it as a whole under
a short lock; the renderer takes a reference once per frame and can never
observe a half-applied update. No I/O ever happens while the lock is held.

Only one StateWriter exists per store. It is handed to the dispatcher at
startup; everything else gets read-only snapshots.
"""

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from ..core.exceptions import ErrorKind
from ..player import PlaybackTarget, RemoteTarget
from ..spotify.models import Device, DeviceId, Page, PlayableId, PlaybackSnapshot, TrackItem


@dataclass(frozen=True)
class QueueSnapshot:
    """
    Ordered play queue with a cursor on the current item

    Attributes:
        items: Everything in the queue, including already played items
        cursor: Index of the item now playing, -1 when nothing from the
            queue is current (a context is playing, or nothing is)
        user_queued: Items added with "add to queue" that still sit right
            after the cursor; new additions go behind them
    """
    items: Tuple[PlayableId, ...] = ()
    cursor: int = -1
    user_queued: int = 0

    @property
    def current(self) -> Optional[PlayableId]:
        if 0 <= self.cursor < len(self.items):
            return self.items[self.cursor]
        return None

    @property
    def upcoming(self) -> Tuple[PlayableId, ...]:
        return self.items[self.cursor + 1:]

    def moved_to(self, cursor: int) -> 'QueueSnapshot':
        advanced = max(0, cursor - self.cursor)
        return replace(self, cursor=cursor, user_queued=max(0, self.user_queued - advanced))

    def with_queued(self, item: PlayableId) -> 'QueueSnapshot':
        """Insert an item to play after the current one and earlier additions."""
        position = min(len(self.items), self.cursor + 1 + self.user_queued)
        items = self.items[:position] + (item,) + self.items[position:]
        return replace(self, items=items, user_queued=self.user_queued + 1)


@dataclass(frozen=True)
class ErrorStatus:
    """User-visible description of the last failed intent."""
    kind: ErrorKind
    message: str
    category: str
    intent: str

    def __str__(self) -> str:
        return f"{self.intent}: {self.message}"


@dataclass(frozen=True)
class AppState:
    """
    Everything the renderer shows

    Mappings are never mutated in place; a commit builds new ones.
    """
    playback: PlaybackSnapshot = field(default_factory=PlaybackSnapshot)
    devices: Tuple[Device, ...] = ()
    pages: Mapping[str, Mapping[int, Page]] = field(default_factory=dict)
    recently_played: Tuple[TrackItem, ...] = ()
    saved_items: FrozenSet[PlayableId] = frozenset()
    queue: QueueSnapshot = field(default_factory=QueueSnapshot)
    target: PlaybackTarget = field(default_factory=RemoteTarget)
    last_remote_device: Optional[DeviceId] = None
    engine_available: bool = False
    ui_flags: Mapping[str, bool] = field(default_factory=dict)
    last_error: Optional[ErrorStatus] = None
    playback_changed_at: float = float('-inf')
    version: int = 0

    def page(self, key: str, index: int) -> Optional[Page]:
        return self.pages.get(key, {}).get(index)

    def find_track(self, item: PlayableId) -> Optional[TrackItem]:
        """Look up display metadata for an item in the cached listings."""
        if self.playback.track is not None and self.playback.track.item == item:
            return self.playback.track
        for track in self.recently_played:
            if track.item == item:
                return track
        for pages in self.pages.values():
            for page in pages.values():
                for track in page.items:
                    if track.item == item:
                        return track
        return None


def library_key(kind: str, ident: str = "") -> str:
    """Key under which a paginated listing is stored in AppState.pages."""
    return f"{kind}:{ident}" if ident else kind


class StateStore:
    """
    Holder of the current AppState

    snapshot() is safe from any thread and returns immediately.
    """

    def __init__(self, initial: Optional[AppState] = None):
        self._condition = threading.Condition(threading.Lock())
        self._state = initial or AppState()
        self._writer: Optional['StateWriter'] = None

    def snapshot(self) -> AppState:
        with self._condition:
            return self._state

    def writer(self) -> 'StateWriter':
        """
        Hand out the single mutation handle

        Raises:
            RuntimeError: If a writer was already issued
        """
        with self._condition:
            if self._writer is not None:
                raise RuntimeError("StateStore already has a writer")
            self._writer = StateWriter(self)
            return self._writer

    def wait_for(self, predicate: Callable[[AppState], bool], timeout: Optional[float] = None) -> Optional[AppState]:
        """
        Block until a committed state satisfies predicate

        Intended for the CLI and tests; the render loop should poll
        snapshot() instead.

        Returns:
            The matching state, or None on timeout
        """
        with self._condition:
            if self._condition.wait_for(lambda: predicate(self._state), timeout):
                return self._state
            return None

    def _swap(self, changes: Dict[str, Any]) -> AppState:
        with self._condition:
            self._state = replace(self._state, version=self._state.version + 1, **changes)
            self._condition.notify_all()
            return self._state


class StateWriter:
    """Exclusive mutation handle; every commit is one atomic replacement."""

    def __init__(self, store: StateStore):
        self._store = store

    @property
    def current(self) -> AppState:
        return self._store.snapshot()

    def commit(self, **changes) -> AppState:
        """Replace the given fields and bump the version."""
        return self._store._swap(changes)
