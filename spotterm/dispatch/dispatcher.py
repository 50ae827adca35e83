"""
Command dispatcher

The dispatcher is the single consumer of the intent queue and the single
writer of the shared state. It runs on one asyncio event loop and processes
intents strictly one at a time:

    IDLE --intent--> PROCESSING --done--> IDLE
      \\                  |
       +--shutdown--> DRAINING --in-flight intent done--> STOPPED

Each intent is routed (player.routing.route) to the remote client, the local
engine, or no adapter at all. A successful intent produces exactly one commit
that replaces the affected sub-state; a failed one records last_error and
leaves domain state alone. Network-class failures of retryable intents are
retried with exponential backoff, an Unauthorized answer triggers one forced
token refresh and one more try.
"""

import asyncio
import random
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config.auth import SessionManager
from ..core.exceptions import (
    EngineCommandFailed,
    EngineUnavailable,
    NetworkTransient,
    RateLimited,
    SpotTermError,
    Unauthorized,
)
from ..player import LOCAL_DEVICE_NAME, RemoteTarget, describe_target, is_local
from ..player.engine import LocalEngineAdapter
from ..player.routing import Route, remote_device, route
from ..spotify.client import SpotifyClient
from ..spotify.models import DeviceId, PlaybackSnapshot, RepeatMode
from ..utils.helpers import backoff_delay, engine_volume_to_percent
from ..utils.logger import get_logger
from . import intents
from .queue import IntentQueue
from .state import AppState, ErrorStatus, QueueSnapshot, StateWriter, library_key


logger = get_logger(__name__)

Changes = Optional[Dict[str, Any]]


class DispatcherState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    DRAINING = "draining"
    STOPPED = "stopped"


class Dispatcher:
    """
    Queue-fed worker that executes intents and commits their results

    Attributes:
        queue: Intent source
        writer: The store's only mutation handle
        remote: Web API adapter
        session: Credential owner, used for re-authentication and engine start
        engine: Local engine adapter, None when local playback is not configured
    """

    def __init__(
        self,
        queue: IntentQueue,
        writer: StateWriter,
        remote: SpotifyClient,
        session: SessionManager,
        engine: Optional[LocalEngineAdapter] = None,
        retry_attempts: int = 2,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 4.0,
        settle_window: float = 1.0,
        page_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.queue = queue
        self.writer = writer
        self.remote = remote
        self.session = session
        self.engine = engine
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.settle_window = settle_window
        self.page_size = page_size
        self._clock = clock
        self._sleep = sleep

        self.state = DispatcherState.IDLE
        self.in_flight: Optional[intents.Intent] = None
        self.processed = 0
        self._progress: Optional[asyncio.Event] = None

        self._handlers = {
            intents.Play: self._play,
            intents.Pause: self._pause,
            intents.Resume: self._resume,
            intents.Seek: self._seek,
            intents.SetVolume: self._set_volume,
            intents.NextTrack: self._next_track,
            intents.PreviousTrack: self._previous_track,
            intents.SetShuffle: self._set_shuffle,
            intents.SetRepeat: self._set_repeat,
            intents.AddToQueue: self._add_to_queue,
            intents.TransferPlayback: self._transfer,
            intents.RefreshPlayback: self._refresh_playback,
            intents.FetchDevices: self._fetch_devices,
            intents.FetchPlaylistPage: self._fetch_playlist_page,
            intents.FetchSavedTracks: self._fetch_saved_tracks,
            intents.FetchRecentlyPlayed: self._fetch_recently_played,
            intents.Search: self._search,
            intents.SetTrackSaved: self._set_track_saved,
            intents.AdvanceQueue: self._advance_queue,
            intents.PreloadNext: self._preload_next,
            intents.EngineProgress: self._engine_progress,
            intents.EngineFailed: self._engine_failed,
            intents.CredentialRefreshed: self._credential_refreshed,
            intents.SetUiFlag: self._set_ui_flag,
        }

    # Lifecycle

    async def run(self) -> None:
        """Process intents until shutdown is requested."""
        self._progress_event()
        logger.debug("Dispatcher started")
        try:
            while self.state is not DispatcherState.DRAINING:
                intent = await self.queue.get()
                if intent is None or self.state is DispatcherState.DRAINING:
                    break

                self.state = DispatcherState.PROCESSING
                self.in_flight = intent
                try:
                    await self.process(intent)
                finally:
                    self.in_flight = None
                    self.processed += 1
                    if self.state is DispatcherState.PROCESSING:
                        self.state = DispatcherState.IDLE
                    self._progress_event().set()
        finally:
            self.state = DispatcherState.STOPPED
            self._progress_event().set()
            logger.debug(f"Dispatcher stopped after {self.processed} intents")

    def request_shutdown(self) -> int:
        """
        Stop accepting work; the in-flight intent still completes

        Must be called on the dispatcher's event loop.

        Returns:
            Number of pending intents discarded
        """
        if self.state is DispatcherState.STOPPED:
            return 0
        self.state = DispatcherState.DRAINING
        discarded = self.queue.close()
        if discarded:
            logger.info(f"Discarding {len(discarded)} pending intents on shutdown")
        return len(discarded)

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is in flight."""
        event = self._progress_event()
        while True:
            if self.state is DispatcherState.STOPPED:
                return
            if self.state is DispatcherState.IDLE and self.queue.empty():
                return
            event.clear()
            await event.wait()

    def _progress_event(self) -> asyncio.Event:
        if self._progress is None:
            self._progress = asyncio.Event()
        return self._progress

    # Processing

    async def process(self, intent: intents.Intent) -> None:
        """Run one intent to completion and commit its outcome."""
        logger.debug(f"Processing {intent}")
        try:
            target_route = route(self.writer.current.target, intent)
            changes = await self._execute(intent, target_route)
        except SpotTermError as e:
            await self._handle_failure(intent, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error while processing {intent.name}")
            await self._handle_failure(intent, SpotTermError(f"Internal error: {e}"))
            return

        changes = dict(changes or {})
        last_error = self.writer.current.last_error
        # engine ticks and polls say nothing about whether a user command succeeded
        if 'last_error' not in changes and last_error is not None and not intent.best_effort \
                and last_error.category == intent.category:
            changes['last_error'] = None
        if changes:
            self.writer.commit(**changes)

    async def _execute(self, intent: intents.Intent, target_route: Route) -> Changes:
        """Call the handler, applying the retry and re-authentication policy."""
        handler = self._handlers[type(intent)]
        attempt = 0
        reauthenticated = False

        while True:
            try:
                return await handler(intent, target_route)
            except Unauthorized:
                if reauthenticated:
                    raise
                reauthenticated = True
                logger.debug(f"{intent.name} got 401, forcing token refresh")
                await self.session.acquire(force_refresh=True)
            except (NetworkTransient, RateLimited) as e:
                if not intent.retryable or attempt >= self.retry_attempts:
                    raise
                attempt += 1
                delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay,
                                      getattr(e, 'retry_after', None))
                logger.debug(f"{intent.name} failed ({e}), retry {attempt}/{self.retry_attempts} in {delay:.2f}s")
                await self._sleep(delay)

    async def _handle_failure(self, intent: intents.Intent, error: SpotTermError) -> None:
        if intent.best_effort or getattr(intent, 'quiet', False):
            logger.debug(f"{intent.name} failed (ignored): {error}")
            return

        logger.warning(f"{intent.name} failed: {error}")
        changes = {'last_error': ErrorStatus(error.kind, error.message, intent.category, intent.name)}

        current = self.writer.current
        if isinstance(error, EngineUnavailable) and is_local(current.target):
            changes.update(self._fallback_to_remote(current))

        self.writer.commit(**changes)

    def _fallback_to_remote(self, state: AppState) -> Dict[str, Any]:
        """
        Changes that move routing off a dead local engine

        Uses the last remote device, then the active device in the list.
        Without either, routing stays local and playback is simply stopped.
        """
        device_id = state.last_remote_device
        if device_id is None:
            device_id = next((device.id for device in state.devices if device.is_active), None)

        changes: Dict[str, Any] = {
            'engine_available': False,
            'playback': replace(state.playback, is_playing=False),
        }
        if device_id is not None:
            logger.warning(f"Local engine unavailable, falling back to remote device {device_id}")
            changes['target'] = RemoteTarget(device_id)
        else:
            logger.error("Local engine unavailable and no remote device to fall back to")
        return changes

    # Helpers

    def _now_playing(self, item, position_ms: int, is_playing: bool, state: AppState,
                     duration_ms: int = 0, local: bool = False) -> PlaybackSnapshot:
        track = state.find_track(item) if item is not None else None
        previous = state.playback
        return replace(
            previous,
            item=item,
            track=track,
            is_playing=is_playing,
            progress_ms=position_ms,
            duration_ms=duration_ms or (track.duration_ms if track else 0),
            device_id=None if local else previous.device_id,
            device_name=LOCAL_DEVICE_NAME if local else previous.device_name,
        )

    def _require_engine(self) -> LocalEngineAdapter:
        if self.engine is None or not self.engine.available:
            raise EngineUnavailable("Local engine is not running")
        return self.engine

    async def _ensure_engine(self) -> LocalEngineAdapter:
        if self.engine is None:
            raise EngineUnavailable("Local playback is not configured")
        if not self.engine.available:
            credential = await self.session.acquire()
            await self.engine.start(credential.access_token)
        return self.engine

    def _next_index(self, queue: QueueSnapshot, repeat: RepeatMode) -> Optional[int]:
        if not queue.items:
            return None
        if queue.current is None:
            return 0
        if repeat is RepeatMode.TRACK:
            return queue.cursor
        if queue.cursor + 1 < len(queue.items):
            return queue.cursor + 1
        if repeat is RepeatMode.CONTEXT:
            return 0
        return None

    def _user_changed(self) -> Dict[str, Any]:
        return {'playback_changed_at': self._clock()}

    # Playback handlers

    async def _play(self, intent: intents.Play, target_route: Route) -> Changes:
        state = self.writer.current
        item = intent.starting_item

        if target_route is Route.LOCAL:
            if item is None:
                raise EngineCommandFailed("Local playback needs explicit items to play")
            event = await self._require_engine().load(item, intent.position_ms)
            playback = self._now_playing(item, event.position_ms, event.is_playing(), state,
                                         getattr(event, 'duration_ms', 0), local=True)
        else:
            await self.remote.start_playback(
                remote_device(state.target),
                items=intent.items,
                context=intent.context,
                offset=intent.offset if (intent.items or intent.context) else None,
                position_ms=intent.position_ms,
            )
            playback = self._now_playing(item, intent.position_ms, True, state)
            if intent.context is not None:
                playback = replace(playback, context_uri=intent.context.uri)

        queue = QueueSnapshot(tuple(intent.items), intent.offset) if intent.items else QueueSnapshot()
        return {'playback': playback, 'queue': queue, **self._user_changed()}

    async def _pause(self, intent: intents.Pause, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.LOCAL:
            event = await self._require_engine().pause()
            playback = replace(state.playback, is_playing=False, progress_ms=event.position_ms)
        else:
            await self.remote.pause(remote_device(state.target))
            playback = replace(state.playback, is_playing=False)
        return {'playback': playback, **self._user_changed()}

    async def _resume(self, intent: intents.Resume, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.LOCAL:
            event = await self._require_engine().play()
            playback = replace(state.playback, is_playing=True, progress_ms=event.position_ms)
        else:
            await self.remote.resume(remote_device(state.target))
            playback = replace(state.playback, is_playing=True)
        return {'playback': playback, **self._user_changed()}

    async def _seek(self, intent: intents.Seek, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.LOCAL:
            await self._require_engine().seek(intent.position_ms)
        else:
            await self.remote.seek(intent.position_ms, remote_device(state.target))
        return {'playback': replace(state.playback, progress_ms=intent.position_ms), **self._user_changed()}

    async def _set_volume(self, intent: intents.SetVolume, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.LOCAL:
            event = await self._require_engine().set_volume(intent.percent)
            percent = engine_volume_to_percent(event.volume)
        else:
            await self.remote.set_volume(intent.percent, remote_device(state.target))
            percent = intent.percent
        return {'playback': replace(state.playback, volume_percent=percent), **self._user_changed()}

    async def _skip(self, state: AppState, index: Optional[int], target_route: Route) -> Changes:
        """Move to queue position `index` after a next/previous command."""
        queue = state.queue
        if target_route is Route.LOCAL:
            if index is None:
                await self._require_engine().stop()
                return {'playback': replace(state.playback, is_playing=False, progress_ms=0),
                        **self._user_changed()}
            item = queue.items[index]
            event = await self._require_engine().load(item)
            playback = self._now_playing(item, 0, event.is_playing(), state,
                                         getattr(event, 'duration_ms', 0), local=True)
            return {'playback': playback, 'queue': queue.moved_to(index), **self._user_changed()}

        if index is None:
            return {'playback': replace(state.playback, progress_ms=0), **self._user_changed()}
        item = queue.items[index]
        return {'playback': self._now_playing(item, 0, True, state), 'queue': queue.moved_to(index),
                **self._user_changed()}

    async def _next_track(self, intent: intents.NextTrack, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.REMOTE:
            await self.remote.next_track(remote_device(state.target))
        queue = state.queue
        index = queue.cursor + 1 if queue.cursor + 1 < len(queue.items) else None
        if index is None and state.playback.repeat is RepeatMode.CONTEXT and queue.items:
            index = 0
        return await self._skip(state, index, target_route)

    async def _previous_track(self, intent: intents.PreviousTrack, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.REMOTE:
            await self.remote.previous_track(remote_device(state.target))
        queue = state.queue
        if queue.current is None:
            return await self._skip(state, None, target_route) if target_route is Route.REMOTE else None
        return await self._skip(state, max(0, queue.cursor - 1), target_route)

    async def _set_shuffle(self, intent: intents.SetShuffle, target_route: Route) -> Changes:
        state = self.writer.current
        changes: Dict[str, Any] = {}
        if target_route is Route.LOCAL:
            # the engine plays our queue; shuffle what has not been played yet
            if intent.enabled and state.queue.upcoming:
                upcoming = list(state.queue.upcoming)
                random.shuffle(upcoming)
                played = state.queue.items[:state.queue.cursor + 1]
                changes['queue'] = replace(state.queue, items=played + tuple(upcoming), user_queued=0)
        else:
            await self.remote.set_shuffle(intent.enabled, remote_device(state.target))
        changes['playback'] = replace(state.playback, shuffle=intent.enabled)
        return {**changes, **self._user_changed()}

    async def _set_repeat(self, intent: intents.SetRepeat, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.REMOTE:
            await self.remote.set_repeat(intent.mode, remote_device(state.target))
        return {'playback': replace(state.playback, repeat=intent.mode), **self._user_changed()}

    async def _add_to_queue(self, intent: intents.AddToQueue, target_route: Route) -> Changes:
        state = self.writer.current
        if target_route is Route.REMOTE:
            await self.remote.add_to_queue(intent.item, remote_device(state.target))
        return {'queue': state.queue.with_queued(intent.item)}

    async def _transfer(self, intent: intents.TransferPlayback, target_route: Route) -> Changes:
        """
        Switch the active target

        Order matters: the new target is made ready first (so a failure
        leaves the old one untouched), then the old target is paused, then
        state is carried over, and only the final commit flips the target.
        """
        state = self.writer.current
        new_target = intent.target
        was_playing = state.playback.is_playing
        item = state.playback.item
        position_ms = state.playback.progress_ms
        changes: Dict[str, Any] = {'target': new_target, **self._user_changed()}

        if is_local(new_target):
            engine = await self._ensure_engine()
            changes['engine_available'] = True
            if target_route is Route.REMOTE:
                if was_playing:
                    await self.remote.pause(remote_device(state.target))
                if state.playback.device_id is not None:
                    changes['last_remote_device'] = state.playback.device_id
            playback = replace(state.playback, is_playing=False, device_id=None, device_name=LOCAL_DEVICE_NAME)
            if intent.carry_over and item is not None and item.kind.playable:
                event = await engine.load(item, position_ms, start_playing=was_playing)
                playback = self._now_playing(item, event.position_ms, event.is_playing(), state,
                                             getattr(event, 'duration_ms', 0), local=True)
                queue = state.queue
                if item in queue.items and queue.current != item:
                    changes['queue'] = queue.moved_to(queue.items.index(item))
                elif item not in queue.items:
                    changes['queue'] = QueueSnapshot((item,) + queue.upcoming, 0, queue.user_queued)
            changes['playback'] = playback
        else:
            device_id = new_target.device_id
            if target_route is Route.LOCAL:
                if self.engine is not None and self.engine.available:
                    try:
                        await self.engine.pause()
                    except EngineUnavailable as e:
                        logger.warning(f"Could not pause local engine before transfer: {e}")
                if intent.carry_over and was_playing and item is not None:
                    queue = state.queue
                    if queue.current == item:
                        await self.remote.start_playback(device_id, items=queue.items,
                                                         offset=queue.cursor, position_ms=position_ms)
                    else:
                        carried_queue = QueueSnapshot((item,) + queue.upcoming, 0, queue.user_queued)
                        await self.remote.start_playback(device_id, items=carried_queue.items,
                                                         position_ms=position_ms)
                        changes['queue'] = carried_queue
                elif device_id is not None:
                    await self.remote.transfer_playback(device_id, force_play=False)
            elif device_id is not None:
                # Spotify stops the previous Connect device as part of the transfer
                await self.remote.transfer_playback(device_id, force_play=intent.carry_over and was_playing)

            carried = intent.carry_over and was_playing
            changes['playback'] = replace(state.playback, is_playing=carried, device_id=device_id, device_name="")
            if device_id is not None:
                changes['last_remote_device'] = DeviceId(device_id)

        logger.info(f"Playback target: {describe_target(state.target)} -> {describe_target(new_target)}")
        return changes

    async def _refresh_playback(self, intent: intents.RefreshPlayback, target_route: Route) -> Changes:
        if target_route is Route.LOCAL:
            # local state arrives through engine events
            return None

        snapshot = await self.remote.current_playback()

        state = self.writer.current
        if intent.issued_at < state.playback_changed_at or \
                self._clock() - state.playback_changed_at < self.settle_window:
            logger.debug("Dropping poll result older than the last playback change")
            return None

        snapshot = snapshot or PlaybackSnapshot()
        if snapshot.track is None and snapshot.item is not None:
            snapshot = replace(snapshot, track=state.find_track(snapshot.item))

        changes: Dict[str, Any] = {'playback': snapshot}
        if snapshot.item is not None and snapshot.item in state.queue.items and snapshot.item != state.queue.current:
            changes['queue'] = state.queue.moved_to(state.queue.items.index(snapshot.item))
        if snapshot.device_id is not None:
            changes['last_remote_device'] = snapshot.device_id
        return changes

    # Library handlers

    async def _fetch_devices(self, intent: intents.FetchDevices, target_route: Route) -> Changes:
        devices = tuple(await self.remote.devices())
        changes: Dict[str, Any] = {'devices': devices}
        if self.writer.current.last_remote_device is None:
            active = next((device.id for device in devices if device.is_active), None)
            if active is not None:
                changes['last_remote_device'] = active
        return changes

    def _store_page(self, key: str, page) -> Dict[str, Any]:
        pages = dict(self.writer.current.pages)
        pages[key] = {**pages.get(key, {}), page.index: page}
        return {'pages': pages}

    async def _fetch_playlist_page(self, intent: intents.FetchPlaylistPage, target_route: Route) -> Changes:
        page = await self.remote.playlist_page(intent.playlist, intent.index, self.page_size)
        return self._store_page(library_key("playlist", intent.playlist.uri), page)

    async def _fetch_saved_tracks(self, intent: intents.FetchSavedTracks, target_route: Route) -> Changes:
        page = await self.remote.saved_tracks_page(intent.index, self.page_size)
        return self._store_page(library_key("saved"), page)

    async def _search(self, intent: intents.Search, target_route: Route) -> Changes:
        page = await self.remote.search_tracks(intent.query, intent.index, self.page_size)
        return self._store_page(library_key("search", intent.query), page)

    async def _fetch_recently_played(self, intent: intents.FetchRecentlyPlayed, target_route: Route) -> Changes:
        return {'recently_played': tuple(await self.remote.recently_played(intent.limit))}

    async def _set_track_saved(self, intent: intents.SetTrackSaved, target_route: Route) -> Changes:
        await self.remote.set_saved(intent.item, intent.saved)
        saved = set(self.writer.current.saved_items)
        if intent.saved:
            saved.add(intent.item)
        else:
            saved.discard(intent.item)
        return {'saved_items': frozenset(saved)}

    # Engine-originated handlers

    async def _advance_queue(self, intent: intents.AdvanceQueue, target_route: Route) -> Changes:
        state = self.writer.current
        queue = state.queue
        if intent.ended is not None and queue.current is not None and intent.ended != queue.current:
            logger.debug(f"TrackEnded for {intent.ended} but queue is at {queue.current}")

        index = self._next_index(queue, state.playback.repeat)
        if index is None:
            logger.debug("Queue finished")
            return {'playback': replace(state.playback, is_playing=False, progress_ms=0)}

        item = queue.items[index]
        event = await self._require_engine().load(item)
        playback = self._now_playing(item, event.position_ms, event.is_playing(), state,
                                     getattr(event, 'duration_ms', 0), local=True)
        return {'playback': playback, 'queue': queue.moved_to(index)}

    async def _preload_next(self, intent: intents.PreloadNext, target_route: Route) -> Changes:
        state = self.writer.current
        index = self._next_index(state.queue, state.playback.repeat)
        if index is not None and index != state.queue.cursor:
            self._require_engine().preload(state.queue.items[index])
        return None

    async def _engine_progress(self, intent: intents.EngineProgress, target_route: Route) -> Changes:
        playback = self.writer.current.playback
        playback = replace(
            playback,
            progress_ms=intent.position_ms,
            duration_ms=intent.duration_ms or playback.duration_ms,
            is_playing=playback.is_playing if intent.is_playing is None else intent.is_playing,
        )
        return {'playback': playback}

    async def _engine_failed(self, intent: intents.EngineFailed, target_route: Route) -> Changes:
        state = self.writer.current
        if not is_local(state.target):
            logger.info(f"Local engine reported '{intent.message}' while inactive")
            return {'engine_available': False} if intent.fatal else None

        # filed under playback so the next successful playback command clears it
        if not intent.fatal:
            status = ErrorStatus(EngineCommandFailed.kind, intent.message, "playback", intent.name)
            return {'last_error': status}

        error = EngineUnavailable(intent.message)
        status = ErrorStatus(error.kind, error.message, "playback", intent.name)
        return {'last_error': status, **self._fallback_to_remote(state)}

    async def _credential_refreshed(self, intent: intents.CredentialRefreshed, target_route: Route) -> Changes:
        if self.engine is None or not self.engine.available:
            return None
        await self.engine.update_credential(intent.access_token)
        logger.debug("Local engine now uses the refreshed access token")
        return None

    async def _set_ui_flag(self, intent: intents.SetUiFlag, target_route: Route) -> Changes:
        flags = dict(self.writer.current.ui_flags)
        flags[intent.flag] = intent.value
        return {'ui_flags': flags}
