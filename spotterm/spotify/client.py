"""
Spotify Web API client for playback control and library browsing

This module is the remote adapter used by the dispatcher. It exposes one
coroutine per supported action, takes typed identifiers (PlayableId,
DeviceId) and returns typed models, so no raw strings or dictionaries cross
into the dispatch core.

Architecture Overview:

1. **Authentication**: Every call asks the SessionManager for a valid
   credential; the spotipy client is rebuilt whenever the access token
   changes.

2. **Rate Limiting Layer**: A minimum interval between requests keeps bursts
   of intents from tripping the provider's limits.

3. **Error Classification**: spotipy and requests exceptions are converted at
   this boundary into Unauthorized, NotFound, RateLimited, NetworkTransient
   or Malformed. spotipy's own retry loops are disabled so that the
   dispatcher alone decides what gets retried.

4. **Threading**: spotipy is blocking; each call runs in a worker thread via
   asyncio.to_thread so the event loop keeps accepting intents.

Integration Points:

- **Session**: config.auth.SessionManager supplies the bearer token
- **Models**: spotify.models converts responses into frozen dataclasses
- **Logging**: utils.logger records call timings to the log file
"""

import asyncio
import time
from typing import Any, Callable, List, Optional, Sequence

import requests
import spotipy
from spotipy.exceptions import SpotifyException

from ..config.auth import SessionManager
from ..core.exceptions import (
    Malformed,
    NetworkTransient,
    NotFound,
    RateLimited,
    RemoteError,
    Unauthorized,
)
from ..utils.logger import get_logger, log_performance
from .models import (
    Device,
    DeviceId,
    ItemKind,
    Page,
    PlayableId,
    PlaybackSnapshot,
    RepeatMode,
    TrackItem,
    UserProfile,
)


logger = get_logger(__name__)


def classify_spotify_error(error: SpotifyException) -> RemoteError:
    """
    Convert a spotipy exception into the remote error taxonomy

    Args:
        error: Exception raised by a spotipy call

    Returns:
        Matching RemoteError subclass instance (not raised)
    """
    status = error.http_status
    details = {'status': status, 'reason': getattr(error, 'reason', None), 'original_error': error.msg}

    if status == 401:
        return Unauthorized(f"Access token rejected: {error.msg}", details, status)
    if status == 404:
        return NotFound(f"Not found: {error.msg}", details, status)
    if status == 429:
        headers = error.headers or {}
        retry_after = headers.get('Retry-After') or headers.get('retry-after')
        try:
            retry_after = float(retry_after) if retry_after is not None else None
        except ValueError:
            retry_after = None
        return RateLimited("Rate limited by Spotify", details, status, retry_after=retry_after)
    if status is not None and status >= 500:
        return NetworkTransient(f"Spotify service error {status}: {error.msg}", details, status)
    return RemoteError(f"Spotify request failed ({status}): {error.msg}", details, status)


def _parse(factory: Callable[..., Any], data: Any, *args) -> Any:
    """Run a model factory, turning shape errors into Malformed."""
    try:
        return factory(data, *args)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise Malformed(
            f"Unexpected response shape for {getattr(factory, '__qualname__', factory)}: {e}",
            details={'original_error': repr(e)}
        )


class SpotifyClient:
    """
    Async typed facade over spotipy

    Attributes:
        session: Credential provider
        request_timeout: Per-request timeout passed to spotipy
        min_request_interval: Minimum spacing between requests in seconds
    """

    def __init__(
        self,
        session: SessionManager,
        request_timeout: int = 10,
        min_request_interval: float = 0.1,
        spotify_factory: Callable[..., spotipy.Spotify] = spotipy.Spotify
    ):
        self.session = session
        self.request_timeout = request_timeout
        self.min_request_interval = min_request_interval
        self._spotify_factory = spotify_factory

        self._client: Optional[spotipy.Spotify] = None
        self._client_token: Optional[str] = None
        self.last_request_time = 0.0

    async def _spotify(self) -> spotipy.Spotify:
        """Return a spotipy client bound to the current access token."""
        credential = await self.session.acquire()
        if self._client is None or self._client_token != credential.access_token:
            self._client = self._spotify_factory(
                auth=credential.access_token,
                requests_timeout=self.request_timeout,
                retries=0,
                status_retries=0,
            )
            self._client_token = credential.access_token
        return self._client

    async def _rate_limit(self) -> None:
        elapsed = time.monotonic() - self.last_request_time
        if elapsed < self.min_request_interval:
            await asyncio.sleep(self.min_request_interval - elapsed)
        self.last_request_time = time.monotonic()

    @log_performance
    async def _call(self, method: str, *args, **kwargs) -> Any:
        """
        Invoke a spotipy method in a worker thread

        Raises:
            Unauthorized, NotFound, RateLimited, NetworkTransient, Malformed
            or RemoteError for other HTTP failures
        """
        client = await self._spotify()
        await self._rate_limit()

        func = getattr(client, method)
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except SpotifyException as e:
            raise classify_spotify_error(e)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkTransient(f"Network error calling {method}: {e}", details={'original_error': str(e)})
        except ValueError as e:
            # requests raises JSONDecodeError (a ValueError) on bodies that are not JSON
            raise Malformed(f"Invalid response body from {method}: {e}", details={'original_error': str(e)})

    # Playback control

    async def start_playback(
        self,
        device_id: Optional[DeviceId] = None,
        items: Sequence[PlayableId] = (),
        context: Optional[PlayableId] = None,
        offset: Optional[int] = None,
        position_ms: Optional[int] = None
    ) -> None:
        """
        Start playback of a list of items or of a context

        Args:
            device_id: Target device, None for the active one
            items: Tracks/episodes to play, in order
            context: Album, playlist, artist or show to play instead of items
            offset: Index into items/context to start from
            position_ms: Position within the starting item
        """
        kwargs = {'device_id': device_id}
        if context is not None:
            kwargs['context_uri'] = context.uri
        elif items:
            kwargs['uris'] = [item.uri for item in items]
        if offset is not None:
            kwargs['offset'] = {'position': offset}
        if position_ms is not None:
            kwargs['position_ms'] = position_ms
        await self._call('start_playback', **kwargs)

    async def pause(self, device_id: Optional[DeviceId] = None) -> None:
        await self._call('pause_playback', device_id=device_id)

    async def resume(self, device_id: Optional[DeviceId] = None) -> None:
        await self._call('start_playback', device_id=device_id)

    async def seek(self, position_ms: int, device_id: Optional[DeviceId] = None) -> None:
        await self._call('seek_track', position_ms, device_id=device_id)

    async def set_volume(self, percent: int, device_id: Optional[DeviceId] = None) -> None:
        await self._call('volume', percent, device_id=device_id)

    async def set_shuffle(self, enabled: bool, device_id: Optional[DeviceId] = None) -> None:
        await self._call('shuffle', enabled, device_id=device_id)

    async def set_repeat(self, mode: RepeatMode, device_id: Optional[DeviceId] = None) -> None:
        await self._call('repeat', mode.value, device_id=device_id)

    async def next_track(self, device_id: Optional[DeviceId] = None) -> None:
        await self._call('next_track', device_id=device_id)

    async def previous_track(self, device_id: Optional[DeviceId] = None) -> None:
        await self._call('previous_track', device_id=device_id)

    async def add_to_queue(self, item: PlayableId, device_id: Optional[DeviceId] = None) -> None:
        await self._call('add_to_queue', item.uri, device_id=device_id)

    async def transfer_playback(self, device_id: DeviceId, force_play: bool = False) -> None:
        """Move playback to another Connect device."""
        await self._call('transfer_playback', device_id, force_play)

    # Playback state and devices

    async def current_playback(self) -> Optional[PlaybackSnapshot]:
        """
        Fetch the now-playing state

        Returns:
            PlaybackSnapshot, or None when no device is active
        """
        data = await self._call('current_playback', additional_types='episode')
        if not data:
            return None
        return _parse(PlaybackSnapshot.from_spotify_data, data)

    async def devices(self) -> List[Device]:
        data = await self._call('devices')
        try:
            raw_devices = data['devices']
        except (KeyError, TypeError) as e:
            raise Malformed(f"Unexpected devices response: {e}")
        return [_parse(Device.from_spotify_data, entry) for entry in raw_devices if entry.get('id')]

    # Library and search

    async def playlist_page(self, playlist: PlayableId, index: int, page_size: int = 50) -> Page:
        """
        Fetch page `index` (0-based) of a playlist's items

        Raises:
            NotFound: If the identifier is not a playlist (nothing is requested)
        """
        if playlist.kind is not ItemKind.PLAYLIST:
            raise NotFound(f"Not a playlist: {playlist.uri}", details={'uri': playlist.uri})
        data = await self._call(
            'playlist_items',
            playlist.id,
            limit=page_size,
            offset=index * page_size,
            additional_types=('track', 'episode'),
        )
        return _parse(Page.from_spotify_data, data, index)

    async def saved_tracks_page(self, index: int, page_size: int = 50) -> Page:
        data = await self._call('current_user_saved_tracks', limit=page_size, offset=index * page_size)
        return _parse(Page.from_spotify_data, data, index)

    async def search_tracks(self, query: str, index: int = 0, page_size: int = 50) -> Page:
        data = await self._call('search', q=query, limit=page_size, offset=index * page_size, type='track')
        try:
            tracks = data['tracks']
        except (KeyError, TypeError) as e:
            raise Malformed(f"Unexpected search response: {e}")
        return _parse(Page.from_spotify_data, tracks, index)

    async def recently_played(self, limit: int = 50) -> List[TrackItem]:
        """Most recently played tracks, newest first."""
        data = await self._call('current_user_recently_played', limit=limit)
        try:
            entries = data['items']
        except (KeyError, TypeError) as e:
            raise Malformed(f"Unexpected recently played response: {e}")
        return [_parse(TrackItem.from_spotify_data, entry) for entry in entries]

    async def set_saved(self, track: PlayableId, saved: bool) -> None:
        """Add a track to, or remove it from, the user's Liked Songs."""
        if saved:
            await self._call('current_user_saved_tracks_add', [track.uri])
        else:
            await self._call('current_user_saved_tracks_delete', [track.uri])

    async def current_user(self) -> UserProfile:
        data = await self._call('current_user')
        return _parse(UserProfile.from_spotify_data, data)
