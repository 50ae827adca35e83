"""Test configuration and fixtures"""

import time
import pytest
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

from spotterm.config.auth import AuthorizationFlow, Credential
from spotterm.dispatch.dispatcher import Dispatcher
from spotterm.dispatch.queue import IntentQueue
from spotterm.dispatch.state import AppState, StateStore
from spotterm.player.engine import AudioBackend, LocalEngineAdapter
from spotterm.spotify.models import Device, DeviceId, Page, PlayableId, PlaybackSnapshot, TrackItem


def track(n: int) -> PlayableId:
    """Deterministic track id for tests"""
    return PlayableId.track(f"track{n}")


class FakeRemote:
    """
    In-memory stand-in for SpotifyClient

    Every call is recorded in `calls` as (method, args). Failures are
    scripted per method: `fail('start_playback', NetworkTransient('x'))`
    makes the next call raise, once per queued exception.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, list] = {}
        self.playback: Optional[PlaybackSnapshot] = None
        self.device_list: List[Device] = []
        self.pages: Dict[int, Page] = {}
        self.recent: List[TrackItem] = []

    def fail(self, method: str, *errors):
        self.failures.setdefault(method, []).extend(errors)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def _record(self, method: str, *args):
        self.calls.append((method, args))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def start_playback(self, device_id=None, items=(), context=None, offset=None, position_ms=None):
        await self._record('start_playback', device_id, tuple(items), context, offset, position_ms)

    async def pause(self, device_id=None):
        await self._record('pause', device_id)

    async def resume(self, device_id=None):
        await self._record('resume', device_id)

    async def seek(self, position_ms, device_id=None):
        await self._record('seek', position_ms, device_id)

    async def set_volume(self, percent, device_id=None):
        await self._record('set_volume', percent, device_id)

    async def set_shuffle(self, enabled, device_id=None):
        await self._record('set_shuffle', enabled, device_id)

    async def set_repeat(self, mode, device_id=None):
        await self._record('set_repeat', mode, device_id)

    async def next_track(self, device_id=None):
        await self._record('next_track', device_id)

    async def previous_track(self, device_id=None):
        await self._record('previous_track', device_id)

    async def add_to_queue(self, item, device_id=None):
        await self._record('add_to_queue', item, device_id)

    async def transfer_playback(self, device_id, force_play=False):
        await self._record('transfer_playback', device_id, force_play)

    async def current_playback(self):
        await self._record('current_playback')
        return self.playback

    async def devices(self):
        await self._record('devices')
        return list(self.device_list)

    async def playlist_page(self, playlist, index, page_size=50):
        await self._record('playlist_page', playlist, index)
        return self.pages[index]

    async def saved_tracks_page(self, index, page_size=50):
        await self._record('saved_tracks_page', index)
        return self.pages[index]

    async def search_tracks(self, query, index=0, page_size=50):
        await self._record('search_tracks', query, index)
        return self.pages[index]

    async def recently_played(self, limit=50):
        await self._record('recently_played', limit)
        return list(self.recent)

    async def set_saved(self, item, saved):
        await self._record('set_saved', item, saved)


class FakeSession:
    """SessionManager stand-in that always has a valid credential"""

    def __init__(self):
        self.credential = Credential("token-1", "refresh", int(time.time()) + 3600)
        self.acquire_calls: List[bool] = []
        self.listeners = []

    def add_listener(self, callback):
        self.listeners.append(callback)

    async def acquire(self, force_refresh: bool = False) -> Credential:
        self.acquire_calls.append(force_refresh)
        if force_refresh:
            number = int(self.credential.access_token.split('-')[1]) + 1
            self.credential = replace(self.credential, access_token=f"token-{number}")
            for callback in self.listeners:
                callback(self.credential)
        return self.credential


class FakeFlow(AuthorizationFlow):
    """Authorization flow returning a canned token response"""

    def __init__(self, response: Optional[dict] = None, error: Optional[Exception] = None):
        self.response = response or {
            'access_token': 'authorized-token',
            'refresh_token': 'authorized-refresh',
            'expires_in': 3600,
            'scope': 'streaming',
        }
        self.error = error
        self.calls = 0

    def authorize(self) -> dict:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return dict(self.response)


class FakeBackend(AudioBackend):
    """
    Audio backend that only records what it was asked to do

    Attributes:
        calls: (method, args) tuples in call order
        fail_on: Method names that raise RuntimeError when called
    """

    def __init__(self, duration_ms: int = 180000):
        self.calls: List[tuple] = []
        self.fail_on = set()
        self.position = 0
        self.duration = duration_ms
        self.volume = 0
        self.cache_size = None

    def _record(self, method: str, *args):
        self.calls.append((method, args))
        if method in self.fail_on:
            raise RuntimeError(f"{method} failed")

    def start(self, access_token, device, bitrate, normalize_volume, cache_path, cache_size):
        self._record('start', access_token)
        self.cache_size = cache_size

    def update_credential(self, access_token):
        self._record('update_credential', access_token)

    def load(self, item, start_playing, position_ms):
        self._record('load', item, start_playing, position_ms)
        self.position = position_ms

    def play(self):
        self._record('play')

    def pause(self):
        self._record('pause')

    def stop(self):
        self._record('stop')
        self.position = 0

    def seek(self, position_ms):
        self._record('seek', position_ms)
        self.position = position_ms

    def set_volume(self, volume):
        self._record('set_volume', volume)
        self.volume = volume

    def preload(self, item):
        self._record('preload', item)

    def position_ms(self):
        return self.position

    def duration_ms(self):
        return self.duration

    def shutdown(self):
        self._record('shutdown')

    def methods(self) -> List[str]:
        return [name for name, _ in self.calls]


class Harness:
    """Dispatcher wired to fakes, driven step by step from a test"""

    def __init__(self, initial: Optional[AppState] = None, engine: Optional[LocalEngineAdapter] = None, **options):
        self.remote = FakeRemote()
        self.session = FakeSession()
        self.queue = IntentQueue()
        self.store = StateStore(initial or AppState())
        self.now = 100.0
        self.sleeps: List[float] = []
        self.engine = engine
        self.dispatcher = Dispatcher(
            self.queue,
            self.store.writer(),
            self.remote,
            self.session,
            engine=engine,
            clock=lambda: self.now,
            sleep=self._sleep,
            **options
        )

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    @property
    def state(self) -> AppState:
        return self.store.snapshot()

    async def process(self, *intents) -> AppState:
        for intent in intents:
            await self.dispatcher.process(intent)
        return self.state


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def harness():
    """Dispatcher over a fake remote client and session"""
    return Harness()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def mock_settings():
    """Mock settings for testing"""
    settings = Mock()
    settings.spotify.client_id = "client-id"
    settings.spotify.client_secret = ""
    settings.playback.mode = "remote"
    settings.engine.enabled = False
    return settings


@pytest.fixture
def sample_track_data():
    """Sample saved-track entry as returned by the Web API"""
    return {
        'added_at': '2023-01-01T00:00:00Z',
        'track': {
            'id': 'track123',
            'uri': 'spotify:track:track123',
            'name': 'Test Song',
            'artists': [{'id': 'artist123', 'name': 'Test Artist'}, {'id': 'artist456', 'name': 'Other Artist'}],
            'album': {'id': 'album123', 'name': 'Test Album'},
            'duration_ms': 210000,  # 3:30
        }
    }


@pytest.fixture
def sample_playback_data(sample_track_data):
    """GET /me/player response"""
    return {
        'device': {'id': 'dev1', 'name': 'Kitchen', 'type': 'Speaker', 'is_active': True, 'volume_percent': 40},
        'shuffle_state': True,
        'repeat_state': 'context',
        'is_playing': True,
        'progress_ms': 42000,
        'context': {'uri': 'spotify:playlist:pl1'},
        'item': sample_track_data['track'],
    }


def device(device_id: str, active: bool = False) -> Device:
    return Device(DeviceId(device_id), f"Device {device_id}", "Computer", is_active=active)
