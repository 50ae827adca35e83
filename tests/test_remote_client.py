"""Tests for the spotipy-backed remote client"""

import pytest
import requests
from unittest.mock import Mock
from spotipy.exceptions import SpotifyException

from conftest import FakeSession, track
from spotterm.core.exceptions import (
    ErrorKind,
    Malformed,
    NetworkTransient,
    NotFound,
    RateLimited,
    RemoteError,
    Unauthorized,
)
from spotterm.spotify.client import SpotifyClient, classify_spotify_error
from spotterm.spotify.models import DeviceId, ItemKind, PlayableId, RepeatMode


def make_client():
    spotify = Mock()
    factory = Mock(return_value=spotify)
    session = FakeSession()
    client = SpotifyClient(session, min_request_interval=0, spotify_factory=factory)
    return client, spotify, factory, session


class TestErrorClassification:
    """Test mapping of spotipy exceptions"""

    def test_status_codes(self):
        assert isinstance(classify_spotify_error(SpotifyException(401, -1, "expired")), Unauthorized)
        assert isinstance(classify_spotify_error(SpotifyException(404, -1, "missing")), NotFound)
        assert isinstance(classify_spotify_error(SpotifyException(502, -1, "bad gateway")), NetworkTransient)

        other = classify_spotify_error(SpotifyException(403, -1, "premium required"))
        assert type(other) is RemoteError
        assert other.status == 403

    def test_retry_after_header(self):
        """Test that the Retry-After hint is kept"""
        error = classify_spotify_error(SpotifyException(429, -1, "slow", headers={'Retry-After': '7'}))
        assert isinstance(error, RateLimited)
        assert error.retry_after == 7


class TestSpotifyClient:
    """Test calls made through spotipy"""

    @pytest.mark.asyncio
    async def test_start_playback_with_items(self):
        client, spotify, factory, _ = make_client()

        await client.start_playback(DeviceId("dev1"), items=[track(1), track(2)], offset=1, position_ms=2000)

        factory.assert_called_once_with(auth="token-1", requests_timeout=10, retries=0, status_retries=0)
        spotify.start_playback.assert_called_once_with(
            device_id="dev1",
            uris=['spotify:track:track1', 'spotify:track:track2'],
            offset={'position': 1},
            position_ms=2000,
        )

    @pytest.mark.asyncio
    async def test_start_playback_with_context(self):
        client, spotify, _, _ = make_client()
        playlist = PlayableId(ItemKind.PLAYLIST, "pl1")

        await client.start_playback(context=playlist)

        spotify.start_playback.assert_called_once_with(device_id=None, context_uri="spotify:playlist:pl1")

    @pytest.mark.asyncio
    async def test_client_rebuilt_after_token_change(self):
        """Test that a refreshed token produces a new spotipy client"""
        client, spotify, factory, session = make_client()

        await client.pause()
        await client.pause()
        assert factory.call_count == 1

        await session.acquire(force_refresh=True)
        await client.pause()
        assert factory.call_count == 2
        assert factory.call_args.kwargs['auth'] == "token-2"

    @pytest.mark.asyncio
    async def test_repeat_and_volume(self):
        client, spotify, _, _ = make_client()

        await client.set_repeat(RepeatMode.TRACK, DeviceId("d"))
        await client.set_volume(55)

        spotify.repeat.assert_called_once_with("track", device_id="d")
        spotify.volume.assert_called_once_with(55, device_id=None)

    @pytest.mark.asyncio
    async def test_current_playback(self, sample_playback_data):
        client, spotify, _, _ = make_client()
        spotify.current_playback.return_value = sample_playback_data

        snapshot = await client.current_playback()

        assert snapshot.item == PlayableId.track("track123")
        assert snapshot.device_id == "dev1"
        assert snapshot.repeat is RepeatMode.CONTEXT

        spotify.current_playback.return_value = None
        assert await client.current_playback() is None

    @pytest.mark.asyncio
    async def test_devices_skip_entries_without_id(self):
        client, spotify, _, _ = make_client()
        spotify.devices.return_value = {'devices': [
            {'id': 'a', 'name': 'Laptop', 'type': 'Computer', 'is_active': True},
            {'id': None, 'name': 'Restricted'},
        ]}

        devices = await client.devices()

        assert [device.id for device in devices] == ['a']
        assert devices[0].is_active

    @pytest.mark.asyncio
    async def test_playlist_page_offsets(self, sample_track_data):
        client, spotify, _, _ = make_client()
        spotify.playlist_items.return_value = {'items': [sample_track_data], 'offset': 50, 'limit': 50, 'total': 51}

        page = await client.playlist_page(PlayableId(ItemKind.PLAYLIST, "pl1"), 1, page_size=50)

        assert spotify.playlist_items.call_args.kwargs['offset'] == 50
        assert page.index == 1
        assert len(page.items) == 1
        assert not page.has_next

    @pytest.mark.asyncio
    async def test_playlist_page_requires_playlist(self):
        """Test that a non-playlist id is a typed error and never reaches the API"""
        client, spotify, _, _ = make_client()
        with pytest.raises(NotFound) as exc_info:
            await client.playlist_page(track(1), 0)

        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        assert "spotify:track:track1" in exc_info.value.message
        spotify.playlist_items.assert_not_called()

    @pytest.mark.asyncio
    async def test_errors_are_translated(self):
        """Test that library exceptions never escape the adapter"""
        client, spotify, _, _ = make_client()

        spotify.pause_playback.side_effect = SpotifyException(404, -1, "Device not found")
        with pytest.raises(NotFound):
            await client.pause()

        spotify.pause_playback.side_effect = requests.ConnectionError("reset")
        with pytest.raises(NetworkTransient):
            await client.pause()

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        client, spotify, _, _ = make_client()
        spotify.devices.return_value = {'unexpected': []}

        with pytest.raises(Malformed):
            await client.devices()

    @pytest.mark.asyncio
    async def test_saved_tracks_toggle(self):
        client, spotify, _, _ = make_client()

        await client.set_saved(track(1), True)
        await client.set_saved(track(1), False)

        spotify.current_user_saved_tracks_add.assert_called_once_with(['spotify:track:track1'])
        spotify.current_user_saved_tracks_delete.assert_called_once_with(['spotify:track:track1'])
