"""Tests for the local engine worker and its adapter"""

import asyncio
import time
import pytest
from unittest.mock import Mock, patch

from conftest import FakeBackend, track
from spotterm.core.exceptions import EngineCommandFailed, EngineUnavailable
from spotterm.player import commands, events
from spotterm.player.engine import (
    LocalEngine,
    LocalEngineAdapter,
    create_engine_adapter,
    load_backend,
)


class TestLocalEngine:
    """Test the worker thread directly"""

    def test_commands_are_acknowledged(self, backend):
        """Test the event emitted after each command"""
        received = []
        engine = LocalEngine(backend, received.append)
        engine.start()
        for command in (
            commands.Initialize("token"),
            commands.UpdateCredential("token-2"),
            commands.Load(track(1), start_playing=False),
            commands.Play(),
            commands.SetVolume(1000),
            commands.Stop(),
            commands.Shutdown(),
        ):
            engine.send(command)
        engine.join(2)

        assert [type(event) for event in received] == [
            events.Initialized,
            events.CredentialUpdated,
            events.Loading,
            events.Paused,
            events.Playing,
            events.VolumeChanged,
            events.Stopped,
            events.Shutdown,
        ]
        assert not engine.alive

    def test_backend_error_becomes_event(self, backend):
        """Test that a failing command reports an error and keeps the worker alive"""
        received = []
        backend.fail_on.add('load')
        engine = LocalEngine(backend, received.append)
        engine.start()
        engine.send(commands.Load(track(1)))
        engine.send(commands.Shutdown())
        engine.join(2)

        errors = [event for event in received if isinstance(event, events.EngineError)]
        assert len(errors) == 1
        assert "Load failed" in errors[0].message
        assert isinstance(received[-1], events.Shutdown)

    def test_send_to_stopped_worker(self, backend):
        engine = LocalEngine(backend, lambda event: None)
        with pytest.raises(EngineUnavailable):
            engine.send(commands.Play())

    def test_credential_reaches_backend(self, backend):
        """Test that a refreshed token replaces the one given at startup"""
        engine = LocalEngine(backend, lambda event: None)
        engine.start()
        engine.send(commands.Initialize("token-1"))
        engine.send(commands.UpdateCredential("token-2"))
        engine.send(commands.Shutdown())
        engine.join(2)

        assert backend.calls[:2] == [('start', ("token-1",)), ('update_credential', ("token-2",))]

    def test_tokens_stay_out_of_reprs(self):
        assert "secret" not in repr(commands.Initialize("secret"))
        assert "secret" not in repr(commands.UpdateCredential("secret"))


class TestLocalEngineAdapter:
    """Test awaited commands and event routing"""

    @pytest.mark.asyncio
    async def test_start_initializes_and_sets_volume(self, backend):
        """Test startup handshake"""
        adapter = LocalEngineAdapter(lambda: backend, lambda event: None, initial_volume=100)

        await adapter.start("token")
        try:
            assert adapter.available
            assert backend.calls[0] == ('start', ("token",))
            assert backend.cache_size is None
            assert backend.volume == 65535
        finally:
            await adapter.shutdown()

        assert not adapter.available
        assert backend.methods()[-1] == 'shutdown'

    @pytest.mark.asyncio
    async def test_initialization_failure(self, backend):
        """Test that a backend that cannot start makes the engine unavailable"""
        backend.fail_on.add('start')
        adapter = LocalEngineAdapter(lambda: backend, lambda event: None)

        with pytest.raises(EngineUnavailable):
            await adapter.start("token")

        assert not adapter.available

    @pytest.mark.asyncio
    async def test_backend_factory_failure(self):
        def broken():
            raise OSError("no audio device")

        adapter = LocalEngineAdapter(broken, lambda event: None)
        with pytest.raises(EngineUnavailable):
            await adapter.start("token")

    @pytest.mark.asyncio
    async def test_missing_acknowledgment_times_out(self):
        """Test that a hung backend is reported as unavailable"""
        class HungBackend(FakeBackend):
            def start(self, *args):
                time.sleep(0.5)

        adapter = LocalEngineAdapter(HungBackend, lambda event: None, ack_timeout=0.05)

        with pytest.raises(EngineUnavailable):
            await adapter.start("token")

    @pytest.mark.asyncio
    async def test_command_error_is_not_unavailability(self, backend):
        """Test that one failing item raises EngineCommandFailed"""
        adapter = LocalEngineAdapter(lambda: backend, lambda event: None)
        await adapter.start("token")
        backend.fail_on.add('load')
        try:
            with pytest.raises(EngineCommandFailed):
                await adapter.load(track(1))
            assert adapter.available
        finally:
            await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_unsolicited_events_reach_sink(self, backend):
        """Test that backend events are delivered on the event loop"""
        received = []
        adapter = LocalEngineAdapter(lambda: backend, received.append)
        await adapter.start("token")
        try:
            event = await adapter.load(track(1), position_ms=1000)
            assert isinstance(event, events.Playing)
            assert event.position_ms == 1000

            backend.emit(events.TrackEnded(track(1)))
            backend.emit(events.PreloadNext())
            await asyncio.sleep(0.05)
        finally:
            await adapter.shutdown()

        assert events.Loading(track(1)) in received
        assert events.TrackEnded(track(1)) in received
        assert events.PreloadNext() in received

    @pytest.mark.asyncio
    async def test_update_credential(self, backend):
        """Test that a new token is acknowledged without restarting the engine"""
        adapter = LocalEngineAdapter(lambda: backend, lambda event: None)
        await adapter.start("token-1")
        try:
            event = await adapter.update_credential("token-2")
            assert isinstance(event, events.CredentialUpdated)
            assert adapter.available
        finally:
            await adapter.shutdown()

        assert backend.methods().count('start') == 1
        assert ('update_credential', ("token-2",)) in backend.calls

    @pytest.mark.asyncio
    async def test_rejected_credential_is_a_command_error(self, backend):
        adapter = LocalEngineAdapter(lambda: backend, lambda event: None)
        await adapter.start("token-1")
        backend.fail_on.add('update_credential')
        try:
            with pytest.raises(EngineCommandFailed):
                await adapter.update_credential("token-2")
        finally:
            await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_session_disconnect_marks_unavailable(self, backend):
        adapter = LocalEngineAdapter(lambda: backend, lambda event: None)
        await adapter.start("token")
        try:
            backend.emit(events.SessionDisconnected())
            await asyncio.sleep(0.05)
            assert not adapter.available
        finally:
            await adapter.shutdown()


class TestBackendDiscovery:
    """Test entry-point based backend selection"""

    def _entry_point(self, name, target):
        entry_point = Mock()
        entry_point.name = name
        entry_point.load.return_value = target
        return entry_point

    @patch('spotterm.player.engine.entry_points')
    def test_named_backend(self, mock_entry_points):
        mock_entry_points.return_value = [
            self._entry_point("alsa", "AlsaBackend"),
            self._entry_point("pulse", "PulseBackend"),
        ]

        assert load_backend("pulse") == "PulseBackend"
        assert load_backend() == "AlsaBackend"
        mock_entry_points.assert_called_with(group="spotterm.audio_backends")

    @patch('spotterm.player.engine.entry_points')
    def test_missing_backend(self, mock_entry_points):
        mock_entry_points.return_value = []
        with pytest.raises(EngineUnavailable):
            load_backend()

        mock_entry_points.return_value = [self._entry_point("alsa", "AlsaBackend")]
        with pytest.raises(EngineUnavailable):
            load_backend("pulse")

    def test_disabled_engine(self, mock_settings):
        """Test that a disabled engine is never constructed"""
        with pytest.raises(EngineUnavailable):
            create_engine_adapter(mock_settings, lambda event: None)

    @pytest.mark.asyncio
    async def test_cache_size_reaches_backend(self, mock_settings, backend):
        """Test that the configured cache limit is passed to the backend in bytes"""
        mock_settings.engine.enabled = True
        mock_settings.engine.cache_size = "2GB"
        mock_settings.engine.ack_timeout = 2.0
        mock_settings.engine.initial_volume = 50
        mock_settings.get_engine_cache_path.return_value = "/tmp/spotterm-cache"
        with patch('spotterm.player.engine.load_backend', return_value=lambda: backend):
            adapter = create_engine_adapter(mock_settings, lambda event: None)
        assert adapter.cache_size == 2 * 1024 ** 3

        await adapter.start("token")
        await adapter.shutdown()

        assert backend.cache_size == 2 * 1024 ** 3
