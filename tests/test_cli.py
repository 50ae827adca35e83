"""Test CLI argument handling and rendering"""

from click.testing import CliRunner
from unittest.mock import patch

from conftest import track
from spotterm import __version__
from spotterm.dispatch import intents
from spotterm.dispatch.state import AppState
from spotterm.main import cli, render_status
from spotterm.player import LocalTarget, RemoteTarget
from spotterm.spotify.models import DeviceId, PlaybackSnapshot, RepeatMode, TrackItem


class TestRenderStatus:
    """Test the one-line now-playing summary"""

    def test_nothing_playing(self):
        assert render_status(AppState()) == "Nothing playing"

    def test_remote_playback(self):
        playback = PlaybackSnapshot(
            item=track(1),
            track=TrackItem(track(1), "Song", ("Artist",), duration_ms=200000),
            is_playing=True,
            progress_ms=61000,
            duration_ms=200000,
            device_id=DeviceId("d1"),
            device_name="Kitchen",
            shuffle=True,
            repeat=RepeatMode.CONTEXT,
        )
        line = render_status(AppState(target=RemoteTarget(DeviceId("d1")), playback=playback))

        assert line.startswith("> Song - Artist")
        assert "1:01 / 3:20" in line
        assert "[Kitchen]" in line
        assert "(shuffle, repeat:context)" in line

    def test_local_paused(self):
        playback = PlaybackSnapshot(item=track(1), is_playing=False)
        line = render_status(AppState(target=LocalTarget(), playback=playback))

        assert line.startswith("||")
        assert "[local]" in line


class TestCommands:
    """Test commands without touching Spotify"""

    def test_version(self):
        result = CliRunner().invoke(cli, ['--version'])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_play_rejects_invalid_uri(self):
        result = CliRunner().invoke(cli, ['play', 'not-a-uri'])
        assert result.exit_code == 2
        assert "Not a Spotify URI" in result.output

    def test_play_rejects_mixed_arguments(self):
        result = CliRunner().invoke(cli, ['play', 'spotify:playlist:pl1', 'spotify:track:t1'])
        assert result.exit_code == 2

    @patch('spotterm.main.run_intents')
    def test_play_builds_intents(self, mock_run_intents):
        """Test that --device becomes a transfer submitted before the play"""
        mock_run_intents.return_value = AppState()

        result = CliRunner().invoke(cli, ['play', 'spotify:track:t1', 'spotify:track:t2', '-d', 'kitchen', '-p', '30'])

        assert result.exit_code == 0
        transfer, play = mock_run_intents.call_args.args
        assert transfer == intents.TransferPlayback(RemoteTarget(DeviceId("kitchen")), carry_over=False)
        assert play.items[1].id == "t2"
        assert play.position_ms == 30000

    @patch('spotterm.main.run_intents')
    def test_play_context(self, mock_run_intents):
        mock_run_intents.return_value = AppState()

        CliRunner().invoke(cli, ['play', 'https://open.spotify.com/album/abc123'])

        (play,) = mock_run_intents.call_args.args
        assert play.context.uri == "spotify:album:abc123"
        assert play.items == ()
