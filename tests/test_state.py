"""Tests for shared state, playback targets and routing"""

import threading
import pytest

from conftest import device, track
from spotterm.core.exceptions import RoutingInvalid
from spotterm.dispatch import intents
from spotterm.dispatch.state import AppState, QueueSnapshot, StateStore, library_key
from spotterm.player import (
    LOCAL_DEVICE_ID,
    LocalTarget,
    RemoteTarget,
    describe_target,
    device_choices,
    target_for_device_id,
)
from spotterm.player.routing import Route, remote_device, route
from spotterm.spotify.models import DeviceId, Page, PlaybackSnapshot, TrackItem


class TestQueueSnapshot:
    """Test queue cursor arithmetic"""

    def test_current_and_upcoming(self):
        queue = QueueSnapshot((track(1), track(2), track(3)), 1)
        assert queue.current == track(2)
        assert queue.upcoming == (track(3),)
        assert QueueSnapshot().current is None

    def test_moving_past_user_queued_items(self):
        """Test that user additions are consumed as the cursor passes them"""
        queue = QueueSnapshot((track(1), track(2)), 0).with_queued(track(9))
        assert queue.user_queued == 1

        moved = queue.moved_to(1)
        assert moved.current == track(9)
        assert moved.user_queued == 0

    def test_queue_on_empty(self):
        """Test that an item added to an empty queue plays next, not now"""
        queue = QueueSnapshot().with_queued(track(1))

        assert queue == QueueSnapshot((track(1),), -1, 1)
        assert queue.current is None
        assert queue.upcoming == (track(1),)

    def test_additions_keep_their_order_before_anything_is_current(self):
        queue = QueueSnapshot().with_queued(track(1)).with_queued(track(2))

        assert queue.upcoming == (track(1), track(2))
        assert queue.moved_to(0).current == track(1)
        assert queue.moved_to(0).user_queued == 1


class TestStateStore:
    """Test snapshot publication"""

    def test_single_writer(self):
        """Test that the mutation handle is handed out once"""
        store = StateStore()
        store.writer()
        with pytest.raises(RuntimeError):
            store.writer()

    def test_commit_replaces_whole_state(self):
        """Test that readers keep their old snapshot after a commit"""
        store = StateStore()
        writer = store.writer()
        before = store.snapshot()

        after = writer.commit(playback=PlaybackSnapshot(item=track(1), is_playing=True))

        assert before.playback.item is None
        assert before.version == 0
        assert after.version == 1
        assert store.snapshot() is after

    def test_wait_for_commit_from_other_thread(self):
        """Test blocking until a predicate holds"""
        store = StateStore()
        writer = store.writer()

        thread = threading.Thread(target=writer.commit, kwargs={'engine_available': True})
        thread.start()
        state = store.wait_for(lambda s: s.engine_available, timeout=2)
        thread.join()

        assert state is not None and state.engine_available

    def test_wait_for_timeout(self):
        assert StateStore().wait_for(lambda s: s.engine_available, timeout=0.01) is None

    def test_find_track_in_cached_pages(self):
        """Test metadata lookup across listings"""
        item = TrackItem(track(5), "Five", ("Artist",))
        state = AppState(pages={library_key("saved"): {0: Page(0, 0, 1, 1, (item,))}})

        assert state.find_track(track(5)) == item
        assert state.find_track(track(6)) is None
        assert state.page("saved", 0).items == (item,)
        assert state.page("saved", 1) is None


class TestRouting:
    """Test the routing function"""

    def test_playback_follows_target(self):
        assert route(RemoteTarget(), intents.Pause()) is Route.REMOTE
        assert route(LocalTarget(), intents.Pause()) is Route.LOCAL
        assert route(None, intents.Pause()) is Route.REMOTE

    def test_library_is_always_remote(self):
        assert route(LocalTarget(), intents.FetchDevices()) is Route.REMOTE
        assert route(LocalTarget(), intents.Search("q")) is Route.REMOTE

    def test_state_intents_use_no_adapter(self):
        assert route(LocalTarget(), intents.SetUiFlag("help", True)) is Route.NONE
        assert route(RemoteTarget(), intents.EngineFailed("x")) is Route.NONE

    def test_transfer_routes_by_current_target(self):
        """Test that a transfer starts from the active target"""
        assert route(LocalTarget(), intents.TransferPlayback(RemoteTarget())) is Route.LOCAL
        assert route(RemoteTarget(), intents.TransferPlayback(LocalTarget())) is Route.REMOTE

    def test_engine_intents_rejected_on_remote(self):
        """Test that engine-originated intents never reach the remote device"""
        assert route(LocalTarget(), intents.AdvanceQueue()) is Route.LOCAL
        with pytest.raises(RoutingInvalid):
            route(RemoteTarget(), intents.AdvanceQueue())

    def test_routing_is_deterministic(self):
        intent = intents.Seek(1000)
        assert {route(LocalTarget(), intent) for _ in range(10)} == {Route.LOCAL}

    def test_remote_device(self):
        assert remote_device(RemoteTarget(DeviceId("d1"))) == "d1"
        assert remote_device(RemoteTarget()) is None
        assert remote_device(LocalTarget()) is None


class TestTargets:
    """Test device selection helpers"""

    def test_local_pseudo_device(self):
        assert target_for_device_id(LOCAL_DEVICE_ID) == LocalTarget()
        assert target_for_device_id("local") == LocalTarget()
        assert target_for_device_id("abc") == RemoteTarget(DeviceId("abc"))

    def test_local_engine_listed_first(self):
        """Test device list ordering and the active marker"""
        choices = device_choices([device("a"), device("b", active=True)], local_available=True)

        assert [device_id for device_id, _ in choices] == [LOCAL_DEVICE_ID, "a", "b"]
        assert choices[2][1].endswith("*")
        assert len(device_choices([device("a")], local_available=False)) == 1

    def test_describe_target(self):
        assert describe_target(LocalTarget()) == "local"
        assert describe_target(RemoteTarget()) == "remote:active"
        assert describe_target(RemoteTarget(DeviceId("x"))) == "remote:x"
