"""Tests for the intent queue and intent definitions"""

import asyncio
import threading
import pytest

from conftest import track
from spotterm.dispatch import intents
from spotterm.dispatch.queue import IntentQueue
from spotterm.player import LocalTarget, events
from spotterm.player.routing import Route, RoutingClass


class TestIntentQueue:
    """Test submission, coalescing and closing"""

    def test_fifo_order(self):
        """Test that non-superseding intents keep submission order"""
        queue = IntentQueue()
        submitted = [intents.Pause(), intents.Resume(), intents.NextTrack(), intents.Pause()]
        for intent in submitted:
            assert queue.submit(intent) is True

        assert queue.pending() == submitted
        assert len(queue) == 4

    def test_superseding_intents_coalesce(self):
        """Test that only the newest pending seek or volume survives"""
        queue = IntentQueue()
        queue.submit(intents.Seek(1000))
        queue.submit(intents.Pause())
        queue.submit(intents.SetVolume(10))
        queue.submit(intents.Seek(2000))
        queue.submit(intents.SetVolume(20))

        assert queue.pending() == [intents.Pause(), intents.Seek(2000), intents.SetVolume(20)]
        assert queue.coalesced == 2

    def test_closed_queue_rejects_and_discards(self):
        """Test that close() returns what will never run"""
        queue = IntentQueue()
        queue.submit(intents.Pause())
        queue.submit(intents.Resume())

        discarded = queue.close()

        assert discarded == [intents.Pause(), intents.Resume()]
        assert queue.closed
        assert queue.empty()
        assert queue.submit(intents.Pause()) is False

    @pytest.mark.asyncio
    async def test_get_wakes_on_submit_from_other_thread(self):
        """Test that producers on other threads wake the consumer"""
        queue = IntentQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0.01)

        thread = threading.Thread(target=queue.submit, args=(intents.Resume(),))
        thread.start()
        thread.join()

        assert await asyncio.wait_for(getter, 1) == intents.Resume()

    @pytest.mark.asyncio
    async def test_get_returns_none_after_close(self):
        """Test that a waiting consumer is released by close()"""
        queue = IntentQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0.01)

        queue.close()

        assert await asyncio.wait_for(getter, 1) is None


class TestIntents:
    """Test intent metadata"""

    def test_play_is_retryable_and_pause_is_not(self):
        """Test retry classification"""
        assert intents.Play(items=(track(1),)).retryable
        assert intents.FetchDevices().retryable
        assert not intents.Pause().retryable
        assert not intents.TransferPlayback(LocalTarget()).retryable

    def test_play_starting_item(self):
        """Test the item a play request starts with"""
        play = intents.Play(items=(track(1), track(2)), offset=1)
        assert play.starting_item == track(2)
        assert intents.Play(items=(track(1),), offset=5).starting_item is None
        assert intents.Play().starting_item is None

    def test_routing_classes(self):
        """Test which intents follow the playback target"""
        assert intents.Pause().routing is RoutingClass.PLAYBACK
        assert intents.Search("x").routing is RoutingClass.LIBRARY
        assert intents.SetUiFlag("help", True).routing is RoutingClass.STATE
        assert intents.AdvanceQueue().origin is Route.LOCAL
        assert intents.Pause().origin is None

    def test_intents_are_values(self):
        """Test that equal intents compare equal and are hashable"""
        assert intents.Seek(10) == intents.Seek(10)
        assert len({intents.Seek(10), intents.Seek(10), intents.Seek(20)}) == 2
        assert intents.Seek(10).name == "Seek"


class TestEngineEventTranslation:
    """Test engine events becoming intents"""

    def test_track_ended(self):
        """Test that end of track advances the queue"""
        assert intents.intent_for_engine_event(events.TrackEnded(track(1))) == intents.AdvanceQueue(track(1))

    def test_progress_events(self):
        """Test position and state updates"""
        assert intents.intent_for_engine_event(events.Position(1000, 2000)) == intents.EngineProgress(1000, 2000)
        assert intents.intent_for_engine_event(events.Paused(track(1), 500)) == \
            intents.EngineProgress(500, is_playing=False)

    def test_failures(self):
        """Test that disconnects are fatal and command errors are not"""
        assert intents.intent_for_engine_event(events.EngineError("bad item")) == intents.EngineFailed("bad item")
        disconnected = intents.intent_for_engine_event(events.SessionDisconnected())
        assert isinstance(disconnected, intents.EngineFailed) and disconnected.fatal

    def test_acknowledgments_have_no_follow_up(self):
        """Test that pure acknowledgments produce nothing"""
        assert intents.intent_for_engine_event(events.Initialized()) is None
        assert intents.intent_for_engine_event(events.Loading(track(1))) is None
        assert intents.intent_for_engine_event(events.VolumeChanged(100)) is None
