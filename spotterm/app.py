"""
Application runtime

App wires the session manager, the remote client, the optional local engine
and the dispatcher together and runs them on one asyncio event loop in a
background thread. The synchronous side (CLI commands, the watch render
loop) talks to it only through submit() and snapshot().
"""

import asyncio
import threading
import time
from typing import Callable, Optional

from .config.auth import SessionManager, create_session_manager
from .config.settings import Settings, get_settings
from .core.exceptions import EngineUnavailable
from .dispatch import intents
from .dispatch.dispatcher import Dispatcher
from .dispatch.queue import IntentQueue
from .dispatch.state import AppState, StateStore
from .player import LocalTarget, RemoteTarget
from .player.engine import LocalEngineAdapter, create_engine_adapter
from .spotify.client import SpotifyClient
from .spotify.models import DeviceId
from .utils.logger import get_logger


logger = get_logger(__name__)


class App:
    """
    Running spotterm instance

    Attributes:
        settings: Loaded configuration
        queue: Intent queue shared by every producer
        store: Shared state; read it with snapshot()
        dispatcher: The queue consumer, created by start()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[SessionManager] = None,
        remote: Optional[SpotifyClient] = None,
        engine: Optional[LocalEngineAdapter] = None,
        poll: bool = True
    ):
        self.settings = settings or get_settings()
        self.queue = IntentQueue()
        self.session = session or create_session_manager(self.settings)
        self.remote = remote or SpotifyClient(self.session, request_timeout=self.settings.network.request_timeout)
        self.engine = engine if engine is not None else self._create_engine()
        self.poll = poll
        if self.engine is not None:
            self.session.add_listener(self._on_credential)

        default_device = self.settings.playback.default_device or None
        self.store = StateStore(AppState(
            target=RemoteTarget(DeviceId(default_device) if default_device else None),
            last_remote_device=DeviceId(default_device) if default_device else None,
        ))

        self.dispatcher: Optional[Dispatcher] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._run_future = None
        self._poll_future = None
        self._started = threading.Event()

    def _create_engine(self) -> Optional[LocalEngineAdapter]:
        try:
            return create_engine_adapter(self.settings, self._on_engine_event)
        except EngineUnavailable as e:
            if self.settings.playback.mode != "remote":
                logger.warning(f"Local playback unavailable: {e}")
            else:
                logger.debug(f"Local playback unavailable: {e}")
            return None

    def _on_engine_event(self, event) -> None:
        intent = intents.intent_for_engine_event(event)
        if intent is not None:
            self.queue.submit(intent)

    def _on_credential(self, credential) -> None:
        self.queue.submit(intents.CredentialRefreshed(credential.access_token))

    # Lifecycle

    def start(self) -> 'App':
        """Start the event loop thread, the dispatcher and the poll timer."""
        if self._thread is not None:
            return self

        self._thread = threading.Thread(target=self._run_loop, name="spotterm-dispatch", daemon=True)
        self._thread.start()
        self._started.wait()

        self.dispatcher = Dispatcher(
            self.queue,
            self.store.writer(),
            self.remote,
            self.session,
            engine=self.engine,
            retry_attempts=self.settings.dispatcher.retry_attempts,
            retry_base_delay=self.settings.dispatcher.retry_base_delay,
            retry_max_delay=self.settings.dispatcher.retry_max_delay,
            settle_window=self.settings.playback.settle_window,
            page_size=self.settings.playback.page_size,
        )
        self._run_future = asyncio.run_coroutine_threadsafe(self.dispatcher.run(), self._loop)

        mode = self.settings.playback.mode
        if mode in ("local", "auto") and self.engine is not None:
            self.submit(intents.TransferPlayback(LocalTarget(), carry_over=False, quiet=(mode == "auto")))
        elif mode == "local":
            logger.error("Playback mode is 'local' but no local engine could be created")

        if self.poll:
            self._poll_future = asyncio.run_coroutine_threadsafe(self._poll_playback(), self._loop)

        logger.debug(f"spotterm started in {mode} mode")
        return self

    def _run_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._started.set()
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    async def _poll_playback(self) -> None:
        interval = self.settings.playback.poll_interval
        while True:
            self.queue.submit(intents.RefreshPlayback(time.monotonic()))
            await asyncio.sleep(interval)

    def stop(self, timeout: float = 10.0) -> None:
        """
        Shut down: discard pending intents, let the in-flight one finish,
        stop the engine and the loop.
        """
        if self._thread is None or self._loop is None:
            return

        if self._poll_future is not None:
            self._poll_future.cancel()

        if self.dispatcher is not None:
            self._loop.call_soon_threadsafe(self.dispatcher.request_shutdown)
            try:
                self._run_future.result(timeout)
            except Exception as e:
                logger.warning(f"Dispatcher did not stop cleanly: {e}")

        if self.engine is not None:
            try:
                asyncio.run_coroutine_threadsafe(self.engine.shutdown(), self._loop).result(timeout)
            except Exception as e:
                logger.warning(f"Local engine did not shut down cleanly: {e}")

        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        self._thread = None
        logger.debug("spotterm stopped")

    def __enter__(self) -> 'App':
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # Producer / reader side

    def submit(self, intent: intents.Intent) -> bool:
        """Enqueue an intent from any thread; never blocks."""
        return self.queue.submit(intent)

    def snapshot(self) -> AppState:
        return self.store.snapshot()

    def wait_until_idle(self, timeout: Optional[float] = None) -> AppState:
        """
        Block until every submitted intent has been processed

        Raises:
            concurrent.futures.TimeoutError: If the queue does not drain in time
        """
        if self.dispatcher is None or self._loop is None:
            raise RuntimeError("App is not started")
        asyncio.run_coroutine_threadsafe(self.dispatcher.join(), self._loop).result(timeout)
        return self.snapshot()

    def wait_for(self, predicate: Callable[[AppState], bool], timeout: Optional[float] = None) -> Optional[AppState]:
        return self.store.wait_for(predicate, timeout)

    def run(self, coroutine, timeout: Optional[float] = None):
        """Run a coroutine on the app's loop, outside the queue (auth commands)."""
        if self._loop is None:
            raise RuntimeError("App is not started")
        return asyncio.run_coroutine_threadsafe(coroutine, self._loop).result(timeout)
