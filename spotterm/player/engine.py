"""
Local playback engine

The engine plays audio on this machine through a pluggable AudioBackend
(the decoding/output library is opaque to spotterm). It is split in two:

- LocalEngine runs on its own worker thread and exclusively owns the
  backend. Commands are queued fire-and-forget; the worker answers each one
  with an acknowledgment event and forwards the backend's unsolicited events.

- LocalEngineAdapter lives on the dispatcher's event loop. It sends a
  command, awaits the matching acknowledgment with a timeout and hands every
  event nobody was waiting for to an event sink, which turns it into an
  intent on the dispatcher queue.

Backends are registered as entry points in the "spotterm.audio_backends"
group; when none can be loaded the engine is unavailable and playback stays
on remote devices.
"""

import asyncio
import queue
import threading
from abc import ABC, abstractmethod
from importlib.metadata import entry_points
from typing import Callable, Optional, Tuple, Type

from ..config.settings import Settings
from ..core.exceptions import EngineCommandFailed, EngineUnavailable
from ..spotify.models import PlayableId
from ..utils.helpers import percent_to_engine_volume
from ..utils.logger import get_logger, parse_size
from . import commands
from . import events


logger = get_logger(__name__)

BACKEND_ENTRY_POINT_GROUP = "spotterm.audio_backends"

EventSink = Callable[[events.EngineEvent], None]


class AudioBackend(ABC):
    """
    Contract for audio decoding/output libraries

    All methods are called from the engine worker thread only. A backend
    reports things that happen on its own (end of track, position ticks,
    errors) through `emit()`, which may be called from any thread. It must
    not emit acknowledgment events; the worker does that after each call
    returns.
    """

    _sink: Optional[Callable[[events.EngineEvent], None]] = None

    def set_event_sink(self, sink: Callable[[events.EngineEvent], None]) -> None:
        self._sink = sink

    def emit(self, event: events.EngineEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    @abstractmethod
    def start(self, access_token: str, device: str, bitrate: int, normalize_volume: bool,
              cache_path: Optional[str], cache_size: Optional[int]) -> None:
        """
        Open the audio session. Raise to report initialization failure.

        cache_size is the upper bound in bytes for audio cached under
        cache_path; None leaves the limit to the backend.
        """

    @abstractmethod
    def update_credential(self, access_token: str) -> None:
        """Replace the bearer token of the open session after a refresh."""

    @abstractmethod
    def load(self, item: PlayableId, start_playing: bool, position_ms: int) -> None:
        ...

    @abstractmethod
    def play(self) -> None:
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def seek(self, position_ms: int) -> None:
        ...

    @abstractmethod
    def set_volume(self, volume: int) -> None:
        """Volume on the 0-65535 scale."""

    def preload(self, item: PlayableId) -> None:
        """Prepare the next item; backends without gapless support ignore it."""

    def position_ms(self) -> int:
        return 0

    def duration_ms(self) -> int:
        return 0

    @abstractmethod
    def shutdown(self) -> None:
        ...


class LocalEngine:
    """
    Worker thread owning an AudioBackend

    Attributes:
        backend: The backend instance, touched only by the worker thread
        on_event: Callback receiving every event; called from worker and
            backend threads, so it must be thread-safe
    """

    def __init__(self, backend: AudioBackend, on_event: EventSink):
        self.backend = backend
        self.on_event = on_event
        self._commands: "queue.Queue[commands.EngineCommand]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._current: Optional[PlayableId] = None
        self._playing = False

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self.backend.set_event_sink(self._forward)
        self._thread = threading.Thread(target=self._run, name="spotterm-engine", daemon=True)
        self._thread.start()

    def send(self, command: commands.EngineCommand) -> None:
        """
        Queue a command for the worker

        Raises:
            EngineUnavailable: If the worker thread is not running
        """
        if not self.alive:
            raise EngineUnavailable("Local engine worker is not running")
        self._commands.put(command)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _forward(self, event: events.EngineEvent) -> None:
        if isinstance(event, events.TrackEnded):
            self._playing = False
        self.on_event(event)

    def _run(self) -> None:
        logger.debug("Engine worker started")
        while True:
            command = self._commands.get()
            try:
                self._handle(command)
            except Exception as e:
                logger.error(f"Engine command {type(command).__name__} failed: {e}")
                if isinstance(command, commands.Initialize):
                    self.on_event(events.InitializationFailed(str(e)))
                elif not isinstance(command, commands.Shutdown):
                    self.on_event(events.EngineError(f"{type(command).__name__} failed: {e}"))
            if isinstance(command, commands.Shutdown):
                break
        logger.debug("Engine worker stopped")

    def _handle(self, command: commands.EngineCommand) -> None:
        """Execute one command and emit its acknowledgment."""
        backend = self.backend

        if isinstance(command, commands.Initialize):
            backend.start(command.access_token, command.device, command.bitrate,
                          command.normalize_volume, command.cache_path, command.cache_size)
            self.on_event(events.Initialized())

        elif isinstance(command, commands.UpdateCredential):
            backend.update_credential(command.access_token)
            self.on_event(events.CredentialUpdated())

        elif isinstance(command, commands.Load):
            self.on_event(events.Loading(command.item))
            backend.load(command.item, command.start_playing, command.position_ms)
            self._current = command.item
            self._playing = command.start_playing
            self.on_event(self._state_event(command.position_ms))

        elif isinstance(command, commands.Play):
            backend.play()
            self._playing = True
            self.on_event(self._state_event(backend.position_ms()))

        elif isinstance(command, commands.Pause):
            backend.pause()
            self._playing = False
            self.on_event(self._state_event(backend.position_ms()))

        elif isinstance(command, commands.Stop):
            backend.stop()
            self._current = None
            self._playing = False
            self.on_event(events.Stopped())

        elif isinstance(command, commands.Seek):
            backend.seek(command.position_ms)
            self.on_event(self._state_event(command.position_ms))

        elif isinstance(command, commands.SetVolume):
            backend.set_volume(command.volume)
            self.on_event(events.VolumeChanged(command.volume))

        elif isinstance(command, commands.Preload):
            backend.preload(command.item)

        elif isinstance(command, commands.Shutdown):
            try:
                backend.shutdown()
            finally:
                self.on_event(events.Shutdown())

    def _state_event(self, position_ms: int) -> events.EngineEvent:
        if self._playing:
            return events.Playing(self._current, position_ms, self.backend.duration_ms())
        return events.Paused(self._current, position_ms)


class LocalEngineAdapter:
    """
    Dispatcher-side handle for the local engine

    Every awaited method sends one command and waits for its acknowledgment.
    Only one command is awaited at a time; the dispatcher processes intents
    serially.
    """

    def __init__(
        self,
        backend_factory: Callable[[], AudioBackend],
        sink: EventSink,
        ack_timeout: float = 5.0,
        device: str = "",
        bitrate: int = 320,
        normalize_volume: bool = True,
        cache_path: Optional[str] = None,
        cache_size: Optional[int] = None,
        initial_volume: int = 50
    ):
        self._backend_factory = backend_factory
        self._sink = sink
        self.ack_timeout = ack_timeout
        self.device = device
        self.bitrate = bitrate
        self.normalize_volume = normalize_volume
        self.cache_path = cache_path
        self.cache_size = cache_size
        self.initial_volume = initial_volume

        self._engine: Optional[LocalEngine] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Optional[Tuple[Tuple[Type[events.EngineEvent], ...], asyncio.Future]] = None
        self._ready = False

    @property
    def available(self) -> bool:
        return self._ready and self._engine is not None and self._engine.alive

    async def start(self, access_token: str) -> None:
        """
        Start the worker and initialize the backend

        Raises:
            EngineUnavailable: If the backend cannot be created or fails to initialize
        """
        if self.available:
            return

        self._loop = asyncio.get_running_loop()
        try:
            backend = self._backend_factory()
        except Exception as e:
            raise EngineUnavailable(f"Audio backend could not be created: {e}")

        self._engine = LocalEngine(backend, self._from_worker)
        self._engine.start()

        initialize = commands.Initialize(access_token, self.device, self.bitrate,
                                         self.normalize_volume, self.cache_path, self.cache_size)
        try:
            event = await self._request(initialize, (events.Initialized, events.InitializationFailed))
        except EngineUnavailable:
            self._abandon_engine()
            raise
        if isinstance(event, events.InitializationFailed):
            self._abandon_engine()
            raise EngineUnavailable(f"Local engine failed to initialize: {event.message}")

        self._ready = True
        logger.info("Local engine initialized")
        await self.set_volume(self.initial_volume)

    async def update_credential(self, access_token: str) -> events.EngineEvent:
        """Pass a refreshed access token to the running backend."""
        return await self._request(commands.UpdateCredential(access_token), (events.CredentialUpdated,))

    async def load(self, item: PlayableId, position_ms: int = 0, start_playing: bool = True) -> events.EngineEvent:
        command = commands.Load(item, start_playing, position_ms)
        return await self._request(command, (events.Playing, events.Paused))

    async def play(self) -> events.EngineEvent:
        return await self._request(commands.Play(), (events.Playing,))

    async def pause(self) -> events.EngineEvent:
        return await self._request(commands.Pause(), (events.Paused,))

    async def stop(self) -> events.EngineEvent:
        return await self._request(commands.Stop(), (events.Stopped,))

    async def seek(self, position_ms: int) -> events.EngineEvent:
        return await self._request(commands.Seek(position_ms), (events.Playing, events.Paused))

    async def set_volume(self, percent: int) -> events.EngineEvent:
        """Set volume in percent; the engine works on the 0-65535 scale."""
        return await self._request(commands.SetVolume(percent_to_engine_volume(percent)), (events.VolumeChanged,))

    def preload(self, item: PlayableId) -> None:
        """Fire-and-forget; the backend does not acknowledge preloads."""
        self._require_engine().send(commands.Preload(item))

    async def shutdown(self) -> None:
        """Stop the backend and wait for the worker to exit."""
        if self._engine is None or not self._engine.alive:
            self._engine = None
            self._ready = False
            return
        try:
            await self._request(commands.Shutdown(), (events.Shutdown,))
        except EngineUnavailable as e:
            logger.warning(f"Engine did not shut down cleanly: {e}")
        finally:
            engine, self._engine = self._engine, None
            self._ready = False
            if engine is not None:
                await asyncio.to_thread(engine.join, self.ack_timeout)

    def _abandon_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None and engine.alive:
            engine.send(commands.Shutdown())

    def _require_engine(self) -> LocalEngine:
        if self._engine is None:
            raise EngineUnavailable("Local engine is not running")
        return self._engine

    async def _request(
        self,
        command: commands.EngineCommand,
        expected: Tuple[Type[events.EngineEvent], ...]
    ) -> events.EngineEvent:
        """
        Send a command and wait for one of the expected events

        Raises:
            EngineUnavailable: On timeout or when the worker is gone
            EngineCommandFailed: When the engine reported an error instead
        """
        engine = self._require_engine()
        future = asyncio.get_running_loop().create_future()
        self._pending = (expected, future)
        try:
            engine.send(command)
            return await asyncio.wait_for(future, self.ack_timeout)
        except asyncio.TimeoutError:
            raise EngineUnavailable(
                f"Local engine did not acknowledge {type(command).__name__} within {self.ack_timeout}s",
                details={'command': type(command).__name__}
            )
        finally:
            self._pending = None

    def _from_worker(self, event: events.EngineEvent) -> None:
        """Called on worker/backend threads; hops onto the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_event, event)
        except RuntimeError:
            # loop closed between the check and the call
            logger.debug(f"Dropping engine event {type(event).__name__} after loop shutdown")

    def _on_event(self, event: events.EngineEvent) -> None:
        pending = self._pending
        if pending is not None:
            expected, future = pending
            if not future.done():
                if isinstance(event, expected):
                    future.set_result(event)
                    return
                if isinstance(event, events.EngineError):
                    future.set_exception(EngineCommandFailed(event.message))
                    return
                if isinstance(event, (events.Shutdown, events.SessionDisconnected)):
                    future.set_exception(EngineUnavailable("Local engine stopped unexpectedly"))
                    # still reported to the sink below

        if isinstance(event, events.Shutdown):
            was_ready, self._ready = self._ready, False
            if not was_ready:
                return
        if isinstance(event, events.SessionDisconnected):
            self._ready = False

        self._sink(event)


def discover_backends() -> dict:
    """Map of registered backend names to entry points."""
    return {ep.name: ep for ep in entry_points(group=BACKEND_ENTRY_POINT_GROUP)}


def load_backend(name: str = "") -> Type[AudioBackend]:
    """
    Resolve an audio backend class by entry-point name

    Args:
        name: Registered name; empty selects the first registered backend

    Raises:
        EngineUnavailable: If no matching backend is registered or it fails to import
    """
    available = discover_backends()
    if not available:
        raise EngineUnavailable(
            "No audio backend installed",
            details={'entry_point_group': BACKEND_ENTRY_POINT_GROUP}
        )

    if name:
        entry_point = available.get(name)
        if entry_point is None:
            raise EngineUnavailable(
                f"Audio backend '{name}' is not installed",
                details={'available': sorted(available)}
            )
    else:
        entry_point = available[sorted(available)[0]]

    try:
        backend_class = entry_point.load()
    except Exception as e:
        raise EngineUnavailable(f"Audio backend '{entry_point.name}' failed to load: {e}")

    logger.debug(f"Using audio backend '{entry_point.name}'")
    return backend_class


def create_engine_adapter(settings: Settings, sink: EventSink) -> LocalEngineAdapter:
    """
    Build the engine adapter from configuration

    Raises:
        EngineUnavailable: If local playback is disabled or no backend is installed
    """
    if not settings.engine.enabled:
        raise EngineUnavailable("Local playback is disabled (engine.enabled is false)")

    backend_class = load_backend(settings.engine.backend)
    return LocalEngineAdapter(
        backend_factory=backend_class,
        sink=sink,
        ack_timeout=settings.engine.ack_timeout,
        device=settings.engine.device,
        bitrate=settings.engine.bitrate,
        normalize_volume=settings.engine.normalize_volume,
        cache_path=str(settings.get_engine_cache_path()),
        cache_size=parse_size(str(settings.engine.cache_size)),
        initial_volume=settings.engine.initial_volume,
    )
