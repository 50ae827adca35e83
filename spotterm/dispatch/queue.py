"""
Intent queue between producers and the dispatcher

Producers (input loop, poll timer, engine event sink) call submit() from any
thread and never block. The single consumer, the dispatcher, awaits get()
on its event loop.

Superseding intents are coalesced on submit: pending instances of the same
type are removed before the new one is appended, so a burst of seeks or
volume changes executes once with the latest value.
"""

import asyncio
import threading
from collections import deque
from typing import Deque, List, Optional

from ..utils.logger import get_logger
from .intents import Intent


logger = get_logger(__name__)


class IntentQueue:
    """
    Thread-safe FIFO with coalescing

    Attributes:
        coalesced: Number of pending intents dropped because a newer
            instance of the same superseding type arrived
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Deque[Intent] = deque()
        self._closed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self.coalesced = 0

    def submit(self, intent: Intent) -> bool:
        """
        Enqueue an intent

        Returns:
            False if the queue is closed (dispatcher shutting down)
        """
        with self._lock:
            if self._closed:
                logger.debug(f"Queue closed, dropping {intent.name}")
                return False
            if intent.superseding:
                intent_type = type(intent)
                before = len(self._items)
                self._items = deque(item for item in self._items if type(item) is not intent_type)
                self.coalesced += before - len(self._items)
            self._items.append(intent)
            loop, wakeup = self._loop, self._wakeup

        self._notify(loop, wakeup)
        return True

    async def get(self) -> Optional[Intent]:
        """
        Wait for the next intent

        Returns:
            The oldest pending intent, or None once the queue is closed
        """
        while True:
            with self._lock:
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    return None
                if self._wakeup is None:
                    self._loop = asyncio.get_running_loop()
                    self._wakeup = asyncio.Event()
                self._wakeup.clear()
                wakeup = self._wakeup
            await wakeup.wait()

    def close(self) -> List[Intent]:
        """
        Stop accepting intents

        Returns:
            Pending intents that will never run
        """
        with self._lock:
            self._closed = True
            discarded = list(self._items)
            self._items.clear()
            loop, wakeup = self._loop, self._wakeup

        self._notify(loop, wakeup)
        return discarded

    def pending(self) -> List[Intent]:
        with self._lock:
            return list(self._items)

    def empty(self) -> bool:
        with self._lock:
            return not self._items

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @staticmethod
    def _notify(loop: Optional[asyncio.AbstractEventLoop], wakeup: Optional[asyncio.Event]) -> None:
        if loop is None or wakeup is None:
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # loop already closed; nobody is waiting
            pass
