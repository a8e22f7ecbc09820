"""Dispatch queue: marshals callbacks from I/O threads onto the logic thread.

Usage:
    dispatcher = Dispatcher()
    # any thread
    dispatcher.enqueue(lambda: handle(msg))
    # logic thread, once per tick
    dispatcher.drain()
"""

import logging
import threading
from queue import Queue, Empty
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Dispatcher:
    """Strict FIFO of deferred actions with a single consumer thread.

    The first thread that drains the queue becomes its owner; draining from
    any other thread afterwards raises RuntimeError.
    """

    def __init__(self):
        self._queue: Queue = Queue()
        self._owner: Optional[int] = None

    def enqueue(self, action: Callable[[], None]):
        """Append an action. Safe to call from any thread."""
        self._queue.put(action)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def owner_thread_id(self) -> Optional[int]:
        return self._owner

    def drain(self) -> int:
        """Run every queued action in enqueue order. Returns how many ran."""
        current = threading.get_ident()
        if self._owner is None:
            self._owner = current
        elif self._owner != current:
            raise RuntimeError("Dispatcher drained from a thread that does not own it")

        count = 0
        while True:
            try:
                action = self._queue.get_nowait()
            except Empty:
                break

            count += 1
            try:
                action()
            except Exception:
                logger.exception("Dispatched action failed")
        return count
