"""Observer primitive used for every notification the client emits."""

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class Signal:
    """A named list of listeners.

    Usage:
        connected = Signal('connected')
        connected.connect(on_connected)
        connected.emit()
        connected.disconnect(on_connected)

    Listeners run synchronously, in subscription order, on the emitting thread.
    A listener is registered at most once; connecting it again is a no-op.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._listeners: List[Callable[..., Any]] = []

    def connect(self, listener: Callable[..., Any]):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def disconnect(self, listener: Callable[..., Any]):
        """Remove a listener. Removing an unknown listener is a no-op."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def is_connected(self, listener: Callable[..., Any]) -> bool:
        return listener in self._listeners

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, *args: Any):
        # Copy so listeners may (dis)connect while being notified
        for listener in list(self._listeners):
            listener(*args)

    def __repr__(self):
        return f"Signal({self.name!r}, listeners={len(self._listeners)})"
