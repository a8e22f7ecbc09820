"""Rejoin coordinator: restore the socket and re-enter the last match."""

import asyncio
import logging
import time
from typing import Callable, Optional

from ..config import GameConfig
from ..events import Signal
from .match_channel import MatchChannel
from .transport import TransportSession

logger = logging.getLogger(__name__)


class RejoinCoordinator:
    """Polls reconnect + join at a fixed interval until success or deadline.

    One attempt runs at a time; a second `try_rejoin` while one is in flight
    waits for the same outcome. Cancellation is cooperative and checked once
    per iteration; a single reconnect or join is cut off at the deadline.
    Each attempt emits `result(bool)` exactly once, even if it raises.
    """

    def __init__(
        self,
        transport: TransportSession,
        channel: MatchChannel,
        config: GameConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._channel = channel
        self._config = config
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

        # Counters for the last attempt
        self.reconnect_attempts = 0
        self.join_attempts = 0

        self.result = Signal('rejoin_result')

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self):
        """Ask the running attempt to stop at its next iteration."""
        self._cancel_requested = True

    async def try_rejoin(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        if not self.is_running:
            self._cancel_requested = False
            self._task = asyncio.ensure_future(self._run(cancel_event))
        return await asyncio.shield(self._task)

    def _cancelled(self, cancel_event: Optional[asyncio.Event]) -> bool:
        return self._cancel_requested or (cancel_event is not None and cancel_event.is_set())

    async def _run(self, cancel_event: Optional[asyncio.Event]) -> bool:
        ok = False
        try:
            ok = await self._rejoin(cancel_event)
        finally:
            self.result.emit(ok)
        return ok

    async def _rejoin(self, cancel_event: Optional[asyncio.Event]) -> bool:
        self.reconnect_attempts = 0
        self.join_attempts = 0

        if not self._config.rejoin_enabled:
            logger.info("Rejoin disabled")
            return False

        match_id = self._channel.last_match_id
        if not match_id:
            logger.debug("No previous match to rejoin")
            return False

        current = self._channel.current_match
        if current is not None and current.match_id == match_id and self._transport.is_connected:
            return True

        timeout = max(1.0, self._config.rejoin_timeout_seconds)
        interval = self._config.rejoin_interval_seconds
        deadline = self._clock() + timeout
        logger.info(f"Trying to rejoin match {match_id} for up to {timeout:.1f}s")

        while self._clock() < deadline and not self._cancelled(cancel_event):
            try:
                # A hung connect or join must not outlive the deadline
                joined = await asyncio.wait_for(
                    self._attempt(match_id), timeout=max(0.0, deadline - self._clock()))
            except asyncio.TimeoutError:
                logger.warning(f"Rejoin attempt for match {match_id} hit the deadline")
                break
            if joined:
                logger.info(f"Rejoined match {match_id} "
                            f"after {self.reconnect_attempts} reconnect attempt(s)")
                return True
            await asyncio.sleep(min(interval, max(0.0, deadline - self._clock())))

        if self._cancelled(cancel_event):
            logger.info(f"Rejoin of match {match_id} cancelled")
        else:
            logger.warning(f"Could not rejoin match {match_id} within {timeout:.1f}s")
        return False

    async def _attempt(self, match_id: str) -> bool:
        """One reconnect (if needed) plus one join."""
        if not self._transport.is_connected:
            self.reconnect_attempts += 1
            if not await self._transport.reconnect_socket():
                return False

        self.join_attempts += 1
        return await self._channel.join_by_id(match_id)
