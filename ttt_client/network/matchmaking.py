"""Matchmaking queue: one outstanding ticket, one matched notification."""

import logging
from typing import Dict, List, Optional

from ..config import GameConfig
from ..events import Signal
from .connection import Connection
from .errors import NetworkError, NotConnected
from .models import MatchmakerMatched
from .transport import TransportSession

logger = logging.getLogger(__name__)


class Matchmaker:
    """Wraps ticket add/remove and exposes the matched notification.

    The matched descriptor is handed on via `matched`; joining is the
    listener's job.
    """

    def __init__(self, transport: TransportSession, config: GameConfig):
        self._transport = transport
        self._config = config

        self.is_searching = False
        self.ticket: Optional[str] = None
        self.last_error: Optional[NetworkError] = None
        self._starting = False
        self._connection: Optional[Connection] = None  # where our listener lives
        self._early: List[MatchmakerMatched] = []  # results seen before the ticket reply

        self.searching = Signal('searching')
        self.cancelled = Signal('cancelled')
        self.matched = Signal('matched')
        self.error = Signal('error')

        transport.disconnected.connect(self._on_transport_disconnected)

    async def start_search(
        self,
        query: Optional[str] = None,
        min_count: Optional[int] = None,
        max_count: Optional[int] = None,
        properties: Optional[Dict[str, str]] = None,
    ) -> bool:
        """Open a ticket. Already searching counts as success."""
        if not self._transport.is_connected:
            self.last_error = NotConnected("Socket is not connected.")
            self.error.emit(str(self.last_error))
            return False
        if self.is_searching or self._starting:
            return True

        query = self._config.matchmaking_query if query is None else query
        min_count = self._config.min_count if min_count is None else min_count
        max_count = self._config.max_count if max_count is None else max_count
        properties = self._config.matchmaking_properties if properties is None else properties

        connection = self._transport.connection
        # Listen before asking: the result can race the ticket reply
        self._connection = connection
        self._early = []
        connection.received_matchmaker_matched.connect(self._on_matched)
        self._starting = True
        try:
            ticket = await connection.add_matchmaker(query, min_count, max_count, properties)
        except NetworkError as e:
            logger.error(f"Matchmaking start failed: {e}")
            self._reset()
            self.last_error = e
            self.error.emit(str(e))
            return False
        finally:
            self._starting = False

        self.ticket = ticket
        self.is_searching = True
        self.last_error = None
        logger.info(f"Searching for a match (ticket {ticket})")
        self.searching.emit()

        early, self._early = self._early, []
        for matched in early:
            self._on_matched(matched)
        return True

    async def cancel(self):
        """Retract the ticket. Always ends not searching and fires `cancelled`."""
        connection = self._connection
        ticket = self.ticket
        if not self.is_searching or ticket is None or connection is None or not connection.is_connected:
            self._reset()
            self.cancelled.emit()
            return

        try:
            await connection.remove_matchmaker(ticket)
        except NetworkError as e:
            # A stale ticket left on the server is acceptable
            logger.warning(f"Matchmaking cancel error: {e}")
        finally:
            self._reset()
            logger.info(f"Matchmaking ticket {ticket} cancelled")
            self.cancelled.emit()

    def _reset(self):
        if self._connection is not None:
            self._connection.received_matchmaker_matched.disconnect(self._on_matched)
            self._connection = None
        self._early = []
        self.ticket = None
        self.is_searching = False

    def _on_matched(self, matched: MatchmakerMatched):
        if self._starting:
            self._early.append(matched)
            return
        if not self.is_searching or matched.ticket != self.ticket:
            logger.debug(f"Ignoring matchmaker result for ticket {matched.ticket}")
            return

        self._reset()
        logger.info(f"Match found for ticket {matched.ticket}")
        self.matched.emit(matched)

    def _on_transport_disconnected(self):
        # Tickets die with the socket that opened them
        if self.is_searching:
            logger.info(f"Socket closed, ticket {self.ticket} dropped")
            self._reset()
            self.cancelled.emit()
