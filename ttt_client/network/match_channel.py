"""Match channel: join/leave, send moves, decode server pushes by op code."""

import logging
from typing import Optional

from ..config import GameConfig
from ..events import Signal
from ..settings import LAST_MATCH_ID_KEY, Preferences
from .connection import Connection
from .errors import DecodeError, NetworkError, NotConnected
from .models import ErrorMessage, MatchData, MatchHandle, MatchmakerMatched, PlayerAction, StateMessage
from .transport import TransportSession

logger = logging.getLogger(__name__)


class MatchChannel:
    """Tracks the joined match and turns match data into typed notifications.

    Signals:
        joined(), left()
        state_received(StateMessage), game_over(StateMessage)
        server_error(ErrorMessage), client_error(str)
        dropped(MatchHandle) - handle torn down because the socket closed

    The last joined match id is persisted and survives `leave()`, drops and
    restarts; only `clear_last_match_cache()` removes it.
    """

    def __init__(self, transport: TransportSession, prefs: Preferences, config: GameConfig):
        self._transport = transport
        self._prefs = prefs
        self._config = config

        self.current_match: Optional[MatchHandle] = None
        self._hooked: Optional[Connection] = None

        self.joined = Signal('joined')
        self.left = Signal('left')
        self.state_received = Signal('state_received')
        self.game_over = Signal('game_over')
        self.server_error = Signal('server_error')
        self.client_error = Signal('client_error')
        self.dropped = Signal('dropped')

        transport.connection_created.connect(self.hook_socket)
        transport.disconnected.connect(self._on_transport_disconnected)
        if transport.connection is not None:
            self.hook_socket(transport.connection)

    @property
    def last_match_id(self) -> Optional[str]:
        return self._prefs.get(LAST_MATCH_ID_KEY) or None

    @property
    def self_user_id(self) -> str:
        return self.current_match.self_user_id if self.current_match else ""

    @property
    def is_joined(self) -> bool:
        return self.current_match is not None

    # =========================================================================
    # SOCKET HOOKS
    # =========================================================================

    def hook_socket(self, connection: Connection):
        """Listen for match data on this connection only."""
        if connection is self._hooked:
            return
        self.unhook_socket()
        connection.received_match_data.connect(self._on_match_data)
        self._hooked = connection

    def unhook_socket(self):
        if self._hooked is not None:
            self._hooked.received_match_data.disconnect(self._on_match_data)
            self._hooked = None

    # =========================================================================
    # JOIN / LEAVE / SEND
    # =========================================================================

    async def join_from_matchmaking(self, matched: MatchmakerMatched) -> bool:
        if matched.token:
            return await self._join(token=matched.token)
        return await self._join(match_id=matched.match_id)

    async def join_by_id(self, match_id: str) -> bool:
        return await self._join(match_id=match_id)

    async def _join(self, match_id: Optional[str] = None, token: Optional[str] = None) -> bool:
        target = match_id or 'from matchmaker'
        connection = self._transport.connection
        try:
            if connection is None or not connection.is_connected:
                raise NotConnected("Socket is not connected.")
            handle = await connection.join_match(match_id=match_id, token=token)
        except NetworkError as e:
            # Keep last_match_id, the match may still exist server-side
            logger.warning(f"Join {target} failed: {e}")
            self.client_error.emit(str(e))
            return False

        self._set_current_match(handle)
        return True

    def _set_current_match(self, handle: MatchHandle):
        self.current_match = handle
        self._prefs.set(LAST_MATCH_ID_KEY, handle.match_id)
        logger.info(f"Joined match {handle.match_id} as {handle.self_user_id}")
        self.joined.emit()

    async def leave(self):
        """Best-effort leave. Fires `left` once; no-op when not joined."""
        handle = self.current_match
        if handle is None:
            return
        self.current_match = None

        connection = self._transport.connection
        try:
            if connection is not None and connection.is_connected:
                await connection.leave_match(handle.match_id)
        except NetworkError as e:
            logger.warning(f"Leave error: {e}")
        finally:
            logger.info(f"Left match {handle.match_id}")
            self.left.emit()

    async def send_action(self, index: int) -> bool:
        """Send a move. Not retried; the next state push tells what happened."""
        handle = self.current_match
        if handle is None:
            self.client_error.emit("Not in a match.")
            return False

        connection = self._transport.connection
        try:
            if connection is None or not connection.is_connected:
                raise NotConnected("Socket is not connected.")
            await connection.send_match_state(
                handle.match_id, self._config.op_action, PlayerAction(index).to_json())
        except NetworkError as e:
            self.client_error.emit(f"Send action failed: {e}")
            return False
        return True

    def clear_last_match_cache(self):
        """Forget the last match so rejoin never targets a finished game."""
        if self._prefs.has(LAST_MATCH_ID_KEY):
            logger.info(f"Clearing last match {self.last_match_id}")
        self._prefs.delete(LAST_MATCH_ID_KEY)

    # =========================================================================
    # INBOUND
    # =========================================================================

    def _on_match_data(self, data: MatchData):
        op = data.op_code
        try:
            if op == self._config.op_state:
                message, signal = StateMessage.from_json(data.data), self.state_received
            elif op == self._config.op_game_over:
                message, signal = StateMessage.from_json(data.data), self.game_over
            elif op == self._config.op_error:
                message, signal = ErrorMessage.from_json(data.data), self.server_error
            else:
                logger.debug(f"Ignoring match data with unknown op code {op}")
                return
        except DecodeError as e:
            logger.warning(f"Parse error for op code {op}: {e}")
            return

        signal.emit(message)

    def _on_transport_disconnected(self):
        self.unhook_socket()
        handle = self.current_match
        if handle is not None:
            self.current_match = None
            logger.warning(f"Lost match {handle.match_id} with the connection")
            self.dropped.emit(handle)
