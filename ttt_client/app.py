"""Game client - wires transport, matchmaking, match channel and rejoin.

This is the one object a presentation layer talks to. It owns every
component (no globals), drives the dispatch queue, and re-exposes the
notifications a UI needs:

    client = GameClient(config, Preferences())
    client.state_received.connect(board_view.show)
    client.notice.connect(toasts.show)
    await client.connect('127.0.0.1')
    await client.play()
"""

import asyncio
import logging
from enum import Enum, auto
from typing import Callable, Optional, Set

from .config import GameConfig
from .dispatcher import Dispatcher
from .events import Signal
from .settings import LAST_HOST_KEY, Preferences
from .network.match_channel import MatchChannel
from .network.matchmaking import Matchmaker
from .network.models import BOARD_SIZE, MatchHandle, MatchmakerMatched, StateMessage
from .network.rejoin import RejoinCoordinator
from .network.session import AuthClient
from .network.transport import ConnectionFactory, TransportSession

logger = logging.getLogger(__name__)


class SearchStatus(Enum):
    """Matchmaking status reported to the UI."""
    SEARCHING = auto()
    CANCELLED = auto()
    MATCHED = auto()
    FAILED = auto()


class GameClient:
    """Owns the network components and the client-side view of the match."""

    def __init__(
        self,
        config: Optional[GameConfig] = None,
        prefs: Optional[Preferences] = None,
        dispatcher: Optional[Dispatcher] = None,
        client_factory: Optional[Callable[[str, int], AuthClient]] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.config = config or GameConfig()
        self.prefs = prefs or Preferences()
        self.dispatcher = dispatcher or Dispatcher()

        self.transport = TransportSession(
            self.config, self.prefs,
            dispatch=self.dispatcher.enqueue,
            client_factory=client_factory,
            connection_factory=connection_factory,
        )
        self.matchmaker = Matchmaker(self.transport, self.config)
        self.match = MatchChannel(self.transport, self.prefs, self.config)
        self.rejoin = RejoinCoordinator(self.transport, self.match, self.config)

        # Client-side view of the match
        self.your_mark = 0  # 1 X, 2 O, 0 unknown until the first state
        self.can_interact = False
        self.last_state: Optional[StateMessage] = None

        # Collaborator surface
        self.connection_changed = Signal('connection_changed')
        self.search_status_changed = Signal('search_status_changed')
        self.match_joined = Signal('match_joined')
        self.match_left = Signal('match_left')
        self.state_received = Signal('state_received')
        self.game_over = Signal('game_over')
        self.server_error = Signal('server_error')
        self.client_error = Signal('client_error')
        self.rejoin_result = Signal('rejoin_result')
        self.highlight_line = Signal('highlight_line')
        self.highlights_cleared = Signal('highlights_cleared')
        self.notice = Signal('notice')

        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._wire()

    def _wire(self):
        self.transport.connected.connect(self._on_connected)
        self.transport.disconnected.connect(self._on_disconnected)
        self.transport.error.connect(lambda e: self.client_error.emit(f"Error: {e}"))

        self.matchmaker.searching.connect(
            lambda: self.search_status_changed.emit(SearchStatus.SEARCHING))
        self.matchmaker.cancelled.connect(
            lambda: self.search_status_changed.emit(SearchStatus.CANCELLED))
        self.matchmaker.error.connect(self._on_search_error)
        self.matchmaker.matched.connect(self._on_matched)

        self.match.joined.connect(self._on_joined)
        self.match.left.connect(self._on_left)
        self.match.state_received.connect(self._on_state)
        self.match.game_over.connect(self._on_game_over)
        self.match.server_error.connect(self.server_error.emit)
        self.match.client_error.connect(self.client_error.emit)
        self.match.dropped.connect(self._on_match_dropped)

        self.rejoin.result.connect(self.rejoin_result.emit)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    @property
    def is_your_turn(self) -> bool:
        state = self.last_state
        return (state is not None and not state.is_over
                and self.your_mark != 0 and state.next == self.your_mark)

    def default_host(self) -> str:
        return self.prefs.get(LAST_HOST_KEY) or self.config.default_host

    async def connect(self, host: Optional[str] = None) -> bool:
        """Connect, then try to rejoin the last match."""
        self._closing = False
        if not await self.transport.connect(host or self.default_host()):
            return False
        await self.rejoin.try_rejoin()
        return True

    async def play(self) -> bool:
        """Start looking for an opponent."""
        return await self.matchmaker.start_search()

    async def cancel_search(self):
        await self.matchmaker.cancel()

    async def retry_rejoin(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        return await self.rejoin.try_rejoin(cancel_event)

    async def leave(self):
        """User leaves the match; it will not be rejoined."""
        self.match.clear_last_match_cache()
        await self.match.leave()

    async def select_cell(self, index: int) -> bool:
        """Send a move if input is allowed and it is our turn."""
        if not self.can_interact:
            return False
        if not 0 <= index < BOARD_SIZE:
            self.client_error.emit(f"Invalid cell {index}.")
            return False

        state = self.last_state
        if self.your_mark != 0 and state is not None and state.next != 0 \
                and state.next != self.your_mark:
            self.notice.emit("Not your turn.")
            return False
        return await self.match.send_action(index)

    def turn_seconds_remaining(self, current_tick: Optional[int] = None) -> float:
        """Countdown for the current turn."""
        state = self.last_state
        if state is not None and state.deadline_tick is not None and current_tick is not None:
            return self.config.seconds_remaining_from_deadline(state.deadline_tick, current_tick)
        return float(self.config.turn_timeout_seconds)

    def outcome(self, state: StateMessage) -> str:
        """'draw', 'won' or 'lost' for a finished game."""
        if state.is_draw:
            return 'draw'
        if self.your_mark != 0 and state.winner == self.your_mark:
            return 'won'
        return 'lost'

    def poll(self) -> int:
        """Run queued network callbacks. Call once per tick on the logic thread."""
        return self.dispatcher.drain()

    async def run_dispatch_loop(self, stop: asyncio.Event):
        """Drain the dispatch queue every tick until `stop` is set."""
        while not stop.is_set():
            self.poll()
            await asyncio.sleep(self.config.dispatch_interval)
        self.poll()

    async def close(self):
        """Stop rejoining, drop the ticket and close the socket."""
        self._closing = True
        self.rejoin.cancel()
        if self.matchmaker.is_searching:
            await self.matchmaker.cancel()
        await self.transport.disconnect()

        tasks = [t for t in self._tasks if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # HANDLERS (logic thread)
    # =========================================================================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def _on_connected(self):
        self.connection_changed.emit(True)
        self.notice.emit("Connected.")

    def _on_disconnected(self):
        self.connection_changed.emit(False)
        self.notice.emit("Disconnected.")

    def _on_search_error(self, message: str):
        self.search_status_changed.emit(SearchStatus.FAILED)
        self.client_error.emit(message)

    def _on_matched(self, matched: MatchmakerMatched):
        self.search_status_changed.emit(SearchStatus.MATCHED)
        self._spawn(self._join_matched(matched))

    async def _join_matched(self, matched: MatchmakerMatched):
        self.your_mark = 0
        self.last_state = None
        await self.match.join_from_matchmaking(matched)

    def _on_joined(self):
        self.can_interact = True
        self.notice.emit("Joined match.")
        self.match_joined.emit()

    def _on_left(self):
        self.can_interact = False
        self.your_mark = 0
        self.last_state = None
        self.notice.emit("Left match.")
        self.match_left.emit()

    def _apply_state(self, state: StateMessage):
        self.last_state = state

        # seat 0 => X(1), seat 1 => O(2)
        if self.your_mark == 0 and state.seat_you in (0, 1):
            self.your_mark = 1 if state.seat_you == 0 else 2

        if state.winning_line is not None:
            self.highlight_line.emit(list(state.winning_line))
        else:
            self.highlights_cleared.emit()

        self.can_interact = not state.is_over

    def _on_state(self, state: StateMessage):
        self._apply_state(state)
        self.state_received.emit(state)

    def _on_game_over(self, state: StateMessage):
        self._apply_state(state)
        self.can_interact = False

        result = self.outcome(state)
        if result == 'draw':
            self.notice.emit("Draw!")
        elif result == 'won':
            self.notice.emit("You won!")
        else:
            self.notice.emit("You lost.")
        self.game_over.emit(state)

        # Prevent rejoin of a finished match, then leave (safe if already closed)
        self.match.clear_last_match_cache()
        self._spawn(self.match.leave())

    def _on_match_dropped(self, handle: MatchHandle):
        self.can_interact = False
        if self._closing or not self.config.rejoin_on_drop:
            return
        logger.info(f"Connection dropped during match {handle.match_id}, rejoining")
        self._spawn(self.rejoin.try_rejoin())
