"""Pytest fixtures and fake collaborators for client testing."""
import asyncio
import json
import time
from typing import Dict, List, Optional, Tuple

import pytest

from ttt_client.app import GameClient
from ttt_client.config import GameConfig
from ttt_client.dispatcher import Dispatcher
from ttt_client.settings import Preferences
from ttt_client.network.connection import Connection
from ttt_client.network.errors import AuthError, ServerError, SocketError
from ttt_client.network.match_channel import MatchChannel
from ttt_client.network.matchmaking import Matchmaker
from ttt_client.network.models import MatchData, MatchHandle, MatchmakerMatched
from ttt_client.network.rejoin import RejoinCoordinator
from ttt_client.network.session import Session
from ttt_client.network.transport import TransportSession


# =============================================================================
# FAKE SERVER SIDE
# =============================================================================

class FakeBackend:
    """Scriptable stand-in for the match server.

    Counters record every call; the *_failures fields make the next N calls
    fail, the fail_* flags make every call fail.
    """

    def __init__(self):
        self.accounts: Dict[str, str] = {}  # device_id -> user_id
        self.matches = {"M1"}

        self.auth_failures = 0
        self.auth_unreachable = False
        self.connect_failures = 0
        self.join_failures = 0
        self.fail_add = False
        self.fail_remove = False
        self.fail_leave = False
        self.fail_send = False
        self.connect_delay = 0.0  # seconds each connect hangs before answering
        self.match_on_add = False  # push MATCHED before the ticket reply

        self.auth_calls = 0
        self.connect_times: List[float] = []
        self.connections: List['FakeConnection'] = []
        self.tickets: List[str] = []
        self.removed: List[str] = []
        self.join_calls: List[Tuple[Optional[str], Optional[str]]] = []
        self.left: List[str] = []
        self.sent: List[Tuple[str, int, bytes]] = []

    @property
    def connect_calls(self) -> int:
        return len(self.connect_times)

    @property
    def live_connections(self) -> List['FakeConnection']:
        return [c for c in self.connections if c.is_connected]

    @property
    def network_calls(self) -> int:
        return (self.auth_calls + self.connect_calls + len(self.join_calls)
                + len(self.tickets) + len(self.left) + len(self.sent))

    def client_factory(self, host: str, port: int) -> 'FakeAuthClient':
        return FakeAuthClient(self, host, port)

    def connection_factory(self, host: str, port: int, dispatch=None) -> 'FakeConnection':
        conn = FakeConnection(self, host, port, dispatch)
        self.connections.append(conn)
        return conn


class FakeAuthClient:
    def __init__(self, backend: FakeBackend, host: str, port: int):
        self.backend = backend
        self.host = host
        self.port = port

    async def authenticate_device(self, device_id: str, create: bool = True,
                                  username: Optional[str] = None) -> Session:
        self.backend.auth_calls += 1
        if self.backend.auth_unreachable:
            raise SocketError(f"Cannot reach {self.host}:{self.port}")
        if self.backend.auth_failures > 0:
            self.backend.auth_failures -= 1
            raise AuthError("Invalid server key")

        created = device_id not in self.backend.accounts
        user_id = self.backend.accounts.setdefault(
            device_id, f"user-{len(self.backend.accounts) + 1}")
        return Session(token=f"token-{user_id}", user_id=user_id,
                       device_id=device_id, created=created)


class FakeConnection(Connection):
    """In-memory Connection driven by a FakeBackend."""

    def __init__(self, backend: FakeBackend, host: str, port: int, dispatch=None):
        super().__init__(dispatch)
        self.backend = backend
        self.host = host
        self.port = port
        self.session: Optional[Session] = None
        self.used = False
        self.close_calls = 0
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, session: Session):
        self.backend.connect_times.append(time.monotonic())
        if self.backend.connect_delay:
            await asyncio.sleep(self.backend.connect_delay)
        if self.used:
            raise SocketError("Connection objects are single-use, create a new one")
        self.used = True
        if self.backend.connect_failures > 0:
            self.backend.connect_failures -= 1
            raise SocketError("Connection refused")
        self.session = session
        self._connected = True

    async def close(self):
        self.close_calls += 1
        if self._connected:
            self._connected = False
            self._emit(self.closed)

    def drop(self):
        """Simulate the server side going away."""
        self._connected = False
        self._emit(self.closed)

    async def add_matchmaker(self, query, min_count, max_count, properties) -> str:
        if self.backend.fail_add:
            raise SocketError("MATCHMAKER_ADD failed")
        ticket = f"T{len(self.backend.tickets) + 1}"
        self.backend.tickets.append(ticket)
        if self.backend.match_on_add:
            self.push_matched(ticket)
        return ticket

    async def remove_matchmaker(self, ticket: str):
        self.backend.removed.append(ticket)
        if self.backend.fail_remove:
            raise SocketError("MATCHMAKER_REMOVE timed out")

    async def join_match(self, match_id=None, token=None) -> MatchHandle:
        self.backend.join_calls.append((match_id, token))
        if self.backend.join_failures > 0:
            self.backend.join_failures -= 1
            raise SocketError("MATCH_JOIN timed out")
        if token:
            match_id = token.split(':', 1)[-1]
        if match_id not in self.backend.matches:
            raise ServerError("not_found", "Match not found")
        return MatchHandle(match_id=match_id, self_user_id=self.session.user_id)

    async def leave_match(self, match_id: str):
        self.backend.left.append(match_id)
        if self.backend.fail_leave:
            raise SocketError("MATCH_LEAVE failed")

    async def send_match_state(self, match_id: str, op_code: int, data: bytes):
        if self.backend.fail_send:
            raise SocketError("Connection reset")
        self.backend.sent.append((match_id, op_code, data))

    def push(self, op_code: int, body, match_id: str = "M1"):
        """Deliver match data as the server would."""
        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode('utf-8')
        self._emit(self.received_match_data, MatchData(match_id, op_code, body))

    def push_matched(self, ticket: str, match_id: str = "M1"):
        self._emit(self.received_matchmaker_matched, MatchmakerMatched(
            ticket=ticket, match_id=match_id, token=f"mm:{match_id}"))


def state_body(board=None, next=1, winner=0, winning_line=None, deadline_tick=None, seat_you=0):
    """StateMessage JSON body as the server sends it."""
    body = {
        'board': board if board is not None else [0] * 9,
        'next': next,
        'winner': winner,
        'seat_you': seat_you,
    }
    if winning_line is not None:
        body['winning_line'] = winning_line
    if deadline_tick is not None:
        body['deadline_tick'] = deadline_tick
    return body


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def config() -> GameConfig:
    return GameConfig()


@pytest.fixture
def prefs(tmp_path) -> Preferences:
    return Preferences(tmp_path / "prefs.json")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def transport(config, prefs, backend) -> TransportSession:
    """Transport with direct (undispatched) notifications."""
    return TransportSession(
        config, prefs,
        client_factory=backend.client_factory,
        connection_factory=backend.connection_factory,
    )


@pytest.fixture
def matchmaker(transport, config) -> Matchmaker:
    return Matchmaker(transport, config)


@pytest.fixture
def channel(transport, prefs, config) -> MatchChannel:
    return MatchChannel(transport, prefs, config)


@pytest.fixture
def coordinator(transport, channel, config) -> RejoinCoordinator:
    return RejoinCoordinator(transport, channel, config)


@pytest.fixture
def client(config, prefs, backend) -> GameClient:
    """GameClient whose notifications go through its Dispatcher."""
    return GameClient(
        config, prefs, Dispatcher(),
        client_factory=backend.client_factory,
        connection_factory=backend.connection_factory,
    )


@pytest.fixture
def recorder():
    """Factory that records every emission of a Signal.

    Usage:
        calls = recorder(transport.connected)
        ...
        assert calls == [()]
    """
    def _record(signal) -> list:
        calls = []
        signal.connect(lambda *args: calls.append(args))
        return calls
    return _record
