"""Network module: session, socket, matchmaking, match channel and rejoin."""

from .errors import (
    NetworkError, AuthError, SocketError, NotConnected, NoSession, DecodeError, ServerError,
)
from .protocol import MessageType, Message, FrameReader
from .models import (
    StateMessage, ErrorMessage, PlayerAction, MatchData, MatchHandle, MatchmakerMatched,
)
from .session import Session, AuthClient
from .connection import Connection, ConnectionState, SocketConnection
from .transport import TransportSession
from .matchmaking import Matchmaker
from .match_channel import MatchChannel
from .rejoin import RejoinCoordinator
