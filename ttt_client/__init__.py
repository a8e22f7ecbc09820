"""Realtime tic-tac-toe match client: session, matchmaking and rejoin."""

from .config import GameConfig, load_config
from .dispatcher import Dispatcher
from .events import Signal
from .settings import Preferences
from .app import GameClient, SearchStatus
