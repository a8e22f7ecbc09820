"""Client configuration: server defaults, matchmaking, op codes, rejoin timing.

Kept local (not fetched from the server) so the client always boots with sane
defaults. A JSON file can override any field:

    {"default_host": "play.example.com", "rejoin_timeout_seconds": 4}
"""

import json
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class GameConfig:
    """All tunables of the client."""

    # Server
    default_host: str = "127.0.0.1"
    default_port: int = 7350
    server_key: str = "defaultkey"
    use_tls: bool = False
    certfile: Optional[str] = None  # For certificate pinning

    # Matchmaking
    matchmaking_query: str = ""
    min_count: int = 2
    max_count: int = 2
    matchmaking_properties: Dict[str, str] = field(
        default_factory=lambda: {"engine": "python"})

    # Gameplay (mirror server values)
    turn_timeout_seconds: int = 10
    tick_rate: int = 5  # Server ticks per second, used for deadline_tick

    # Match type / op codes (keep in sync with the server)
    match_name: str = "tictactoe"
    op_state: int = 1      # server -> clients
    op_action: int = 2     # client -> server
    op_error: int = 3      # server -> client
    op_game_over: int = 4  # server -> clients

    # Rejoin behaviour
    rejoin_enabled: bool = True
    rejoin_timeout_seconds: float = 6.0
    rejoin_interval_seconds: float = 0.3
    rejoin_on_drop: bool = True

    # Transport timing
    connect_timeout: float = 10.0
    request_timeout: float = 10.0
    ping_interval: float = 5.0
    dispatch_interval: float = 1 / 60

    def seconds_remaining_from_deadline(self, deadline_tick: int, current_tick: int) -> float:
        """Seconds left until a server deadline, given the current server tick."""
        ticks_left = max(0, deadline_tick - current_tick)
        return ticks_left / max(1, self.tick_rate)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GameConfig':
        """Build a config from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Optional[Union[str, Path]] = None) -> GameConfig:
    """Load config from a JSON file merged over defaults.

    A missing or unreadable file yields the defaults.
    """
    if path is None:
        return GameConfig()

    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            saved = json.load(f)
    except FileNotFoundError:
        logger.info(f"Config file not found at {path}, using defaults")
        return GameConfig()
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to load config from {path}: {e}")
        return GameConfig()

    if not isinstance(saved, dict):
        logger.warning(f"Config file {path} is not a JSON object, using defaults")
        return GameConfig()

    config = GameConfig.from_dict(saved)
    logger.info(f"Config loaded from {path}")
    return config
