"""Typed payloads carried over the match channel and the matchmaker."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import DecodeError

BOARD_SIZE = 9

# Winner values
NO_WINNER = 0
WINNER_X = 1
WINNER_O = 2
DRAW = 3


def _load_object(data: bytes) -> Dict[str, Any]:
    try:
        obj = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Invalid JSON body: {e}") from e
    if not isinstance(obj, dict):
        raise DecodeError("JSON body must be an object")
    return obj


def _int_field(obj: Dict[str, Any], key: str, default: Optional[int] = 0) -> Optional[int]:
    value = obj.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"Field '{key}' must be an integer, got {value!r}")
    return value


def _str_field(obj: Dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise DecodeError(f"Field '{key}' must be a string, got {value!r}")
    return value


def _user_id(presence: Any, key: str) -> str:
    """user_id of a presence object; absent presence means ''."""
    if presence is None:
        return ''
    if not isinstance(presence, dict):
        raise DecodeError(f"Field '{key}' must be an object, got {presence!r}")
    return _str_field(presence, 'user_id')


def _int_list(value: Any, key: str) -> Tuple[int, ...]:
    if not isinstance(value, list):
        raise DecodeError(f"Field '{key}' must be a list")
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise DecodeError(f"Field '{key}' must contain integers, got {item!r}")
    return tuple(value)


@dataclass(frozen=True)
class StateMessage:
    """Authoritative board snapshot pushed by the server.

    board: 9 cells, 0 empty / 1 X / 2 O
    next: whose turn, 1 X / 2 O
    winner: 0 none / 1 X / 2 O / 3 draw
    winning_line: 3 cell indices, only when someone won
    deadline_tick: server tick at which the current turn times out
    seat_you: 0 or 1, the local participant's seat
    """
    board: Tuple[int, ...]
    next: int = 0
    winner: int = NO_WINNER
    winning_line: Optional[Tuple[int, int, int]] = None
    deadline_tick: Optional[int] = None
    seat_you: int = 0

    @property
    def is_over(self) -> bool:
        return self.winner != NO_WINNER

    @property
    def is_draw(self) -> bool:
        return self.winner == DRAW

    @property
    def has_winning_line(self) -> bool:
        return self.winning_line is not None

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'StateMessage':
        if 'board' not in obj:
            raise DecodeError("State message has no board")
        board = _int_list(obj['board'], 'board')
        if len(board) != BOARD_SIZE:
            raise DecodeError(f"Board must have {BOARD_SIZE} cells, got {len(board)}")
        if any(cell not in (0, 1, 2) for cell in board):
            raise DecodeError(f"Board contains an unknown mark: {board}")

        # An empty list means "no line", same as an absent field.
        winning_line = None
        raw_line = obj.get('winning_line')
        if raw_line:
            line = _int_list(raw_line, 'winning_line')
            if len(line) != 3 or any(not 0 <= i < BOARD_SIZE for i in line):
                raise DecodeError(f"Invalid winning line: {raw_line!r}")
            winning_line = line

        return cls(
            board=board,
            next=_int_field(obj, 'next'),
            winner=_int_field(obj, 'winner'),
            winning_line=winning_line,
            deadline_tick=_int_field(obj, 'deadline_tick', None),
            seat_you=_int_field(obj, 'seat_you'),
        )

    @classmethod
    def from_json(cls, data: bytes) -> 'StateMessage':
        return cls.from_dict(_load_object(data))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'board': list(self.board),
            'next': self.next,
            'winner': self.winner,
            'seat_you': self.seat_you,
        }
        if self.winning_line is not None:
            data['winning_line'] = list(self.winning_line)
        if self.deadline_tick is not None:
            data['deadline_tick'] = self.deadline_tick
        return data


@dataclass(frozen=True)
class ErrorMessage:
    """Server-side error report. Informational only."""
    code: str = ""
    message: str = ""

    @classmethod
    def from_json(cls, data: bytes) -> 'ErrorMessage':
        obj = _load_object(data)
        code = obj.get('code', '')
        message = obj.get('message', '')
        if not isinstance(message, str):
            raise DecodeError(f"Error message must be a string, got {message!r}")
        return cls(code=str(code) if code is not None else '', message=message)


@dataclass(frozen=True)
class PlayerAction:
    """Client move: the cell index to mark."""
    index: int

    def to_json(self) -> bytes:
        return json.dumps({'index': self.index}).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'PlayerAction':
        obj = _load_object(data)
        if 'index' not in obj:
            raise DecodeError("Action has no index")
        return cls(index=_int_field(obj, 'index'))


@dataclass(frozen=True)
class MatchData:
    """Raw match-channel payload before op code dispatch."""
    match_id: str
    op_code: int
    data: bytes

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'MatchData':
        op_code = payload.get('op_code')
        if isinstance(op_code, bool) or not isinstance(op_code, int):
            raise DecodeError(f"Match data has no integer op code: {op_code!r}")
        body = payload.get('data') or ''
        if not isinstance(body, str):
            raise DecodeError("Match data body must be a string")
        return cls(
            match_id=_str_field(payload, 'match_id'),
            op_code=op_code,
            data=body.encode('utf-8'),
        )


@dataclass(frozen=True)
class MatchHandle:
    """The match this client is currently joined to."""
    match_id: str
    self_user_id: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'MatchHandle':
        match_id = _str_field(payload, 'match_id')
        if not match_id:
            raise DecodeError("Join reply has no match id")
        return cls(match_id=match_id, self_user_id=_user_id(payload.get('self'), 'self'))


@dataclass(frozen=True)
class MatchmakerMatched:
    """Match descriptor handed out by the matchmaker."""
    ticket: str
    match_id: str = ""
    token: str = ""
    users: Tuple[str, ...] = field(default_factory=tuple)
    self_user_id: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'MatchmakerMatched':
        ticket = _str_field(payload, 'ticket')
        if not ticket:
            raise DecodeError("Matchmaker result has no ticket")

        users = payload.get('users')
        if users is None:
            users = []
        if not isinstance(users, list):
            raise DecodeError(f"Field 'users' must be a list, got {users!r}")

        return cls(
            ticket=ticket,
            match_id=_str_field(payload, 'match_id'),
            token=_str_field(payload, 'token'),
            users=tuple(_user_id(u, 'users') for u in users),
            self_user_id=_user_id(payload.get('self'), 'self'),
        )
