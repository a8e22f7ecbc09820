"""Network protocol: message types, framing, serialization.

Wire format:
    [4-byte big-endian length][JSON payload]

Message envelope:
    {
        "type": "HELLO" | "MATCH_JOIN" | "MATCH_DATA" | "ERROR" | ...,
        "cid": "7",            (request correlation id, echoed by the reply)
        "payload": { ... }     (type-specific data)
    }
"""

import asyncio
import json
import struct
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional

from .errors import DecodeError, SocketError


class MessageType(Enum):
    """Network message types."""
    # Authentication (short-lived connection)
    AUTHENTICATE = auto()        # Client → Server: device id auth
    SESSION = auto()             # Server → Client: session token

    # Socket handshake
    HELLO = auto()               # Client → Server: session token
    WELCOME = auto()             # Server → Client: handshake accepted

    # Matchmaking
    MATCHMAKER_ADD = auto()      # Client → Server: open a ticket
    MATCHMAKER_TICKET = auto()   # Server → Client: ticket id
    MATCHMAKER_REMOVE = auto()   # Client → Server: retract a ticket
    MATCHMAKER_MATCHED = auto()  # Server → Client: opponent found

    # Match
    MATCH_JOIN = auto()          # Client → Server: join by id or matchmaker token
    MATCH_JOINED = auto()        # Server → Client: joined, here's your presence
    MATCH_LEAVE = auto()         # Client → Server: leave match
    MATCH_DATA = auto()          # Both ways: op code + JSON body

    # Health
    PING = auto()                # Client → Server: keepalive
    PONG = auto()                # Server → Client: keepalive response

    # Replies
    ACK = auto()                 # Server → Client: request accepted, no data
    ERROR = auto()               # Server → Client: request rejected


@dataclass
class Message:
    """Network message envelope."""
    type: MessageType
    cid: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        """Serialize message to bytes with length prefix."""
        data = {
            'type': self.type.name,
            'cid': self.cid,
            'payload': self.payload,
        }
        json_bytes = json.dumps(data, ensure_ascii=False).encode('utf-8')
        return LENGTH_PREFIX.pack(len(json_bytes)) + json_bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Message':
        """Deserialize message from JSON bytes (without length prefix)."""
        try:
            obj = json.loads(data.decode('utf-8'))
            msg_type = MessageType[obj['type']]
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError, KeyError) as e:
            raise DecodeError(f"Malformed envelope: {e}") from e

        payload = obj.get('payload') or {}
        if not isinstance(payload, dict):
            raise DecodeError("Envelope payload must be an object")
        cid = obj.get('cid')
        return cls(
            type=msg_type,
            cid=str(cid) if cid is not None else None,
            payload=payload,
        )


# =============================================================================
# FRAMING - length prefix over a TCP byte stream
# =============================================================================

LENGTH_PREFIX = struct.Struct('>I')
MAX_FRAME_SIZE = 1024 * 1024


class FrameReader:
    """Reassembles length-prefixed frames from arbitrary socket reads.

    Bytes past the last complete frame stay buffered until the next feed().
    A declared length above MAX_FRAME_SIZE is treated as a broken stream.
    """

    def __init__(self, max_size: int = MAX_FRAME_SIZE):
        self.max_size = max_size
        self._pending = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._pending)

    def feed(self, data: bytes):
        self._pending += data

    def get_frame(self) -> Optional[bytes]:
        if len(self._pending) < LENGTH_PREFIX.size:
            return None

        (size,) = LENGTH_PREFIX.unpack_from(self._pending)
        if size > self.max_size:
            raise SocketError(f"Frame too large: {size} bytes")

        end = LENGTH_PREFIX.size + size
        if len(self._pending) < end:
            return None
        body = bytes(self._pending[LENGTH_PREFIX.size:end])
        del self._pending[:end]
        return body

    def get_message(self) -> Optional[Message]:
        body = self.get_frame()
        return None if body is None else Message.from_bytes(body)


async def read_message(reader: asyncio.StreamReader, frame_reader: FrameReader) -> Message:
    """Receive a single message, keeping any extra bytes in frame_reader."""
    msg = frame_reader.get_message()
    if msg:
        return msg

    while True:
        data = await reader.read(4096)
        if not data:
            raise SocketError("Connection closed")

        frame_reader.feed(data)
        msg = frame_reader.get_message()
        if msg:
            return msg


# =============================================================================
# MESSAGE BUILDERS - convenience functions for creating messages
# =============================================================================

def msg_authenticate(device_id: str, server_key: str, create: bool = True,
                     username: Optional[str] = None) -> Message:
    """Device authentication request."""
    payload = {
        'device_id': device_id,
        'server_key': server_key,
        'create': create,
    }
    if username:
        payload['username'] = username
    return Message(type=MessageType.AUTHENTICATE, payload=payload)


def msg_hello(token: str) -> Message:
    """Socket handshake carrying the session token."""
    return Message(type=MessageType.HELLO, payload={'token': token})


def msg_ping() -> Message:
    """Keepalive ping."""
    return Message(type=MessageType.PING)


def msg_matchmaker_add(query: str, min_count: int, max_count: int,
                       properties: Dict[str, str]) -> Message:
    """Open a matchmaking ticket."""
    return Message(
        type=MessageType.MATCHMAKER_ADD,
        payload={
            'query': query,
            'min_count': min_count,
            'max_count': max_count,
            'string_properties': dict(properties),
        }
    )


def msg_matchmaker_remove(ticket: str) -> Message:
    """Retract a matchmaking ticket."""
    return Message(type=MessageType.MATCHMAKER_REMOVE, payload={'ticket': ticket})


def msg_match_join(match_id: Optional[str] = None, token: Optional[str] = None) -> Message:
    """Join a match by id, or by the token handed out by the matchmaker."""
    payload = {}
    if match_id:
        payload['match_id'] = match_id
    if token:
        payload['token'] = token
    return Message(type=MessageType.MATCH_JOIN, payload=payload)


def msg_match_leave(match_id: str) -> Message:
    """Leave a match."""
    return Message(type=MessageType.MATCH_LEAVE, payload={'match_id': match_id})


def msg_match_data(match_id: str, op_code: int, data: bytes) -> Message:
    """Match data tagged with an op code; data is a UTF-8 JSON body."""
    return Message(
        type=MessageType.MATCH_DATA,
        payload={
            'match_id': match_id,
            'op_code': op_code,
            'data': data.decode('utf-8'),
        }
    )
