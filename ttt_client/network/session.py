"""Session credential and the device authentication round trip."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .connection import create_ssl_context
from .errors import AuthError, DecodeError, SocketError
from .protocol import FrameReader, MessageType, msg_authenticate, read_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Authenticated credential bound to a device identity."""
    token: str
    user_id: str
    device_id: str
    username: str = ""
    created: bool = False  # True if the account was created by this auth

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], device_id: str) -> 'Session':
        token = payload.get('token')
        user_id = payload.get('user_id')
        if not isinstance(token, str) or not isinstance(user_id, str) or not token or not user_id:
            raise DecodeError("Session reply is missing token or user id")
        username = payload.get('username') or ''
        if not isinstance(username, str):
            raise DecodeError(f"Session username must be a string, got {username!r}")
        return cls(
            token=token,
            user_id=user_id,
            device_id=device_id,
            username=username,
            created=bool(payload.get('created', False)),
        )


class AuthClient:
    """Authenticates a device id against the server.

    Uses a short-lived connection: one AUTHENTICATE request, one SESSION reply.
    Authenticating the same device id again returns the same account.
    """

    def __init__(
        self,
        host: str,
        port: int,
        server_key: str,
        use_tls: bool = False,
        certfile: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.server_key = server_key
        self.use_tls = use_tls
        self.certfile = certfile
        self.timeout = timeout

    async def authenticate_device(self, device_id: str, create: bool = True,
                                  username: Optional[str] = None) -> Session:
        try:
            ssl_ctx = create_ssl_context(self.use_tls, self.certfile)
        except OSError as e:
            raise SocketError(f"Cannot load TLS certificate {self.certfile}: {e}") from e

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port, ssl=ssl_ctx),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise SocketError(f"Timed out connecting to {self.host}:{self.port}") from e
        except OSError as e:
            raise SocketError(f"Cannot reach {self.host}:{self.port}: {e}") from e

        try:
            writer.write(msg_authenticate(device_id, self.server_key, create, username).to_bytes())
            await writer.drain()
            msg = await asyncio.wait_for(read_message(reader, FrameReader()), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SocketError("Timed out waiting for authentication") from e
        except OSError as e:
            raise SocketError(f"Authentication request failed: {e}") from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if msg.type == MessageType.SESSION:
            session = Session.from_payload(msg.payload, device_id)
            logger.info(f"Authenticated device as user {session.user_id}"
                        f"{' (new account)' if session.created else ''}")
            return session
        if msg.type == MessageType.ERROR:
            raise AuthError(msg.payload.get('message', 'Authentication failed'))
        raise AuthError(f"Unexpected response: {msg.type.name}")
