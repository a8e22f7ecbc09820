"""Transport session: authentication plus the single live socket.

Usage:
    transport = TransportSession(config, prefs, dispatch=dispatcher.enqueue)
    transport.connected.connect(on_connected)
    if await transport.connect('127.0.0.1'):
        ...
    await transport.reconnect_socket()  # after a drop, reuses the Session
    await transport.disconnect()
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple

from ..config import GameConfig
from ..events import Signal
from ..settings import LAST_HOST_KEY, Preferences, get_or_create_device_id
from .connection import Connection, ConnectionState, SocketConnection
from .errors import NetworkError, NoSession, SocketError
from .session import AuthClient, Session

logger = logging.getLogger(__name__)

Dispatch = Callable[[Callable[[], None]], None]
ConnectionFactory = Callable[[str, int, Optional[Dispatch]], Connection]


def split_host(host: str, default_port: int) -> Tuple[str, int]:
    """Split 'host' or 'host:port' into its parts."""
    host = host.strip()
    name, sep, port = host.rpartition(':')
    if sep and name and port.isdigit() and (':' not in name or name.startswith('[')):
        return name.strip('[]'), int(port)
    return host, default_port


class TransportSession:
    """Owns the Session and at most one live Connection.

    Every (re)connect builds a fresh Connection; the previous one is detached
    from our close listener before being closed, so a stale socket can never
    report a disconnect.
    """

    def __init__(
        self,
        config: GameConfig,
        prefs: Preferences,
        dispatch: Optional[Dispatch] = None,
        client_factory: Optional[Callable[[str, int], AuthClient]] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.config = config
        self.prefs = prefs
        self._dispatch = dispatch
        self._client_factory = client_factory or self._create_client
        self._connection_factory = connection_factory or self._create_connection

        self.client: Optional[AuthClient] = None
        self.session: Optional[Session] = None
        self.connection: Optional[Connection] = None
        self.host = ""
        self.port = config.default_port
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[NetworkError] = None

        self.connected = Signal('connected')
        self.disconnected = Signal('disconnected')
        self.error = Signal('error')
        # Fired with each fresh Connection before it connects
        self.connection_created = Signal('connection_created')

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected

    def _create_client(self, host: str, port: int) -> AuthClient:
        return AuthClient(
            host, port, self.config.server_key,
            use_tls=self.config.use_tls,
            certfile=self.config.certfile,
            timeout=self.config.connect_timeout,
        )

    def _create_connection(self, host: str, port: int, dispatch: Optional[Dispatch]) -> Connection:
        return SocketConnection(
            host, port,
            use_tls=self.config.use_tls,
            certfile=self.config.certfile,
            dispatch=dispatch,
            connect_timeout=self.config.connect_timeout,
            request_timeout=self.config.request_timeout,
            ping_interval=self.config.ping_interval,
        )

    async def connect(self, host: str) -> bool:
        """Authenticate this device and open a fresh socket."""
        address = host.strip()
        host, port = split_host(address, self.config.default_port)
        self.state = ConnectionState.CONNECTING

        try:
            if not host:
                raise SocketError("No host given")
            client = self._client_factory(host, port)
            device_id = get_or_create_device_id(self.prefs)
            session = await client.authenticate_device(device_id, create=True)

            self.client = client
            self.session = session
            self.host = host
            self.port = port

            await self._open_connection(session)
        except NetworkError as e:
            logger.error(f"Connect to {host}:{port} failed: {e}")
            self.last_error = e
            self.error.emit(str(e))
            await self.disconnect()
            return False

        self.last_error = None
        self.state = ConnectionState.CONNECTED
        self.prefs.set(LAST_HOST_KEY, address)
        logger.info(f"Connected to {host}:{port} as {session.user_id}")
        self.connected.emit()
        return True

    async def reconnect_socket(self) -> bool:
        """Open a fresh socket for the existing Session."""
        if self.is_connected:
            return True

        if self.client is None or self.session is None:
            self.last_error = NoSession("No session, connect first")
            logger.warning(f"Reconnect skipped: {self.last_error}")
            return False

        self.state = ConnectionState.CONNECTING
        try:
            await self._open_connection(self.session)
        except NetworkError as e:
            logger.warning(f"Reconnect failed: {e}")
            self.last_error = e
            await self._drop_connection()
            self.state = ConnectionState.DISCONNECTED
            self.error.emit(str(e))
            return False

        self.last_error = None
        self.state = ConnectionState.CONNECTED
        logger.info(f"Reconnected to {self.host}:{self.port}")
        self.connected.emit()
        return True

    async def disconnect(self):
        """Close the socket. Fires `disconnected` on every call."""
        await self._drop_connection()
        self.state = ConnectionState.DISCONNECTED
        self.disconnected.emit()

    async def _open_connection(self, session: Session) -> Connection:
        """Replace the live Connection with a fresh one and connect it."""
        connection = await self._replace_connection()
        try:
            await connection.connect(session)
        except asyncio.CancelledError:
            logger.info(f"Connect to {self.host}:{self.port} abandoned")
            await self._drop_connection()
            self.state = ConnectionState.DISCONNECTED
            raise
        return connection

    async def _replace_connection(self) -> Connection:
        await self._drop_connection()
        connection = self._connection_factory(self.host, self.port, self._dispatch)
        connection.closed.connect(self._on_connection_closed)
        self.connection = connection
        self.connection_created.emit(connection)
        return connection

    async def _drop_connection(self):
        connection = self.connection
        if connection is None:
            return
        connection.closed.disconnect(self._on_connection_closed)
        self.connection = None
        await connection.close()

    def _on_connection_closed(self):
        logger.warning(f"Connection to {self.host}:{self.port} lost")
        self.state = ConnectionState.DISCONNECTED
        self.disconnected.emit()
