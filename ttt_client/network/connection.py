"""Live socket to the match server.

Usage:
    conn = SocketConnection('localhost', 7350, dispatch=dispatcher.enqueue)
    conn.received_match_data.connect(on_match_data)
    await conn.connect(session)
    ticket = await conn.add_matchmaker('', 2, 2, {'engine': 'python'})
    handle = await conn.join_match(match_id='...')
    await conn.send_match_state(handle.match_id, 2, b'{"index": 4}')
    await conn.close()

A connection is single-use: after it closes, create a new one.
"""

import asyncio
import concurrent.futures
import functools
import logging
import ssl
import threading
from enum import Enum, auto
from typing import Callable, Dict, Optional, TYPE_CHECKING

from ..events import Signal
from .errors import AuthError, DecodeError, NetworkError, ServerError, SocketError
from .models import MatchData, MatchHandle, MatchmakerMatched
from .protocol import (
    Message, MessageType, FrameReader, read_message,
    msg_hello, msg_ping, msg_matchmaker_add, msg_matchmaker_remove,
    msg_match_join, msg_match_leave, msg_match_data,
)

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Transport connection state."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()


def create_ssl_context(use_tls: bool, certfile: Optional[str] = None) -> Optional[ssl.SSLContext]:
    """Client TLS context, pinned to certfile when one is given."""
    if not use_tls:
        return None

    ssl_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if certfile:
        # Certificate pinning
        ssl_ctx.load_verify_locations(certfile)
        ssl_ctx.verify_mode = ssl.CERT_REQUIRED
    else:
        # No verification (development only!)
        ssl_ctx.check_hostname = False
        ssl_ctx.verify_mode = ssl.CERT_NONE
    return ssl_ctx


def _call_now(action: Callable[[], None]):
    action()


class Connection:
    """A socket bound to a Session.

    Notifications are handed to ``dispatch`` rather than called directly, so the
    owner decides which thread runs the listeners.
    """

    def __init__(self, dispatch: Optional[Callable[[Callable[[], None]], None]] = None):
        self.closed = Signal('closed')
        self.received_match_data = Signal('received_match_data')
        self.received_matchmaker_matched = Signal('received_matchmaker_matched')
        self._dispatch = dispatch or _call_now

    def _emit(self, signal: Signal, *args):
        self._dispatch(functools.partial(signal.emit, *args))

    @property
    def is_connected(self) -> bool:
        raise NotImplementedError

    async def connect(self, session: 'Session'):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def add_matchmaker(self, query: str, min_count: int, max_count: int,
                             properties: Dict[str, str]) -> str:
        raise NotImplementedError

    async def remove_matchmaker(self, ticket: str):
        raise NotImplementedError

    async def join_match(self, match_id: Optional[str] = None,
                         token: Optional[str] = None) -> MatchHandle:
        raise NotImplementedError

    async def leave_match(self, match_id: str):
        raise NotImplementedError

    async def send_match_state(self, match_id: str, op_code: int, data: bytes):
        raise NotImplementedError


def _as_network_error(error: BaseException) -> NetworkError:
    if isinstance(error, NetworkError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return SocketError("Timed out")
    return SocketError(str(error) or type(error).__name__)


class SocketConnection(Connection):
    """Framed TCP connection to the match server.

    Runs network I/O on its own event loop in a background thread. Public
    coroutines are awaited from the caller's loop and marshalled onto the
    network loop, so the caller suspends without blocking its own loop.
    """

    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool = False,
        certfile: Optional[str] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 10.0,
        ping_interval: float = 5.0,
    ):
        super().__init__(dispatch)
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.certfile = certfile
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.ping_interval = ping_interval
        self.user_id = ""

        # Internal
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._accepting = False
        self._closing = False
        self._connected = False
        self._opened: Optional[concurrent.futures.Future] = None
        self._stop: Optional[asyncio.Event] = None
        self._frames = FrameReader()

        # Request tracking (network loop only)
        self._next_cid = 0
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    # =========================================================================
    # PUBLIC API (awaited from the caller's loop)
    # =========================================================================

    async def connect(self, session: 'Session'):
        """Open the socket and perform the hello/welcome handshake."""
        if self._thread is not None:
            raise SocketError("Connection objects are single-use, create a new one")

        self._opened = concurrent.futures.Future()
        self._thread = threading.Thread(
            target=self._run_network_thread,
            args=(session,),
            name=f"ttt-socket-{self.host}:{self.port}",
            daemon=True,
        )
        self._thread.start()
        await asyncio.wrap_future(self._opened)

    async def close(self):
        """Close the socket and wait for the network thread to finish."""
        self._closing = True
        thread = self._thread
        with self._lock:
            loop = self._loop if self._accepting else None
            if loop is not None:
                loop.call_soon_threadsafe(self._request_stop)

        if thread is not None and thread.is_alive():
            await asyncio.get_running_loop().run_in_executor(None, thread.join, 2.0)

    async def add_matchmaker(self, query: str, min_count: int, max_count: int,
                             properties: Dict[str, str]) -> str:
        reply = await self._call(self._request(
            msg_matchmaker_add(query, min_count, max_count, properties)))
        ticket = reply.payload.get('ticket')
        if not isinstance(ticket, str) or not ticket:
            raise DecodeError("Matchmaker reply has no ticket")
        return ticket

    async def remove_matchmaker(self, ticket: str):
        await self._call(self._request(msg_matchmaker_remove(ticket)))

    async def join_match(self, match_id: Optional[str] = None,
                         token: Optional[str] = None) -> MatchHandle:
        reply = await self._call(self._request(msg_match_join(match_id, token)))
        return MatchHandle.from_payload(reply.payload)

    async def leave_match(self, match_id: str):
        await self._call(self._request(msg_match_leave(match_id)))

    async def send_match_state(self, match_id: str, op_code: int, data: bytes):
        await self._call(self._send(msg_match_data(match_id, op_code, data)))

    async def _call(self, coro):
        """Run a coroutine on the network loop and await its result here."""
        with self._lock:
            loop = self._loop if self._accepting else None
            if loop is None:
                coro.close()
                raise SocketError("Socket is not connected")
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        return await asyncio.wrap_future(future)

    # =========================================================================
    # NETWORK THREAD
    # =========================================================================

    def _run_network_thread(self, session: 'Session'):
        """Run the async network loop in background thread."""
        if not self._opened.set_running_or_notify_cancel():
            return

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._stop = asyncio.Event()
        with self._lock:
            self._loop = loop
            self._accepting = True

        try:
            loop.run_until_complete(self._network_main(session))
        except Exception as e:
            logger.error(f"Network thread error: {e}")
            self._set_opened(_as_network_error(e))
        finally:
            with self._lock:
                self._accepting = False
            try:
                loop.run_until_complete(self._finish_pending_calls())
            finally:
                with self._lock:
                    self._loop = None
                loop.close()

    async def _network_main(self, session: 'Session'):
        """Main async network loop."""
        opening = asyncio.ensure_future(
            asyncio.wait_for(self._open(session), timeout=self.connect_timeout))
        stopping = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait([opening, stopping], return_when=asyncio.FIRST_COMPLETED)
            if not opening.done():
                # close() arrived mid-handshake
                opening.cancel()
                await asyncio.gather(opening, return_exceptions=True)
                raise SocketError("Connection closed during connect")
            opening.result()
            if self._closing:
                raise SocketError("Connection closed during connect")
        except Exception as e:
            error = _as_network_error(e)
            logger.warning(f"Connect to {self.host}:{self.port} failed: {error}")
            await self._cleanup()
            self._set_opened(error)
            return
        finally:
            stopping.cancel()

        self._connected = True
        logger.info(f"Connected to {self.host}:{self.port}")
        self._set_opened()

        recv_task = asyncio.create_task(self._receive_loop())
        ping_task = asyncio.create_task(self._ping_loop())
        stop_task = asyncio.create_task(self._stop.wait())

        # Wait for any task to complete (error or shutdown)
        done, pending = await asyncio.wait(
            [recv_task, ping_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # Cancel remaining tasks
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if task.exception() is not None:
                logger.warning(f"Network task ended with error: {task.exception()}")

        await self._cleanup()

    async def _finish_pending_calls(self):
        """Let calls already scheduled on this loop fail fast before closing it."""
        await asyncio.sleep(0)
        current = asyncio.current_task()
        tasks = [t for t in asyncio.all_tasks() if t is not current]
        if not tasks:
            return
        _, still_pending = await asyncio.wait(tasks, timeout=1.0)
        for task in still_pending:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)

    def _set_opened(self, error: Optional[NetworkError] = None):
        if self._opened is None or self._opened.done():
            return
        if error is not None:
            self._opened.set_exception(error)
        else:
            self._opened.set_result(None)

    def _request_stop(self):
        if self._stop is not None:
            self._stop.set()

    async def _open(self, session: 'Session'):
        """Establish connection and perform hello/welcome handshake."""
        ssl_ctx = create_ssl_context(self.use_tls, self.certfile)
        self._reader, self._writer = await asyncio.open_connection(
            self.host, self.port, ssl=ssl_ctx)

        await self._write(msg_hello(session.token))

        # Leftover bytes stay in self._frames for the receive loop
        msg = await read_message(self._reader, self._frames)
        if msg.type == MessageType.WELCOME:
            self.user_id = msg.payload.get('user_id', session.user_id)
        elif msg.type == MessageType.ERROR:
            raise AuthError(msg.payload.get('message', 'Handshake rejected'))
        else:
            raise SocketError(f"Unexpected response: {msg.type.name}")

    async def _receive_loop(self):
        """Loop receiving messages from server."""
        # First process any messages already buffered from handshake
        self._process_frames()

        while True:
            data = await self._reader.read(4096)
            if not data:
                logger.info(f"Server {self.host}:{self.port} closed the connection")
                return

            self._frames.feed(data)
            self._process_frames()

    def _process_frames(self):
        while True:
            try:
                msg = self._frames.get_message()
            except DecodeError as e:
                logger.warning(f"Dropping malformed frame: {e}")
                continue
            if msg is None:
                break
            self._handle_server_message(msg)

    async def _ping_loop(self):
        """Send periodic pings."""
        while True:
            await asyncio.sleep(self.ping_interval)
            await self._write(msg_ping())

    async def _write(self, msg: Message):
        self._writer.write(msg.to_bytes())
        await self._writer.drain()

    async def _send(self, msg: Message):
        """Send a message that gets no reply."""
        if not self._connected:
            raise SocketError("Socket is not connected")
        try:
            await self._write(msg)
        except OSError as e:
            raise SocketError(f"{msg.type.name} failed: {e}") from e

    async def _request(self, msg: Message) -> Message:
        """Send a message and wait for the reply carrying the same cid."""
        if not self._connected:
            raise SocketError("Socket is not connected")

        self._next_cid += 1
        msg.cid = str(self._next_cid)
        future = asyncio.get_running_loop().create_future()
        self._pending[msg.cid] = future

        try:
            await self._write(msg)
            reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise SocketError(
                f"{msg.type.name} timed out after {self.request_timeout:.1f}s") from e
        except OSError as e:
            raise SocketError(f"{msg.type.name} failed: {e}") from e
        finally:
            self._pending.pop(msg.cid, None)

        if reply.type == MessageType.ERROR:
            raise ServerError(
                str(reply.payload.get('code', '')),
                reply.payload.get('message', 'Request failed'),
            )
        return reply

    def _handle_server_message(self, msg: Message):
        """Handle message from server."""
        if msg.cid is not None:
            future = self._pending.get(msg.cid)
            if future is not None:
                if not future.done():
                    future.set_result(msg)
                return

        if msg.type == MessageType.PONG:
            pass  # Keepalive response, ignore

        elif msg.type == MessageType.MATCH_DATA:
            try:
                data = MatchData.from_payload(msg.payload)
            except DecodeError as e:
                logger.warning(f"Dropping match data: {e}")
                return
            self._emit(self.received_match_data, data)

        elif msg.type == MessageType.MATCHMAKER_MATCHED:
            try:
                matched = MatchmakerMatched.from_payload(msg.payload)
            except DecodeError as e:
                logger.warning(f"Dropping matchmaker result: {e}")
                return
            self._emit(self.received_matchmaker_matched, matched)

        elif msg.type == MessageType.ERROR:
            logger.warning(f"Server error: {msg.payload.get('message', 'Unknown error')}")

        else:
            logger.warning(f"Unhandled message type: {msg.type.name}")

    async def _cleanup(self):
        """Clean up connection."""
        was_connected = self._connected
        self._connected = False

        for future in self._pending.values():
            if not future.done():
                future.set_exception(SocketError("Connection closed"))
        self._pending.clear()

        if self._writer:
            try:
                self._writer.close()
                await asyncio.wait_for(self._writer.wait_closed(), timeout=1.0)
            except (OSError, asyncio.TimeoutError):
                pass

        self._reader = None
        self._writer = None

        if was_connected:
            logger.info(f"Disconnected from {self.host}:{self.port}")
            self._emit(self.closed)
