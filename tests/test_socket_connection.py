"""Tests for AuthClient and SocketConnection against an in-process server."""
import asyncio
import socket

import pytest

from ttt_client.dispatcher import Dispatcher
from ttt_client.network.connection import SocketConnection
from ttt_client.network.errors import AuthError, DecodeError, ServerError, SocketError
from ttt_client.network.protocol import Message, MessageType
from ttt_client.network.session import AuthClient, Session
from tests.fake_server import FakeMatchServer


async def wait_until(predicate, dispatcher: Dispatcher = None, timeout: float = 3.0):
    """Poll until predicate() holds, draining the dispatcher each round."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        if dispatcher is not None:
            dispatcher.drain()
        if predicate():
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def free_port() -> int:
    with socket.socket() as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def run_with_server(scenario, server: FakeMatchServer = None):
    """Run scenario(server) with the server started and stopped around it."""
    server = server or FakeMatchServer()

    async def main():
        await server.start()
        try:
            return await scenario(server)
        finally:
            await server.stop()

    return asyncio.run(main())


async def open_connection(server: FakeMatchServer, dispatcher: Dispatcher = None) -> SocketConnection:
    session = await AuthClient('127.0.0.1', server.port, 'defaultkey').authenticate_device('dev-1')
    conn = SocketConnection('127.0.0.1', server.port, dispatch=dispatcher.enqueue if dispatcher else None)
    await conn.connect(session)
    return conn


class TestAuthClient:

    def test_authenticate_creates_then_reuses_account(self):
        async def scenario(server):
            client = AuthClient('127.0.0.1', server.port, 'defaultkey')
            first = await client.authenticate_device('dev-1')
            second = await client.authenticate_device('dev-1')
            other = await client.authenticate_device('dev-2')
            return first, second, other

        first, second, other = run_with_server(scenario)
        assert first.user_id == second.user_id
        assert first.created and not second.created
        assert other.user_id != first.user_id
        assert first.device_id == 'dev-1'

    def test_wrong_server_key_raises_auth_error(self):
        async def scenario(server):
            await AuthClient('127.0.0.1', server.port, 'wrong').authenticate_device('dev-1')

        with pytest.raises(AuthError, match="Invalid server key"):
            run_with_server(scenario)

    def test_unreachable_server_raises_socket_error(self):
        port = free_port()
        with pytest.raises(SocketError):
            asyncio.run(AuthClient('127.0.0.1', port, 'defaultkey', timeout=2).authenticate_device('dev-1'))

    def test_missing_certificate_raises_socket_error(self, tmp_path):
        client = AuthClient('127.0.0.1', free_port(), 'defaultkey', use_tls=True,
                            certfile=str(tmp_path / 'missing.pem'))
        with pytest.raises(SocketError, match="certificate"):
            asyncio.run(client.authenticate_device('dev-1'))


class TestSocketConnection:

    def test_requests_round_trip(self):
        async def scenario(server):
            conn = await open_connection(server)
            try:
                assert conn.is_connected
                assert conn.user_id == 'user-1'
                ticket = await conn.add_matchmaker('', 2, 2, {'engine': 'python'})
                await conn.remove_matchmaker(ticket)
                handle = await conn.join_match(match_id='M1')
                await conn.send_match_state('M1', 2, b'{"index": 4}')
                await conn.leave_match('M1')
                await wait_until(lambda: MessageType.MATCH_LEAVE in server.received_types())
                return ticket, handle, server.received
            finally:
                await conn.close()

        ticket, handle, received = run_with_server(scenario)
        assert ticket == 'T1'
        assert handle.match_id == 'M1'
        assert handle.self_user_id == 'user-1'
        data = [m for m in received if m.type == MessageType.MATCH_DATA][0]
        assert data.payload == {'match_id': 'M1', 'op_code': 2, 'data': '{"index": 4}'}

    def test_server_rejection_raises_server_error(self):
        async def scenario(server):
            conn = await open_connection(server)
            try:
                await conn.join_match(match_id='nope')
            finally:
                await conn.close()

        with pytest.raises(ServerError) as exc_info:
            run_with_server(scenario)
        assert exc_info.value.code == 'not_found'

    def test_bad_token_fails_handshake(self):
        async def scenario(server):
            conn = SocketConnection('127.0.0.1', server.port)
            await conn.connect(Session(token='forged', user_id='u', device_id='d'))

        with pytest.raises(AuthError):
            run_with_server(scenario)

    def test_connection_is_single_use(self):
        async def scenario(server):
            conn = await open_connection(server)
            await conn.close()
            assert not conn.is_connected
            await conn.connect(Session(token='token-user-1', user_id='user-1', device_id='dev-1'))

        with pytest.raises(SocketError):
            run_with_server(scenario)

    def test_call_before_connect_fails(self):
        conn = SocketConnection('127.0.0.1', 1)
        with pytest.raises(SocketError):
            asyncio.run(conn.join_match(match_id='M1'))

    def test_pushes_are_dispatched(self):
        dispatcher = Dispatcher()
        received = []

        async def scenario(server):
            conn = await open_connection(server, dispatcher)
            conn.received_match_data.connect(received.append)
            conn.received_matchmaker_matched.connect(received.append)
            try:
                await server.push(Message(MessageType.MATCH_DATA, payload={
                    'match_id': 'M1', 'op_code': 1, 'data': '{"board": [0,0,0,0,0,0,0,0,0]}'}))
                await server.push(Message(MessageType.MATCH_DATA, payload={'op_code': 'bad'}))
                await server.push(Message(MessageType.MATCHMAKER_MATCHED, payload={
                    'ticket': 'T1', 'token': 'mm:M1'}))
                await wait_until(lambda: len(received) >= 2, dispatcher)
            finally:
                await conn.close()

        run_with_server(scenario)
        assert received[0].op_code == 1
        assert received[0].data == b'{"board": [0,0,0,0,0,0,0,0,0]}'
        assert received[1].ticket == 'T1'
        assert len(received) == 2

    def test_server_drop_emits_closed_once(self):
        dispatcher = Dispatcher()
        closed = []

        async def scenario(server):
            conn = await open_connection(server, dispatcher)
            conn.closed.connect(lambda: closed.append(1))
            await server.drop_clients()
            await wait_until(lambda: not conn.is_connected and closed, dispatcher)
            with pytest.raises(SocketError):
                await conn.join_match(match_id='M1')
            await conn.close()
            await asyncio.sleep(0.05)
            dispatcher.drain()

        run_with_server(scenario)
        assert closed == [1]

    def test_local_close_emits_closed(self):
        dispatcher = Dispatcher()
        closed = []

        async def scenario(server):
            conn = await open_connection(server, dispatcher)
            conn.closed.connect(lambda: closed.append(1))
            await conn.close()
            dispatcher.drain()
            await conn.close()
            dispatcher.drain()
            return conn.is_connected

        assert run_with_server(scenario) is False
        assert closed == [1]

    def test_malformed_pushes_do_not_end_receive_loop(self):
        dispatcher = Dispatcher()
        received = []

        async def scenario(server):
            conn = await open_connection(server, dispatcher)
            conn.received_match_data.connect(received.append)
            conn.received_matchmaker_matched.connect(received.append)
            try:
                await server.push(Message(MessageType.MATCHMAKER_MATCHED, payload={
                    'ticket': 'T1', 'users': ['u1']}))
                await server.push(Message(MessageType.MATCHMAKER_MATCHED, payload={
                    'ticket': 'T1', 'self': 'u1'}))
                await server.push(Message(MessageType.MATCH_DATA, payload={
                    'match_id': 7, 'op_code': 1, 'data': ''}))
                await server.push(Message(MessageType.MATCH_DATA, payload={
                    'match_id': 'M1', 'op_code': 1, 'data': '{}'}))
                await wait_until(lambda: received, dispatcher)
                handle = await conn.join_match(match_id='M1')
                return conn.is_connected, handle
            finally:
                await conn.close()

        still_connected, handle = run_with_server(scenario)
        assert still_connected
        assert handle.match_id == 'M1'
        assert len(received) == 1
        assert received[0].data == b'{}'

    @pytest.mark.parametrize("request_type,payload", [
        (MessageType.MATCH_JOIN, {'match_id': 'M1', 'self': 'oops'}),
        (MessageType.MATCH_JOIN, {'match_id': ['M1']}),
        (MessageType.MATCHMAKER_ADD, {'ticket': 5}),
    ])
    def test_malformed_reply_raises_decode_error(self, request_type, payload):
        server = FakeMatchServer()
        server.scripted[request_type] = [payload]

        async def scenario(server):
            conn = await open_connection(server)
            try:
                with pytest.raises(DecodeError):
                    if request_type == MessageType.MATCH_JOIN:
                        await conn.join_match(match_id='M1')
                    else:
                        await conn.add_matchmaker('', 2, 2, {})
                # The connection survives a bad reply
                return (await conn.join_match(match_id='M1')).match_id
            finally:
                await conn.close()

        assert run_with_server(scenario, server) == 'M1'

    def test_close_interrupts_stalled_handshake(self):
        async def silent(reader, writer):
            await reader.read()
            writer.close()

        async def scenario():
            server = await asyncio.start_server(silent, '127.0.0.1', 0)
            port = server.sockets[0].getsockname()[1]
            conn = SocketConnection('127.0.0.1', port, connect_timeout=10)
            connecting = asyncio.ensure_future(
                conn.connect(Session(token='t', user_id='u', device_id='d')))
            await asyncio.sleep(0.2)
            started = asyncio.get_running_loop().time()
            await conn.close()
            try:
                with pytest.raises(SocketError):
                    await connecting
                return asyncio.get_running_loop().time() - started
            finally:
                server.close()
                await server.wait_closed()

        assert asyncio.run(scenario()) < 1.5
