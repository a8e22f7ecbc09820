"""
Tic-tac-toe match client - headless runner.
Connects, rejoins the last match or searches for a new one, and logs every
event. With --auto-play it marks the first free cell on each of its turns.
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional, Set

from ttt_client import GameClient, Preferences, SearchStatus, load_config
from ttt_client.network.models import StateMessage

logger = logging.getLogger('ttt_client.main')


def first_free_cell(state: StateMessage) -> Optional[int]:
    for index, mark in enumerate(state.board):
        if mark == 0:
            return index
    return None


def attach_console(client: GameClient, auto_play: bool, finished: asyncio.Event):
    """Log the collaborator events and optionally play moves."""
    moves: Set[asyncio.Task] = set()

    def on_state(state: StateMessage):
        logger.info(f"Board {list(state.board)} next={state.next} you={client.your_mark}")
        if auto_play and client.is_your_turn:
            index = first_free_cell(state)
            if index is not None:
                task = asyncio.get_running_loop().create_task(client.select_cell(index))
                moves.add(task)
                task.add_done_callback(moves.discard)

    def on_game_over(state: StateMessage):
        logger.info(f"Game over: {client.outcome(state)} (winner={state.winner})")

    def on_search(status: SearchStatus):
        logger.info(f"Matchmaking: {status.name.lower()}")
        if status == SearchStatus.FAILED:
            finished.set()

    client.connection_changed.connect(lambda up: logger.info("Connected" if up else "Disconnected"))
    client.search_status_changed.connect(on_search)
    client.match_joined.connect(lambda: logger.info(f"Joined match {client.match.current_match.match_id}"))
    client.match_left.connect(finished.set)
    client.state_received.connect(on_state)
    client.game_over.connect(on_game_over)
    client.server_error.connect(lambda em: logger.warning(f"Server: {em.message} ({em.code})"))
    client.client_error.connect(lambda msg: logger.warning(msg))
    client.rejoin_result.connect(lambda ok: logger.info(f"Rejoin {'succeeded' if ok else 'not possible'}"))
    client.notice.connect(lambda text: logger.debug(f"Notice: {text}"))


async def run_client(client: GameClient, host: Optional[str], auto_play: bool) -> int:
    """Play one match (or rejoin one) and return an exit code."""
    stop = asyncio.Event()
    finished = asyncio.Event()
    attach_console(client, auto_play, finished)
    pump = asyncio.create_task(client.run_dispatch_loop(stop))

    try:
        if not await client.connect(host):
            logger.error(f"Could not connect: {client.transport.last_error}")
            return 1
        if not client.match.is_joined and not await client.play():
            return 1
        # From here on a failed rejoin means the match is lost
        client.rejoin_result.connect(lambda ok: None if ok else finished.set())
        await finished.wait()
        return 0
    finally:
        await client.close()
        stop.set()
        await pump


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Tic-tac-toe match client')
    parser.add_argument('--host', help='Server host, optionally host:port (default: last used)')
    parser.add_argument('--port', type=int, help='Default server port')
    parser.add_argument('--config', help='JSON config file overriding defaults')
    parser.add_argument('--prefs', help='Preferences file (default: ~/.ttt_client/prefs.json)')
    parser.add_argument('--tls', action='store_true', help='Use TLS')
    parser.add_argument('--cert', help='Pinned server certificate for TLS')
    parser.add_argument('--no-rejoin', action='store_true', help='Do not rejoin the last match')
    parser.add_argument('--auto-play', action='store_true', help='Play the first free cell each turn')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
    )

    config = load_config(args.config)
    if args.port:
        config.default_port = args.port
    if args.tls:
        config.use_tls = True
    if args.cert:
        config.certfile = args.cert
    if args.no_rejoin:
        config.rejoin_enabled = False

    prefs = Preferences(args.prefs) if args.prefs else Preferences()
    client = GameClient(config, prefs)

    try:
        return asyncio.run(run_client(client, args.host, args.auto_play))
    except KeyboardInterrupt:
        logger.info("Client interrupted")
        return 130


if __name__ == '__main__':
    sys.exit(main())
