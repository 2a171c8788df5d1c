"""
chatrelay server script.

Usage:
    python examples/run_server.py [--host HOST] [--ws-port PORT] [--http-port PORT]
                                  [--database-url URL] [--grace SECONDS]

Options:
    --host HOST          Bind address (default: 127.0.0.1)
    --ws-port PORT       WebSocket port for /ws (default: 8001)
    --http-port PORT     HTTP port for /send, /online, /messages (default: 8000)
    --database-url URL   PostgreSQL URL; state is kept in memory when omitted
    --grace SECONDS      Shutdown grace period (default: 10)

Every option also reads a CHATRELAY_* environment variable, e.g.
CHATRELAY_DATABASE_URL. SIGINT/SIGTERM trigger a graceful shutdown.
"""

import argparse
import asyncio
import logging
import signal

from chatrelay.backends.postgres import PostgresStore
from chatrelay.config import RelayConfig
from chatrelay.server import Server
from chatrelay.store import MemoryStore

logger = logging.getLogger(__name__)


def parse_args() -> RelayConfig:
    config = RelayConfig.from_env()
    parser = argparse.ArgumentParser(description="chatrelay server")
    parser.add_argument("--host", default=config.host)
    parser.add_argument("--ws-port", type=int, default=config.ws_port)
    parser.add_argument("--http-port", type=int, default=config.http_port)
    parser.add_argument("--database-url", default=config.database_url)
    parser.add_argument("--grace", type=float, default=config.shutdown_grace)
    parser.add_argument("--log-level", default=config.log_level)
    args = parser.parse_args()
    config.host = args.host
    config.ws_port = args.ws_port
    config.http_port = args.http_port
    config.database_url = args.database_url
    config.shutdown_grace = args.grace
    config.log_level = args.log_level.upper()
    return config


async def main() -> None:
    config = parse_args()
    logging.basicConfig(
        level=config.log_level, format="%(asctime)s %(levelname)s %(message)s"
    )

    if config.database_url:
        store = PostgresStore(config.database_url)
        await store.create_table_if_not_exists()
    else:
        store = MemoryStore()
        logger.warning("no database configured, messages are kept in memory only")

    server = Server(
        host=config.host,
        port=config.ws_port,
        http_port=config.http_port,
        store=store,
        queue_maxsize=config.queue_maxsize,
        ping_interval=config.ping_interval,
        shutdown_grace=config.shutdown_grace,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await server.start()
    logger.info(
        "chatrelay running (ws=%s:%d http=%s:%d). Press Ctrl+C to stop",
        config.host,
        server.port,
        config.host,
        server.http_port,
    )

    try:
        await stop.wait()
    finally:
        await server.stop(config.shutdown_grace)
        logger.info("server stopped gracefully")


if __name__ == "__main__":
    asyncio.run(main())
