"""WebSocket transport for snapshot subscribers.

Each connection is wrapped as a Distributor subscriber: it gets a
targeted snapshot on connect and every broadcast until it disconnects.
Incoming messages are ignored.
"""

from __future__ import annotations

import logging

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from amber_monitor.distributor import Distributor

logger = logging.getLogger(__name__)


class WebSocketSubscriber:
    def __init__(self, connection: ServerConnection) -> None:
        self._connection = connection

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def send(self, message: str) -> None:
        await self._connection.send(message)


def make_handler(distributor: Distributor):
    async def handler(connection: ServerConnection) -> None:
        subscriber = WebSocketSubscriber(connection)
        logger.info("WebSocket client connected from %s", connection.remote_address)
        try:
            await distributor.on_connect(subscriber)
            async for _ in connection:
                pass
        except ConnectionClosed:
            logger.debug("WebSocket connection closed abnormally")
        finally:
            distributor.remove_subscriber(subscriber)
            logger.info("WebSocket client disconnected")

    return handler


async def start_server(distributor: Distributor, host: str, port: int) -> Server:
    server = await serve(make_handler(distributor), host, port)
    logger.info("Snapshot WebSocket server listening on ws://%s:%d", host, port)
    return server
