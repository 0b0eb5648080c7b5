from __future__ import annotations

import asyncio
import logging
import signal
from types import FrameType
from typing import Any

import structlog
from websockets.asyncio.server import Server, serve

from audiorelay.config.models import RelayConfig
from audiorelay.relay.router import ConnectionRouter

logger = structlog.get_logger(__name__)


class AudioRelayServer:
    """WebSocket server relaying PCM between clients and the local sound card."""

    def __init__(self, config: RelayConfig, router: ConnectionRouter | None = None) -> None:
        self.config = config
        self.router = router or ConnectionRouter(config)
        self._shutdown_flag = False
        self._websocket_server: Server | None = None

        logger.info("AudioRelayServer initialized", host=config.host, port=config.port)

    @property
    def port(self) -> int | None:
        """Port actually bound, which differs from the configured one when that is 0."""
        if self._websocket_server is None:
            return None
        for sock in self._websocket_server.sockets:
            return sock.getsockname()[1]
        return None

    @property
    def is_serving(self) -> bool:
        return self._websocket_server is not None

    def request_shutdown(self) -> None:
        self._shutdown_flag = True

    def _signal_handler(self, signum: int, frame: FrameType | None) -> None:
        """Handle shutdown signals."""
        logger.info("Signal received, initiating graceful shutdown", signal=signum)
        self._shutdown_flag = True

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    async def start(self, *, handle_signals: bool = True) -> None:
        """Bind the listening socket and start accepting connections."""
        logger.info("Starting AudioRelayServer")
        if handle_signals:
            self.install_signal_handlers()

        try:
            self._websocket_server = await serve(
                self._handle_connection,
                self.config.host,
                self.config.port,
                logger=logging.getLogger(__name__),
                max_size=self.config.max_message_bytes,
            )
        except OSError as e:
            logger.error(
                "Could not bind WebSocket server",
                host=self.config.host,
                port=self.config.port,
                error=str(e),
            )
            raise

        logger.info("WebSocket server started", host=self.config.host, port=self.port)

    async def stop(self) -> None:
        """Close every session and the recording hub, then the listener."""
        logger.info("Stopping AudioRelayServer")
        self._shutdown_flag = True
        await self.router.shutdown()

        if self._websocket_server is not None:
            self._websocket_server.close()
            await self._websocket_server.wait_closed()
            self._websocket_server = None
            logger.info("WebSocket server closed")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        while not self._shutdown_flag:
            await asyncio.sleep(0.1)

    async def _handle_connection(self, connection: Any) -> None:  # noqa: ANN401
        await self.router.handle(connection)
