"""Dispatch of inbound WebSocket connections by path."""

import asyncio
from typing import Any

import structlog
from websockets.exceptions import ConnectionClosed

from audiorelay.audio.format import AudioFormatError, validate_audio_format
from audiorelay.audio.process_pipe import PipeFactory, ProcessPipe
from audiorelay.config.models import RelayConfig
from audiorelay.relay.exceptions import FormatMismatchError, RecordingFailedError
from audiorelay.relay.playback_session import PlaybackSession
from audiorelay.relay.protocol import (
    PLAY_PATH,
    RECORD_PATH,
    CloseCode,
    close_reason,
    extract_path,
)
from audiorelay.relay.recording_hub import RecordingHub


class ConnectionRouter:
    """Hands each connection to a PlaybackSession or the RecordingHub."""

    def __init__(
        self,
        config: RelayConfig,
        hub: RecordingHub | None = None,
        *,
        pipe_factory: PipeFactory = ProcessPipe,
        logger: Any = None,  # noqa: ANN401
    ) -> None:
        self.config = config
        self._pipe_factory = pipe_factory
        self._log = logger or structlog.get_logger(__name__)
        self.hub = hub or RecordingHub(
            config.recording, pipe_factory=pipe_factory, logger=self._log
        )
        self.sessions: set[PlaybackSession] = set()

    async def handle(self, connection: Any) -> None:  # noqa: ANN401
        """Serve one connection until it closes."""
        path = extract_path(connection)
        log = self._log.bind(path=path, remote=str(getattr(connection, "remote_address", "")))
        try:
            if path == PLAY_PATH:
                await self._serve_playback(connection, log)
            elif path == RECORD_PATH:
                await self._serve_recording(connection, log)
            else:
                log.warning("Unknown WebSocket endpoint")
                await connection.close(CloseCode.POLICY_VIOLATION, "unknown endpoint")
        except ConnectionClosed:
            log.debug("Connection closed")
        except Exception:
            log.exception("Unhandled error serving connection")
            await connection.close(CloseCode.INTERNAL_ERROR, "internal error")

    async def shutdown(self) -> None:
        """Close every live session and the recording hub."""
        await asyncio.gather(
            *(
                session.close(CloseCode.GOING_AWAY, "server shutting down")
                for session in list(self.sessions)
            )
        )
        await self.hub.shutdown()

    async def _serve_playback(self, connection: Any, log: Any) -> None:  # noqa: ANN401
        session = PlaybackSession(
            connection,
            self.config.playback,
            self.config.default_format,
            pipe_factory=self._pipe_factory,
            logger=log,
        )
        self.sessions.add(session)
        log.info("Playback client connected", sessions=len(self.sessions))
        try:
            await session.run()
        finally:
            self.sessions.discard(session)
            log.info("Playback client disconnected", sessions=len(self.sessions))

    async def _serve_recording(self, connection: Any, log: Any) -> None:  # noqa: ANN401
        log = log.bind(endpoint="rec")
        first = await connection.recv()
        if isinstance(first, bytes):
            log.warning("Binary first frame, expected configuration")
            await connection.close(
                CloseCode.POLICY_VIOLATION, "expected a JSON configuration frame"
            )
            return

        try:
            requested = validate_audio_format(first, self.config.default_format)
        except AudioFormatError as e:
            log.warning("Invalid recording configuration", errors=e.errors)
            await connection.close(
                CloseCode.POLICY_VIOLATION, close_reason(f"invalid configuration: {e}")
            )
            return

        try:
            await self.hub.subscribe(connection, requested)
        except FormatMismatchError as e:
            log.warning("Rejected recording subscriber", error=str(e))
            await connection.close(CloseCode.POLICY_VIOLATION, close_reason(str(e)))
            return
        except RecordingFailedError as e:
            log.error("Recording could not start", error=str(e))
            await connection.close(CloseCode.INTERNAL_ERROR, "recording failed")
            return

        log.info("Recording client connected", subscribers=self.hub.subscriber_count)
        try:
            async for message in connection:
                if isinstance(message, str):
                    await self._stop_recording(connection, log)
                    return
                log.warning("Ignoring binary frame on recording connection", size=len(message))
        finally:
            await self.hub.unsubscribe(connection)
            log.info("Recording client disconnected", subscribers=self.hub.subscriber_count)

    async def _stop_recording(self, connection: Any, log: Any) -> None:  # noqa: ANN401
        """Handle a stop request: leave the hub, then let the client close.

        Any frame after the stop request is a protocol violation.
        """
        log.info("Recording stop requested")
        await self.hub.unsubscribe(connection)
        linger = self.config.recording.stop_linger_ms / 1000
        try:
            await asyncio.wait_for(connection.recv(), linger)
        except TimeoutError:
            await connection.close(CloseCode.NORMAL, "recording stopped")
        except ConnectionClosed:
            pass
        else:
            log.warning("Message after stop request")
            await connection.close(CloseCode.POLICY_VIOLATION, "message after stop request")
