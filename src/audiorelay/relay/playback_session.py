"""Per-connection playback over a render subprocess.

A session moves through ``pending -> active -> closing -> closed``:

- pending: waiting for the JSON configuration frame
- active: binary frames are written to the render process in order; a full
  stdin buffer suspends reading from the connection until it drains
- closing: stdin is closed, the process gets a grace period to finish, then
  it is terminated and the connection closed

Closing starts on whichever comes first: the client closing the connection,
the drain estimate firing, the render process exiting, or server shutdown.
"""

import asyncio
import time
import uuid
from enum import StrEnum
from typing import Any

import structlog
from websockets.exceptions import ConnectionClosed

from audiorelay.audio.format import AudioFormat, AudioFormatError, validate_audio_format
from audiorelay.audio.process_pipe import PipeDirection, PipeExit, PipeFactory, ProcessPipe
from audiorelay.config.models import PlaybackConfig
from audiorelay.relay.drain import Clock, DrainEstimator
from audiorelay.relay.protocol import CloseCode, close_reason


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class PlaybackState(StrEnum):
    """Lifecycle of a playback session."""

    PENDING = "pending"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class PlaybackSession:
    """Relays one /play connection into its own render process."""

    def __init__(
        self,
        connection: Any,  # noqa: ANN401
        settings: PlaybackConfig,
        default_format: AudioFormat | None = None,
        *,
        pipe_factory: PipeFactory = ProcessPipe,
        clock: Clock | None = None,
        logger: Any = None,  # noqa: ANN401
    ) -> None:
        self.session_id = uuid.uuid4().hex[:8]
        self.connection = connection
        self.settings = settings
        self.default_format = default_format
        self.state = PlaybackState.PENDING
        self.audio_format: AudioFormat | None = None
        self.pipe: ProcessPipe | None = None
        self.estimator: DrainEstimator | None = None
        self.bytes_received = 0
        self.close_code: CloseCode | None = None
        self.close_reason = ""

        self._pipe_factory = pipe_factory
        self._clock = clock or _monotonic_ms
        self._log = (logger or structlog.get_logger(__name__)).bind(
            session_id=self.session_id, endpoint="play"
        )
        self._drain_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        """Serve the connection until it closes or playback completes."""
        try:
            first = await self.connection.recv()
            if not await self._activate(first):
                return
            async for message in self.connection:
                if self.state is not PlaybackState.ACTIVE:
                    break
                await self._handle_message(message)
        except ConnectionClosed:
            self._log.debug("Playback connection closed by client")
        finally:
            await self.close(CloseCode.NORMAL, "connection closed")

    async def close(self, code: CloseCode = CloseCode.NORMAL, reason: str = "") -> None:
        """Tear the session down; later calls wait for the first teardown."""
        await asyncio.shield(self._request_close(code, reason))

    def check_drain(self) -> bool:
        """Start closing if the queued audio should have finished playing."""
        if self.state is not PlaybackState.ACTIVE or self.estimator is None:
            return False
        if not self.estimator.is_drained():
            return False
        self._log.info(
            "Playback drained",
            queued_ms=round(self.estimator.queued_ms, 1),
            elapsed_ms=round(self.estimator.elapsed_ms(), 1),
        )
        self._request_close(CloseCode.NORMAL, "playback complete")
        return True

    async def _activate(self, first: str | bytes) -> bool:
        if isinstance(first, bytes):
            self._log.warning("Binary first frame, expected configuration")
            await self.close(CloseCode.POLICY_VIOLATION, "expected a JSON configuration frame")
            return False

        try:
            audio_format = validate_audio_format(first, self.default_format)
        except AudioFormatError as e:
            self._log.warning("Invalid playback configuration", errors=e.errors)
            await self.close(CloseCode.POLICY_VIOLATION, close_reason(f"invalid configuration: {e}"))
            return False

        self.audio_format = audio_format
        self.estimator = DrainEstimator(audio_format, self.settings.safety_margin_ms, self._clock)
        self.pipe = self._pipe_factory(
            self.settings.command,
            audio_format,
            PipeDirection.RENDER,
            on_exit=self._on_pipe_exit,
            high_water=self.settings.write_high_water_bytes,
            logger=self._log,
        )
        await self.pipe.start()
        if self.pipe.exit is not None:
            # Spawn failed; the exit handler has already started closing
            await self.close()
            return False
        if self._close_task is not None:
            # Closed while spawning; the teardown saw no process to stop
            self._log.info("Playback closed during spawn, stopping render process")
            await self.pipe.close(self.settings.grace_period_ms / 1000)
            await self.close()
            return False

        self.state = PlaybackState.ACTIVE
        self._drain_task = asyncio.create_task(
            self._drain_timer(), name=f"playback-drain-{self.session_id}"
        )
        self._log.info(
            "Playback session active",
            format=audio_format.format_token,
            channels=audio_format.channels,
            sample_rate=audio_format.sample_rate,
            device=audio_format.device,
        )
        return True

    async def _handle_message(self, message: str | bytes) -> None:
        if isinstance(message, str):
            self._log.warning("Ignoring text frame on active playback session")
            return
        if not message:
            return

        pipe, estimator = self.pipe, self.estimator
        if pipe is None or estimator is None:
            raise RuntimeError("playback session is not active")
        if not pipe.is_writable:
            self._log.debug("Dropping chunk, render process is closing", size=len(message))
            return

        accepted = pipe.submit(message)
        if not pipe.is_writable:
            return

        self.bytes_received += len(message)
        estimator.record(len(message))
        if not accepted:
            self._log.debug("Render process backpressure", queued_bytes=pipe.queued_bytes)
            await pipe.drained()

    async def _drain_timer(self) -> None:
        interval = self.settings.drain_check_interval_ms / 1000
        while self.state is PlaybackState.ACTIVE:
            await asyncio.sleep(interval)
            if self.check_drain():
                return

    def _on_pipe_exit(self, result: PipeExit) -> None:
        if self.state in (PlaybackState.CLOSING, PlaybackState.CLOSED):
            return
        if result.failed:
            self._request_close(CloseCode.INTERNAL_ERROR, "playback process failed")
        else:
            self._request_close(CloseCode.NORMAL, "playback process exited")

    def _request_close(self, code: CloseCode, reason: str) -> asyncio.Task[None]:
        if self._close_task is None:
            self.state = PlaybackState.CLOSING
            self._close_task = asyncio.create_task(
                self._shutdown(code, reason), name=f"playback-close-{self.session_id}"
            )
        return self._close_task

    async def _shutdown(self, code: CloseCode, reason: str) -> None:
        self.close_code = code
        self.close_reason = reason
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()

        if self.pipe is not None:
            await self.pipe.close(self.settings.grace_period_ms / 1000)

        await self.connection.close(code, reason)
        self.state = PlaybackState.CLOSED
        self._log.info(
            "Playback session closed",
            code=int(code),
            reason=reason,
            bytes_received=self.bytes_received,
            queued_ms=round(self.estimator.queued_ms, 1) if self.estimator else 0.0,
        )
