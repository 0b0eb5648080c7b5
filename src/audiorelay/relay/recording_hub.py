"""Shared capture process fanned out to every /rec subscriber.

At most one capture process runs at a time, and only while somebody is
listening. Each subscriber gets its own bounded outbound queue drained by
its own sender task, so a slow or stalled connection loses chunks without
delaying anyone else.
"""

import asyncio
import contextlib
from functools import partial
from typing import Any

import structlog
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from audiorelay.audio.format import AudioFormat
from audiorelay.audio.process_pipe import PipeDirection, PipeExit, PipeFactory, ProcessPipe
from audiorelay.config.models import RecordingConfig
from audiorelay.relay.exceptions import FormatMismatchError, RecordingFailedError
from audiorelay.relay.protocol import CloseCode

# Sender tasks get this long to flush a close frame during shutdown
SUBSCRIBER_CLOSE_TIMEOUT = 2.0


class _CloseRequest:
    def __init__(self, code: CloseCode, reason: str) -> None:
        self.code = code
        self.reason = reason


class Subscriber:
    """Outbound queue and sender task for one recording connection."""

    def __init__(self, connection: Any, queue_size: int, logger: Any) -> None:  # noqa: ANN401
        self.connection = connection
        self.sent_chunks = 0
        self.dropped_chunks = 0
        self._log = logger
        self._closing = False
        self._queue: asyncio.Queue[bytes | _CloseRequest] = asyncio.Queue(maxsize=queue_size)
        self._task = asyncio.create_task(self._send_loop(), name="recording-subscriber")

    @property
    def is_writable(self) -> bool:
        return not self._closing and self.connection.state is State.OPEN

    def offer(self, chunk: bytes) -> bool:
        """Queue a chunk without waiting; False if it was skipped."""
        if not self.is_writable:
            self.dropped_chunks += 1
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped_chunks += 1
            if self.dropped_chunks == 1 or self.dropped_chunks % 100 == 0:
                self._log.warning(
                    "Recording subscriber is falling behind", dropped=self.dropped_chunks
                )
            return False
        return True

    def close(self, code: CloseCode, reason: str) -> None:
        """Close the connection after the chunks already queued."""
        if self._closing:
            return
        self._closing = True
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_chunks += 1
        self._queue.put_nowait(_CloseRequest(code, reason))

    async def cancel(self) -> None:
        """Stop sending immediately; queued chunks are discarded."""
        self._closing = True
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def wait_closed(self, timeout: float | None = None) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except TimeoutError:
            await self.cancel()

    async def _send_loop(self) -> None:
        while True:
            item = await self._queue.get()
            if isinstance(item, _CloseRequest):
                await self.connection.close(item.code, item.reason)
                return
            try:
                await self.connection.send(item)
            except ConnectionClosed:
                self._closing = True
                return
            self.sent_chunks += 1


class RecordingHub:
    """Reference-counted owner of the shared capture process."""

    def __init__(
        self,
        settings: RecordingConfig,
        *,
        pipe_factory: PipeFactory = ProcessPipe,
        logger: Any = None,  # noqa: ANN401
    ) -> None:
        self.settings = settings
        self.audio_format: AudioFormat | None = None
        self.chunks_broadcast = 0

        self._pipe_factory = pipe_factory
        self._log = (logger or structlog.get_logger(__name__)).bind(component="recording_hub")
        self._subscribers: dict[Any, Subscriber] = {}
        self._pipe: ProcessPipe | None = None
        # Bumped whenever the pipe is dropped, so callbacks from an old pipe are ignored
        self._generation = 0
        self._lock = asyncio.Lock()
        self._retired: set[asyncio.Task[None]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def is_capturing(self) -> bool:
        return self._pipe is not None

    @property
    def pipe(self) -> ProcessPipe | None:
        return self._pipe

    def get_subscriber(self, connection: Any) -> Subscriber | None:  # noqa: ANN401
        return self._subscribers.get(connection)

    async def subscribe(self, connection: Any, audio_format: AudioFormat) -> AudioFormat:  # noqa: ANN401
        """Register a connection, starting the capture process if needed.

        Returns:
            The format of the capture stream the connection will receive.

        Raises:
            FormatMismatchError: A different format is already being captured
                and mismatched subscribers are not allowed.
            RecordingFailedError: The capture process could not be started.
        """
        async with self._lock:
            active = self.audio_format
            if active is not None and connection in self._subscribers:
                return active

            if active is None:
                active = await self._start_capture(audio_format)
            elif audio_format != active:
                if not self.settings.allow_format_mismatch:
                    raise FormatMismatchError(audio_format, active)
                self._log.warning(
                    "Subscriber joined with the active format",
                    requested=audio_format.format_token,
                    active=active.format_token,
                )

            self._subscribers[connection] = Subscriber(
                connection, self.settings.subscriber_queue_size, self._log
            )
            self._log.info("Recording subscriber added", subscribers=len(self._subscribers))
            return active

    async def unsubscribe(self, connection: Any) -> None:  # noqa: ANN401
        """Remove a connection; the last one out stops the capture process."""
        async with self._lock:
            subscriber = self._subscribers.pop(connection, None)
            if subscriber is None:
                return
            await subscriber.cancel()
            self._log.info("Recording subscriber removed", subscribers=len(self._subscribers))

            if not self._subscribers and self._pipe is not None:
                self._log.info("Stopping capture, no subscribers left")
                await self._drop_pipe()

    async def shutdown(self) -> None:
        """Close every subscriber and stop the capture process."""
        async with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
            for subscriber in subscribers:
                subscriber.close(CloseCode.GOING_AWAY, "server shutting down")
            await asyncio.gather(
                *(s.wait_closed(SUBSCRIBER_CLOSE_TIMEOUT) for s in subscribers),
                *self._retired,
            )
            if self._pipe is not None:
                await self._drop_pipe()

    async def _start_capture(self, audio_format: AudioFormat) -> AudioFormat:
        generation = self._generation
        pipe = self._pipe_factory(
            self.settings.command,
            audio_format,
            PipeDirection.CAPTURE,
            on_data=partial(self._on_capture_data, generation),
            on_exit=partial(self._on_capture_exit, generation),
            read_size=self.settings.read_size,
            logger=self._log,
        )
        self._pipe = pipe
        self.audio_format = audio_format
        await pipe.start()

        if pipe.exit is not None:
            # The exit handler has already reset the hub
            raise RecordingFailedError(f"could not start capture: {pipe.exit.error}")

        self._log.info(
            "Capture started",
            format=audio_format.format_token,
            channels=audio_format.channels,
            sample_rate=audio_format.sample_rate,
            device=audio_format.device,
        )
        return audio_format

    async def _drop_pipe(self) -> None:
        pipe = self._pipe
        self._generation += 1
        self._pipe = None
        self.audio_format = None
        if pipe is not None:
            await pipe.close(self.settings.grace_period_ms / 1000)

    def _on_capture_data(self, generation: int, chunk: bytes) -> None:
        if generation != self._generation:
            return
        self.chunks_broadcast += 1
        for subscriber in self._subscribers.values():
            subscriber.offer(chunk)

    def _on_capture_exit(self, generation: int, result: PipeExit) -> None:
        if generation != self._generation:
            return
        self._generation += 1
        self._pipe = None
        self.audio_format = None

        if result.failed:
            code, reason = CloseCode.INTERNAL_ERROR, "recording failed"
        else:
            code, reason = CloseCode.NORMAL, "recording ended"

        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        if subscribers:
            self._log.warning(
                "Capture process ended, closing subscribers",
                subscribers=len(subscribers),
                returncode=result.returncode,
                failed=result.failed,
            )
        for subscriber in subscribers:
            subscriber.close(code, reason)
            task = asyncio.ensure_future(subscriber.wait_closed(SUBSCRIBER_CLOSE_TIMEOUT))
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)
