"""Subprocess-backed PCM pipes.

A ProcessPipe runs one ALSA command-line tool (``aplay`` for rendering,
``arecord`` for capture) and exposes its data-plane stream: stdin for render
pipes, stdout for capture pipes. stderr is diagnostic only and is logged at
debug level.

Owners pass their callbacks at construction and receive:
- ``on_data(chunk)`` for every chunk read from a capture pipe, in order
- ``on_exit(PipeExit)`` exactly once, when the process exits or fails to
  spawn; the pipe is inert afterwards
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from audiorelay.audio.format import AudioFormat

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[["PipeExit"], None]
SpawnFunc = Callable[..., Awaitable[asyncio.subprocess.Process]]
PipeFactory = Callable[..., "ProcessPipe"]

# Readers get this long to drain stdout/stderr after the process has exited
READER_FLUSH_TIMEOUT = 1.0
# SIGKILL follows SIGTERM when the process ignores it this long
KILL_TIMEOUT = 2.0


class PipeDirection(StrEnum):
    """Which way PCM flows through the subprocess."""

    RENDER = "render"
    CAPTURE = "capture"


class PipeState(StrEnum):
    """Lifecycle of a ProcessPipe."""

    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


@dataclass(frozen=True)
class PipeExit:
    """Final outcome of a pipe, delivered once to its owner."""

    returncode: int | None
    error: BaseException | None = None
    requested: bool = False  # the owner called finish() or terminate() first

    @property
    def failed(self) -> bool:
        """Spawn errors, broken pipes and unrequested non-zero exits."""
        if self.error is not None:
            return True
        return not self.requested and self.returncode != 0


class ProcessPipe:
    """One OS audio subprocess with a backpressure-aware byte stream."""

    def __init__(
        self,
        command: Sequence[str],
        audio_format: AudioFormat,
        direction: PipeDirection,
        *,
        on_data: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
        read_size: int = 4096,
        high_water: int = 64 * 1024,
        logger: Any = None,  # noqa: ANN401
        spawn: SpawnFunc | None = None,
    ) -> None:
        """Initialize the pipe without starting the process.

        Args:
            command: Executable plus leading arguments, e.g. ``["aplay"]``
            audio_format: Format appended as raw-mode tool arguments
            direction: RENDER writes stdin, CAPTURE reads stdout
            on_data: Called with each stdout chunk of a capture pipe
            on_exit: Called once with the final PipeExit
            read_size: Maximum bytes per stdout read
            high_water: stdin buffer size above which submit() reports backpressure
            logger: Bound structlog logger; defaults to the module logger
            spawn: Process factory, ``asyncio.create_subprocess_exec`` by default
        """
        self.argv = [*command, *audio_format.command_args()]
        self.audio_format = audio_format
        self.direction = direction
        self.state = PipeState.SPAWNED
        self.pid: int | None = None
        self.queued_bytes = 0
        self.read_bytes = 0

        self._on_data = on_data
        self._on_exit = on_exit
        self._read_size = read_size
        self._high_water = high_water
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._log = (logger or structlog.get_logger(__name__)).bind(
            pipe=direction.value, command=self.argv[0]
        )

        self._process: asyncio.subprocess.Process | None = None
        self._reader_tasks: list[asyncio.Task[None]] = []
        self._watch_task: asyncio.Task[None] | None = None
        self._exited = asyncio.Event()
        self._exit: PipeExit | None = None
        self._write_error: BaseException | None = None
        self._stop_requested = False
        self._terminated = False

    @property
    def exit(self) -> PipeExit | None:
        """Final outcome, or None while the process is alive."""
        return self._exit

    @property
    def is_running(self) -> bool:
        return self.state is PipeState.RUNNING

    @property
    def is_writable(self) -> bool:
        """True while submit() can still hand bytes to the process."""
        return self._open_stdin() is not None

    def _open_stdin(self) -> asyncio.StreamWriter | None:
        if not self.is_running or self._stop_requested or self._write_error is not None:
            return None
        stdin = self._process.stdin if self._process else None
        if stdin is None or stdin.is_closing():
            return None
        return stdin

    async def start(self) -> None:
        """Spawn the subprocess.

        Spawn failures are not raised; they are reported through ``on_exit``
        like any other failure, and the pipe becomes inert.
        """
        if self.state is not PipeState.SPAWNED:
            raise RuntimeError(f"Pipe already started (state={self.state})")

        render = self.direction is PipeDirection.RENDER
        self._log.info("Starting audio process", argv=self.argv)
        try:
            self._process = await self._spawn(
                *self.argv,
                stdin=asyncio.subprocess.PIPE if render else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL if render else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._log.error("Failed to spawn audio process", error=str(e))
            self._finalize(PipeExit(returncode=None, error=e))
            return

        self.pid = self._process.pid
        self._log = self._log.bind(pid=self.pid)
        self.state = PipeState.RUNNING

        process = self._process
        if render and process.stdin is not None:
            process.stdin.transport.set_write_buffer_limits(high=self._high_water)
        if not render and process.stdout is not None:
            self._reader_tasks.append(
                asyncio.create_task(
                    self._read_stdout(process.stdout), name=f"pipe-stdout-{self.pid}"
                )
            )
        if process.stderr is not None:
            self._reader_tasks.append(
                asyncio.create_task(
                    self._read_stderr(process.stderr), name=f"pipe-stderr-{self.pid}"
                )
            )
        self._watch_task = asyncio.create_task(
            self._watch(process), name=f"pipe-watch-{self.pid}"
        )

    def submit(self, data: bytes) -> bool:
        """Write a chunk to the process without blocking.

        Returns:
            False when the pipe is inert (nothing was written) or when the
            stdin buffer is above its high-water mark. In the latter case the
            data was queued and the caller must await ``drained()`` before
            submitting more.
        """
        if self.direction is not PipeDirection.RENDER:
            raise RuntimeError("submit() is only available on render pipes")
        stdin = self._open_stdin()
        if stdin is None:
            return False

        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            self._fail_write(e)
            return False

        self.queued_bytes += len(data)
        return stdin.transport.get_write_buffer_size() <= self._high_water

    async def drained(self) -> None:
        """Resolve once the stdin buffer has drained below its low-water mark."""
        stdin = self._open_stdin()
        if stdin is None:
            return
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._fail_write(e)

    def finish(self) -> None:
        """Close stdin so the process can render what it has buffered and exit."""
        self._stop_requested = True
        if self._process is None or self._process.stdin is None:
            return
        if not self._process.stdin.is_closing():
            self._log.debug("Closing audio process stdin")
            self._process.stdin.close()

    def terminate(self) -> None:
        """Send SIGTERM. Idempotent, and a no-op once the process has exited."""
        self._stop_requested = True
        if self._process is None or self._process.returncode is not None or self._terminated:
            return
        self._terminated = True
        self._log.debug("Terminating audio process")
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    async def wait_exited(self, timeout: float | None = None) -> bool:
        """Wait for the exit notification.

        Returns:
            True if the pipe has exited (or was never started), False on timeout.
        """
        if self.state is PipeState.SPAWNED:
            return True
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def close(self, grace_period: float) -> PipeExit | None:
        """Finish, allow ``grace_period`` seconds to exit, then terminate.

        A process that ignores SIGTERM is killed after KILL_TIMEOUT seconds.
        """
        self.finish()
        if not await self.wait_exited(grace_period):
            self.terminate()
            if not await self.wait_exited(KILL_TIMEOUT):
                self._log.warning("Audio process ignored SIGTERM, killing it")
                if self._process is not None and self._process.returncode is None:
                    try:
                        self._process.kill()
                    except ProcessLookupError:
                        pass
                await self.wait_exited()
        return self._exit

    def _fail_write(self, error: BaseException) -> None:
        if self._write_error is None:
            self._write_error = error
            self._log.warning("Write to audio process failed", error=repr(error))
        self.terminate()

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(self._read_size)
            if not chunk:
                break
            self.read_bytes += len(chunk)
            if self._on_data is not None:
                try:
                    self._on_data(chunk)
                except Exception:
                    self._log.exception("Data handler raised")

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        async for line in stream:
            self._log.debug("Audio process stderr", line=line.decode(errors="replace").rstrip())

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()

        if self._reader_tasks:
            done, pending = await asyncio.wait(self._reader_tasks, timeout=READER_FLUSH_TIMEOUT)
            for task in pending:
                task.cancel()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self._log.error("Audio process reader failed", error=repr(task.exception()))

        self._finalize(
            PipeExit(
                returncode=returncode,
                error=self._write_error,
                requested=self._stop_requested,
            )
        )

    def _finalize(self, result: PipeExit) -> None:
        if self._exit is not None:
            return
        self._exit = result
        self.state = PipeState.FAILED if result.failed else PipeState.EXITED
        self._exited.set()

        if result.failed:
            self._log.warning(
                "Audio process failed",
                returncode=result.returncode,
                error=repr(result.error) if result.error else None,
            )
        else:
            self._log.info("Audio process exited", returncode=result.returncode)

        if self._on_exit is not None:
            try:
                self._on_exit(result)
            except Exception:
                self._log.exception("Exit handler raised")
