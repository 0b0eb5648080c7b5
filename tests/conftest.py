import asyncio
from collections.abc import Callable
from functools import partial
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close
from websockets.protocol import State

from audiorelay.audio.format import AudioFormat
from audiorelay.audio.process_pipe import ProcessPipe
from audiorelay.config.models import PlaybackConfig, RecordingConfig, RelayConfig
from audiorelay.system.path_resolver import PathResolver


class FakeTransport:
    """Write transport whose buffer size the test controls."""

    def __init__(self) -> None:
        self.high_water: int | None = None
        self.buffered = 0

    def set_write_buffer_limits(self, high=None, low=None):
        self.high_water = high

    def get_write_buffer_size(self) -> int:
        return self.buffered


class FakeStdin:
    """Stand-in for a subprocess StreamWriter.

    With ``hold`` set, written bytes stay buffered and drain() blocks until
    the test calls flush().
    """

    def __init__(self, process: "FakeProcess") -> None:
        self.process = process
        self.transport = FakeTransport()
        self.chunks: list[bytes] = []
        self.closed = False
        self.hold = False
        self.broken = False
        self.drain_calls = 0
        self._flushed = asyncio.Event()
        self._flushed.set()

    @property
    def written(self) -> bytes:
        return b"".join(self.chunks)

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("stdin closed by process")
        self.chunks.append(bytes(data))
        if self.hold:
            self.transport.buffered += len(data)
            self._flushed.clear()

    async def drain(self) -> None:
        self.drain_calls += 1
        await self._flushed.wait()
        if self.broken:
            raise BrokenPipeError("stdin closed by process")

    def flush(self) -> None:
        self.transport.buffered = 0
        self._flushed.set()

    def close(self) -> None:
        self.closed = True
        self.process.on_stdin_closed()

    def is_closing(self) -> bool:
        return self.closed


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(
        self,
        pid: int,
        *,
        render: bool,
        exit_on_stdin_close: bool = True,
        ignore_terminate: bool = False,
    ) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdin = FakeStdin(self) if render else None
        self.stdout = None if render else asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.exit_on_stdin_close = exit_on_stdin_close
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.Event()

    def emit(self, chunk: bytes) -> None:
        assert self.stdout is not None
        self.stdout.feed_data(chunk)

    def exit(self, returncode: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        if self.stdout is not None:
            self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    def on_stdin_closed(self) -> None:
        if self.exit_on_stdin_close:
            self.exit(0)


class FakeSpawner:
    """Records spawn calls and hands out FakeProcess instances."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.error: OSError | None = None
        self.hold_writes = False
        self.process_options: dict[str, Any] = {}
        self.spawned = asyncio.Event()
        self.gate: asyncio.Event | None = None  # holds spawns until set

    async def __call__(self, *argv: str, stdin=None, stdout=None, stderr=None) -> FakeProcess:
        self.calls.append(list(argv))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        process = FakeProcess(
            4000 + len(self.processes),
            render=stdin == asyncio.subprocess.PIPE,
            **self.process_options,
        )
        if process.stdin is not None:
            process.stdin.hold = self.hold_writes
        self.processes.append(process)
        self.spawned.set()
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


_DISCONNECT = object()


class FakeConnection:
    """In-memory stand-in for a websockets ServerConnection.

    ``feed()`` queues a client frame, ``disconnect()`` simulates the client
    closing. Every close() call made by the server is kept in ``close_calls``.
    """

    def __init__(self, path: str = "/play") -> None:
        self.request = SimpleNamespace(path=path)
        self.remote_address = ("127.0.0.1", 50000)
        self.state = State.OPEN
        self.sent: list[bytes | str] = []
        self.close_calls: list[tuple[int, str]] = []
        self.close_code: int | None = None
        self.send_gate: asyncio.Event | None = None
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = asyncio.Event()

    @property
    def sent_bytes(self) -> bytes:
        return b"".join(m for m in self.sent if isinstance(m, bytes))

    def feed(self, message: bytes | str) -> None:
        self._incoming.put_nowait(message)

    def disconnect(self) -> None:
        self._incoming.put_nowait(_DISCONNECT)

    def _closed_error(self) -> Exception:
        frame = Close(self.close_code or 1000, "")
        if frame.code in (1000, 1001):
            return ConnectionClosedOK(frame, frame, rcvd_then_sent=True)
        return ConnectionClosedError(frame, frame, rcvd_then_sent=True)

    def _mark_closed(self, code: int) -> None:
        if self.close_code is None:
            self.close_code = code
        self.state = State.CLOSED
        self._closed.set()

    async def recv(self) -> bytes | str:
        if self._closed.is_set():
            raise self._closed_error()
        getter = asyncio.ensure_future(self._incoming.get())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not getter.done():
                getter.cancel()
        if not getter.done() or getter.cancelled():
            raise self._closed_error()
        item = getter.result()
        if item is _DISCONNECT:
            self._mark_closed(1000)
            raise self._closed_error()
        return item

    async def __aiter__(self):
        try:
            while True:
                yield await self.recv()
        except ConnectionClosedOK:
            return

    async def send(self, message: bytes | str) -> None:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self._closed.is_set():
            raise self._closed_error()
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((int(code), reason))
        self._mark_closed(int(code))

    async def wait_closed(self) -> None:
        await self._closed.wait()


class ManualClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def spawner() -> FakeSpawner:
    """Provide a fake subprocess spawner."""
    return FakeSpawner()


@pytest.fixture
def pipe_factory(spawner: FakeSpawner) -> Callable[..., ProcessPipe]:
    """Provide a ProcessPipe factory wired to the fake spawner."""
    return partial(ProcessPipe, spawn=spawner)


@pytest.fixture
def connection_factory() -> Callable[..., FakeConnection]:
    """Provide a factory for fake WebSocket connections."""
    return FakeConnection


@pytest.fixture
def clock() -> ManualClock:
    """Provide a manually advanced millisecond clock."""
    return ManualClock()


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Provide a helper that polls a condition on the event loop."""

    async def _wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait_until


@pytest.fixture
def mono_16k() -> AudioFormat:
    """Provide the default mono 16 kHz S16_LE format."""
    return AudioFormat()


@pytest.fixture
def playback_settings() -> PlaybackConfig:
    """Provide playback settings with the drain timer effectively disabled."""
    return PlaybackConfig(drain_check_interval_ms=60_000, grace_period_ms=50)


@pytest.fixture
def recording_settings() -> RecordingConfig:
    """Provide recording settings with short waits."""
    return RecordingConfig(grace_period_ms=0, stop_linger_ms=50, subscriber_queue_size=8)


@pytest.fixture
def relay_config(playback_settings: PlaybackConfig, recording_settings: RecordingConfig) -> RelayConfig:
    """Provide a relay configuration bound to localhost on an ephemeral port."""
    return RelayConfig(
        host="127.0.0.1",
        port=3000,
        playback=playback_settings,
        recording=recording_settings,
    )


@pytest.fixture
def path_resolver(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> PathResolver:
    """Provide a PathResolver whose writable paths live under tmp_path.

    The environment overrides are cleared so a developer's own settings
    cannot leak into the tests.
    """
    for name in ("AUDIORELAY_CONFIG", "AUDIORELAY_PORT", "AUDIORELAY_DEBUG"):
        monkeypatch.delenv(name, raising=False)

    resolver = PathResolver()
    resolver.app_dir = tmp_path / "app"
    resolver.data_dir = tmp_path / "data"
    resolver.data_dir.mkdir(parents=True)
    return resolver
