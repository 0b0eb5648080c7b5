"""Minimal clients for the /play and /rec endpoints."""

import asyncio
import json
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from audiorelay.audio.format import AudioFormat
from audiorelay.relay.protocol import PLAY_PATH, RECORD_PATH

logger = structlog.get_logger(__name__)

STOP_MESSAGE = "stop"


@dataclass(frozen=True)
class PlaybackResult:
    """Outcome of streaming audio to /play."""

    bytes_sent: int
    close_code: int | None
    close_reason: str


@dataclass(frozen=True)
class RecordingResult:
    """Outcome of recording from /rec."""

    bytes_received: int
    chunks_received: int
    close_code: int | None
    close_reason: str


def endpoint_url(host: str, port: int, path: str) -> str:
    return f"ws://{host}:{port}{path}"


def play_url(host: str, port: int) -> str:
    return endpoint_url(host, port, PLAY_PATH)


def record_url(host: str, port: int) -> str:
    return endpoint_url(host, port, RECORD_PATH)


async def _iterate(chunks: Iterable[bytes] | AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    if isinstance(chunks, AsyncIterable):
        async for chunk in chunks:
            yield chunk
    else:
        for chunk in chunks:
            yield chunk


async def play_pcm(
    url: str,
    chunks: Iterable[bytes] | AsyncIterable[bytes],
    audio_format: AudioFormat,
    *,
    close_timeout: float | None = None,
) -> PlaybackResult:
    """Stream PCM to a /play endpoint and wait for the server to finish.

    The server closes the connection once it estimates the audio has been
    played, so this returns roughly when playback ends.

    Args:
        url: Full endpoint URL, e.g. ``ws://localhost:3000/play``
        chunks: Binary chunks sent in order, sync or async
        audio_format: Format announced in the configuration frame
        close_timeout: Seconds to wait for the server's close after the last
            chunk; None waits indefinitely

    Returns:
        PlaybackResult with the byte count and the server's close code.
    """
    log = logger.bind(url=url)
    async with connect(url) as websocket:
        await websocket.send(json.dumps(audio_format.to_payload()))
        bytes_sent = 0
        try:
            async for chunk in _iterate(chunks):
                if not chunk:
                    continue
                await websocket.send(chunk)
                bytes_sent += len(chunk)
            log.debug("All audio sent, waiting for playback to finish", bytes_sent=bytes_sent)
            await asyncio.wait_for(websocket.wait_closed(), close_timeout)
        except ConnectionClosed:
            log.warning("Server closed the connection early", bytes_sent=bytes_sent)
        except TimeoutError:
            log.warning("Timed out waiting for playback to finish")

        return PlaybackResult(
            bytes_sent=bytes_sent,
            close_code=websocket.close_code,
            close_reason=websocket.close_reason or "",
        )


async def record_pcm(
    url: str,
    audio_format: AudioFormat,
    sink: Callable[[bytes], Any],
    duration: float,
) -> RecordingResult:
    """Record from a /rec endpoint for ``duration`` seconds.

    Args:
        url: Full endpoint URL, e.g. ``ws://localhost:3000/rec``
        audio_format: Requested capture format
        sink: Called with every binary chunk, e.g. ``file.write``
        duration: Seconds to record before sending the stop request

    Returns:
        RecordingResult with the byte count and the close code.
    """
    log = logger.bind(url=url)
    loop = asyncio.get_running_loop()
    bytes_received = 0
    chunks_received = 0

    async with connect(url) as websocket:
        await websocket.send(json.dumps(audio_format.to_payload()))
        deadline = loop.time() + duration
        try:
            while (remaining := deadline - loop.time()) > 0:
                try:
                    message = await asyncio.wait_for(websocket.recv(), remaining)
                except TimeoutError:
                    break
                if isinstance(message, str):
                    log.debug("Ignoring text frame from server")
                    continue
                sink(message)
                bytes_received += len(message)
                chunks_received += 1

            await websocket.send(STOP_MESSAGE)
            await websocket.close()
        except ConnectionClosed:
            log.warning("Server closed the recording", bytes_received=bytes_received)

        return RecordingResult(
            bytes_received=bytes_received,
            chunks_received=chunks_received,
            close_code=websocket.close_code,
            close_reason=websocket.close_reason or "",
        )
