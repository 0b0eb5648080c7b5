"""Tests for ConnectionRouter."""

import asyncio
import json

import pytest

from audiorelay.relay.protocol import CloseCode
from audiorelay.relay.router import ConnectionRouter

MONO_8K = json.dumps({"channels": 1, "sampleRate": 8000, "bitDepth": 16})


@pytest.fixture
def router(relay_config, pipe_factory):
    """Provide a router on the fake spawner."""
    return ConnectionRouter(relay_config, pipe_factory=pipe_factory)


class TestConnectionRouterDispatch:
    """Test path dispatch."""

    @pytest.mark.asyncio
    async def test_unknown_path_closed_with_policy_violation(
        self, router, connection_factory, spawner
    ):
        """Should refuse connections to paths other than /play and /rec."""
        connection = connection_factory("/spectrogram")

        await router.handle(connection)

        assert connection.close_calls == [(CloseCode.POLICY_VIOLATION, "unknown endpoint")]
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_query_string_ignored(self, router, connection_factory, spawner, wait_until):
        """Should route on the path without its query string."""
        connection = connection_factory("/play?token=abc")
        task = asyncio.create_task(router.handle(connection))
        connection.feed("{}")

        await wait_until(lambda: spawner.calls)
        assert spawner.calls[0][0] == "aplay"
        connection.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_playback_sessions_tracked(
        self, router, connection_factory, spawner, wait_until
    ):
        """Should give each /play connection its own session and process."""
        connections = [connection_factory("/play") for _ in range(2)]
        tasks = [asyncio.create_task(router.handle(c)) for c in connections]
        for connection in connections:
            connection.feed(MONO_8K)

        await wait_until(lambda: len(spawner.processes) == 2)
        assert len(router.sessions) == 2

        for connection in connections:
            connection.disconnect()
        await asyncio.gather(*tasks)
        assert router.sessions == set()

    @pytest.mark.asyncio
    async def test_playback_uses_configured_default_format(
        self, relay_config, pipe_factory, connection_factory, spawner, wait_until
    ):
        """Should fill omitted playback fields from the configured default format."""
        config = relay_config.model_copy(
            update={"default_format": relay_config.default_format.model_copy(update={"channels": 2})}
        )
        router = ConnectionRouter(config, pipe_factory=pipe_factory)
        connection = connection_factory("/play")
        task = asyncio.create_task(router.handle(connection))
        connection.feed("{}")

        await wait_until(lambda: spawner.calls)
        assert spawner.calls[0][spawner.calls[0].index("-c") + 1] == "2"
        connection.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_unexpected_error_closes_with_internal_error(
        self, router, connection_factory, mocker
    ):
        """Should log and close with an internal error on an unhandled exception."""
        mocker.patch.object(router, "_serve_playback", side_effect=RuntimeError("boom"))
        connection = connection_factory("/play")

        await router.handle(connection)

        assert connection.close_calls == [(CloseCode.INTERNAL_ERROR, "internal error")]


class TestConnectionRouterRecording:
    """Test the /rec endpoint."""

    @pytest.mark.asyncio
    async def test_binary_first_frame_rejected(self, router, connection_factory, spawner):
        """Should close with a policy violation and not start capture."""
        connection = connection_factory("/rec")
        connection.feed(b"\x00")

        await router.handle(connection)

        assert connection.close_calls[0][0] == CloseCode.POLICY_VIOLATION
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_invalid_configuration_rejected(self, router, connection_factory, spawner):
        """Should close with a policy violation on an invalid format."""
        connection = connection_factory("/rec")
        connection.feed(json.dumps({"bitDepth": 17}))

        await router.handle(connection)

        assert connection.close_calls[0][0] == CloseCode.POLICY_VIOLATION
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_stream_then_stop(self, router, connection_factory, spawner, wait_until):
        """Should stream captured audio until a stop request, then close normally."""
        connection = connection_factory("/rec")
        task = asyncio.create_task(router.handle(connection))
        connection.feed(MONO_8K)
        await wait_until(lambda: router.hub.subscriber_count == 1)

        spawner.last.emit(b"captured")
        await wait_until(lambda: connection.sent == [b"captured"])

        connection.feed("stop")
        await asyncio.wait_for(task, 2.0)

        assert router.hub.subscriber_count == 0
        assert spawner.last.returncode is not None
        assert connection.close_calls == [(CloseCode.NORMAL, "recording stopped")]

    @pytest.mark.asyncio
    async def test_client_close_after_stop(self, router, connection_factory, wait_until):
        """Should finish quietly when the client closes after its stop request."""
        connection = connection_factory("/rec")
        task = asyncio.create_task(router.handle(connection))
        connection.feed(MONO_8K)
        await wait_until(lambda: router.hub.subscriber_count == 1)

        connection.feed("stop")
        connection.disconnect()
        await asyncio.wait_for(task, 2.0)

        assert connection.close_calls == []

    @pytest.mark.asyncio
    async def test_message_after_stop_is_a_violation(
        self, router, connection_factory, wait_until
    ):
        """Should close with a policy violation on frames after the stop request."""
        connection = connection_factory("/rec")
        task = asyncio.create_task(router.handle(connection))
        connection.feed(MONO_8K)
        await wait_until(lambda: router.hub.subscriber_count == 1)

        connection.feed("stop")
        connection.feed(b"more")
        await asyncio.wait_for(task, 2.0)

        assert connection.close_calls == [
            (CloseCode.POLICY_VIOLATION, "message after stop request")
        ]

    @pytest.mark.asyncio
    async def test_binary_frames_ignored(self, router, connection_factory, wait_until):
        """Should ignore binary frames from a recording client."""
        connection = connection_factory("/rec")
        task = asyncio.create_task(router.handle(connection))
        connection.feed(MONO_8K)
        connection.feed(b"noise")
        await wait_until(lambda: router.hub.subscriber_count == 1)
        await asyncio.sleep(0.01)

        assert router.hub.subscriber_count == 1
        connection.disconnect()
        await asyncio.wait_for(task, 2.0)
        assert router.hub.subscriber_count == 0
        assert not router.hub.is_capturing

    @pytest.mark.asyncio
    async def test_format_mismatch_rejected(self, router, connection_factory, wait_until):
        """Should close a second subscriber asking for another format."""
        first = connection_factory("/rec")
        first_task = asyncio.create_task(router.handle(first))
        first.feed(MONO_8K)
        await wait_until(lambda: router.hub.subscriber_count == 1)

        second = connection_factory("/rec")
        second.feed(json.dumps({"sampleRate": 44100}))
        await router.handle(second)

        assert second.close_calls[0][0] == CloseCode.POLICY_VIOLATION
        assert "recording already active" in second.close_calls[0][1]
        assert router.hub.subscriber_count == 1

        first.disconnect()
        await first_task

    @pytest.mark.asyncio
    async def test_capture_start_failure(self, router, connection_factory, spawner):
        """Should close with an internal error when arecord cannot start."""
        spawner.error = FileNotFoundError("arecord")
        connection = connection_factory("/rec")
        connection.feed(MONO_8K)

        await router.handle(connection)

        assert connection.close_calls == [(CloseCode.INTERNAL_ERROR, "recording failed")]


class TestConnectionRouterShutdown:
    """Test router shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_closes_sessions_and_hub(
        self, router, connection_factory, spawner, wait_until
    ):
        """Should close playback and recording connections with going-away."""
        player = connection_factory("/play")
        recorder = connection_factory("/rec")
        tasks = [
            asyncio.create_task(router.handle(player)),
            asyncio.create_task(router.handle(recorder)),
        ]
        player.feed(MONO_8K)
        recorder.feed(MONO_8K)
        await wait_until(lambda: len(router.sessions) == 1 and router.hub.subscriber_count == 1)
        await wait_until(lambda: len(spawner.processes) == 2)

        await router.shutdown()
        await asyncio.wait_for(asyncio.gather(*tasks), 2.0)

        assert player.close_calls[0] == (CloseCode.GOING_AWAY, "server shutting down")
        assert recorder.close_calls[0] == (CloseCode.GOING_AWAY, "server shutting down")
        assert all(p.returncode is not None for p in spawner.processes)


class TestRecordReplayRoundTrip:
    """Test that recorded audio replays byte for byte."""

    @pytest.mark.asyncio
    async def test_recorded_bytes_replay_in_order(
        self, router, connection_factory, spawner, wait_until
    ):
        """Should render exactly the captured byte sequence when it is played back."""
        recorder = connection_factory("/rec")
        record_task = asyncio.create_task(router.handle(recorder))
        recorder.feed(MONO_8K)
        await wait_until(lambda: router.hub.subscriber_count == 1)

        captured = [bytes([i]) * (160 + i) for i in range(10)]
        for chunk in captured:
            expected = router.hub.chunks_broadcast + 1
            spawner.last.emit(chunk)
            await wait_until(lambda: router.hub.chunks_broadcast == expected)
        await wait_until(lambda: len(recorder.sent) == len(captured))
        recorder.feed("stop")
        await asyncio.wait_for(record_task, 2.0)

        player = connection_factory("/play")
        play_task = asyncio.create_task(router.handle(player))
        player.feed(MONO_8K)
        for chunk in recorder.sent:
            player.feed(chunk)
        await wait_until(
            lambda: spawner.processes[-1].stdin is not None
            and len(spawner.processes[-1].stdin.chunks) == len(captured)
        )
        player.disconnect()
        await asyncio.wait_for(play_task, 2.0)

        rendered = spawner.processes[-1].stdin.written
        assert rendered == b"".join(captured)
        assert len(rendered) == sum(len(c) for c in captured)
