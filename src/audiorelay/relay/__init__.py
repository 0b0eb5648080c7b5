"""WebSocket relay domain.

This package contains the network side of the relay:
- AudioRelayServer: WebSocket listener and process lifecycle
- ConnectionRouter: Dispatch of connections to /play and /rec
- PlaybackSession: One client streaming PCM into its own render process
- RecordingHub: One capture process fanned out to every /rec subscriber
- DrainEstimator: Wall-clock estimate of when queued audio finishes playing
"""

from audiorelay.relay.drain import DrainEstimator
from audiorelay.relay.exceptions import FormatMismatchError, RecordingFailedError, RelayError
from audiorelay.relay.playback_session import PlaybackSession, PlaybackState
from audiorelay.relay.protocol import PLAY_PATH, RECORD_PATH, CloseCode
from audiorelay.relay.recording_hub import RecordingHub
from audiorelay.relay.router import ConnectionRouter
from audiorelay.relay.server import AudioRelayServer

__all__ = [
    "PLAY_PATH",
    "RECORD_PATH",
    "AudioRelayServer",
    "CloseCode",
    "ConnectionRouter",
    "DrainEstimator",
    "FormatMismatchError",
    "PlaybackSession",
    "PlaybackState",
    "RecordingFailedError",
    "RecordingHub",
    "RelayError",
]
