"""Client helpers for the relay endpoints and test tone generation."""

from audiorelay.client.relay_client import (
    PlaybackResult,
    RecordingResult,
    play_pcm,
    play_url,
    record_pcm,
    record_url,
)
from audiorelay.client.tones import chunked, sine_wave

__all__ = [
    "PlaybackResult",
    "RecordingResult",
    "chunked",
    "play_pcm",
    "play_url",
    "record_pcm",
    "record_url",
    "sine_wave",
]
