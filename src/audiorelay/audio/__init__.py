"""Audio domain.

This module handles the local side of the relay:
- PCM format description and validation of client configuration frames
- Subprocess pipes around the ALSA render and capture tools
"""

from audiorelay.audio.format import AudioFormat, AudioFormatError, validate_audio_format
from audiorelay.audio.process_pipe import PipeDirection, PipeExit, PipeState, ProcessPipe

__all__ = [
    "AudioFormat",
    "AudioFormatError",
    "PipeDirection",
    "PipeExit",
    "PipeState",
    "ProcessPipe",
    "validate_audio_format",
]
