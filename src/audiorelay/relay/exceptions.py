"""Exceptions raised by the relay core."""

from audiorelay.audio.format import AudioFormat


class RelayError(Exception):
    """Base class for relay errors surfaced to a single connection."""


class RecordingFailedError(RelayError):
    """The shared capture process could not be started."""


class FormatMismatchError(RelayError):
    """A subscriber asked for a format other than the active capture format."""

    def __init__(self, requested: AudioFormat, active: AudioFormat) -> None:
        self.requested = requested
        self.active = active
        super().__init__(
            f"recording already active as {active.format_token} "
            f"{active.channels}ch {active.sample_rate}Hz"
        )
