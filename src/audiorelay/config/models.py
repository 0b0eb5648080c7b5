"""Configuration models for audio-relay.

This module contains all configuration-related Pydantic models used throughout the application.
"""

from pydantic import BaseModel, Field, field_validator

from audiorelay.audio.format import AudioFormat

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class LoggingConfig(BaseModel):
    """Structlog-based logging configuration."""

    level: str = "INFO"
    library_level: str = "WARNING"  # websockets logs every frame at DEBUG
    json_logs: bool | None = None  # None = auto-detect based on environment
    include_caller: bool = False  # Include file:line info (useful for debugging)
    extra_fields: dict[str, str] = Field(default_factory=lambda: {"service": "audio-relay"})

    @field_validator("level", "library_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Normalize to an upper-case stdlib level name."""
        name = v.upper()
        if name not in _LEVEL_NAMES:
            raise ValueError(f"unknown log level {v!r}, expected one of {', '.join(_LEVEL_NAMES)}")
        return name


class PlaybackConfig(BaseModel):
    """Render subprocess and drain heuristic settings for /play sessions."""

    command: list[str] = Field(default_factory=lambda: ["aplay"])
    drain_check_interval_ms: int = Field(default=200, gt=0)  # How often the drain timer runs
    safety_margin_ms: int = Field(default=150, ge=0)  # Slack added to the queued duration
    grace_period_ms: int = Field(default=100, ge=0)  # Wait between closing stdin and SIGTERM
    write_high_water_bytes: int = Field(default=64 * 1024, gt=0)  # stdin backpressure threshold

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Require at least the executable name."""
        if not v or not v[0]:
            raise ValueError("command must name an executable")
        return v


class RecordingConfig(BaseModel):
    """Capture subprocess and fan-out settings for /rec subscribers."""

    command: list[str] = Field(default_factory=lambda: ["arecord"])
    read_size: int = Field(default=4096, gt=0)  # Max bytes per chunk read from stdout
    subscriber_queue_size: int = Field(default=64, gt=0)  # Chunks buffered per slow subscriber
    grace_period_ms: int = Field(default=100, ge=0)
    stop_linger_ms: int = Field(default=1000, ge=0)  # Wait for the client to close after a stop
    allow_format_mismatch: bool = False  # Late subscribers join the active format instead

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Require at least the executable name."""
        if not v or not v[0]:
            raise ValueError("command must name an executable")
        return v


class RelayConfig(BaseModel):
    """Configuration settings for the audio relay server."""

    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=0, le=65535)  # 0 binds an ephemeral port
    debug: bool = False  # Forces DEBUG logging regardless of logging.level
    max_message_bytes: int = Field(default=1024 * 1024, gt=0)  # Largest inbound frame accepted

    # Fills in fields a client leaves out of its configuration frame
    default_format: AudioFormat = Field(default_factory=AudioFormat)

    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
