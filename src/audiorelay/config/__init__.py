"""audio-relay configuration package.

Pydantic models for the server, playback, recording and logging settings,
loaded from YAML by ConfigManager.
"""

from .manager import ConfigManager
from .models import LoggingConfig, PlaybackConfig, RecordingConfig, RelayConfig

__all__ = [
    "ConfigManager",
    "LoggingConfig",
    "PlaybackConfig",
    "RecordingConfig",
    "RelayConfig",
]
