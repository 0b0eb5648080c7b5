import os
from pathlib import Path


class PathResolver:
    """Central authority for file path resolution in audio-relay.

    Uses environment variables for configuration with sensible defaults.
    """

    def __init__(self) -> None:
        """Initialize PathResolver with environment-based configuration."""
        self.app_dir = Path(os.getenv("AUDIORELAY_APP", "/opt/audiorelay"))
        self.data_dir = Path(os.getenv("AUDIORELAY_DATA", "/var/lib/audiorelay"))

    def get_config_path(self) -> Path:
        """Get the path to the main configuration file.

        Checks AUDIORELAY_CONFIG environment variable first, then falls back to default.
        """
        config_path = os.getenv("AUDIORELAY_CONFIG")
        if config_path:
            return Path(config_path)

        return self.data_dir / "config" / "audiorelay.yaml"

    def get_data_dir(self) -> Path:
        """Get the data directory path."""
        return self.data_dir
