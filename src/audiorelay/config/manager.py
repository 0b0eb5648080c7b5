"""Configuration loading and saving."""

import os
import shutil
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from audiorelay.config.models import RelayConfig
from audiorelay.system.path_resolver import PathResolver

logger = structlog.get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigManager:
    """Manages configuration loading, environment overrides and saving."""

    def __init__(self, path_resolver: PathResolver | None = None):
        """Initialize ConfigManager.

        Args:
            path_resolver: Optional PathResolver instance. If None, creates a new one.
        """
        self.path_resolver = path_resolver or PathResolver()
        self.config_path = self.path_resolver.get_config_path()

    def load(self) -> RelayConfig:
        """Load configuration from YAML with environment overrides.

        A missing file is not an error; the defaults are used instead.

        Returns:
            RelayConfig: Loaded and validated configuration

        Raises:
            ValueError: If the file content does not validate
        """
        raw_config = self._read_yaml() if self.config_path.exists() else {}
        raw_config = self._apply_environment(raw_config)

        try:
            return RelayConfig.model_validate(raw_config)
        except ValidationError as e:
            raise ValueError(f"Configuration validation failed: {e}") from e

    def save(self, config: RelayConfig) -> None:
        """Save configuration to file with backup.

        Args:
            config: Configuration to save

        Raises:
            PermissionError: If config file cannot be written
        """
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        if self.config_path.exists():
            backup_path = self.config_path.with_suffix(".yaml.backup")
            try:
                shutil.copy2(self.config_path, backup_path)
            except PermissionError:
                logger.warning("Could not create config backup", backup_path=str(backup_path))

        config_yaml = yaml.dump(
            config.model_dump(by_alias=True), default_flow_style=False, sort_keys=False
        )
        self.config_path.write_text(config_yaml)
        logger.info("Configuration saved", path=str(self.config_path))

    def _read_yaml(self) -> dict[str, Any]:
        config_text = self.config_path.read_text()
        raw_config = yaml.safe_load(config_text) or {}
        if not isinstance(raw_config, dict):
            raise ValueError(f"Configuration file {self.config_path} must contain a mapping")
        return raw_config

    def _apply_environment(self, raw_config: dict[str, Any]) -> dict[str, Any]:
        """Overlay AUDIORELAY_PORT and AUDIORELAY_DEBUG onto the file values."""
        port = os.getenv("AUDIORELAY_PORT")
        if port:
            try:
                raw_config["port"] = int(port)
            except ValueError as e:
                raise ValueError(f"AUDIORELAY_PORT must be an integer, got {port!r}") from e

        debug = os.getenv("AUDIORELAY_DEBUG")
        if debug:
            raw_config["debug"] = debug.lower() in _TRUE_VALUES

        return raw_config
