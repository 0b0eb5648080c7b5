"""Structlog-based logging configuration for audio-relay.

Logging is configured once per process, before the server starts. Components
never configure logging themselves; they receive a bound logger at
construction or fall back to ``get_logger(__name__)``.

structlog events and stdlib records (the websockets library logs through the
stdlib) share one ``ProcessorFormatter``, so both come out in the same shape:
JSON for Docker and systemd units, a console renderer during development.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from audiorelay import __version__

if TYPE_CHECKING:
    from audiorelay.config.models import RelayConfig

# Libraries that log every frame at DEBUG
NOISY_LOGGERS = ("websockets",)


@dataclass(frozen=True)
class LogTarget:
    """Where the process is running, as far as logging cares."""

    docker: bool
    journald: bool
    development: bool

    @property
    def deployment(self) -> str:
        if self.docker:
            return "docker"
        if self.journald:
            return "systemd"
        if self.development:
            return "development"
        return "unknown"


def is_docker_environment() -> bool:
    """Check if running in a Docker container."""
    return os.path.exists("/.dockerenv") or os.environ.get("DOCKER_CONTAINER") == "true"


def is_systemd_available() -> bool:
    """Check if systemd/journald is available on the system."""
    try:
        result = subprocess.run(["systemctl", "--version"], capture_output=True, timeout=2)
    except (subprocess.SubprocessError, FileNotFoundError):
        return False
    return result.returncode == 0


def detect_log_target() -> LogTarget:
    return LogTarget(
        docker=is_docker_environment(),
        journald=is_systemd_available(),
        development=os.environ.get("AUDIORELAY_ENV", "production") == "development",
    )


def effective_level(config: RelayConfig) -> int:
    """Numeric level for the relay's own loggers; ``debug`` overrides the config."""
    if config.debug:
        return logging.DEBUG
    return logging.getLevelName(config.logging.level)


def use_json_output(config: RelayConfig, target: LogTarget) -> bool:
    """JSON unless a human is likely to be reading the terminal.

    An explicit ``logging.json_logs`` always wins. During development
    ``AUDIORELAY_JSON_LOGS=true`` also switches JSON on.
    """
    if config.logging.json_logs is not None:
        return config.logging.json_logs
    if target.development:
        return os.environ.get("AUDIORELAY_JSON_LOGS", "false").lower() == "true"
    return target.docker or target.journald


def _static_fields(extra_fields: dict[str, str]) -> Callable:
    """Processor stamping fixed fields on every event."""

    def processor(
        logger: Any, method_name: str, event_dict: dict[str, Any]  # noqa: ANN401
    ) -> dict[str, Any]:
        for key, value in extra_fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def shared_processors(config: RelayConfig, target: LogTarget) -> list:
    """Processors applied to structlog events and stdlib records alike."""
    fields = {
        "version": __version__,
        "deployment": target.deployment,
        **config.logging.extra_fields,
    }
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        _static_fields(fields),
    ]
    if config.logging.include_caller:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                {
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                }
            )
        )
    return processors


def build_formatter(
    config: RelayConfig, target: LogTarget, use_json: bool
) -> structlog.stdlib.ProcessorFormatter:
    if use_json:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors(config, target),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def _journal_handler() -> logging.Handler:
    try:
        from systemd import journal  # type: ignore[import-untyped]
    except ImportError:
        # systemd-python is optional; journald still captures the unit's stderr
        return logging.StreamHandler(sys.stderr)
    return journal.JournalHandler(SYSLOG_IDENTIFIER="audio-relay")


def install_handlers(
    config: RelayConfig, target: LogTarget, formatter: logging.Formatter
) -> list[logging.Handler]:
    """Replace the root handlers with ones suited to ``target``."""
    level = effective_level(config)
    handlers: list[logging.Handler] = []
    if target.journald and not target.docker and not target.development:
        handlers.append(_journal_handler())
    else:
        handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    library_level = logging.getLevelName(config.logging.library_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    return handlers


def configure_structlog(config: RelayConfig) -> None:
    """Configure structlog and the stdlib root logger for this process.

    Args:
        config: The RelayConfig instance containing logging settings.
    """
    target = detect_log_target()
    use_json = use_json_output(config, target)

    structlog.configure(
        processors=[
            *shared_processors(config, target),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(effective_level(config)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    install_handlers(config, target, build_formatter(config, target, use_json))

    get_logger(__name__).info(
        "Structured logging configured",
        log_level=logging.getLevelName(effective_level(config)),
        deployment=target.deployment,
        json_output=use_json,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)
