import asyncio

from audiorelay.config import ConfigManager, RelayConfig
from audiorelay.relay.server import AudioRelayServer
from audiorelay.system.path_resolver import PathResolver
from audiorelay.utils.structlog_configurator import configure_structlog, get_logger

# Logger will be configured when main runs
logger = get_logger(__name__)


async def main_async(config: RelayConfig | None = None) -> None:
    """Async main function that wraps the AudioRelayServer."""
    logger.info("Starting audio relay daemon")

    if config is None:
        config = ConfigManager(PathResolver()).load()
    server = AudioRelayServer(config)

    try:
        await server.start()
        await server.wait_for_shutdown()
    except Exception:
        logger.exception("Error in audio relay daemon")
    finally:
        await server.stop()


def main() -> None:
    """Run the audio relay daemon."""
    # Configure structlog first thing in main
    path_resolver = PathResolver()
    config_manager = ConfigManager(path_resolver)
    config = config_manager.load()
    configure_structlog(config)

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
    except Exception:
        logger.exception("Error in main")


if __name__ == "__main__":
    main()
