import asyncio
import os
import sys

from viewcounter.config import load_config
from viewcounter.errors import ViewCounterError
from viewcounter.lifecycle import Lifecycle
from viewcounter.logging import EventType, configure_logging, get_logger


def main() -> int:
    """Run the gateway until a termination signal or a server failure."""
    logger = get_logger()
    config_path = os.getenv("VIEWCOUNTER_CONFIG", "viewcounter.yml")

    try:
        config = load_config(config_path)
        configure_logging(config.log_level)
        lifecycle = Lifecycle(config, logger)
        return asyncio.run(lifecycle.run())
    except ViewCounterError as e:
        logger.critical(
            f"startup failed: {e}",
            event_type=EventType.GATEWAY_ERROR,
            metadata={"error": str(e), "error_type": type(e).__name__},
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
