"""Main entry point for the API server."""

import logging
import sys

from cap_broker.api.service_broker import run_server
from cap_broker.config import config
from cap_broker.exceptions import ConfigurationError
from cap_broker.logging_config import setup_logging

if __name__ == "__main__":
    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info("Starting CAP service broker API server...")
    try:
        run_server(config)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        sys.exit(1)
