"""Main application entry point."""

import logging

import uvicorn
from dotenv import load_dotenv

from src.services.config import load_config
from src.services.logging import setup_server_logging

# Load environment variables
load_dotenv()

config = load_config()

# Configure logging (with file logging)
setup_server_logging(config.log_file, level=config.log_level)
logger = logging.getLogger(__name__)


def main() -> None:
    """Run the API server."""
    from src.api.app import app

    logger.info("Starting drawdown API on %s:%d", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
