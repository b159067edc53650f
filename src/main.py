"""Application entry point for the Statement Intelligence API server."""

import uvicorn

from src.api.app import create_app
from src.pipeline import StatementPipeline
from src.utils.config import load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def main() -> None:
    """Start the API server on the configured address.

    The pipeline is built here so the server uses the same configuration
    it was started with.
    """
    config = load_config()
    setup_logging(config.log_level)
    logger.info("Learning store at %s", config.store.db_path)
    uvicorn.run(
        create_app(StatementPipeline(config)),
        host=config.server.host,
        port=config.server.port,
    )


if __name__ == "__main__":
    main()
