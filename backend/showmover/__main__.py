# backend/showmover/__main__.py
import logging

import uvicorn

from .config import Settings
from .logging_setup import setup_logging
from .main import create_app

logger = logging.getLogger(__name__)


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    logger.info("Starting show mover on port %d (config=%s, db=%s)", settings.port, settings.config_path, settings.db_path)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
