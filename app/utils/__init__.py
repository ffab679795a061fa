import logging
import sys

from app.core import config


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)

    # Uvicorn may already have attached a handler
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    logger.propagate = False

    return logger
