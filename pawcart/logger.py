"""
Logging configuration for PawCart.

One "pawcart" logger writing to stdout; level comes from LOG_LEVEL.
"""
import logging
import sys

from .settings import LOG_LEVEL

logger = logging.getLogger("pawcart")
logger.setLevel(LOG_LEVEL)

if not logger.handlers:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)

logger.propagate = False


def get_logger(name: str = None) -> logging.Logger:
    if name:
        return logging.getLogger(f"pawcart.{name}")
    return logger
