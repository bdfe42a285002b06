import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> | {message}"
)


def setup_logger(name: str, level: str = "INFO", log_file: Optional[str] = None):
    """Replace loguru's default sink and return a logger bound to ``name``"""
    logger.remove()
    logger.configure(extra={"name": name})
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level.upper(), format=LOG_FORMAT, rotation="10 MB", retention=5)
    return logger.bind(name=name)
