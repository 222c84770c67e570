import logging
from logging import Logger
from typing import Optional

LOG_FORMAT = "[%(levelname)s] %(asctime)s - %(message)s"
DATE_FORMAT = "%d-%m-%Y %H-%M-%S"

logger = logging.getLogger("xmt")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)


def get_logger(name: Optional[str] = None) -> Logger:
    if name:
        if name == "xmt" or name.startswith("xmt."):
            return logging.getLogger(name)
        return logging.getLogger(f"xmt.{name}")
    return logger
