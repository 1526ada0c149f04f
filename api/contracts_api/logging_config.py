import logging

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | None = None):
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
