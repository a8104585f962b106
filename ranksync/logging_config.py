import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "RANKSYNC_LOG_LEVEL"


def log_level() -> int:
    name = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Logger shared by the coordinator and node processes.

    Messages carry ``key=value`` fields (``purchaseId=``, ``username=``,
    ``server=``) so a purchase can be followed from webhook through relay to
    the node's apply. The root level comes from ``RANKSYNC_LOG_LEVEL``
    the first time any module asks for a logger.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=log_level(), format=LOG_FORMAT)
    return logging.getLogger(name)
