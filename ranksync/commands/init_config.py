import os
import sys

from ranksync.config import CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH, write_default_config
from ranksync.logging_config import get_logger

logger = get_logger(__name__)


def init_config(path: str) -> int:
    if write_default_config(path):
        logger.warning("Wrote %s with placeholder URL, key and secret; edit it before starting", path)
    else:
        logger.info("%s already exists; leaving it alone", path)
    return 0


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)
    raise SystemExit(init_config(target))
