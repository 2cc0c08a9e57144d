"""Per-component loggers for the pipeline.

Every logger sits under the ``flyer`` namespace and writes to stderr, plus the
file named by LOG_FILE when set. LOG_LEVEL sets the default level and
LOG_LEVEL_<COMPONENT> overrides it for one component, e.g.
``LOG_LEVEL_VISION_CLIENT=DEBUG``.
"""

import logging
import os
from typing import List, Optional

NAMESPACE = "flyer"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def component_level(component: str) -> int:
    """Level for one component; unknown level names fall back to INFO."""
    override = "LOG_LEVEL_" + component.upper().replace("-", "_")
    raw = os.environ.get(override) or os.environ.get("LOG_LEVEL") or "INFO"
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _open_file_handler(path: str) -> Optional[logging.Handler]:
    try:
        return logging.FileHandler(path, encoding="utf-8")
    except OSError:
        return None


def get_logger(component: str) -> logging.Logger:
    logger = logging.getLogger(f"{NAMESPACE}.{component}")
    if logger.handlers:
        return logger

    level = component_level(component)
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = os.environ.get("LOG_FILE")
    file_handler = _open_file_handler(log_file) if log_file else None
    if file_handler is not None:
        handlers.append(file_handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # stops records reaching the root logger a second time
    logger.propagate = False
    if log_file and file_handler is None:
        logger.warning("LOG_FILE %s could not be opened; logging to stderr only", log_file)
    return logger
