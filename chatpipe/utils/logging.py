# chatpipe/utils/logging.py

import logging
import os
from pathlib import Path

from chatpipe.config.settings import BASE_DIR

DEFAULT_LOG_DIR = BASE_DIR / "chatpipe" / "logs"
LOG_FILENAME = "chatpipe.log"


def resolve_log_dir() -> Path:
    """CHATPIPE_LOG_DIR when set, else chatpipe/logs under the project root."""
    return Path(os.getenv("CHATPIPE_LOG_DIR", "").strip() or DEFAULT_LOG_DIR)


def get_logger(name: str = "chatpipe") -> logging.Logger:
    """
    Return a logger that logs both to file and console.
    Avoids adding duplicate handlers on repeated imports.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid duplicate handlers

    logger.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler (skipped when the log directory is not writable)
    log_dir = resolve_log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
        fh.setLevel(logging.INFO)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        pass

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)
    return logger
