"""Console and per-run file logging."""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from pvetemplate.config import Config

LOG_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
LOG_PREFIX = "template-creator-"

logger = logging.getLogger(__name__)


def prune_logs(log_dir: Path, keep: int) -> None:
    """Delete all but the ``keep`` newest run logs."""
    logs = sorted(log_dir.glob(f"{LOG_PREFIX}*.log"), key=lambda p: p.stat().st_mtime, reverse=True)
    for old in logs[keep:]:
        try:
            old.unlink()
        except OSError as e:
            logger.debug(f"Could not remove old log {old}: {e}")


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None, keep: Optional[int] = None) -> Optional[Path]:
    """
    Log to the console and to a new ``template-creator-<timestamp>.log``.

    Args:
        level: Level name such as "DEBUG" or "info"
        log_dir: Directory for run logs, defaults to LOG_DIR
        keep: Number of run logs to keep, defaults to LOG_KEEP

    Returns:
        Path of the run log, or None if only console logging is active
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)

    # Third-party HTTP/SSH chatter only at debug
    for noisy in ("paramiko", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if numeric == logging.DEBUG else logging.WARNING)

    directory = Path(os.path.expanduser(log_dir or Config.LOG_DIR))
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{LOG_PREFIX}{datetime.now():%Y%m%d_%H%M%S}.log"
        file_handler = logging.FileHandler(path)
    except OSError as e:
        logger.warning(f"Cannot write logs to {directory} ({e}), logging to console only")
        return None

    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(numeric)
    root.addHandler(file_handler)
    prune_logs(directory, keep if keep is not None else Config.LOG_KEEP)
    logger.debug(f"Logging to {path}")
    return path
