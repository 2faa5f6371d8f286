# dispatchkit/pipeline/logger.py
from __future__ import annotations

import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Master, loaders and workers share one file; the pid tells them apart
LOG_FORMAT = "%(asctime)s %(levelname)s [%(processName)s %(process)d] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _log_directory(location: str | Path) -> Path:
    p = Path(location).expanduser()
    # Something that looks like a file (has a suffix) logs next to it
    directory = p if (p.is_dir() or not p.suffix) else p.parent
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _file_handler(
    log_path: Path, rotate: bool, max_bytes: int, backup_count: int
) -> logging.Handler:
    if rotate:
        return RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    return logging.FileHandler(log_path, mode="w", encoding="utf-8")


def setup_logger(
    log_dir: str | Path,
    *,
    level: int = logging.INFO,
    filename_prefix: str = "dispatch",
    console: bool = False,
    rotate: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """
    Point the root logger at ``<log_dir>/<prefix>_<timestamp>.log``.

    Call it once in the master before anything is forked; workers and
    loaders inherit the handlers. With ``force`` any existing root handlers
    are dropped first.

    Returns:
        Path of the log file
    """
    directory = _log_directory(log_dir)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = directory / f"{filename_prefix}_{stamp}.log"

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    root.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [_file_handler(log_path, rotate, max_bytes, backup_count)]
    if console:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.info("Logging to: %s (master pid %d)", log_path, os.getpid())
    return log_path
