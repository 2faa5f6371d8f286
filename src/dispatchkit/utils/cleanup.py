# dispatchkit/utils/cleanup.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def safe_remove(
    path: Union[str, Path],
    max_retries: int = 3,
    delay_seconds: float = 0.05,
    backoff: float = 2.0,
) -> bool:
    """
    Remove a transient file or socket path.

    Behavior
    --------
    - If the path doesn't exist: returns True (idempotent no-op).
    - If the path is a directory: raises ValueError.
    - Retries transient OSErrors with backoff; returns False if the path
      could not be removed.
    """
    p = Path(path).expanduser()

    if not (p.exists() or p.is_symlink()):
        return True
    if p.is_dir():
        raise ValueError(f"{p!s} is a directory")

    delay = delay_seconds
    for attempt in range(1, max_retries + 1):
        try:
            p.unlink()
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            if attempt == max_retries:
                logger.error("Failed to remove %s after %d attempts: %s", p, max_retries, exc)
                return False
            logger.debug("Remove attempt %d/%d for %s failed: %s", attempt, max_retries, p, exc)
            time.sleep(delay)
            delay *= backoff

    return False
