# dispatchkit/config.py
from __future__ import annotations

import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple, Union

from .tracking.stats_store import StatsMergeMode
from .worktree.work_queue import DEFAULT_MAX_SPLITS

__all__ = ["RunConfig", "ENV_PREFIX"]

logger = logging.getLogger(__name__)

ENV_PREFIX = "DISPATCH_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _default_concurrency() -> int:
    return os.cpu_count() or 2


# Run orchestration options
@dataclass(frozen=True)
class RunConfig:
    # Parallelism
    concurrency: int = -1  # -1 picks os.cpu_count(); 0 runs in-process
    num_loaders: int = 2

    # Transport
    socket: Optional[str] = None
    relay: Optional[str] = None
    relay_timeout: float = 30.0
    run_token: Optional[str] = None
    relay_message: Optional[str] = None

    # Stats
    stats_path: Union[str, Path] = ".dispatch_stats"
    stats_mode: StatsMergeMode = StatsMergeMode.MERGE

    # Splitting
    max_splits_per_group: int = DEFAULT_MAX_SPLITS
    split_groups: bool = True

    # Run control
    bad_worker_timeout: float = 120.0
    force: Optional[Tuple[str, ...]] = None
    verbose: bool = False
    show_progress: bool = False

    # Files
    tmp_dir: Union[str, Path] = tempfile.gettempdir()
    log_dir: Optional[Union[str, Path]] = None

    def __post_init__(self):
        if self.concurrency < 0:
            object.__setattr__(self, "concurrency", _default_concurrency())
        if self.run_token is None:
            object.__setattr__(self, "run_token", secrets.token_hex(8))
        if self.socket is None:
            name = f"dispatch_{os.getpid()}_{secrets.token_hex(4)}.sock"
            object.__setattr__(self, "socket", str(Path(self.tmp_dir) / name))
        if self.relay is not None and self.relay == self.socket:
            logger.warning("Relay address equals the local socket; relay mode disabled")
            object.__setattr__(self, "relay", None)
        if self.bad_worker_timeout <= 0:
            raise ValueError("bad_worker_timeout must be positive")
        if self.max_splits_per_group < 0:
            raise ValueError("max_splits_per_group must be >= 0")

    @property
    def is_relay(self) -> bool:
        return self.relay is not None

    @property
    def sequential(self) -> bool:
        return self.concurrency == 0

    @property
    def effective_max_splits(self) -> int:
        """Split cap actually applied; splitting off means 0."""
        return self.max_splits_per_group if self.split_groups else 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "RunConfig":
        """
        Build a config from ``DISPATCH_*`` environment variables.

        Args:
            environ: Mapping to read (defaults to ``os.environ``)
            **overrides: Field values that win over the environment

        Raises:
            ValueError: On malformed numbers, booleans or stats modes
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        def as_int(name: str) -> Optional[int]:
            value = get(name)
            if value is None:
                return None
            try:
                return int(value)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from None

        def as_float(name: str) -> Optional[float]:
            value = get(name)
            if value is None:
                return None
            try:
                return float(value)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None

        def as_bool(name: str) -> Optional[bool]:
            value = env.get(ENV_PREFIX + name)
            if value is None:
                return None
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {value!r}")

        fields = {
            "concurrency": as_int("WORKERS"),
            "num_loaders": as_int("LOADERS"),
            "socket": get("SOCKET"),
            "relay": get("RELAY"),
            "relay_timeout": as_float("RELAY_TIMEOUT"),
            "run_token": get("RELAY_TOKEN"),
            "relay_message": get("RELAY_MESSAGE"),
            "stats_path": get("STATS"),
            "bad_worker_timeout": as_float("BAD_WORKER_TIMEOUT"),
            "max_splits_per_group": as_int("MAX_SPLITS"),
            "split_groups": as_bool("SPLIT_GROUPS"),
            "verbose": as_bool("VERBOSE"),
            "show_progress": as_bool("PROGRESS"),
            "tmp_dir": get("TMPDIR"),
            "log_dir": get("LOG_DIR"),
        }

        mode = get("STATS_MODE")
        if mode is not None:
            try:
                fields["stats_mode"] = StatsMergeMode(mode.lower())
            except ValueError:
                choices = ", ".join(m.value for m in StatsMergeMode)
                raise ValueError(
                    f"{ENV_PREFIX}STATS_MODE must be one of {choices}, got {mode!r}"
                ) from None

        force = get("FORCE")
        if force is not None:
            fields["force"] = tuple(k.strip() for k in force.split(",") if k.strip())

        kwargs = {k: v for k, v in fields.items() if v is not None}
        kwargs.update(overrides)
        return cls(**kwargs)
