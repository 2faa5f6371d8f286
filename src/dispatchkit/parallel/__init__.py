# parallel/__init__.py
"""Process-level plumbing: loaders, worker supervision, buffered transports."""

from .buffers import EagerReader, EagerWriter, read_frame, write_frame
from .populator import BackgroundPopulator, order_artifacts
from .supervisor import WorkerSupervisor, worker_output_path, worker_stats_path

__all__ = [
    # Transports
    "EagerReader",
    "EagerWriter",
    "read_frame",
    "write_frame",
    # Discovery
    "BackgroundPopulator",
    "order_artifacts",
    # Workers
    "WorkerSupervisor",
    "worker_output_path",
    "worker_stats_path",
]
