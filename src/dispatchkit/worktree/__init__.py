"""Work items, per-group steal queues and the master's work queue."""

from .types import ItemKind, WorkItem, WorkerRecord, ItemPath, path_key
from .group_queue import GroupQueue, GroupRegistry
from .work_queue import WorkQueue, WAIT, DEFAULT_MAX_SPLITS

__all__ = [
    "ItemKind",
    "WorkItem",
    "WorkerRecord",
    "ItemPath",
    "path_key",
    "GroupQueue",
    "GroupRegistry",
    "WorkQueue",
    "WAIT",
    "DEFAULT_MAX_SPLITS",
]
