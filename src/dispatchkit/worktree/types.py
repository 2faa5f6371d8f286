# worktree/types.py
"""Shared types for the work tree and worker bookkeeping."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

__all__ = [
    "ItemKind",
    "WorkItem",
    "WorkerRecord",
    "ItemPath",
    "KEY_SEPARATOR",
    "path_key",
]

ItemPath = Tuple[str, ...]

# Joins path segments into a single stats key
KEY_SEPARATOR = " :: "


def path_key(path: Sequence[str]) -> str:
    """Return the stats key for a full item path."""
    return KEY_SEPARATOR.join(path)


class ItemKind(Enum):
    """Work item variants."""
    LEAF = "leaf"
    GROUP = "group"


@dataclass
class WorkItem:
    """A node in the work forest: either an atomic leaf or a splittable group."""

    key: str
    """Stable key, unique among its siblings"""

    kind: ItemKind = ItemKind.LEAF

    tags: Dict[str, Any] = field(default_factory=dict)
    """Recognized flags, e.g. ``no_split``"""

    children: List["WorkItem"] = field(default_factory=list)
    """Ordered sub-items (groups only)"""

    estimated_duration: Optional[float] = None
    """Historical duration in seconds, if known"""

    artifact: Optional[str] = None
    """Source artifact this item was discovered in"""

    def __post_init__(self):
        if self.kind is ItemKind.LEAF and self.children:
            raise ValueError(f"Leaf {self.key!r} cannot have children")

    @classmethod
    def leaf(cls, key: str, **tags: Any) -> "WorkItem":
        return cls(key=key, kind=ItemKind.LEAF, tags=tags)

    @classmethod
    def group(cls, key: str, children: Sequence["WorkItem"] = (), **tags: Any) -> "WorkItem":
        return cls(key=key, kind=ItemKind.GROUP, tags=tags, children=list(children))

    @property
    def is_leaf(self) -> bool:
        return self.kind is ItemKind.LEAF

    @property
    def is_group(self) -> bool:
        return self.kind is ItemKind.GROUP

    @property
    def no_split(self) -> bool:
        return bool(self.tags.get("no_split"))

    def leaf_count(self) -> int:
        """Number of leaves at or below this node."""
        if self.is_leaf:
            return 1
        return sum(child.leaf_count() for child in self.children)

    def iter_leaf_paths(self, prefix: ItemPath = ()) -> Iterator[ItemPath]:
        """Yield the full path of every leaf at or below this node."""
        path = prefix + (self.key,)
        if self.is_leaf:
            yield path
            return
        for child in self.children:
            yield from child.iter_leaf_paths(path)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        data: Dict[str, Any] = {"key": self.key, "kind": self.kind.value}
        if self.tags:
            data["tags"] = dict(self.tags)
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        if self.estimated_duration is not None:
            data["estimated_duration"] = self.estimated_duration
        if self.artifact is not None:
            data["artifact"] = self.artifact
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        """Create from dictionary."""
        return cls(
            key=data["key"],
            kind=ItemKind(data.get("kind", "leaf")),
            tags=data.get("tags", {}),
            children=[cls.from_dict(c) for c in data.get("children", [])],
            estimated_duration=data.get("estimated_duration"),
            artifact=data.get("artifact"),
        )


@dataclass
class WorkerRecord:
    """Bookkeeping for one worker process, local or remote."""

    pid: int
    num: int
    """Sequence number of the worker slot (1-based; 0 for synthesized records)"""

    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    exit_status: Optional[int] = None
    output: str = ""
    host: Optional[str] = None
    """Set only for workers that ran behind a relay"""

    stats: Dict[str, float] = field(default_factory=dict)
    summary: str = ""
    failure_output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    @property
    def elapsed(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        return {
            "pid": self.pid,
            "num": self.num,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "exit_status": self.exit_status,
            "output": self.output,
            "host": self.host,
            "stats": dict(self.stats),
            "summary": self.summary,
            "failure_output": self.failure_output,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerRecord":
        """Create from dictionary."""
        return cls(
            pid=int(data["pid"]),
            num=int(data["num"]),
            start_time=float(data.get("start_time") or time.time()),
            end_time=data.get("end_time"),
            exit_status=data.get("exit_status"),
            output=data.get("output", ""),
            host=data.get("host"),
            stats={k: float(v) for k, v in data.get("stats", {}).items()},
            summary=data.get("summary", ""),
            failure_output=data.get("failure_output", ""),
        )
