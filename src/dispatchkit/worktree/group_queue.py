# worktree/group_queue.py
"""Per-group steal queues and the registry that owns them."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, Optional

from .types import ItemPath, WorkItem

__all__ = ["GroupQueue", "GroupRegistry"]


@dataclass
class GroupQueue:
    """Undispatched contents of one group: its own leaves, then its child groups."""

    path: ItemPath
    """Full path of the group from the root"""

    examples: Deque[str] = field(default_factory=deque)
    """Keys of leaves directly under this group"""

    groups: Deque[str] = field(default_factory=deque)
    """Keys of non-empty child groups still to be handed out"""

    tags: Dict[str, Any] = field(default_factory=dict)

    remaining: int = 0
    """Undispatched leaves at or below this group"""

    splits: int = 0
    """Times this group has been re-enqueued for sharing"""

    @property
    def key(self) -> str:
        return self.path[-1]

    @property
    def no_split(self) -> bool:
        return bool(self.tags.get("no_split"))

    def empty(self) -> bool:
        return not self.examples and not self.groups

    @classmethod
    def for_item(cls, item: WorkItem, path: ItemPath) -> "GroupQueue":
        """Build the queue for a group, skipping child groups without leaves."""
        return cls(
            path=path,
            examples=deque(c.key for c in item.children if c.is_leaf),
            groups=deque(
                c.key for c in item.children if c.is_group and c.leaf_count() > 0
            ),
            tags=dict(item.tags),
            remaining=item.leaf_count(),
        )


class GroupRegistry:
    """
    Arena of GroupQueues keyed by full path.

    Owned by a single WorkQueue; nothing else mutates it.
    """

    def __init__(self):
        self._queues: Dict[ItemPath, GroupQueue] = {}

    def register(self, item: WorkItem, parent: ItemPath = ()) -> int:
        """
        Register a group and all of its descendant groups.

        Args:
            item: Group to register
            parent: Path of the group's parent ('()' for root items)

        Returns:
            Number of leaves registered (0 means the group is exhausted
            and nothing was registered)
        """
        count = item.leaf_count()
        if count == 0:
            return 0

        path = parent + (item.key,)
        self._queues[path] = GroupQueue.for_item(item, path)
        for child in item.children:
            if child.is_group:
                self.register(child, path)
        return count

    def get(self, path: ItemPath) -> Optional[GroupQueue]:
        return self._queues.get(tuple(path))

    def discard(self, path: ItemPath) -> None:
        """Drop a group and everything registered beneath it."""
        path = tuple(path)
        depth = len(path)
        for candidate in [p for p in self._queues if p[:depth] == path]:
            del self._queues[candidate]

    def consume_leaf(self, group_path: ItemPath) -> None:
        """Count one dispatched leaf against a group and all of its ancestors."""
        for depth in range(len(group_path), 0, -1):
            queue = self._queues.get(group_path[:depth])
            if queue is not None:
                queue.remaining -= 1

    def has_pending(self, path: ItemPath) -> bool:
        queue = self.get(path)
        return queue is not None and queue.remaining > 0

    def __contains__(self, path) -> bool:
        return tuple(path) in self._queues

    def __len__(self) -> int:
        return len(self._queues)

    def __iter__(self) -> Iterator[GroupQueue]:
        return iter(list(self._queues.values()))
