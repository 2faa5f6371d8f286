# worktree/work_queue.py
"""Authoritative work queue with lazy group splitting (work stealing)."""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

from .group_queue import GroupQueue, GroupRegistry
from .types import ItemPath, WorkItem

__all__ = ["WorkQueue", "WAIT", "DEFAULT_MAX_SPLITS", "PopResult"]

logger = logging.getLogger(__name__)

# Returned instead of a path when the populator may still produce work
WAIT = "wait"

DEFAULT_MAX_SPLITS = 20

PopResult = Union[ItemPath, str, None]


class WorkQueue:
    """
    Root queue plus per-group steal queues.

    Root items are consumed front-to-back. A group that still has work after
    a pop is pushed to the back of its parent's queue (the root split queue
    for top-level groups) so another worker can steal from it, at most
    ``max_splits_per_group`` times and never when tagged ``no_split``.
    """

    def __init__(
        self,
        items: Iterable[WorkItem] = (),
        *,
        max_splits_per_group: int = DEFAULT_MAX_SPLITS,
        populator=None,
        duration: Optional[Callable[[str], Optional[float]]] = None,
        sort: bool = True,
    ):
        """
        Initialize the queue.

        Args:
            items: Initially known root items
            max_splits_per_group: Cap on re-enqueues per group (0 disables splitting)
            populator: Optional source of lazily discovered root items; must
                provide ``shift()``, ``exhausted`` and ``pending_artifacts``
            duration: Historical duration lookup for root keys
            sort: Order initial items longest-expected-first
        """
        self.max_splits_per_group = max_splits_per_group
        self.populator = populator
        self.registry = GroupRegistry()

        self._pending: Deque[WorkItem] = deque()
        self._split: Deque[WorkItem] = deque()
        self._root_keys: set = set()
        self._outstanding = 0

        self.dispatched = 0
        self.total_splits = 0
        self.artifact_groups: Dict[str, List[str]] = {}

        items = list(items)
        if duration is not None:
            for item in items:
                if item.estimated_duration is None:
                    item.estimated_duration = duration(item.key)
        if sort:
            # Longest-processing-time first; stable for ties and unknowns
            items.sort(key=lambda i: -(i.estimated_duration or 0.0))

        for item in items:
            self.push(item)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def push(self, item: WorkItem) -> bool:
        """
        Append a root item.

        Returns:
            False if the item was rejected (duplicate key or empty group)
        """
        if item.key in self._root_keys:
            logger.warning("Duplicate root key %r ignored", item.key)
            return False

        if item.is_leaf:
            count = 1
        else:
            count = self.registry.register(item)
            if count == 0:
                logger.debug("Group %r has no leaves; discarded", item.key)
                return False

        self._root_keys.add(item.key)
        self._outstanding += count
        self._pending.append(item)

        if item.artifact is not None:
            self.artifact_groups.setdefault(item.artifact, []).append(item.key)
        return True

    def _absorb_discovered(self) -> None:
        if self.populator is None:
            return
        while True:
            item = self.populator.shift()
            if item is None:
                break
            self.push(item)

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def pop_next(
        self,
        scope: ItemPath = (),
        preferred: Optional[Tuple[str, object]] = None,
    ) -> PopResult:
        """
        Pop the next leaf path, descending into (and splitting) groups.

        Args:
            scope: Group path to pop under; empty for the root queue
            preferred: Optional (tag, value); a matching root item is taken
                before falling back to FIFO order

        Returns:
            Full path to a leaf, WAIT if the populator may still produce
            root items, or None if nothing is available under ``scope``
        """
        self._absorb_discovered()
        scope = tuple(scope)

        if scope:
            queue = self.registry.get(scope)
            result = self._pop_from_group(queue) if queue is not None else None
            if result is None:
                self._forget_if_drained(scope)
        else:
            result = self._pop_root(preferred)

        if result is not None and result != WAIT:
            self.dispatched += 1
        return result

    def pop_example(self, scope: ItemPath) -> Optional[ItemPath]:
        """Pop a leaf directly under ``scope`` without descending into child groups."""
        queue = self.registry.get(tuple(scope))
        if queue is None or not queue.examples:
            return None
        self.dispatched += 1
        return self._take_example(queue)

    def _pop_root(self, preferred: Optional[Tuple[str, object]]) -> PopResult:
        while True:
            item = self._shift_root(preferred)
            if item is None:
                if self.populator is not None and not self.populator.exhausted:
                    return WAIT
                return None

            if item.is_leaf:
                self._outstanding -= 1
                return (item.key,)

            path = (item.key,)
            result = self._descend(path)
            if result is None:
                self._forget_if_drained(path)
                continue

            self._maybe_split(path, lambda: self._split.append(item))
            return result

    def _shift_root(self, preferred: Optional[Tuple[str, object]]) -> Optional[WorkItem]:
        if preferred is not None:
            tag, value = preferred
            for source in (self._pending, self._split):
                for item in source:
                    if item.tags.get(tag) == value:
                        source.remove(item)
                        return item

        if self._pending:
            return self._pending.popleft()
        if self._split:
            return self._split.popleft()
        return None

    def _descend(self, path: ItemPath) -> Optional[ItemPath]:
        queue = self.registry.get(path)
        if queue is None:
            return None
        return self._pop_from_group(queue)

    def _pop_from_group(self, queue: GroupQueue) -> Optional[ItemPath]:
        while True:
            if queue.examples:
                return self._take_example(queue)
            if not queue.groups:
                return None

            child_key = queue.groups.popleft()
            child_path = queue.path + (child_key,)
            result = self._descend(child_path)
            if result is None:
                self._forget_if_drained(child_path)
                continue

            self._maybe_split(child_path, lambda: queue.groups.append(child_key))
            return result

    def _take_example(self, queue: GroupQueue) -> ItemPath:
        key = queue.examples.popleft()
        self.registry.consume_leaf(queue.path)
        self._outstanding -= 1
        return queue.path + (key,)

    def _forget_if_drained(self, path: ItemPath) -> None:
        # Sub-groups may still be reserved by workers descending into them
        if not self.registry.has_pending(path):
            self.registry.discard(path)

    def _maybe_split(self, path: ItemPath, requeue: Callable[[], None]) -> None:
        queue = self.registry.get(path)
        if queue is None:
            return
        if queue.remaining <= 0:
            self.registry.discard(path)
            return
        if queue.empty() or queue.no_split or queue.splits >= self.max_splits_per_group:
            # Left reserved for the worker(s) already inside it
            return

        queue.splits += 1
        self.total_splits += 1
        requeue()
        logger.debug("Re-enqueued group %r for sharing (split %d)", path, queue.splits)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has_pending(self, scope: ItemPath) -> bool:
        """True if any leaf under ``scope`` is still undispatched."""
        return self.registry.has_pending(tuple(scope))

    @property
    def outstanding(self) -> int:
        """Undispatched leaves currently known."""
        return self._outstanding

    def is_empty(self) -> bool:
        """True once no leaf is left anywhere and discovery has finished."""
        self._absorb_discovered()
        if self._outstanding > 0:
            return False
        return self.populator is None or self.populator.exhausted

    def size(self) -> int:
        """Approximate remaining work: known leaves plus artifacts still to load."""
        pending_artifacts = self.populator.pending_artifacts if self.populator is not None else 0
        return self._outstanding + pending_artifacts

    def __len__(self) -> int:
        return self.size()
