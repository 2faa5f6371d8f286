"""Background discovery of work items in loader processes."""

from __future__ import annotations

import json
import logging
import math
import multiprocessing as mp
import os
import traceback
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from setproctitle import setproctitle

from ..tracking.stats_store import StatsStore
from ..worktree.types import WorkItem
from .buffers import EagerReader, EagerWriter

__all__ = ["BackgroundPopulator", "order_artifacts", "DEFAULT_NUM_LOADERS"]

logger = logging.getLogger(__name__)

DEFAULT_NUM_LOADERS = 2

Discover = Callable[[str], Iterable[WorkItem]]


def _artifact_size(artifact: str) -> int:
    try:
        return os.path.getsize(artifact)
    except OSError:
        return 0


def order_artifacts(artifacts: Sequence[str], stats: Optional[StatsStore] = None) -> List[str]:
    """
    Order artifacts so the slowest work is discovered first.

    Artifacts whose groups have never been timed sort first (they may be new
    and slow), then by the slowest known top-level group, then by size on
    disk, all descending.
    """
    def cost(artifact: str):
        slowest = stats.slowest_for_artifact(artifact) if stats is not None else None
        base = math.inf if slowest is None else slowest
        return (-base, -_artifact_size(artifact))

    return sorted(artifacts, key=cost)


def _loader_main(
    num: int,
    artifacts: List[str],
    discover: Discover,
    write_fd: int,
    inherited: List[Any],
) -> None:
    """Loader process: discover each artifact and stream records to the master."""
    for obj in inherited:
        try:
            obj.close()
        except OSError as exc:
            logger.debug("Could not close inherited %r: %s", obj, exc)

    setproctitle(f"dispatch:loader-[{num}]")
    writer = EagerWriter(os.fdopen(write_fd, "wb"), name=f"loader-{num}-writer")
    remaining = len(artifacts)
    try:
        for artifact in artifacts:
            remaining -= 1
            record: Dict[str, Any] = {
                "loader": num,
                "remaining": remaining,
                "artifact": artifact,
                "items": [],
            }
            try:
                items = []
                for item in discover(artifact):
                    if item.artifact is None:
                        item.artifact = artifact
                    items.append(item.to_dict())
                record["items"] = items
            except Exception as exc:
                # Reported back so the master can fail the run
                logger.error("Loader %d failed to discover %s: %s", num, artifact, exc)
                record["error"] = traceback.format_exc()

            writer.write(json.dumps(record).encode("utf-8"))
    finally:
        writer.close()

    logger.debug("Loader %d finished %d artifact(s)", num, len(artifacts))


class BackgroundPopulator:
    """
    Discovers work items in background processes while the queue drains.

    Artifacts are ordered by :func:`order_artifacts` and dealt round-robin
    to ``num_loaders`` forked processes. Each loader streams one
    length-prefixed JSON record per artifact through its own pipe; an
    :class:`EagerReader` on the master side keeps the pipe drained.
    """

    def __init__(
        self,
        artifacts: Sequence[str],
        discover: Discover,
        stats: Optional[StatsStore] = None,
        num_loaders: int = DEFAULT_NUM_LOADERS,
        ctx: Optional[mp.context.BaseContext] = None,
    ):
        """
        Initialize the populator (nothing starts until ``start``).

        Args:
            artifacts: Sources to discover work items in (e.g. file paths)
            discover: Returns the top-level items found in one artifact;
                runs inside the loader processes
            stats: Historical stats used to order artifacts
            num_loaders: Number of loader processes
            ctx: Multiprocessing context (fork by default)
        """
        self.artifacts = order_artifacts(artifacts, stats)
        self.discover = discover
        self.num_loaders = max(1, num_loaders)
        self.ctx = ctx or mp.get_context("fork")
        self.inherited: List[Any] = []
        """Objects (sockets, files) each loader closes right after the fork"""

        self.counts: Dict[int, int] = {}
        self.failures: List[Tuple[str, str]] = []
        """(artifact, error) for every artifact whose discovery failed"""
        self._chunks: Dict[int, List[str]] = {}
        self._delivered: Dict[int, int] = {}
        self._readers: Dict[int, EagerReader] = {}
        self._processes: List[mp.Process] = []
        self._ready: Deque[WorkItem] = deque()
        self._started = False

    def start(self) -> None:
        """Fork the loader processes."""
        if self._started:
            return
        self._started = True

        chunks: List[List[str]] = [[] for _ in range(self.num_loaders)]
        for i, artifact in enumerate(self.artifacts):
            chunks[i % self.num_loaders].append(artifact)

        for num, chunk in enumerate(chunks):
            self.counts[num] = len(chunk)
            self._chunks[num] = chunk
            self._delivered[num] = 0
            if not chunk:
                continue

            read_fd, write_fd = os.pipe()
            process = self.ctx.Process(
                target=_loader_main,
                args=(num, chunk, self.discover, write_fd, list(self.inherited)),
                name=f"dispatch:loader-{num}",
                daemon=True,
            )
            process.start()
            os.close(write_fd)
            self._processes.append(process)
            self._readers[num] = EagerReader(
                os.fdopen(read_fd, "rb"), name=f"loader-{num}-reader"
            )

        logger.info(
            "Started %d loader(s) for %d artifact(s)",
            len(self._processes),
            len(self.artifacts),
        )

    def _collect(self, block: bool, timeout: Optional[float]) -> None:
        for num, reader in list(self._readers.items()):
            payload = reader.get(block=block, timeout=timeout)
            if payload is None:
                if reader.finished:
                    if self.counts.get(num):
                        self._loader_died(num)
                    self.counts[num] = 0
                    del self._readers[num]
                continue

            record = json.loads(payload.decode("utf-8"))
            self.counts[num] = int(record["remaining"])
            self._delivered[num] += 1
            if record.get("error"):
                self.failures.append((record["artifact"], record["error"]))
            for data in record["items"]:
                self._ready.append(WorkItem.from_dict(data))
            if self._ready:
                return

    def _loader_died(self, num: int) -> None:
        unread = self._chunks[num][self._delivered[num]:]
        logger.error("Loader %d exited with %d artifact(s) unread", num, len(unread))
        for artifact in unread:
            self.failures.append((artifact, f"loader {num} exited before reporting this artifact"))

    def shift(self, block: bool = False, timeout: Optional[float] = None) -> Optional[WorkItem]:
        """
        Next discovered root item.

        Args:
            block: Wait for a record when nothing is ready yet
            timeout: Per-loader wait when blocking

        Returns:
            A WorkItem, or None if none is known yet (or discovery finished)
        """
        if not self._ready and self._started:
            self._collect(block=False, timeout=None)
            if not self._ready and block:
                self._collect(block=True, timeout=timeout)
        return self._ready.popleft() if self._ready else None

    @property
    def pending_artifacts(self) -> int:
        """Artifacts not yet reported by any loader."""
        if not self._started:
            return len(self.artifacts)
        return sum(self.counts.values())

    @property
    def exhausted(self) -> bool:
        """True once every loader finished and every item was shifted."""
        if not self._started:
            return not self.artifacts
        if not self._ready:
            self._collect(block=False, timeout=None)
        return not self._readers and not self._ready

    def stop(self, timeout: float = 5.0) -> None:
        """Wait for (and if needed, terminate) the loader processes."""
        for process in self._processes:
            process.join(timeout)
            if process.is_alive():
                process.terminate()
                process.join(timeout)
