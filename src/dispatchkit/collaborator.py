# dispatchkit/collaborator.py
"""
The interface between the engine and whatever actually runs a work item.

The engine only moves opaque item paths around. Enumerating items, running
them and labelling the results is delegated to an ExecutionCollaborator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .pipeline.report import summarize_output
from .worktree.types import ItemPath, WorkerRecord, WorkItem

__all__ = ["ExecutionCollaborator", "ExecutionResult", "CallableCollaborator"]


@dataclass
class ExecutionResult:
    """Outcome of executing one leaf."""

    success: bool
    output: str = ""


class ExecutionCollaborator(ABC):
    """
    Supplies the work and runs it.

    Subclasses must implement :meth:`execute` and at least one of
    :meth:`items` (a forest known up front) or :meth:`artifacts` plus
    :meth:`discover` (a forest found in the background). Every other hook
    has a no-op default.
    """

    # ------------------------------------------------------------------
    # Enumeration (master side)
    # ------------------------------------------------------------------

    def items(self) -> Iterable[WorkItem]:
        """Top-level work items known before distribution starts."""
        return ()

    def artifacts(self) -> Sequence[str]:
        """Sources to hand to :meth:`discover` in the loader processes."""
        return ()

    def discover(self, artifact: str) -> Iterable[WorkItem]:
        """Top-level work items found in one artifact (runs in a loader)."""
        return ()

    def duration(self, key: str) -> Optional[float]:
        """Historical duration override; None defers to the stats file."""
        return None

    # ------------------------------------------------------------------
    # Execution (worker side)
    # ------------------------------------------------------------------

    @abstractmethod
    def execute(self, path: ItemPath) -> ExecutionResult:
        """Run the leaf at ``path``."""

    def around_item(self, path: ItemPath, run: Callable[[], ExecutionResult]) -> ExecutionResult:
        """Wrap the execution of one leaf."""
        return run()

    def enter_group(self, path: ItemPath) -> None:
        """Called once per slice before the first leaf under ``path`` runs."""

    def exit_group(self, path: ItemPath) -> None:
        """Called once per slice after the last leaf under ``path`` ran."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self, concurrency: int) -> None:
        """Runs in the master before any worker is forked."""

    def after_fork(self, num: int) -> None:
        """Runs in each worker right after it was forked."""

    def cleanup_worker(self) -> None:
        """Runs in each worker after its loop finished."""

    def queue_status(
        self,
        start_time: float,
        queue_size: int,
        local_worker_count: int,
        remote_workers: Dict[str, int],
    ) -> None:
        """Called on every iteration of the root master's loop; keep it cheap."""

    def summarize_worker(self, record: WorkerRecord) -> None:
        """Fill ``record.summary`` and ``record.failure_output`` from its output."""
        record.summary, record.failure_output = summarize_output(record.output)


class CallableCollaborator(ExecutionCollaborator):
    """Adapts plain callables; handy for scripts and tests."""

    def __init__(
        self,
        execute: Callable[[ItemPath], Any],
        items: Iterable[WorkItem] = (),
        artifacts: Sequence[str] = (),
        discover: Optional[Callable[[str], Iterable[WorkItem]]] = None,
    ):
        self._execute = execute
        self._items: List[WorkItem] = list(items)
        self._artifacts = list(artifacts)
        self._discover = discover

    def items(self) -> Iterable[WorkItem]:
        return self._items

    def artifacts(self) -> Sequence[str]:
        return self._artifacts

    def discover(self, artifact: str) -> Iterable[WorkItem]:
        if self._discover is None:
            return ()
        return self._discover(artifact)

    def execute(self, path: ItemPath) -> ExecutionResult:
        result = self._execute(path)
        if isinstance(result, ExecutionResult):
            return result
        if isinstance(result, tuple):
            return ExecutionResult(bool(result[0]), str(result[1]))
        return ExecutionResult(result is None or bool(result))
