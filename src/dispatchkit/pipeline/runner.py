# dispatchkit/pipeline/runner.py
"""
Top-level orchestration of a run.

A Runner builds the queue, forks workers, serves the queue (or relays it),
prints the summary, saves stats and turns the outcome into an exit status.
"""

from __future__ import annotations

import io
import logging
import os
import sys
import time
from contextlib import redirect_stdout
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from setproctitle import setproctitle

from ..collaborator import ExecutionCollaborator
from ..config import RunConfig
from ..net.client import InProcessClient
from ..net.relay import RelayClient, RelayRegistrationError, RelayServer
from ..net.server import QueueServer
from ..parallel.populator import BackgroundPopulator, order_artifacts
from ..parallel.supervisor import WorkerSupervisor
from ..tracking.stats_store import StatsStore, aggregate_durations
from ..worktree.types import WorkerRecord, WorkItem
from ..worktree.work_queue import WorkQueue
from .logger import setup_logger
from .report import format_run_header, log_summary, print_summary
from .worker import run_worker, worker_main

__all__ = ["Runner"]

logger = logging.getLogger(__name__)


class _Tee(io.TextIOBase):
    """Write-through to several text streams."""

    def __init__(self, *streams):
        self.streams = streams

    def write(self, s: str) -> int:
        for stream in self.streams:
            stream.write(s)
        return len(s)

    def flush(self) -> None:
        for stream in self.streams:
            stream.flush()


class _ForcedPopulator:
    """Filters discovered roots down to a forced key list."""

    def __init__(self, populator: BackgroundPopulator, keys: Sequence[str]):
        self.populator = populator
        self.keys = set(keys)

    def shift(self, *args, **kwargs) -> Optional[WorkItem]:
        while True:
            item = self.populator.shift(*args, **kwargs)
            if item is None or item.key in self.keys:
                return item

    @property
    def exhausted(self) -> bool:
        return self.populator.exhausted

    @property
    def pending_artifacts(self) -> int:
        return self.populator.pending_artifacts


def _apply_force(items: Iterable[WorkItem], forced: Sequence[str]) -> List[WorkItem]:
    order = {key: i for i, key in enumerate(forced)}
    kept = [item for item in items if item.key in order]
    kept.sort(key=lambda item: order[item.key])
    return kept


class Runner:
    """
    Runs one collaborator's work across a pool of forked workers.

    Modes follow the config: ``concurrency == 0`` runs in-process,
    ``relay`` set makes this process a sub-master of a remote root, and
    anything else makes it the root master.
    """

    def __init__(
        self,
        collaborator: ExecutionCollaborator,
        config: Optional[RunConfig] = None,
        *,
        preferred_tag: Optional[Tuple[str, Any]] = None,
    ):
        """
        Initialize the runner.

        Args:
            collaborator: Supplies, executes and summarizes work items
            config: Run options (read from ``DISPATCH_*`` variables if omitted)
            preferred_tag: Optional (tag, value) workers ask for first
        """
        self.collaborator = collaborator
        self.config = config or RunConfig.from_env()
        self.preferred_tag = preferred_tag

        self.stats = StatsStore(self.config.stats_path)
        self.queue: Optional[WorkQueue] = None
        self.populator: Optional[BackgroundPopulator] = None
        self.supervisor: Optional[WorkerSupervisor] = None
        self.server: Optional[QueueServer] = None

        self.completed: List[WorkerRecord] = []
        self.timed_out = False
        self.aborting = False
        self.start_time: Optional[float] = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Execute and exit the process with the run's status."""
        sys.exit(self.execute())

    def execute(self) -> int:
        """
        Execute the run.

        Returns:
            0 if every worker exited 0 and nothing stalled, else 1
        """
        cfg = self.config
        if cfg.log_dir:
            setup_logger(cfg.log_dir)

        sys.stdout.flush()
        self.start_time = time.time()
        try:
            if cfg.sequential:
                self.execute_sequential()
            else:
                self.execute_parallel()
        except RelayRegistrationError as exc:
            print(f"*** {exc}. Aborting..", file=sys.stderr)
            logger.error("Relay registration failed: %s", exc)
            return 1

        return self.summarize_internal()

    # ------------------------------------------------------------------
    # Queue construction
    # ------------------------------------------------------------------

    def _duration(self, key: str) -> Optional[float]:
        value = self.collaborator.duration(key)
        return value if value is not None else self.stats.duration(key)

    def build_queue(self, *, background: bool = True) -> WorkQueue:
        """
        Build the root queue from the collaborator.

        Args:
            background: Discover artifacts in loader processes; otherwise
                discover them here before returning
        """
        cfg = self.config
        if cfg.is_relay:
            return WorkQueue()

        items = list(self.collaborator.items())
        artifacts = list(self.collaborator.artifacts())
        populator = None

        if artifacts and background:
            self.populator = BackgroundPopulator(
                artifacts,
                self.collaborator.discover,
                stats=self.stats,
                num_loaders=cfg.num_loaders,
            )
            populator = self.populator
            if cfg.force:
                populator = _ForcedPopulator(populator, cfg.force)
        elif artifacts:
            for artifact in order_artifacts(artifacts, self.stats):
                for item in self.collaborator.discover(artifact):
                    if item.artifact is None:
                        item.artifact = artifact
                    items.append(item)

        if cfg.force:
            items = _apply_force(items, cfg.force)

        return WorkQueue(
            items,
            max_splits_per_group=cfg.effective_max_splits,
            populator=populator,
            duration=self._duration,
            sort=not cfg.force,
        )

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def execute_sequential(self) -> None:
        """Run every item in this process."""
        self.queue = self.build_queue(background=False)
        client = InProcessClient(
            self.queue,
            preferred_tag=self.preferred_tag,
            on_enter=self.collaborator.enter_group,
            on_exit=self.collaborator.exit_group,
        )

        record = WorkerRecord(pid=os.getpid(), num=1)
        captured = io.StringIO()
        with redirect_stdout(_Tee(sys.stdout, captured)):
            status = run_worker(client, self.collaborator)
        self.collaborator.cleanup_worker()

        record.exit_status = status
        record.end_time = time.time()
        record.output = captured.getvalue()
        record.stats = dict(client.durations)
        self.completed = [record]

    def execute_parallel(self) -> None:
        """Serve the queue (or relay it) to forked workers."""
        cfg = self.config
        relay_client = None
        if cfg.is_relay:
            relay_client = RelayClient(
                cfg.relay,
                run_token=cfg.run_token,
                relay_timeout=cfg.relay_timeout,
                message=cfg.relay_message,
            )

        self.queue = self.build_queue()
        self.supervisor = WorkerSupervisor(cfg.tmp_dir)

        print(
            format_run_header(
                address=cfg.socket,
                concurrency=cfg.concurrency,
                start_time=datetime.fromtimestamp(self.start_time),
                relay=cfg.relay,
                item_count=self.queue.outstanding,
                artifact_count=len(self.populator.artifacts) if self.populator else 0,
                stats_path=str(cfg.stats_path),
            )
        )

        self.collaborator.prepare(cfg.concurrency)

        if relay_client is not None:
            relay_client.register(cfg.concurrency)
            self.server = RelayServer(
                cfg.socket,
                relay_client,
                supervisor=self.supervisor,
                verbose=cfg.verbose,
            )
        else:
            self.server = QueueServer(
                self.queue,
                cfg.socket,
                run_token=cfg.run_token,
                supervisor=self.supervisor,
                bad_worker_timeout=cfg.bad_worker_timeout,
                collaborator=self.collaborator,
                verbose=cfg.verbose,
                show_progress=cfg.show_progress,
            )
        setproctitle(self.server.describe())

        try:
            self.spawn_workers()
            if self.populator is not None:
                self.populator.inherited.append(self.server.sock)
                self.populator.start()
            self.server.serve()
        except BaseException:
            self.server.close()
            self.server.kill_workers()
            raise
        else:
            self.server.shutdown()
        finally:
            if self.populator is not None:
                self.populator.stop()
            self.completed = list(self.server.completed)
            self.timed_out = self.server.timed_out

    def spawn_workers(self) -> None:
        cfg = self.config
        for i in range(cfg.concurrency):
            self.supervisor.spawn(
                i + 1,
                worker_main,
                (cfg.socket, self.collaborator, str(cfg.tmp_dir), self.preferred_tag),
            )
        logger.info("Spawned %d worker(s)", cfg.concurrency)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def summarize_internal(self) -> int:
        """Print the summary, save stats and compute the exit status."""
        for record in self.completed:
            self.collaborator.summarize_worker(record)

        elapsed = time.time() - self.start_time
        discovery_failures = self.discovery_failures
        print_summary(self.completed, elapsed, discovery_failures)
        log_summary(self.completed, elapsed, discovery_failures)
        self.save_stats()

        if self.timed_out or discovery_failures:
            return 1
        return 0 if all(record.succeeded for record in self.completed) else 1

    @property
    def discovery_failures(self) -> List[Tuple[str, str]]:
        """``(artifact, error)`` for artifacts the loaders could not discover."""
        if self.populator is None:
            return []
        return list(self.populator.failures)

    def save_stats(self) -> None:
        """Sum this run's durations across workers and merge them into the stats file."""
        if self.config.is_relay:
            # The root master aggregates what relays report upstream
            return
        totals = aggregate_durations(record.stats for record in self.completed)
        artifact_groups = self.queue.artifact_groups if self.queue is not None else None
        self.stats.save(totals, self.config.stats_mode, artifact_groups=artifact_groups)

    def abort(self, message: str) -> None:
        """Kill every worker and stop the process immediately."""
        self.aborting = True
        if self.server is not None:
            self.server.aborting = True
            self.server.close()
            self.server.kill_workers()
        elif self.supervisor is not None:
            self.supervisor.kill_all()
        raise SystemExit(f"Aborting: {message}")
