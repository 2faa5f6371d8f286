"""Forking, reaping and killing local worker processes."""

from __future__ import annotations

import json
import logging
import multiprocessing as mp
import multiprocessing.connection
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from setproctitle import setproctitle

from ..utils.cleanup import safe_remove
from ..worktree.types import WorkerRecord

__all__ = ["WorkerSupervisor", "worker_output_path", "worker_stats_path"]

logger = logging.getLogger(__name__)


def worker_output_path(tmp_dir: Union[str, Path], pid: int) -> Path:
    """Where a worker's captured stdout/stderr lives while it runs."""
    return Path(tmp_dir) / f"dispatch_worker_{pid}_output"


def worker_stats_path(tmp_dir: Union[str, Path], pid: int) -> Path:
    """Where a worker leaves its per-key durations when it exits."""
    return Path(tmp_dir) / f"dispatch_worker_{pid}_stats"


def _child_entry(
    num: int,
    tmp_dir: str,
    inherited: List[Any],
    target: Callable[..., Optional[int]],
    args: tuple,
) -> None:
    """Runs in the forked child: redirect output, then hand over to ``target``."""
    for obj in inherited:
        try:
            obj.close()
        except OSError as exc:
            logger.debug("Could not close inherited %r: %s", obj, exc)

    sys.stdout.flush()
    sys.stderr.flush()
    with open(worker_output_path(tmp_dir, os.getpid()), "w", encoding="utf-8") as output:
        os.dup2(output.fileno(), 1)
        os.dup2(output.fileno(), 2)
    # Rebind the Python-level streams too; they may not be backed by fd 1/2
    sys.stdout = open(1, "w", encoding="utf-8", buffering=1, closefd=False)
    sys.stderr = open(2, "w", encoding="utf-8", buffering=1, closefd=False)

    setproctitle(f"dispatch:worker-[{num}]")

    status = target(num, *args) or 0
    sys.stdout.flush()
    sys.stderr.flush()
    sys.exit(status)


class WorkerSupervisor:
    """
    Tracks local worker processes from fork to reap.

    Each worker writes its output and stats to pid-namespaced files under
    ``tmp_dir``; both are read into the WorkerRecord and deleted when the
    worker is reaped.
    """

    def __init__(
        self,
        tmp_dir: Optional[Union[str, Path]] = None,
        ctx: Optional[mp.context.BaseContext] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            tmp_dir: Directory for per-worker transient files
            ctx: Multiprocessing context (fork by default)
        """
        self.tmp_dir = Path(tmp_dir or tempfile.gettempdir())
        self.ctx = ctx or mp.get_context("fork")
        self.inherited: List[Any] = []
        """Objects (sockets, files) each child closes right after the fork"""

        self._processes: Dict[int, mp.Process] = {}
        self._records: Dict[int, WorkerRecord] = {}

    def spawn(
        self,
        num: int,
        target: Callable[..., Optional[int]],
        args: Iterable[Any] = (),
    ) -> WorkerRecord:
        """
        Fork one worker.

        Args:
            num: 1-based worker slot number
            target: Called in the child as ``target(num, *args)``; its return
                value becomes the exit status
            args: Extra arguments for ``target``

        Returns:
            The new worker's record
        """
        process = self.ctx.Process(
            target=_child_entry,
            args=(num, str(self.tmp_dir), list(self.inherited), target, tuple(args)),
            name=f"dispatch:worker-{num}",
        )
        process.start()

        record = WorkerRecord(pid=process.pid, num=num)
        self._processes[process.pid] = process
        self._records[process.pid] = record
        logger.debug("Spawned worker %d (pid %d)", num, process.pid)
        return record

    @property
    def live_count(self) -> int:
        return len(self._processes)

    @property
    def live_records(self) -> List[WorkerRecord]:
        return [self._records[pid] for pid in self._processes]

    def reap(self, block: bool = True, timeout: Optional[float] = None) -> Optional[WorkerRecord]:
        """
        Collect one exited worker.

        Args:
            block: Wait until some worker exits
            timeout: Maximum wait when blocking

        Returns:
            The finished WorkerRecord, or None if no worker has exited
        """
        if not self._processes:
            return None

        if block:
            sentinels = {p.sentinel: pid for pid, p in self._processes.items()}
            ready = mp.connection.wait(list(sentinels), timeout)
            if not ready:
                return None
            pid = sentinels[ready[0]]
        else:
            pid = next(
                (pid for pid, p in self._processes.items() if p.exitcode is not None),
                None,
            )
            if pid is None:
                return None

        process = self._processes.pop(pid)
        process.join()
        record = self._records.pop(pid)
        record.exit_status = self._exit_status(process.exitcode)
        record.end_time = time.time()
        self._collect_files(record)
        logger.debug("Reaped worker %d (pid %d exit %s)", record.num, pid, record.exit_status)
        return record

    @staticmethod
    def _exit_status(exitcode: Optional[int]) -> int:
        # Negative exit codes mean the worker died from a signal
        if exitcode is None or exitcode < 0:
            return 1
        return exitcode

    def _collect_files(self, record: WorkerRecord) -> None:
        output_path = worker_output_path(self.tmp_dir, record.pid)
        if output_path.exists():
            record.output = output_path.read_text(encoding="utf-8", errors="replace")
            safe_remove(output_path)

        stats_path = worker_stats_path(self.tmp_dir, record.pid)
        if stats_path.exists():
            try:
                record.stats = {
                    k: float(v)
                    for k, v in json.loads(stats_path.read_text(encoding="utf-8")).items()
                }
            except (ValueError, OSError) as exc:
                logger.warning("Unreadable stats from worker pid %d: %s", record.pid, exc)
            safe_remove(stats_path)

    def kill_all(self) -> List[WorkerRecord]:
        """SIGKILL every live worker and reap them all."""
        for process in self._processes.values():
            if process.is_alive():
                process.kill()
        return self.reap_all()

    def reap_all(self) -> List[WorkerRecord]:
        """Block until every live worker has been reaped."""
        reaped = []
        while self._processes:
            record = self.reap(block=True)
            if record is not None:
                reaped.append(record)
        return reaped

    def forget(self, records: Iterable[WorkerRecord]) -> None:
        """Stop tracking workers whose outcome was already decided; they are killed."""
        for record in records:
            process = self._processes.pop(record.pid, None)
            self._records.pop(record.pid, None)
            if process is not None:
                if process.is_alive():
                    process.kill()
                process.join()
                safe_remove(worker_output_path(self.tmp_dir, record.pid))
                safe_remove(worker_stats_path(self.tmp_dir, record.pid))
