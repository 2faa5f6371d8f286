# dispatchkit/pipeline/worker.py
"""
The loop each worker runs: pull a path, execute it, report, repeat.

``worker_main`` is the entry point inside a forked child; ``run_worker``
is also used directly for sequential (in-process) runs.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import traceback
from typing import List, Tuple

from setproctitle import setproctitle

from ..collaborator import ExecutionCollaborator, ExecutionResult
from ..net.client import WorkItemClient, QueueIterator
from ..parallel.supervisor import worker_stats_path
from ..worktree.types import ItemPath, path_key
from .report import FAILURES_HEADING, format_trailer

__all__ = ["run_worker", "worker_main"]

logger = logging.getLogger(__name__)


def _execute(collaborator: ExecutionCollaborator, path: ItemPath) -> ExecutionResult:
    try:
        return collaborator.execute(path)
    except Exception:
        return ExecutionResult(False, traceback.format_exc())


def _indent(text: str, prefix: str = "     ") -> str:
    return "\n".join(prefix + line if line else line for line in text.rstrip("\n").splitlines())


def run_worker(
    client: QueueIterator,
    collaborator: ExecutionCollaborator,
    num: int = 0,
) -> int:
    """
    Execute every path the client hands out.

    Prints one line per item, then the failures block and the trailer that
    :func:`dispatchkit.pipeline.report.summarize_output` parses.

    Returns:
        Exit status: 1 if any item failed, else 0
    """
    start = time.time()
    failures: List[Tuple[str, str]] = []
    count = 0

    for path in client:
        key = path_key(path)
        if num:
            setproctitle(f"dispatch:worker-[{num}] {key}")

        result = client.timed(
            path,
            lambda: collaborator.around_item(path, lambda: _execute(collaborator, path)),
        )
        count += 1
        print(f"  {'ok' if result.success else 'FAIL':<5} {key}")
        if not result.success:
            failures.append((key, result.output or ""))

    if failures:
        print()
        print(FAILURES_HEADING)
        print()
        for i, (key, output) in enumerate(failures, 1):
            print(f"  {i}) {key}")
            if output.strip():
                print(_indent(output))
            print()

    print(format_trailer(count, len(failures)))
    print(
        f"Total time {time.time() - start:.4f}s "
        f"(waited {client.waiting_time:.4f}s on the master)"
    )
    logger.debug("Worker %d ran %d item(s), %d failure(s)", num, count, len(failures))
    return 1 if failures else 0


def worker_main(
    num: int,
    address: str,
    collaborator: ExecutionCollaborator,
    tmp_dir: str,
    preferred_tag=None,
) -> int:
    """Entry point of a forked worker (see WorkerSupervisor.spawn)."""
    client = WorkItemClient(
        address,
        preferred_tag=preferred_tag,
        on_enter=collaborator.enter_group,
        on_exit=collaborator.exit_group,
    )

    print()
    print(
        f"==> Starting dispatch:worker-[{num}] ({os.getpid()} on {socket.gethostname()})"
        f" - iterating over {address}"
    )
    print()

    collaborator.after_fork(num)
    try:
        return run_worker(client, collaborator, num)
    finally:
        client.flush_stats(worker_stats_path(tmp_dir, os.getpid()))
        collaborator.cleanup_worker()
