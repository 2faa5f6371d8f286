# dispatchkit/pipeline/report.py
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from ..worktree.types import WorkerRecord

logger = logging.getLogger(__name__)

FAILURES_HEADING = "Failures:"
_TRAILER = re.compile(r"^Finished (\d+ items?, \d+ failures?)\s*$")


def _abbrev(s: str, width: int = 60) -> str:
    """Return s truncated with an ellipsis if it exceeds width."""
    return s if len(s) <= width else (s[: max(0, width - 1)] + "…")


def format_trailer(items: int, failures: int) -> str:
    """The line a worker prints last, parsed back by :func:`summarize_output`."""
    return f"Finished {items} items, {failures} failures"


def summarize_output(output: str) -> Tuple[str, str]:
    """
    Pull the summary and the failures block out of a worker's output.

    Returns:
        ``(summary, failure_output)``; both empty if the worker never got
        as far as printing its trailer
    """
    lines = output.splitlines()
    summary = ""
    trailer_at: Optional[int] = None
    for i in range(len(lines) - 1, -1, -1):
        m = _TRAILER.match(lines[i])
        if m:
            summary = m.group(1)
            trailer_at = i
            break

    if trailer_at is None:
        return "", ""

    failures: List[str] = []
    for i in range(trailer_at - 1, -1, -1):
        if lines[i].strip() == FAILURES_HEADING:
            failures = lines[i + 1 : trailer_at]
            break

    failure_output = "\n".join(failures).strip("\n")
    return summary, (failure_output + "\n" if failure_output else "")


def format_run_header(
    *,
    address: str,
    concurrency: int,
    start_time: datetime,
    relay: Optional[str] = None,
    item_count: Optional[int] = None,
    artifact_count: int = 0,
    stats_path: Optional[str] = None,
) -> str:
    """
    Build the banner printed when a run starts.
    """
    heading = f"Start Time: {start_time:%Y-%m-%d %H:%M:%S}"

    role = f"relaying to {relay}" if relay else address
    lines = [
        heading,
        f"Starting dispatch:master ({role})",
        f"Worker processes:           {concurrency}",
    ]
    if item_count is not None:
        lines.append(f"Known leaf items:           {item_count}")
    if artifact_count:
        lines.append(f"Artifacts to discover:      {artifact_count}")
    if stats_path:
        lines.append(f"Stats file:                 {stats_path}")
    return "\n".join(lines) + "\n"


def format_worker_line(record: WorkerRecord) -> str:
    """One summary row per worker."""
    host = f" on {record.host.split('.')[0]}" if record.host else ""
    status = record.exit_status if record.exit_status is not None else 1
    return "    [%2d] %60s      %4d keys in %.4fs      (pid %d exit %d%s)" % (
        record.num,
        _abbrev(record.summary or ""),
        len(record.stats),
        record.elapsed,
        record.pid,
        status,
        host,
    )


def format_discovery_failures(failures: Sequence[Tuple[str, str]]) -> List[str]:
    """Lines for artifacts whose items never reached the queue."""
    lines: List[str] = []
    for i, (artifact, error) in enumerate(failures, 1):
        lines.append(f"  {i}) {artifact}")
        lines.extend(f"     {line}" for line in error.rstrip("\n").splitlines())
    return lines


def format_summary(
    records: Sequence[WorkerRecord],
    elapsed: float,
    discovery_failures: Sequence[Tuple[str, str]] = (),
) -> str:
    """
    Build the end-of-run summary: one line per worker, then the failures.

    Summaries and failure excerpts must already be filled in.
    ``discovery_failures`` holds ``(artifact, error)`` pairs from the loaders.
    """
    lines = ["", f"==> Summary ({len(records)} workers in {elapsed:.4f}s)", ""]
    lines.extend(format_worker_line(record) for record in records)

    failures = "".join(record.failure_output or "" for record in records)
    if failures:
        lines.extend(["", "==> Failures", "", failures.rstrip("\n")])

    if discovery_failures:
        lines.extend(["", "==> Discovery failures", ""])
        lines.extend(format_discovery_failures(discovery_failures))

    return "\n".join(lines) + "\n"


def print_summary(
    records: Sequence[WorkerRecord],
    elapsed: float,
    discovery_failures: Sequence[Tuple[str, str]] = (),
) -> None:
    """Print the run summary to stdout."""
    print(format_summary(records, elapsed, discovery_failures))


def log_summary(
    records: Sequence[WorkerRecord],
    elapsed: float,
    discovery_failures: Sequence[Tuple[str, str]] = (),
) -> None:
    """Log the run summary at INFO level (ERROR when anything failed)."""
    failed = bool(discovery_failures) or not all(r.succeeded for r in records)
    level = logging.ERROR if failed else logging.INFO
    for line in format_summary(records, elapsed, discovery_failures).strip("\n").splitlines():
        if line:
            logger.log(level, line)
