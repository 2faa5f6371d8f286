# tests/parallel/test_supervisor.py
import json
import multiprocessing as mp
import os
import time

import pytest

from dispatchkit.parallel.supervisor import (
    WorkerSupervisor,
    worker_output_path,
    worker_stats_path,
)

requires_fork = pytest.mark.skipif(
    "fork" not in mp.get_all_start_methods(),
    reason="fork start method not available",
)


def _say_and_exit(num, message, status):
    print(f"worker {num}: {message}")
    return status


def _write_stats(num, tmp_dir):
    with open(worker_stats_path(tmp_dir, os.getpid()), "w", encoding="utf-8") as f:
        json.dump({"G": 1.5, "G :: a": 1.5}, f)
    return 0


def _sleep_forever(num):
    while True:
        time.sleep(1)


@requires_fork
def test_output_and_exit_status_are_collected(tmp_path):
    sup = WorkerSupervisor(tmp_path)
    spawned = sup.spawn(1, _say_and_exit, ("hello", 3))

    record = sup.reap(block=True, timeout=10)

    assert record is spawned
    assert record.exit_status == 3
    assert "worker 1: hello" in record.output
    assert record.end_time is not None
    assert not worker_output_path(tmp_path, record.pid).exists()
    assert sup.live_count == 0


@requires_fork
def test_stats_file_is_read_then_deleted(tmp_path):
    sup = WorkerSupervisor(tmp_path)
    sup.spawn(2, _write_stats, (str(tmp_path),))

    (record,) = sup.reap_all()

    assert record.succeeded
    assert record.stats == {"G": 1.5, "G :: a": 1.5}
    assert not worker_stats_path(tmp_path, record.pid).exists()


@requires_fork
def test_non_blocking_reap_and_kill(tmp_path):
    sup = WorkerSupervisor(tmp_path)
    sup.spawn(1, _sleep_forever)

    assert sup.reap(block=False) is None
    assert sup.live_count == 1

    (record,) = sup.kill_all()
    assert record.exit_status == 1
    assert not record.succeeded
    assert sup.live_count == 0


def test_reap_without_workers_returns_none(tmp_path):
    assert WorkerSupervisor(tmp_path).reap() is None
