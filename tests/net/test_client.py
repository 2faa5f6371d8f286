# tests/net/test_client.py
import json

from dispatchkit.net.client import InProcessClient, WorkItemClient
from dispatchkit.worktree import WorkItem, WorkQueue


def _forest():
    return [
        WorkItem.group(
            "A",
            [
                WorkItem.leaf("a1"),
                WorkItem.group("B", [WorkItem.leaf("b1"), WorkItem.leaf("b2")]),
                WorkItem.group("C", [WorkItem.leaf("c1")]),
            ],
        ),
        WorkItem.leaf("solo"),
    ]


def test_group_hooks_bracket_each_slice():
    events = []
    client = InProcessClient(
        WorkQueue(_forest(), sort=False),
        on_enter=lambda path: events.append(("enter", path)),
        on_exit=lambda path: events.append(("exit", path)),
    )

    for path in client:
        events.append(("run", path))

    assert events == [
        ("enter", ("A",)),
        ("run", ("A", "a1")),
        ("enter", ("A", "B")),
        ("run", ("A", "B", "b1")),
        ("run", ("A", "B", "b2")),
        ("exit", ("A", "B")),
        ("enter", ("A", "C")),
        ("run", ("A", "C", "c1")),
        ("exit", ("A", "C")),
        ("exit", ("A",)),
        ("run", ("solo",)),
    ]
    assert client.done
    assert client.items_seen == 5


def test_open_scopes_close_when_iteration_stops_early():
    exits = []
    client = InProcessClient(WorkQueue(_forest(), sort=False), on_exit=exits.append)

    for path in client:
        if path == ("A", "B", "b1"):
            break

    assert exits == [("A", "B"), ("A",)]


def test_timing_charges_leaf_and_root(tmp_path):
    client = InProcessClient(WorkQueue())
    client.record(("A", "B", "b1"), 1.5)
    client.record(("A", "a1"), 0.5)
    client.record(("solo",), 2.0)

    assert client.durations == {
        "A :: B :: b1": 1.5,
        "A": 2.0,
        "A :: a1": 0.5,
        "solo": 2.0,
    }

    out = tmp_path / "stats"
    client.flush_stats(out)
    assert json.loads(out.read_text(encoding="utf-8")) == client.durations


def test_timed_returns_result_and_records():
    client = InProcessClient(WorkQueue())
    assert client.timed(("x",), lambda: 42) == 42
    assert "x" in client.durations


def test_preferred_tag_is_used_for_root_pops():
    queue = WorkQueue([WorkItem.leaf("plain"), WorkItem.leaf("db", kind="db")])
    client = InProcessClient(queue, preferred_tag=("kind", "db"))
    assert list(client) == [("db",), ("plain",)]


def test_missing_master_means_done(tmp_path):
    client = WorkItemClient(str(tmp_path / "nobody.sock"), timeout=1)
    assert list(client) == []
    assert client.done
