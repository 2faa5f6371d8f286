# tests/worktree/test_work_queue.py
from collections import Counter

from dispatchkit.net.client import InProcessClient
from dispatchkit.worktree import WAIT, WorkItem, WorkQueue


def leaf(key, **tags):
    return WorkItem.leaf(key, **tags)


def group(key, *children, **tags):
    return WorkItem.group(key, children, **tags)


def _forest():
    return [
        group("A", leaf("a1"), leaf("a2"), group("A2", leaf("x"), leaf("y"), leaf("z"))),
        leaf("B"),
        group("C", *[leaf(f"c{i}") for i in range(12)]),
        group("D", group("D1", leaf("d1")), group("D2"), no_split=True),
        group("E"),
    ]


def _expected_paths(items):
    paths = []
    for item in items:
        paths.extend(item.iter_leaf_paths())
    return paths


def _drain_interleaved(queue, streams):
    """Advance several reservation-stack clients round-robin until all finish."""
    clients = [iter(InProcessClient(queue)) for _ in range(streams)]
    seen = []
    while clients:
        for it in list(clients):
            try:
                seen.append(next(it))
            except StopIteration:
                clients.remove(it)
    return seen


# ---------------- ordering ----------------

def test_initial_order_is_longest_first():
    durations = {"A": 10.0, "B": 1.0, "C": 5.0}
    queue = WorkQueue([leaf("A"), leaf("B"), leaf("C")], duration=durations.get)

    assert [queue.pop_next(), queue.pop_next(), queue.pop_next()] == [("A",), ("C",), ("B",)]
    assert queue.pop_next() is None


def test_unknown_durations_keep_insertion_order():
    queue = WorkQueue([leaf("x"), leaf("y"), leaf("z")], duration=lambda key: None)
    assert [queue.pop_next()[0] for _ in range(3)] == ["x", "y", "z"]


def test_preferred_tag_jumps_the_queue():
    queue = WorkQueue([leaf("plain"), leaf("slow", kind="db"), leaf("other")])

    assert queue.pop_next(preferred=("kind", "db")) == ("slow",)
    assert queue.pop_next(preferred=("kind", "db")) == ("plain",)


# ---------------- exhaustiveness ----------------

def test_single_stream_visits_every_leaf_once():
    items = _forest()
    expected = _expected_paths(items)
    queue = WorkQueue(items)

    seen = list(InProcessClient(queue))

    assert sorted(seen) == sorted(expected)
    assert queue.is_empty()
    assert queue.dispatched == len(expected)


def test_interleaved_streams_never_overlap():
    for streams in (2, 3, 7):
        items = _forest()
        expected = _expected_paths(items)
        queue = WorkQueue(items)

        seen = _drain_interleaved(queue, streams)

        counts = Counter(seen)
        assert all(c == 1 for c in counts.values()), counts
        assert sorted(seen) == sorted(expected)
        assert queue.is_empty()


def test_root_pops_alone_do_not_lose_reserved_work():
    queue = WorkQueue([group("G", *[leaf(str(i)) for i in range(5)])], max_splits_per_group=1)

    first = queue.pop_next()
    second = queue.pop_next()
    assert queue.pop_next() is None

    # The rest stays reserved for the workers already inside G
    rest = []
    while True:
        path = queue.pop_next(("G",))
        if path is None:
            break
        rest.append(path)

    assert sorted([first, second] + rest) == [("G", str(i)) for i in range(5)]
    assert queue.is_empty()


def test_empty_groups_are_rejected():
    queue = WorkQueue([group("E"), group("F", group("G"))])
    assert queue.outstanding == 0
    assert queue.is_empty()
    assert queue.pop_next() is None


def test_duplicate_root_keys_are_ignored():
    queue = WorkQueue(sort=False)
    assert queue.push(leaf("a"))
    assert not queue.push(leaf("a"))
    assert queue.size() == 1


# ---------------- splitting ----------------

def test_split_bound_caps_requeues():
    queue = WorkQueue([group("G", *[leaf(str(i)) for i in range(30)])], max_splits_per_group=3)

    paths = _drain_interleaved(queue, 5)

    assert len(paths) == 30
    assert queue.total_splits == 3


def test_split_requeues_behind_other_roots():
    queue = WorkQueue([group("G", leaf("g1"), leaf("g2")), leaf("B")], sort=False)

    assert queue.pop_next() == ("G", "g1")
    assert queue.pop_next() == ("B",)
    assert queue.pop_next() == ("G", "g2")
    assert queue.pop_next() is None


def test_no_split_group_is_never_shared():
    queue = WorkQueue(
        [group("N", *[leaf(str(i)) for i in range(4)], no_split=True), leaf("B")],
        sort=False,
    )

    assert queue.pop_next() == ("N", "0")
    assert queue.pop_next() == ("B",)
    assert queue.pop_next() is None
    assert queue.total_splits == 0
    assert [queue.pop_next(("N",)) for _ in range(3)] == [("N", "1"), ("N", "2"), ("N", "3")]
    assert queue.pop_next(("N",)) is None


def test_zero_max_splits_disables_sharing():
    queue = WorkQueue([group("G", leaf("a"), leaf("b"))], max_splits_per_group=0)
    assert queue.pop_next() == ("G", "a")
    assert queue.pop_next() is None
    assert queue.pop_next(("G",)) == ("G", "b")


def test_nested_groups_return_full_paths():
    queue = WorkQueue([group("A", group("B", group("C", leaf("leaf"))))])
    assert queue.pop_next() == ("A", "B", "C", "leaf")
    assert queue.is_empty()


def test_pop_example_never_descends():
    queue = WorkQueue([group("A", group("B", leaf("deep")), leaf("shallow"))])

    assert queue.pop_example(("A",)) == ("A", "shallow")
    assert queue.pop_example(("A",)) is None
    assert queue.pop_next(("A",)) == ("A", "B", "deep")


# ---------------- populator interaction ----------------

class FakePopulator:
    def __init__(self, batches):
        self.batches = list(batches)
        self.exhausted = False
        self.pending_artifacts = len(self.batches)

    def release(self):
        self.ready = self.batches.pop(0)
        self.pending_artifacts = len(self.batches)
        if not self.batches:
            self.exhausted = True

    ready = ()

    def shift(self):
        if self.ready:
            item, *rest = self.ready
            self.ready = rest
            return item
        return None


def test_wait_until_populator_exhausted():
    populator = FakePopulator([[leaf("late")], [leaf("later")]])
    queue = WorkQueue(populator=populator)

    assert queue.pop_next() == WAIT
    assert not queue.is_empty()
    assert queue.size() == 2

    populator.release()
    assert queue.pop_next() == ("late",)
    assert queue.pop_next() == WAIT

    populator.release()
    assert queue.pop_next() == ("later",)
    assert queue.pop_next() is None
    assert queue.is_empty()


def test_artifact_groups_are_tracked():
    item = group("G", leaf("a"))
    item.artifact = "g.txt"
    queue = WorkQueue([item, leaf("solo")])
    assert queue.artifact_groups == {"g.txt": ["G"]}
