# tests/net/test_server.py
import os
import threading
import time

import pytest

from dispatchkit.net import protocol
from dispatchkit.net.client import WorkItemClient
from dispatchkit.net.server import QueueServer
from dispatchkit.worktree import WAIT, WorkerRecord, WorkItem, WorkQueue


class DummyTqdm:
    """No-op tqdm stand-in to keep tests quiet."""
    def __init__(self, total=0, desc="", unit="", ncols=None):
        self.total = total
        self.n = 0

    def update(self, n=1):
        self.n += n

    def refresh(self):
        pass

    def close(self):
        pass


def _leaves(*keys):
    return [WorkItem.leaf(k) for k in keys]


def _request(server, data: bytes) -> bytes:
    """Send one request and let the server handle it on this thread."""
    sock = protocol.connect(server.address, timeout=5)
    try:
        sock.sendall(data)
        server.accept_one()
        return protocol.read_response(sock)
    finally:
        sock.close()


@pytest.fixture
def make_server(sock_path):
    servers = []

    def _make(items=(), **kwargs):
        kwargs.setdefault("run_token", "secret")
        server = QueueServer(WorkQueue(items), sock_path, **kwargs)
        servers.append(server)
        return server

    yield _make
    for server in servers:
        server.close()


def test_pop_returns_full_paths(make_server):
    server = make_server([WorkItem.group("G", _leaves("a", "b")), WorkItem.leaf("solo")])

    first = protocol.decode(_request(server, protocol.encode_pop()))
    assert first == ["G", "a"]

    scoped = protocol.decode(_request(server, protocol.encode_pop("GROUP", ("G",))))
    assert scoped == ["G", "b"]

    assert _request(server, protocol.encode_pop("GROUP", ("G",))) == b""


def test_empty_queue_answers_nothing(make_server):
    server = make_server()
    assert _request(server, protocol.encode_pop()) == b""
    assert server.finished()


def test_wrong_run_token_is_rejected(make_server):
    server = make_server(_leaves("a"))

    assert _request(server, b"SLAVE 4 other-host nottoken\n") == protocol.RESPONSE_WRONG_RUN
    assert server.remote_workers == {}

    assert _request(server, b"SLAVE 4 good-host secret\n") == protocol.RESPONSE_OK
    assert server.remote_workers == {"good-host": 4}


def test_remote_completion_releases_host_slots(make_server, capsys):
    server = make_server()
    _request(server, b"SLAVE 2 box secret\n")

    for pid in (10, 11):
        record = WorkerRecord(pid=pid, num=1, exit_status=0, host="box", output="done\n")
        assert _request(server, protocol.encode_worker(record)) == protocol.RESPONSE_OK

    assert server.remote_workers == {}
    assert [r.pid for r in server.completed] == [10, 11]
    assert server.finished()
    # Successful output is only echoed in verbose mode
    assert "done" not in capsys.readouterr().out


def test_failed_worker_output_is_echoed(make_server, capsys):
    server = make_server()
    server.worker_completed(WorkerRecord(pid=1, num=1, exit_status=1, output="boom"))
    assert "boom" in capsys.readouterr().out


def test_unknown_command_is_ignored(make_server, caplog):
    server = make_server(_leaves("a"))
    assert _request(server, b"DANCE\n") == b""
    assert "Ignoring malformed request" in caplog.text
    # Queue untouched
    assert server.queue.outstanding == 1


def test_wait_is_sent_while_discovery_runs(sock_path):
    class Pending:
        exhausted = False
        pending_artifacts = 1

        def shift(self):
            return None

    server = QueueServer(WorkQueue(populator=Pending()), sock_path, run_token="t")
    try:
        assert protocol.decode(_request(server, protocol.encode_pop())) == WAIT
    finally:
        server.close()


def test_close_removes_socket_path(make_server, sock_path):
    server = make_server()
    assert os.path.exists(sock_path)
    server.close()
    assert not os.path.exists(sock_path)


def test_stall_fails_outstanding_slots(make_server, capsys):
    server = make_server(_leaves(*"abcde"), bad_worker_timeout=1)

    thread = threading.Thread(target=server.serve)
    start = time.time()
    thread.start()

    assert _send(server.address, b"SLAVE 4 farm-1 secret\n") == protocol.RESPONSE_OK
    assert protocol.decode(_send(server.address, protocol.encode_pop())) == ["a"]

    thread.join(timeout=10)
    elapsed = time.time() - start

    assert not thread.is_alive()
    assert server.timed_out
    assert elapsed < 3
    assert len(server.completed) == 4
    assert all(r.exit_status == 1 and r.host == "farm-1" for r in server.completed)
    assert server.queue.outstanding == 4

    out = capsys.readouterr().out
    assert "No remaining workers have checked in for 1 seconds" in out
    assert "Queue size: 4" in out
    assert "  farm-1: 4" in out


def test_stall_without_any_workers(make_server, capsys):
    server = make_server(_leaves("a"), bad_worker_timeout=0.3)
    server.serve()
    assert server.timed_out
    assert server.completed == []
    assert "All workers have completed, but there are still items" in capsys.readouterr().out


def _send(address, data):
    with protocol.connect(address, timeout=5) as sock:
        sock.sendall(data)
        return protocol.read_response(sock)


def test_clients_drain_queue_then_see_end_of_run(make_server, monkeypatch):
    import dispatchkit.net.server as server_mod

    monkeypatch.setattr(server_mod, "tqdm", DummyTqdm, raising=True)

    items = [
        WorkItem.group("G", [WorkItem.leaf(str(i)) for i in range(6)]),
        WorkItem.group("H", [WorkItem.group("H1", _leaves("x", "y"))]),
        WorkItem.leaf("solo"),
    ]
    expected = sorted(p for item in items for p in item.iter_leaf_paths())
    server = make_server(items, show_progress=True)

    thread = threading.Thread(target=lambda: (server.serve(), server.close()))
    thread.start()

    seen = []
    client = WorkItemClient(server.address, timeout=5)
    for path in client:
        seen.append(path)
    thread.join(timeout=10)

    assert sorted(seen) == expected
    assert client.done
    assert not thread.is_alive()
    assert not server.timed_out

    # Once the master is gone every later client ends cleanly
    assert list(WorkItemClient(server.address, timeout=5)) == []
