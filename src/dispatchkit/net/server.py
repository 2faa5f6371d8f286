"""The master loop: hands out work, collects worker records, detects stalls."""

from __future__ import annotations

import logging
import select
import socket
import time
from typing import Dict, List, Optional

from setproctitle import setproctitle
from tqdm import tqdm

from ..parallel.supervisor import WorkerSupervisor
from ..utils.cleanup import safe_remove
from ..worktree.types import WorkerRecord
from ..worktree.work_queue import WAIT, WorkQueue
from . import protocol
from .protocol import Command, ProtocolError

__all__ = ["QueueServer", "POLL_INTERVAL", "DEFAULT_BAD_WORKER_TIMEOUT"]

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
DEFAULT_BAD_WORKER_TIMEOUT = 120.0

# Per-connection read timeout so one silent peer cannot wedge the loop
CONNECTION_TIMEOUT = 5.0


class QueueServer:
    """
    Single-threaded master serving a WorkQueue over a stream socket.

    Each loop iteration waits up to ``POLL_INTERVAL`` for a connection and
    then does at most one accept+handle, one non-blocking reap of a local
    worker and one stall check. All queue mutation happens here, so it is
    serialized without locks.
    """

    def __init__(
        self,
        queue: WorkQueue,
        address: str,
        *,
        run_token: str,
        supervisor: Optional[WorkerSupervisor] = None,
        bad_worker_timeout: float = DEFAULT_BAD_WORKER_TIMEOUT,
        collaborator=None,
        verbose: bool = False,
        show_progress: bool = False,
    ):
        """
        Initialize the server and start listening.

        Args:
            queue: Authoritative work queue
            address: UNIX socket path, ``host:port`` or bare port
            run_token: Shared secret relays must present
            supervisor: Local worker processes to reap (optional)
            bad_worker_timeout: Seconds without any request before the run
                is declared stalled
            collaborator: Receives ``queue_status`` calls (optional)
            verbose: Echo every worker's output as it completes
            show_progress: Show a tqdm bar of dispatched items
        """
        self.queue = queue
        self.address = address
        self.run_token = run_token
        self.supervisor = supervisor
        self.bad_worker_timeout = bad_worker_timeout
        self.collaborator = collaborator
        self.verbose = verbose
        self.show_progress = show_progress

        self.completed: List[WorkerRecord] = []
        self.remote_workers: Dict[str, int] = {}
        self.timed_out = False
        self.aborting = False

        self.start_time = time.time()
        self.last_activity: Optional[float] = None
        self._pbar = None

        self.sock: Optional[socket.socket] = protocol.listen(address)
        if supervisor is not None:
            supervisor.inherited.append(self.sock)

    @property
    def is_unix(self) -> bool:
        return not protocol.is_tcp_address(self.address)

    def describe(self) -> str:
        return f"dispatch:master ({self.address})"

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def serve(self) -> None:
        """Distribute the queue until it is empty and every remote host reported."""
        setproctitle(self.describe())
        self.start_time = time.time()
        self.last_activity = self.start_time
        logger.info("Distributing queue on %s", self.address)

        if self.show_progress:
            self._pbar = tqdm(
                total=self.queue.size(),
                desc="Items Dispatched:",
                unit="items",
                ncols=100,
            )

        try:
            while not self.finished():
                if self.collaborator is not None:
                    self.collaborator.queue_status(
                        self.start_time,
                        self.queue.size(),
                        self.supervisor.live_count if self.supervisor else 0,
                        dict(self.remote_workers),
                    )
                if not self.poll_once():
                    break
        finally:
            if self._pbar is not None:
                self._pbar.close()
                self._pbar = None

    def finished(self) -> bool:
        return self.queue.is_empty() and not self.remote_workers

    def poll_once(self) -> bool:
        """
        Run one loop iteration.

        Returns:
            False once the run was declared stalled
        """
        readable, _, _ = select.select([self.sock], [], [], POLL_INTERVAL)
        if readable:
            self.last_activity = time.time()
            self.accept_one()
            return True

        if self.supervisor is not None and self.supervisor.live_count:
            record = self.supervisor.reap(block=False)
            if record is not None:
                self.worker_completed(record)

        if self.stalled():
            self.record_bad_workers()
            return False
        return True

    def stalled(self) -> bool:
        if self.last_activity is None or self.finished():
            return False
        return time.time() - self.last_activity > self.bad_worker_timeout

    def accept_one(self) -> None:
        try:
            conn, _ = self.sock.accept()
        except OSError as exc:
            logger.warning("Accept failed: %s", exc)
            return

        with conn:
            conn.settimeout(CONNECTION_TIMEOUT)
            try:
                with conn.makefile("rb") as stream:
                    command = protocol.read_command(stream)
                if command is not None:
                    self.handle_command(command, conn)
            except ProtocolError as exc:
                logger.warning("Ignoring malformed request: %s", exc)
            except OSError as exc:
                logger.warning("Connection error while handling request: %s", exc)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def handle_command(self, command: Command, conn: socket.socket) -> None:
        if command.is_pop:
            response = self.handle_pop(command)
            if response:
                conn.sendall(response)
        elif command.name == protocol.SLAVE:
            conn.sendall(self.register_relay(command))
        elif command.name == protocol.WORKER:
            self.report_completion(command.payload)
            conn.sendall(protocol.RESPONSE_OK)

    def handle_pop(self, command: Command) -> bytes:
        """Answer a POP request; empty bytes means "nothing here"."""
        if command.name == protocol.POP_EXAMPLE:
            result = self.queue.pop_example(command.scope)
        elif command.name == protocol.POP_GROUP:
            result = self.queue.pop_next(command.scope)
        elif command.name == protocol.POP_TAGGED:
            tag, value = command.payload
            result = self.queue.pop_next((), preferred=(tag, value))
        else:
            result = self.queue.pop_next()

        if result is None:
            return b""
        if result == WAIT:
            return protocol.encode(WAIT)

        logger.debug("Assigned %s", " :: ".join(result))
        self._advance_progress()
        return protocol.encode(list(result))

    def _advance_progress(self) -> None:
        if self._pbar is None:
            return
        total = self.queue.dispatched + self.queue.size()
        if total != self._pbar.total:
            self._pbar.total = total
            self._pbar.refresh()
        self._pbar.update(1)

    def register_relay(self, command: Command) -> bytes:
        """Record a relay's worker capacity if its token matches this run."""
        elapsed = time.time() - self.start_time
        message = f"*** {command.count} workers connected from {command.host} after {elapsed:.2f}s"
        if command.message:
            message += f" {command.message}"

        if command.token != self.run_token:
            logger.warning(
                "Relay %s from run %s connected to master for run %s; ignoring",
                command.host, command.token, self.run_token,
            )
            return protocol.RESPONSE_WRONG_RUN

        self.remote_workers[command.host] = command.count
        logger.info(message)
        return protocol.RESPONSE_OK

    def report_completion(self, record: WorkerRecord) -> None:
        """Merge a remote worker's record and release its host slot."""
        self.worker_completed(record)
        host = record.host
        if host in self.remote_workers:
            self.remote_workers[host] -= 1
            if self.remote_workers[host] <= 0:
                del self.remote_workers[host]
        else:
            logger.warning("Completion report from unregistered host %r", host)

    def worker_completed(self, record: WorkerRecord) -> None:
        if self.aborting:
            return
        self.completed.append(record)
        if self.verbose or not record.succeeded:
            print(record.output, end="" if record.output.endswith("\n") else "\n")

    # ------------------------------------------------------------------
    # Stall handling and shutdown
    # ------------------------------------------------------------------

    def record_bad_workers(self) -> None:
        """Fail every outstanding worker slot and mark the run as timed out."""
        local = self.supervisor.live_records if self.supervisor is not None else []
        sad_workers: List[WorkerRecord] = list(local)
        for host, count in self.remote_workers.items():
            sad_workers.extend(WorkerRecord(pid=0, num=0, host=host) for _ in range(count))

        if sad_workers:
            print(
                f"No remaining workers have checked in for {self.bad_worker_timeout:g} seconds, aborting."
            )
        else:
            print("All workers have completed, but there are still items in the queue, aborting.")
        print("Either there is broken code, or a bad node :(")
        print()
        print(f"Queue size: {self.queue.size()}")
        if local:
            print(f"Local workers: {len(local)}")
        if self.remote_workers:
            print("Remote workers:")
            for host, count in self.remote_workers.items():
                print(f"  {host}: {count}")

        self.timed_out = True
        if self.supervisor is not None:
            self.supervisor.forget(local)
        now = time.time()
        for record in sad_workers:
            record.exit_status = 1
            record.end_time = now
        self.completed.extend(sad_workers)
        self.remote_workers = {}
        logger.error("Run stalled with %d item(s) outstanding", self.queue.size())

    def close(self) -> None:
        """Stop listening and remove a UNIX socket path."""
        if self.sock is None:
            return
        try:
            self.sock.close()
        finally:
            if self.is_unix:
                safe_remove(self.address)
            self.sock = None

    def shutdown(self) -> None:
        """Stop listening, then reap every local worker still running."""
        self.close()
        if self.supervisor is not None:
            for record in self.supervisor.reap_all():
                self.worker_completed(record)

    def kill_workers(self) -> None:
        if self.supervisor is not None:
            for record in self.supervisor.kill_all():
                self.worker_completed(record)
