"""Sub-master that serves local workers from a remote root master."""

from __future__ import annotations

import logging
import socket
import time
from typing import Optional

from ..worktree.types import WorkerRecord
from ..worktree.work_queue import WorkQueue
from . import protocol
from .protocol import Command
from .server import QueueServer

__all__ = ["RelayClient", "RelayServer", "RelayRegistrationError"]

logger = logging.getLogger(__name__)

RETRY_INTERVAL = 0.5
CONNECT_TIMEOUT = 30.0

_UNREACHABLE = (ConnectionRefusedError, FileNotFoundError, TimeoutError, socket.timeout)


class RelayRegistrationError(RuntimeError):
    """The root master was unreachable or refused this relay."""


class RelayClient:
    """Talks to the root master on behalf of one relay host."""

    def __init__(
        self,
        upstream: str,
        *,
        run_token: str,
        relay_timeout: float = 30.0,
        message: Optional[str] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.upstream = upstream
        self.run_token = run_token
        self.relay_timeout = relay_timeout
        self.message = message
        self.connect_timeout = connect_timeout
        self.hostname = socket.gethostname()

    def connect(self) -> socket.socket:
        """
        Connect upstream, retrying every 0.5s until ``relay_timeout``.

        Raises:
            RelayRegistrationError: If the master never became reachable
        """
        start = time.time()
        logger.info("Attempting to connect to %s for %gs", self.upstream, self.relay_timeout)
        while True:
            try:
                return protocol.connect(self.upstream, timeout=self.connect_timeout)
            except _UNREACHABLE as exc:
                if time.time() - start > self.relay_timeout:
                    raise RelayRegistrationError(
                        f"Unable to connect to master {self.upstream}: {exc}"
                    ) from exc
                logger.info("Master not yet available, sleeping...")
                time.sleep(RETRY_INTERVAL)

    def register(self, worker_count: int) -> None:
        """
        Announce this host's workers to the root master.

        Raises:
            RelayRegistrationError: On an unreachable master or a non-OK answer
        """
        with self.connect() as sock:
            sock.sendall(
                protocol.encode_slave(worker_count, self.hostname, self.run_token, self.message)
            )
            try:
                with sock.makefile("rb") as stream:
                    response = stream.readline(protocol.MAX_LINE)
            except OSError as exc:
                raise RelayRegistrationError(f"Registration with {self.upstream} failed: {exc}") from exc

        if response != protocol.RESPONSE_OK:
            text = response.decode("utf-8", errors="replace").strip()
            raise RelayRegistrationError(f"Got non-OK response from master: {text!r}")
        logger.info("Registered %d worker(s) from %s with %s", worker_count, self.hostname, self.upstream)

    def forward(self, request: bytes) -> bytes:
        """Send one request upstream and return the raw response (empty at end of run)."""
        try:
            with protocol.connect(self.upstream, timeout=self.connect_timeout) as sock:
                sock.sendall(request)
                return protocol.read_response(sock)
        except OSError as exc:
            logger.info("Upstream %s unavailable (%s); treating as end of run", self.upstream, exc)
            return b""

    def report(self, record: WorkerRecord) -> bool:
        """Send a finished worker's record upstream; True if acknowledged."""
        record.host = self.hostname
        logger.info("WORKER %d (pid %d) reporting to %s", record.num, record.pid, self.upstream)
        response = self.forward(protocol.encode_worker(record))
        if response != protocol.RESPONSE_OK:
            logger.warning(
                "Got non-OK response from master for worker %d: %r",
                record.num, response.decode("utf-8", errors="replace").strip(),
            )
            return False
        return True


class RelayServer(QueueServer):
    """
    Local QueueServer with an empty queue: every POP goes upstream.

    Runs until all local workers have been reaped; each reaped worker's
    record is sent upstream as a completion report.
    """

    def __init__(self, address: str, client: RelayClient, **kwargs):
        super().__init__(WorkQueue(), address, run_token=client.run_token, **kwargs)
        self.client = client

    def describe(self) -> str:
        return f"dispatch:relay ({self.address} -> {self.client.upstream})"

    def finished(self) -> bool:
        return self.supervisor is None or self.supervisor.live_count == 0

    def stalled(self) -> bool:
        return False

    def handle_command(self, command: Command, conn: socket.socket) -> None:
        if not command.is_pop:
            logger.warning("Relay ignoring %s command", command.name)
            return
        kind = command.name.split(" ", 1)[1] if " " in command.name else None
        response = self.client.forward(protocol.encode_pop(kind, command.payload))
        if response:
            conn.sendall(response)

    def worker_completed(self, record: WorkerRecord) -> None:
        if not self.aborting:
            self.client.report(record)
        super().worker_completed(record)
