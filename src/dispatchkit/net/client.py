"""Worker-side iteration over the shared queue."""

from __future__ import annotations

import json
import logging
import socket
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from ..worktree.types import ItemPath, path_key
from ..worktree.work_queue import WAIT, WorkQueue
from . import protocol
from .protocol import ProtocolError

__all__ = ["QueueIterator", "WorkItemClient", "InProcessClient", "WAIT_INTERVAL"]

logger = logging.getLogger(__name__)

WAIT_INTERVAL = 0.1

# Any of these means the master stopped answering
_TRANSPORT_ERRORS = (
    FileNotFoundError,
    ConnectionRefusedError,
    ConnectionResetError,
    BrokenPipeError,
    TimeoutError,
    socket.timeout,
)

GroupHook = Callable[[ItemPath], None]


class QueueIterator:
    """
    Reservation-stack traversal shared by the socket and in-process clients.

    After receiving ``(g1, g2, leaf)`` the iterator holds ``g1`` and
    ``(g1, g2)`` open and keeps asking for more under the innermost one; a
    scope is closed (``on_exit``) only once the master has nothing left in
    it for this worker.
    """

    def __init__(
        self,
        *,
        preferred_tag: Optional[Tuple[str, Any]] = None,
        on_enter: Optional[GroupHook] = None,
        on_exit: Optional[GroupHook] = None,
    ):
        self.preferred_tag = preferred_tag
        self.on_enter = on_enter
        self.on_exit = on_exit

        self.durations: Dict[str, float] = {}
        self.items_seen = 0
        self.waiting_time = 0.0
        self.done = False

    # Subclasses answer these two
    def pop(self) -> Optional[ItemPath]:
        raise NotImplementedError

    def pop_group(self, scope: ItemPath) -> Optional[ItemPath]:
        raise NotImplementedError

    def __iter__(self) -> Iterator[ItemPath]:
        stack: List[ItemPath] = []
        try:
            while not self.done:
                path = self.pop_group(stack[-1]) if stack else self.pop()
                if self.done:
                    break
                if path is None:
                    if not stack:
                        break
                    self._exit(stack.pop())
                    continue

                self._reserve(stack, tuple(path[:-1]))
                self.items_seen += 1
                yield tuple(path)
        finally:
            while stack:
                self._exit(stack.pop())

    def _reserve(self, stack: List[ItemPath], scope: ItemPath) -> None:
        while stack and stack[-1] != scope[: len(stack[-1])]:
            self._exit(stack.pop())
        for depth in range(len(stack[-1]) if stack else 0, len(scope)):
            opened = scope[: depth + 1]
            stack.append(opened)
            if self.on_enter is not None:
                self.on_enter(opened)

    def _exit(self, scope: ItemPath) -> None:
        if self.on_exit is not None:
            self.on_exit(scope)

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    def timed(self, path: ItemPath, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` and charge its wall time to ``path`` and its root key."""
        start = time.time()
        try:
            return fn()
        finally:
            self.record(path, time.time() - start)

    def record(self, path: ItemPath, elapsed: float) -> None:
        key = path_key(path)
        self.durations[key] = self.durations.get(key, 0.0) + elapsed
        if len(path) > 1:
            root = path[0]
            self.durations[root] = self.durations.get(root, 0.0) + elapsed

    def flush_stats(self, path: Union[str, Path]) -> None:
        """Write the durations gathered so far for the supervising process."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.durations, f)


class WorkItemClient(QueueIterator):
    """
    Pulls item paths from a master (or relay) over its socket.

    Each request uses a fresh connection. No response, or any transport
    error, ends the iteration; a WAIT answer is retried after a short sleep.
    """

    def __init__(
        self,
        address: str,
        *,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.address = address
        self.timeout = timeout

    def query(self, request: bytes) -> Optional[ItemPath]:
        while True:
            start = time.time()
            try:
                with protocol.connect(self.address, timeout=self.timeout) as sock:
                    sock.sendall(request)
                    data = protocol.read_response(sock)
            except _TRANSPORT_ERRORS as exc:
                logger.info("Master at %s went away (%s); done", self.address, exc)
                self.done = True
                return None
            finally:
                self.waiting_time += time.time() - start

            if not data:
                return None
            try:
                value = protocol.decode(data)
            except ProtocolError as exc:
                logger.warning("Ignoring undecodable response: %s", exc)
                return None
            if value == WAIT:
                time.sleep(WAIT_INTERVAL)
                self.waiting_time += WAIT_INTERVAL
                continue
            return tuple(value)

    def pop(self) -> Optional[ItemPath]:
        if self.preferred_tag is not None:
            path = self.query(protocol.encode_pop("TAGGED", self.preferred_tag))
        else:
            path = self.query(protocol.encode_pop())
        if path is None:
            self.done = True
        return path

    def pop_group(self, scope: ItemPath) -> Optional[ItemPath]:
        return self.query(protocol.encode_pop("GROUP", scope))


class InProcessClient(QueueIterator):
    """Iterates a WorkQueue directly; used for sequential runs."""

    def __init__(self, queue: WorkQueue, **kwargs):
        super().__init__(**kwargs)
        self.queue = queue

    def _settle(self, pop: Callable[[], Any]) -> Optional[ItemPath]:
        while True:
            result = pop()
            if result != WAIT:
                return tuple(result) if result is not None else None
            time.sleep(WAIT_INTERVAL)
            self.waiting_time += WAIT_INTERVAL

    def pop(self) -> Optional[ItemPath]:
        path = self._settle(lambda: self.queue.pop_next((), preferred=self.preferred_tag))
        if path is None:
            self.done = True
        return path

    def pop_group(self, scope: ItemPath) -> Optional[ItemPath]:
        return self._settle(lambda: self.queue.pop_next(scope))
