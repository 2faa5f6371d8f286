"""Addresses, sockets and the line-based command protocol."""

from __future__ import annotations

import json
import logging
import re
import socket
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Tuple

from ..utils.cleanup import safe_remove
from ..worktree.types import ItemPath, WorkerRecord

__all__ = [
    "ProtocolError",
    "Command",
    "is_tcp_address",
    "listen",
    "connect",
    "encode",
    "decode",
    "read_command",
    "encode_pop",
    "encode_slave",
    "encode_worker",
    "read_response",
    "RESPONSE_OK",
    "RESPONSE_WRONG_RUN",
]

logger = logging.getLogger(__name__)

RESPONSE_OK = b"OK\n"
RESPONSE_WRONG_RUN = b"WRONG RUN\n"

POP = "POP"
POP_GROUP = "POP GROUP"
POP_EXAMPLE = "POP EXAMPLE"
POP_TAGGED = "POP TAGGED"
SLAVE = "SLAVE"
WORKER = "WORKER"

_TCP_ADDRESS = re.compile(r"^(?:(.+):)?(\d+)$")
_POP_PAYLOAD = re.compile(r"^POP (GROUP|EXAMPLE|TAGGED) (\d+)$")
_SLAVE = re.compile(r"^SLAVE (\d+) ([\w.-]+) (\w+)(?: (.+))?$")
_WORKER = re.compile(r"^WORKER (\d+)$")

# Longest command line accepted from a peer
MAX_LINE = 4096


class ProtocolError(ValueError):
    """A peer sent a command line or payload that cannot be parsed."""


# ----------------------------------------------------------------------
# Addresses and sockets
# ----------------------------------------------------------------------

def is_tcp_address(address: str) -> bool:
    """True for ``host:port`` or a bare port; anything else is a socket path."""
    return _TCP_ADDRESS.match(address) is not None


def _tcp_target(address: str) -> Tuple[str, int]:
    host, port = _TCP_ADDRESS.match(address).groups()
    return host or "0.0.0.0", int(port)


def listen(address: str, backlog: int = 128) -> socket.socket:
    """
    Open the listening socket for ``address``.

    A stale socket file left at a UNIX path is removed first.
    """
    if is_tcp_address(address):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(_tcp_target(address))
    else:
        safe_remove(address)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(address)
    sock.listen(backlog)
    logger.debug("Listening on %s", address)
    return sock


def connect(address: str, timeout: Optional[float] = None) -> socket.socket:
    """Connect to ``address`` (a TCP endpoint or a UNIX socket path)."""
    if is_tcp_address(address):
        host, port = _tcp_target(address)
        if host == "0.0.0.0":
            host = "127.0.0.1"
        return socket.create_connection((host, port), timeout=timeout)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(address)
    except OSError:
        sock.close()
        raise
    return sock


# ----------------------------------------------------------------------
# Payload codec
# ----------------------------------------------------------------------

def encode(obj: Any) -> bytes:
    """Serialize a payload (paths, tag pairs, worker records) as UTF-8 JSON."""
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def decode(data: bytes) -> Any:
    """Inverse of :func:`encode`."""
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"undecodable payload: {exc}") from None


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

@dataclass
class Command:
    """One parsed request."""

    name: str
    payload: Any = None

    # SLAVE fields
    count: int = 0
    host: Optional[str] = None
    token: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_pop(self) -> bool:
        return self.name.startswith(POP)

    @property
    def scope(self) -> ItemPath:
        """Scope path of a POP GROUP / POP EXAMPLE request."""
        return tuple(self.payload or ())


def _read_payload(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise ProtocolError(f"expected {size} payload bytes, got {len(data or b'')}")
    return data


def read_command(stream: BinaryIO) -> Optional[Command]:
    """
    Read one command (and its payload, if any) from a connection.

    Returns:
        The parsed Command, or None if the peer closed without sending

    Raises:
        ProtocolError: On an unknown command or a malformed payload
    """
    raw = stream.readline(MAX_LINE)
    if not raw:
        return None
    if not raw.endswith(b"\n"):
        raise ProtocolError("command line too long or unterminated")
    try:
        line = raw.decode("utf-8").rstrip("\r\n")
    except UnicodeDecodeError:
        raise ProtocolError("command line is not UTF-8") from None

    if line == POP:
        return Command(POP)

    m = _POP_PAYLOAD.match(line)
    if m:
        kind, size = m.group(1), int(m.group(2))
        payload = decode(_read_payload(stream, size))
        if kind == "TAGGED":
            if not isinstance(payload, list) or len(payload) != 2 or not isinstance(payload[0], str):
                raise ProtocolError(f"POP TAGGED expects [tag, value], got {payload!r}")
        elif not isinstance(payload, list) or not all(isinstance(k, str) for k in payload):
            raise ProtocolError(f"POP {kind} expects a path, got {payload!r}")
        return Command(f"{POP} {kind}", payload=payload)

    m = _SLAVE.match(line)
    if m:
        return Command(
            SLAVE,
            count=int(m.group(1)),
            host=m.group(2),
            token=m.group(3),
            message=m.group(4),
        )

    m = _WORKER.match(line)
    if m:
        data = decode(_read_payload(stream, int(m.group(1))))
        if not isinstance(data, dict):
            raise ProtocolError("WORKER payload must be an object")
        try:
            record = WorkerRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"bad WORKER payload: {exc}") from None
        return Command(WORKER, payload=record)

    raise ProtocolError(f"unknown command {line[:80]!r}")


def encode_pop(kind: Optional[str] = None, payload: Any = None) -> bytes:
    """
    Build a POP request.

    Args:
        kind: None for a root pop, else ``GROUP``, ``EXAMPLE`` or ``TAGGED``
        payload: Scope path or ``(tag, value)``
    """
    if kind is None:
        return b"POP\n"
    data = encode(list(payload))
    return f"{POP} {kind} {len(data)}\n".encode("ascii") + data


def encode_slave(count: int, host: str, token: str, message: Optional[str] = None) -> bytes:
    """Build a relay registration line; CR/LF are stripped from ``message``."""
    line = f"{SLAVE} {count} {host} {token}"
    if message:
        message = message.replace("\r", "").replace("\n", "")
        if message:
            line += f" {message}"
    return (line + "\n").encode("utf-8")


def encode_worker(record: WorkerRecord) -> bytes:
    """Build a completion report carrying a full WorkerRecord."""
    data = encode(record.to_dict())
    return f"{WORKER} {len(data)}\n".encode("ascii") + data


def read_response(sock: socket.socket) -> bytes:
    """Read everything the server sends until it closes the connection."""
    chunks = []
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)
