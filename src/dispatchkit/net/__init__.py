# net/__init__.py
"""Wire protocol, master loop, relay and worker-side client."""

from .protocol import ProtocolError, is_tcp_address
from .server import QueueServer
from .relay import RelayClient, RelayRegistrationError, RelayServer
from .client import InProcessClient, WorkItemClient

__all__ = [
    "ProtocolError",
    "is_tcp_address",
    "QueueServer",
    "RelayClient",
    "RelayRegistrationError",
    "RelayServer",
    "InProcessClient",
    "WorkItemClient",
]
