# tests/conftest.py
import os
import tempfile
import uuid

import pytest

from dispatchkit.utils.cleanup import safe_remove


def _short_sock_path():
    # tmp_path can exceed the UNIX socket path limit
    return os.path.join(tempfile.gettempdir(), f"dk_{os.getpid()}_{uuid.uuid4().hex[:8]}.sock")


@pytest.fixture
def sock_path():
    path = _short_sock_path()
    yield path
    safe_remove(path)


@pytest.fixture
def relay_sock_path():
    path = _short_sock_path()
    yield path
    safe_remove(path)
