# tests/test_cleanup.py
from pathlib import Path

import pytest

from dispatchkit.utils.cleanup import safe_remove


def test_missing_path_is_noop(tmp_path: Path):
    assert safe_remove(tmp_path / "nothing.sock") is True


def test_removes_file(tmp_path: Path):
    f = tmp_path / "dispatch_worker_1_output"
    f.write_text("x", encoding="utf-8")
    assert safe_remove(f) is True
    assert not f.exists()


def test_refuses_directories(tmp_path: Path):
    with pytest.raises(ValueError, match="directory"):
        safe_remove(tmp_path)


def test_removes_dangling_symlink(tmp_path: Path):
    link = tmp_path / "link"
    link.symlink_to(tmp_path / "gone")
    assert safe_remove(link) is True
    assert not link.is_symlink()


def test_gives_up_after_retries(tmp_path: Path, monkeypatch):
    f = tmp_path / "stuck"
    f.write_text("x", encoding="utf-8")
    calls = []

    def failing_unlink(self, *args, **kwargs):
        calls.append(self)
        raise PermissionError("busy")

    monkeypatch.setattr(Path, "unlink", failing_unlink)
    assert safe_remove(f, max_retries=3, delay_seconds=0) is False
    assert len(calls) == 3
