# tests/pipeline/test_logger.py
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from dispatchkit.pipeline.logger import setup_logger


@pytest.fixture(autouse=True)
def isolated_root_logger():
    """Run each test against an empty root logger, then put the old one back."""
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    for handler in saved_handlers:
        root.removeHandler(handler)
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


def test_log_file_is_created_in_new_directory(tmp_path: Path):
    log_dir = tmp_path / "logs"

    log_path = setup_logger(log_dir)

    assert log_path.parent == log_dir
    assert log_path.name.startswith("dispatch_")
    assert log_path.suffix == ".log"

    logging.getLogger("dispatchkit.net.server").info("Distributing queue")
    text = log_path.read_text(encoding="utf-8")
    assert f"Logging to: {log_path} (master pid {os.getpid()})" in text
    assert "dispatchkit.net.server: Distributing queue" in text
    assert f" {os.getpid()}] " in text


def test_file_like_location_logs_beside_it(tmp_path: Path):
    log_path = setup_logger(tmp_path / "run.out", filename_prefix="relay")
    assert log_path.parent == tmp_path
    assert log_path.name.startswith("relay_")


def test_level_filters_records(tmp_path: Path):
    log_path = setup_logger(tmp_path, level=logging.WARNING)

    logging.getLogger("dispatchkit").info("quiet")
    logging.getLogger("dispatchkit").warning("loud")

    text = log_path.read_text(encoding="utf-8")
    assert "quiet" not in text
    assert "loud" in text


def test_force_drops_previous_handlers(tmp_path: Path, isolated_root_logger):
    setup_logger(tmp_path, console=True)
    assert len(isolated_root_logger.handlers) == 2

    log_path = setup_logger(tmp_path / "rotated", rotate=True, force=True)

    (handler,) = isolated_root_logger.handlers
    assert isinstance(handler, RotatingFileHandler)
    logging.getLogger().error("after rotate")
    assert "after rotate" in log_path.read_text(encoding="utf-8")
