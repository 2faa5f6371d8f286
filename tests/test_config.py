# tests/test_config.py
import os

import pytest

from dispatchkit.config import RunConfig
from dispatchkit.tracking import StatsMergeMode
from dispatchkit.worktree.work_queue import DEFAULT_MAX_SPLITS


def test_defaults_are_filled_in():
    cfg = RunConfig()
    assert cfg.concurrency == (os.cpu_count() or 2)
    assert cfg.run_token
    assert cfg.socket.endswith(".sock")
    assert not cfg.is_relay
    assert cfg.effective_max_splits == DEFAULT_MAX_SPLITS
    assert cfg.stats_mode is StatsMergeMode.MERGE


def test_zero_concurrency_is_sequential():
    assert RunConfig(concurrency=0).sequential
    assert not RunConfig(concurrency=2).sequential


def test_split_groups_off_disables_splitting():
    assert RunConfig(split_groups=False, max_splits_per_group=5).effective_max_splits == 0


def test_relay_equal_to_socket_is_disabled():
    cfg = RunConfig(socket="/tmp/same.sock", relay="/tmp/same.sock")
    assert cfg.relay is None
    assert not cfg.is_relay


@pytest.mark.parametrize(
    "kwargs",
    [{"bad_worker_timeout": 0}, {"bad_worker_timeout": -1}, {"max_splits_per_group": -1}],
)
def test_invalid_values_raise(kwargs):
    with pytest.raises(ValueError):
        RunConfig(**kwargs)


def test_from_env_reads_prefixed_variables():
    env = {
        "DISPATCH_WORKERS": "3",
        "DISPATCH_LOADERS": "1",
        "DISPATCH_SOCKET": "host:7000",
        "DISPATCH_RELAY": "root:7000",
        "DISPATCH_RELAY_TOKEN": "abc",
        "DISPATCH_RELAY_TIMEOUT": "2.5",
        "DISPATCH_RELAY_MESSAGE": "from ci",
        "DISPATCH_STATS": "/tmp/stats.json",
        "DISPATCH_STATS_MODE": "MAX",
        "DISPATCH_MAX_SPLITS": "4",
        "DISPATCH_SPLIT_GROUPS": "no",
        "DISPATCH_VERBOSE": "1",
        "DISPATCH_PROGRESS": "yes",
        "DISPATCH_FORCE": "a, b,,c",
        "UNRELATED": "ignored",
    }

    cfg = RunConfig.from_env(env)

    assert cfg.concurrency == 3
    assert cfg.num_loaders == 1
    assert cfg.socket == "host:7000"
    assert cfg.relay == "root:7000"
    assert cfg.run_token == "abc"
    assert cfg.relay_timeout == 2.5
    assert cfg.relay_message == "from ci"
    assert cfg.stats_path == "/tmp/stats.json"
    assert cfg.stats_mode is StatsMergeMode.MAX
    assert cfg.max_splits_per_group == 4
    assert cfg.split_groups is False
    assert cfg.effective_max_splits == 0
    assert cfg.verbose is True
    assert cfg.show_progress is True
    assert cfg.force == ("a", "b", "c")


def test_from_env_overrides_win():
    cfg = RunConfig.from_env({"DISPATCH_WORKERS": "3"}, concurrency=0)
    assert cfg.concurrency == 0


def test_from_env_empty_uses_defaults():
    cfg = RunConfig.from_env({})
    assert cfg.force is None
    assert cfg.verbose is False


@pytest.mark.parametrize(
    "name,value",
    [
        ("DISPATCH_WORKERS", "many"),
        ("DISPATCH_RELAY_TIMEOUT", "soon"),
        ("DISPATCH_VERBOSE", "maybe"),
        ("DISPATCH_STATS_MODE", "average"),
    ],
)
def test_from_env_rejects_malformed_values(name, value):
    with pytest.raises(ValueError, match=name):
        RunConfig.from_env({name: value})
