# dispatchkit/__init__.py
"""
Distributes hierarchical work items across forked (and remote) workers.

Main entry point:
    Runner(collaborator, config).run()

Key components:
    - worktree: work items, group steal queues and the master's WorkQueue
    - tracking: historical durations between runs
    - parallel: background discovery, worker supervision, buffered pipes
    - net: wire protocol, master loop, relay and worker client
    - pipeline: worker loop, runner, reporting and logging setup
"""

from .collaborator import CallableCollaborator, ExecutionCollaborator, ExecutionResult
from .config import RunConfig
from .pipeline.runner import Runner
from .tracking import StatsMergeMode, StatsStore
from .worktree import WorkItem, WorkQueue, WorkerRecord

__all__ = [
    "Runner",
    "RunConfig",
    "ExecutionCollaborator",
    "ExecutionResult",
    "CallableCollaborator",
    "StatsStore",
    "StatsMergeMode",
    "WorkItem",
    "WorkQueue",
    "WorkerRecord",
]
