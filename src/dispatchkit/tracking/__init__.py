"""Historical timing data used to order work."""

from .stats_store import StatsStore, StatsMergeMode, aggregate_durations

__all__ = ["StatsStore", "StatsMergeMode", "aggregate_durations"]
