"""Persistence of historical per-key durations across runs."""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

__all__ = ["StatsStore", "StatsMergeMode", "aggregate_durations"]

logger = logging.getLogger(__name__)


class StatsMergeMode(Enum):
    """How this run's durations combine with the persisted ones."""

    MERGE = "merge"
    """New value wins per key; keys not seen this run are kept"""

    REPLACE = "replace"
    """Only this run's durations are written"""

    MAX = "max"
    """Keep the larger of old and new per key"""

    SUM = "sum"
    """Add new durations onto the old ones"""


def aggregate_durations(maps: Iterable[Mapping[str, float]]) -> Dict[str, float]:
    """
    Sum durations per key across workers.

    Slices of one group can run on several workers, so the group's total
    time is the sum of what each worker measured.
    """
    totals: Dict[str, float] = {}
    for durations in maps:
        for key, value in durations.items():
            totals[key] = totals.get(key, 0.0) + float(value)
    return totals


class StatsStore:
    """Loads, merges and writes the ``key -> seconds`` map between runs."""

    STATS_VERSION = 1

    def __init__(self, path: Union[str, Path]):
        """
        Initialize the store.

        Args:
            path: Location of the stats file (created on first save)
        """
        self.path = Path(path)
        self._durations: Optional[Dict[str, float]] = None
        self._artifact_groups: Optional[Dict[str, List[str]]] = None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def durations(self) -> Dict[str, float]:
        """Durations from the previous run(s), loaded lazily."""
        if self._durations is None:
            self._load()
        return self._durations

    @property
    def artifact_groups(self) -> Dict[str, List[str]]:
        """Top-level group keys each artifact produced last time."""
        if self._artifact_groups is None:
            self._load()
        return self._artifact_groups

    def duration(self, key: str) -> Optional[float]:
        """Historical duration for ``key``, or None if never recorded."""
        return self.durations.get(key)

    def slowest_for_artifact(self, artifact: str) -> Optional[float]:
        """Duration of the slowest known top-level group in ``artifact``."""
        known = [
            self.durations[key]
            for key in self.artifact_groups.get(artifact, [])
            if key in self.durations
        ]
        return max(known) if known else None

    def _load(self) -> None:
        self._durations = {}
        self._artifact_groups = {}
        if not self.path.exists():
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring unreadable stats file %s: %s", self.path, exc)
            return

        if not isinstance(data, dict) or data.get("version") != self.STATS_VERSION:
            logger.warning("Ignoring stats file %s with unknown format", self.path)
            return

        try:
            durations = {
                str(k): float(v) for k, v in data.get("durations", {}).items()
            }
            groups = {
                str(k): [str(key) for key in v]
                for k, v in data.get("artifact_groups", {}).items()
            }
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Ignoring stats file %s with invalid values: %s", self.path, exc)
            return

        self._durations = durations
        self._artifact_groups = groups

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @staticmethod
    def merge(
        old: Mapping[str, float],
        new: Mapping[str, float],
        mode: StatsMergeMode = StatsMergeMode.MERGE,
    ) -> Dict[str, float]:
        """
        Combine two duration maps.

        Args:
            old: Persisted durations
            new: Durations measured this run
            mode: Merge policy

        Returns:
            The combined map (inputs are not modified)
        """
        if mode is StatsMergeMode.REPLACE:
            return dict(new)

        merged = dict(old)
        for key, value in new.items():
            if mode is StatsMergeMode.MAX:
                merged[key] = max(merged.get(key, value), value)
            elif mode is StatsMergeMode.SUM:
                merged[key] = merged.get(key, 0.0) + value
            else:
                merged[key] = value
        return merged

    def save(
        self,
        new_durations: Mapping[str, float],
        mode: StatsMergeMode = StatsMergeMode.MERGE,
        artifact_groups: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> Dict[str, float]:
        """
        Merge this run's durations into the store and write it out.

        Nothing is written when the run measured nothing.

        Args:
            new_durations: Durations measured this run
            mode: Merge policy
            artifact_groups: Artifact -> top-level keys discovered this run

        Returns:
            The durations now held by the store
        """
        if not new_durations:
            return self.durations

        durations = self.merge(self.durations, new_durations, mode)

        if mode is StatsMergeMode.REPLACE:
            groups: Dict[str, List[str]] = {}
        else:
            groups = {k: list(v) for k, v in self.artifact_groups.items()}
        for artifact, keys in (artifact_groups or {}).items():
            groups[artifact] = list(keys)

        self._write(durations, groups)
        self._durations = durations
        self._artifact_groups = groups
        logger.info("Saved %d durations to %s (%s)", len(durations), self.path, mode.value)
        return durations

    def _write(self, durations: Dict[str, float], groups: Dict[str, List[str]]) -> None:
        """Write through a temp file and rename it into place."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "version": self.STATS_VERSION,
                    "durations": durations,
                    "artifact_groups": groups,
                },
                f,
                indent=2,
                sort_keys=True,
            )
        os.replace(tmp_path, self.path)
