"""Usage history store.

Periodic snapshots of directory usage are kept in memory and persisted to a
single JSON document:

.. code-block:: json

    {"entries": [{"timestamp": "2026-01-01T00:00:00Z", "path": "/export/pvc-1",
                  "dirName": "pvc-1", "used": 1024, "quota": 1073741824,
                  "usedPct": 0.0001}]}

The file is rewritten (atomically) every time a snapshot is recorded, and
read once when the store is created.

Entries older than the retention period are pruned when a snapshot is
recorded, as are the oldest entries in excess of `max_entries`.

From the history, the usage trend of a directory can be computed: the
change in usage over the last 24 hours, 7 days and 30 days.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import pathlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .audit import format_time, parse_time
from .common.rwlock import RWLock

if TYPE_CHECKING:
    from .usage import DirUsage

log = logging.getLogger(__name__)

# Trend horizons
DAY = datetime.timedelta(days=1)
WEEK = datetime.timedelta(days=7)
MONTH = datetime.timedelta(days=30)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class UsageHistory:
    """A usage snapshot of one directory."""

    timestamp: datetime.datetime
    path: str
    dir_name: str
    used: int
    quota: int = 0
    used_pct: float = 0.0

    def to_dict(self) -> dict:
        return {
            "timestamp": format_time(self.timestamp),
            "path": self.path,
            "dirName": self.dir_name,
            "used": self.used,
            "quota": self.quota,
            "usedPct": self.used_pct,
        }

    @classmethod
    def from_dict(cls, data: dict) -> UsageHistory:
        return cls(
            timestamp=parse_time(data["timestamp"]),
            path=data["path"],
            dir_name=data.get("dirName", os.path.basename(data["path"])),
            used=int(data.get("used", 0)),
            quota=int(data.get("quota", 0)),
            used_pct=float(data.get("usedPct", 0)),
        )


@dataclass
class TrendData:
    """Usage trend of one directory.

    The changes are in bytes.  `trend` is "up", "down" or "stable",
    depending on the sign of `change_24h`.
    """

    path: str
    dir_name: str
    current: int
    quota: int
    change_24h: int = 0
    change_7d: int = 0
    change_30d: int = 0
    trend: str = "stable"
    history: list[UsageHistory] = field(default_factory=list)


def calculate_change(
    history: list[UsageHistory], since: datetime.datetime
) -> int:
    """The change in usage since `since`.

    The reference value is the last entry recorded at or before `since`.  If
    the history doesn't go back that far, the oldest entry is used.

    Parameters
    ----------
    history : list of UsageHistory
        The history, sorted by time.  The last entry is the current usage.
    since : datetime
        The start of the interval.
    """
    if not history:
        return 0

    reference = history[0]
    for entry in history:
        if entry.timestamp > since:
            break
        reference = entry

    return history[-1].used - reference.used


class HistoryStore:
    """The usage history.

    Parameters
    ----------
    path : path-like
        The history file.  Its directory is created if necessary.
    interval : float
        Seconds between snapshots.  The store doesn't take snapshots
        itself; this is advisory for whoever calls `record`.
    retention : float
        Seconds for which entries are kept.
    max_entries : int, optional
        The maximum number of entries kept.

    Raises
    ------
    OSError
        The directory for the history file couldn't be created.
    """

    def __init__(
        self,
        path: str | os.PathLike,
        interval: float = 300,
        retention: float = 30 * 86400,
        max_entries: int = 100000,
    ) -> None:
        if interval <= 0:
            raise ValueError("history interval must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self.path = pathlib.Path(path)
        self.interval = interval
        self.retention = retention
        self.max_entries = max_entries

        self._lock = RWLock()
        self._entries = []

        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._load()
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"Failed to load existing history from {self.path}: {e}")

    def __repr__(self) -> str:
        return f"<HistoryStore path={self.path}>"

    def __len__(self) -> int:
        with self._lock.read:
            return len(self._entries)

    def _load(self) -> None:
        """Read the history file, if it exists."""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return

        data = json.loads(text)

        entries = []
        for item in data.get("entries") or []:
            try:
                entries.append(UsageHistory.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                log.warning(f"Skipping bad history entry in {self.path}: {e}")

        with self._lock.write:
            self._entries = entries

        log.info(f"Loaded {len(entries)} history entries")

    def _save(self, entries: list[UsageHistory]) -> None:
        """Write `entries` to the history file, atomically.

        Requires the write lock.
        """
        text = json.dumps({"entries": [entry.to_dict() for entry in entries]})

        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(text)
        os.replace(tmp, self.path)

    def _prune(self, now: datetime.datetime) -> None:
        """Drop expired and excess entries.  Requires the write lock."""
        cutoff = now - datetime.timedelta(seconds=self.retention)
        kept = [entry for entry in self._entries if entry.timestamp > cutoff]

        if len(kept) > self.max_entries:
            kept = kept[-self.max_entries :]

        self._entries = kept

    def record(
        self, usages: Iterable[DirUsage], now: datetime.datetime | None = None
    ) -> None:
        """Record a usage snapshot and save the history.

        Parameters
        ----------
        usages : iterable of DirUsage
            The current usages.
        now : datetime, optional
            The time of the snapshot.  Defaults to the current time.

        Raises
        ------
        OSError
            The history file couldn't be written.  The snapshot is still
            kept in memory.
        """
        if now is None:
            now = _now()

        with self._lock.write:
            for usage in usages:
                self._entries.append(
                    UsageHistory(
                        timestamp=now,
                        path=usage.path,
                        dir_name=os.path.basename(usage.path),
                        used=usage.used,
                        quota=usage.quota,
                        used_pct=usage.quota_pct,
                    )
                )
            self._prune(now)
            self._save(self._entries)

    def _query(
        self,
        path: str,
        start: datetime.datetime | None,
        end: datetime.datetime | None,
    ) -> list[UsageHistory]:
        """Implements `query`.  Requires the read lock."""
        result = [
            entry
            for entry in self._entries
            if entry.path == path
            and (start is None or entry.timestamp >= start)
            and (end is None or entry.timestamp <= end)
        ]
        result.sort(key=lambda entry: entry.timestamp)
        return result

    def query(
        self,
        path: str,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
    ) -> list[UsageHistory]:
        """The history of `path`, sorted by time.

        Entries outside the (inclusive) interval from `start` to `end` are
        excluded.  Either bound may be None.
        """
        with self._lock.read:
            return self._query(path, start, end)

    def _trend(self, path: str, now: datetime.datetime) -> TrendData | None:
        """Implements `get_trend`.  Requires the read lock."""
        history = self._query(path, now - MONTH, now)
        if not history:
            return None

        current = history[-1]
        trend = TrendData(
            path=path,
            dir_name=current.dir_name,
            current=current.used,
            quota=current.quota,
            change_24h=calculate_change(history, now - DAY),
            change_7d=calculate_change(history, now - WEEK),
            change_30d=calculate_change(history, now - MONTH),
            history=history,
        )

        if trend.change_24h > 0:
            trend.trend = "up"
        elif trend.change_24h < 0:
            trend.trend = "down"

        return trend

    def get_trend(
        self, path: str, now: datetime.datetime | None = None
    ) -> TrendData | None:
        """The usage trend of `path` over the last 30 days.

        Returns None if there's no recent history of `path`.
        """
        if now is None:
            now = _now()

        with self._lock.read:
            return self._trend(path, now)

    def get_all_trends(self, now: datetime.datetime | None = None) -> list[TrendData]:
        """Trends of every path in the history, biggest current usage first."""
        if now is None:
            now = _now()

        with self._lock.read:
            paths = {entry.path for entry in self._entries}
            trends = [self._trend(path, now) for path in paths]

        trends = [trend for trend in trends if trend is not None]
        trends.sort(key=lambda trend: trend.current, reverse=True)
        return trends

    def stats(self) -> dict:
        """Summary statistics of the history.

        The returned dict always has the keys "entries" and "paths".  If
        there are entries, "oldest" and "newest" timestamps are included.
        """
        with self._lock.read:
            if not self._entries:
                return {"entries": 0, "paths": 0, "oldest": None, "newest": None}

            timestamps = [entry.timestamp for entry in self._entries]
            return {
                "entries": len(self._entries),
                "paths": len({entry.path for entry in self._entries}),
                "oldest": min(timestamps),
                "newest": max(timestamps),
                "retention": self.retention,
                "interval": self.interval,
            }
