"""Test nfsquota.history"""

import datetime
import json
import threading

import pytest

from nfsquota.history import HistoryStore, UsageHistory, calculate_change
from nfsquota.usage import DirUsage

UTC = datetime.timezone.utc
T0 = datetime.datetime(2026, 3, 1, tzinfo=UTC)
HOUR = datetime.timedelta(hours=1)
DAY = datetime.timedelta(days=1)

PATH = "/var/lib/nfsquota/history.json"


@pytest.fixture
def store(fs):
    return HistoryStore(PATH, interval=300, retention=30 * 86400)


def usage(path, used, quota=0):
    return DirUsage(
        path=path, used=used, quota=quota, quota_pct=used / quota * 100 if quota else 0
    )


def test_bad_params(fs):
    with pytest.raises(ValueError):
        HistoryStore(PATH, interval=0)

    with pytest.raises(ValueError):
        HistoryStore(PATH, max_entries=0)


def test_record_and_save(store):
    store.record([usage("/export/a", 100, 1000)], now=T0)

    assert len(store) == 1

    with open(PATH) as f:
        data = json.load(f)

    assert data == {
        "entries": [
            {
                "timestamp": "2026-03-01T00:00:00Z",
                "path": "/export/a",
                "dirName": "a",
                "used": 100,
                "quota": 1000,
                "usedPct": 10.0,
            }
        ]
    }


def test_reload(store):
    """A new store loads the saved history."""
    store.record([usage("/export/a", 100), usage("/export/b", 200)], now=T0)

    new_store = HistoryStore(PATH)
    assert len(new_store) == 2
    assert new_store.query("/export/b") == [
        UsageHistory(
            timestamp=T0, path="/export/b", dir_name="b", used=200, quota=0
        )
    ]


def test_load_corrupt(fs):
    """A corrupt history file is ignored."""
    fs.create_file(PATH, contents="{not json")

    store = HistoryStore(PATH)
    assert len(store) == 0


def test_load_skips_bad_entries(fs):
    """Bad entries are dropped without losing the good ones."""
    fs.create_file(
        PATH,
        contents=json.dumps(
            {
                "entries": [
                    {
                        "timestamp": "2026-03-01T00:00:00Z",
                        "path": "/export/a",
                        "used": 1,
                    },
                    {"path": "/export/b", "used": 2},
                    {"timestamp": "yesterday", "path": "/export/b", "used": 3},
                    "junk",
                ]
            }
        ),
    )

    store = HistoryStore(PATH)
    assert len(store) == 1

    store.record([usage("/export/c", 4)], now=T0 + HOUR)

    reloaded = HistoryStore(PATH)
    assert [entry.path for entry in reloaded.query("/export/a")] == ["/export/a"]
    assert len(reloaded) == 2


def test_concurrent_record(store):
    """Records from several threads all reach the file."""

    def _record(path):
        for i in range(20):
            store.record([usage(path, i)], now=T0 + i * HOUR)

    threads = [
        threading.Thread(target=_record, args=(f"/export/{name}",))
        for name in "abcd"
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(HistoryStore(PATH)) == 80


def test_prune_retention(fs):
    store = HistoryStore(PATH, retention=2 * 86400)

    store.record([usage("/export/a", 1)], now=T0)
    store.record([usage("/export/a", 2)], now=T0 + DAY)
    store.record([usage("/export/a", 3)], now=T0 + 2 * DAY)

    # The first entry is exactly at the cutoff, so it's gone
    assert [entry.used for entry in store.query("/export/a")] == [2, 3]


def test_prune_max_entries(fs):
    store = HistoryStore(PATH, max_entries=3)

    for i in range(5):
        store.record([usage("/export/a", i)], now=T0 + i * HOUR)

    assert [entry.used for entry in store.query("/export/a")] == [2, 3, 4]


def test_query_range(store):
    for i in range(5):
        store.record([usage("/export/a", i), usage("/export/b", 10 * i)], now=T0 + i * HOUR)

    result = store.query("/export/a", start=T0 + HOUR, end=T0 + 3 * HOUR)
    assert [entry.used for entry in result] == [1, 2, 3]

    assert store.query("/export/c") == []


def test_calculate_change():
    history = [
        UsageHistory(T0 + i * HOUR, "/export/a", "a", used)
        for i, used in enumerate([10, 20, 40, 80])
    ]

    # The reference is the last entry at or before "since"
    assert calculate_change(history, T0 + HOUR) == 60
    assert calculate_change(history, T0 + 90 * datetime.timedelta(minutes=1)) == 60

    # History doesn't go back that far: use the oldest
    assert calculate_change(history, T0 - DAY) == 70

    assert calculate_change([], T0) == 0


def test_trend_up(store):
    now = T0 + 10 * DAY
    store.record([usage("/export/a", 1000, 10000)], now=now - 8 * DAY)
    store.record([usage("/export/a", 2000, 10000)], now=now - 2 * DAY)
    store.record([usage("/export/a", 2500, 10000)], now=now - HOUR)

    trend = store.get_trend("/export/a", now=now)

    assert trend.current == 2500
    assert trend.quota == 10000
    assert trend.dir_name == "a"
    assert trend.change_24h == 500
    assert trend.change_7d == 1500
    assert trend.change_30d == 1500
    assert trend.trend == "up"
    assert len(trend.history) == 3


def test_trend_down_and_stable(store):
    now = T0 + DAY
    store.record([usage("/export/a", 1000), usage("/export/b", 5)], now=T0)
    store.record([usage("/export/a", 400), usage("/export/b", 5)], now=now)

    assert store.get_trend("/export/a", now=now).trend == "down"
    assert store.get_trend("/export/b", now=now).trend == "stable"


def test_trend_none(store):
    assert store.get_trend("/export/a", now=T0) is None

    # Too old to be in the trend window
    store.record([usage("/export/a", 1)], now=T0)
    assert store.get_trend("/export/a", now=T0 + 31 * DAY) is None


def test_all_trends(store):
    store.record(
        [usage("/export/a", 10), usage("/export/b", 300), usage("/export/c", 20)],
        now=T0,
    )

    trends = store.get_all_trends(now=T0 + HOUR)

    assert [trend.path for trend in trends] == ["/export/b", "/export/c", "/export/a"]


def test_stats(store):
    assert store.stats() == {"entries": 0, "paths": 0, "oldest": None, "newest": None}

    store.record([usage("/export/a", 1), usage("/export/b", 2)], now=T0)
    store.record([usage("/export/a", 3)], now=T0 + HOUR)

    stats = store.stats()
    assert stats["entries"] == 3
    assert stats["paths"] == 2
    assert stats["oldest"] == T0
    assert stats["newest"] == T0 + HOUR
    assert stats["retention"] == 30 * 86400
    assert stats["interval"] == 300
