"""HistoryStore: dedupe, capacity, persistence and failure handling."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from amber_monitor.history_store import HistoryStore
from amber_monitor.schemas import ChannelKind, HistoryRecord, PriceDescriptor

T0 = datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc)


def _record(i: int, price: float = 10.0) -> HistoryRecord:
    captured = T0 + timedelta(minutes=5 * i)
    return HistoryRecord(
        price=price + i,
        nem_time=(captured + timedelta(hours=10)).strftime("%Y-%m-%dT%H:%M:00+10:00"),
        descriptor=PriceDescriptor.NEUTRAL,
        renewables=40.0,
        captured_at=captured,
        channel_type=ChannelKind.FEED_IN,
    )


@pytest.fixture
def store(tmp_path):
    return HistoryStore(tmp_path / "data" / "price-history.json", capacity=288)


# ======================================================================
# Append semantics
# ======================================================================


class TestAppend:
    def test_append_puts_newest_first(self, store):
        store.append(_record(0))
        store.append(_record(1))
        assert [r.price for r in store.records()] == [11.0, 10.0]
        assert store.head().price == 11.0

    def test_duplicate_head_is_noop(self, store):
        assert store.append(_record(0)) is True
        before = store.path.read_text()
        dup = _record(0, price=99.0)
        assert store.append(dup) is False
        assert len(store) == 1
        assert store.head().price == 10.0
        assert store.path.read_text() == before

    def test_same_nem_time_not_at_head_is_kept(self, store):
        store.append(_record(0))
        store.append(_record(1))
        assert store.append(_record(0)) is True
        assert len(store) == 3

    def test_capacity_keeps_newest(self, store):
        for i in range(500):
            store.append(_record(i))
        records = store.records()
        assert len(records) == 288
        assert records[0].price == 10.0 + 499
        assert records[-1].price == 10.0 + 212

    def test_records_limit(self, store):
        for i in range(5):
            store.append(_record(i))
        assert [r.price for r in store.records(limit=2)] == [14.0, 13.0]

    def test_records_returns_copy(self, store):
        store.append(_record(0))
        store.records().clear()
        assert len(store) == 1

    def test_invalid_capacity(self, tmp_path):
        with pytest.raises(ValueError):
            HistoryStore(tmp_path / "h.json", capacity=0)

    def test_range_inclusive(self, store):
        for i in range(6):
            store.append(_record(i))
        hits = store.range(T0 + timedelta(minutes=5), T0 + timedelta(minutes=15))
        assert [r.price for r in hits] == [13.0, 12.0, 11.0]


# ======================================================================
# Persistence
# ======================================================================


class TestPersistence:
    def test_round_trip(self, store):
        for i in range(3):
            store.append(_record(i))
        fresh = HistoryStore(store.path, capacity=288)
        loaded = fresh.load()
        assert loaded == store.records()
        assert fresh.head() == store.head()

    def test_file_is_aliased_json_newest_first(self, store):
        store.append(_record(0))
        store.append(_record(1))
        data = json.loads(store.path.read_text(encoding="utf-8"))
        assert [d["price"] for d in data] == [11.0, 10.0]
        assert set(data[0]) == {
            "price", "nemTime", "descriptor", "renewables", "timestamp", "channelType",
        }
        assert data[0]["channelType"] == "feedIn"

    def test_accepts_records_without_channel_type(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text(json.dumps([{
            "price": 12.5,
            "nemTime": "2026-10-19T10:00:00+10:00",
            "descriptor": "low",
            "renewables": 30,
            "timestamp": "2026-10-19T00:00:00Z",
        }]))
        records = HistoryStore(path).load()
        assert records[0].channel_type is None
        assert records[0].price == 12.5

    def test_missing_file_is_empty(self, store, caplog):
        with caplog.at_level(logging.INFO, logger="amber_monitor.history_store"):
            assert store.load() == []
        assert "starting fresh" in caplog.text

    def test_corrupt_file_is_logged_and_ignored(self, tmp_path, caplog):
        path = tmp_path / "h.json"
        path.write_text("{not json")
        store = HistoryStore(path)
        with caplog.at_level(logging.ERROR, logger="amber_monitor.history_store"):
            assert store.load() == []
        assert "corrupt" in caplog.text
        # The store still works after a failed load.
        assert store.append(_record(0)) is True

    def test_wrong_shape_is_corrupt(self, tmp_path):
        path = tmp_path / "h.json"
        path.write_text(json.dumps([{"price": "lots"}]))
        assert HistoryStore(path).load() == []

    def test_oversized_file_is_truncated(self, tmp_path, caplog):
        path = tmp_path / "h.json"
        big = HistoryStore(path, capacity=50)
        for i in range(50):
            big.append(_record(i))
        small = HistoryStore(path, capacity=10)
        with caplog.at_level(logging.INFO, logger="amber_monitor.history_store"):
            loaded = small.load()
        assert len(loaded) == 10
        assert loaded[0].price == 10.0 + 49
        assert len(json.loads(path.read_text())) == 10
        assert "Cleaned up 40" in caplog.text

    def test_write_failure_keeps_memory(self, store, caplog):
        with patch("amber_monitor.history_store.os.replace", side_effect=OSError("disk full")):
            with caplog.at_level(logging.ERROR, logger="amber_monitor.history_store"):
                assert store.append(_record(0)) is True
        assert len(store) == 1
        assert "Failed to save price history" in caplog.text
        assert not store.path.exists()
        leftovers = [p for p in store.path.parent.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_cleanup_failure_after_write_failure_is_contained(self, store):
        with patch("amber_monitor.history_store.os.replace", side_effect=OSError("disk full")), \
             patch("amber_monitor.history_store.os.unlink", side_effect=OSError("read-only")):
            assert store.append(_record(0)) is True
        assert len(store) == 1
        assert store.head().price == 10.0

    def test_write_failure_keeps_previous_file(self, store):
        store.append(_record(0))
        with patch("amber_monitor.history_store.os.replace", side_effect=OSError("disk full")):
            store.append(_record(1))
        on_disk = json.loads(store.path.read_text())
        assert [d["price"] for d in on_disk] == [10.0]
        assert [r.price for r in store.records()] == [11.0, 10.0]
