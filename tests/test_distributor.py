"""Distributor snapshots, history recording and subscriber pushes."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from websockets.asyncio.client import connect

from amber_monitor.config import Config, ConfigHolder, HistoryConfig
from amber_monitor.distributor import Distributor
from amber_monitor.errors import NoActiveSiteError
from amber_monitor.history_store import HistoryStore
from amber_monitor.schemas import RateLimitState, UsageRecord
from amber_monitor.ws_server import make_handler, start_server

T0 = datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc)


class FakeSubscriber:
    def __init__(self, is_open: bool = True, fail: bool = False) -> None:
        self.is_open = is_open
        self.fail = fail
        self.messages: list[str] = []

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.messages.append(message)


@pytest.fixture
def history(tmp_path):
    return HistoryStore(tmp_path / "history.json", capacity=2016)


@pytest.fixture
def client(make_interval):
    client = MagicMock()
    client.get_current_prices = AsyncMock(return_value=[
        make_interval(price=16.0, nem_time="2026-10-19T10:05:00+10:00"),
        make_interval(price=17.0, kind="ForecastInterval", nem_time="2026-10-19T10:10:00+10:00"),
        make_interval(price=18.0, kind="ForecastInterval", nem_time="2026-10-19T10:15:00+10:00"),
        make_interval(price=40.0, channel="general"),
    ])
    client.get_usage = AsyncMock(return_value=[])
    client.last_rate_limit = RateLimitState(limit=50, remaining=41, reset=90)
    return client


def _distributor(client, history, live_size: int = 288) -> Distributor:
    config = Config(history=HistoryConfig(capacity=2016, live_size=live_size))
    return Distributor(client, history, ConfigHolder(config))


# ======================================================================
# Refresh
# ======================================================================


class TestRefresh:
    def test_refresh_builds_snapshot(self, client, history):
        dist = _distributor(client, history)
        snap = asyncio.run(dist.refresh(now=T0))
        client.get_current_prices.assert_awaited_once_with(lookahead=48, lookbehind=0)
        assert snap.current.price == 16.0
        assert [f.price for f in snap.forecast] == [17.0, 18.0]
        assert snap.history[0].price == 16.0
        assert snap.history[0].captured_at == T0
        assert dist.refreshed_at == T0

    def test_refresh_records_history_once_per_interval(self, client, history):
        dist = _distributor(client, history)
        asyncio.run(dist.refresh(now=T0))
        asyncio.run(dist.refresh(now=T0))
        assert len(history) == 1

    def test_snapshot_history_capped_to_live_size(self, client, history, make_interval):
        dist = _distributor(client, history, live_size=3)
        for minute in range(5):
            client.get_current_prices.return_value = [
                make_interval(price=20.0 + minute, nem_time=f"2026-10-19T10:{minute:02d}:00+10:00"),
            ]
            asyncio.run(dist.refresh(now=T0))
        snap = dist.get_snapshot()
        assert [h.price for h in snap.history] == [24.0, 23.0, 22.0]
        assert len(history) == 5

    def test_snapshot_carries_latest_rate_limit(self, client, history):
        dist = _distributor(client, history)
        client.last_rate_limit = RateLimitState(limit=50, remaining=7, reset=12)
        snap = dist.get_snapshot()
        assert snap.rate_limit.remaining == 7

    def test_no_current_interval(self, client, history, make_interval):
        client.get_current_prices.return_value = [
            make_interval(price=30.0, kind="ForecastInterval"),
        ]
        dist = _distributor(client, history)
        snap = asyncio.run(dist.refresh(now=T0))
        assert snap.current is None
        assert len(history) == 0

    def test_refresh_usage(self, client, history):
        client.get_usage.return_value = [
            UsageRecord(channel_kind="general", nem_time="2026-10-19T10:30:00+10:00", kwh=0.3),
        ]
        dist = _distributor(client, history)
        usage = asyncio.run(dist.refresh_usage(now=T0))
        client.get_usage.assert_awaited_once_with(
            start_date="2026-10-18", end_date="2026-10-19", resolution=30,
        )
        assert usage[0].kwh == 0.3
        assert dist.get_usage() == usage


# ======================================================================
# Pushes
# ======================================================================


class TestPush:
    def test_broadcast_skips_closed_and_failing(self, client, history):
        dist = _distributor(client, history)
        ok, closed, broken = FakeSubscriber(), FakeSubscriber(is_open=False), FakeSubscriber(fail=True)
        for sub in (ok, closed, broken):
            dist.add_subscriber(sub)
        asyncio.run(dist.refresh(now=T0))
        sent = asyncio.run(dist.push_snapshot())
        assert sent == 1
        assert len(ok.messages) == 1
        assert closed.messages == []

    def test_message_shape(self, client, history):
        dist = _distributor(client, history)
        sub = FakeSubscriber()
        dist.add_subscriber(sub)
        asyncio.run(dist.tick())
        message = json.loads(sub.messages[0])
        assert message["type"] == "price-update"
        data = message["data"]
        assert set(data) == {"current", "forecast", "history", "rateLimit"}
        assert data["current"]["price"] == 16.0
        assert data["current"]["spotPerKwh"] == 12.8
        assert data["rateLimit"] == {"limit": 50, "remaining": 41, "reset": 90}
        assert data["history"][0]["nemTime"] == "2026-10-19T10:05:00+10:00"

    def test_targeted_push(self, client, history):
        dist = _distributor(client, history)
        a, b = FakeSubscriber(), FakeSubscriber()
        dist.add_subscriber(a)
        dist.add_subscriber(b)
        assert asyncio.run(dist.push_snapshot(b)) == 1
        assert a.messages == []
        assert len(b.messages) == 1

    def test_on_connect_refreshes_and_pushes(self, client, history):
        dist = _distributor(client, history)
        sub = FakeSubscriber()
        asyncio.run(dist.on_connect(sub))
        assert dist.subscriber_count == 1
        client.get_current_prices.assert_awaited_once()
        assert json.loads(sub.messages[0])["data"]["current"]["price"] == 16.0

    def test_on_connect_survives_refresh_failure(self, client, history):
        client.get_current_prices.side_effect = RuntimeError("API down")
        dist = _distributor(client, history)
        sub = FakeSubscriber()
        asyncio.run(dist.on_connect(sub))
        assert json.loads(sub.messages[0])["data"]["current"] is None

    def test_broadcast_tolerates_subscriber_churn(self, client, history):
        dist = _distributor(client, history)
        newcomer = FakeSubscriber()

        class ChurningSubscriber(FakeSubscriber):
            async def send(self, message: str) -> None:
                await asyncio.sleep(0)
                dist.remove_subscriber(self)
                dist.add_subscriber(newcomer)
                await super().send(message)

        churner, steady = ChurningSubscriber(), FakeSubscriber()
        dist.add_subscriber(churner)
        dist.add_subscriber(steady)
        sent = asyncio.run(dist.push_snapshot())
        assert sent == 2
        assert len(churner.messages) == 1
        assert len(steady.messages) == 1
        assert newcomer.messages == []
        assert dist.subscriber_count == 2

    def test_remove_subscriber(self, client, history):
        dist = _distributor(client, history)
        sub = FakeSubscriber()
        dist.add_subscriber(sub)
        dist.remove_subscriber(sub)
        dist.remove_subscriber(sub)
        assert dist.subscriber_count == 0
        assert asyncio.run(dist.push_snapshot()) == 0


# ======================================================================
# Ticks
# ======================================================================


class TestTicks:
    def test_no_active_site_is_soft(self, client, history, caplog):
        client.get_current_prices.side_effect = NoActiveSiteError("none")
        dist = _distributor(client, history)
        sub = FakeSubscriber()
        dist.add_subscriber(sub)
        assert asyncio.run(dist.tick()) is None
        assert sub.messages == []
        assert "No active site" in caplog.text

    def test_no_price_channel_keeps_last_snapshot(self, client, history, make_interval, caplog):
        dist = _distributor(client, history)
        sub = FakeSubscriber()
        dist.add_subscriber(sub)
        asyncio.run(dist.tick())
        assert len(sub.messages) == 1

        client.get_current_prices.return_value = [
            make_interval(price=99.0, channel="controlledLoad"),
        ]
        assert asyncio.run(dist.tick()) is None
        snap = dist.get_snapshot()
        assert snap.current is not None
        assert snap.current.price == 16.0
        assert [f.price for f in snap.forecast] == [17.0, 18.0]
        assert len(sub.messages) == 1
        assert len(history) == 1
        assert "snapshot not updated" in caplog.text

    def test_refresh_without_price_channel_returns_none(self, client, history, make_interval):
        client.get_current_prices.return_value = [
            make_interval(price=99.0, channel="controlledLoad"),
        ]
        dist = _distributor(client, history)
        assert asyncio.run(dist.refresh(now=T0)) is None
        assert dist.refreshed_at is None

    def test_other_errors_propagate(self, client, history):
        client.get_current_prices.side_effect = RuntimeError("API down")
        dist = _distributor(client, history)
        with pytest.raises(RuntimeError):
            asyncio.run(dist.tick())

    def test_usage_tick_no_active_site(self, client, history):
        client.get_usage.side_effect = NoActiveSiteError("none")
        asyncio.run(_distributor(client, history).usage_tick())


# ======================================================================
# WebSocket transport
# ======================================================================


class TestWebSocket:
    def test_cancelled_during_connect_unregisters(self, client, history):
        dist = _distributor(client, history)

        async def go():
            entered = asyncio.Event()

            async def hang(**kwargs):
                entered.set()
                await asyncio.Event().wait()

            client.get_current_prices.side_effect = hang
            connection = MagicMock()
            connection.remote_address = ("127.0.0.1", 50000)
            task = asyncio.create_task(make_handler(dist)(connection))
            await asyncio.wait_for(entered.wait(), timeout=2)
            assert dist.subscriber_count == 1
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(go())
        assert dist.subscriber_count == 0

    def test_client_receives_snapshot_on_connect(self, client, history):
        dist = _distributor(client, history)

        async def go():
            server = await start_server(dist, "127.0.0.1", 0)
            port = next(iter(server.sockets)).getsockname()[1]
            try:
                async with connect(f"ws://127.0.0.1:{port}") as ws:
                    first = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
                    await dist.tick()
                    second = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
            finally:
                server.close()
                await server.wait_closed()
            return first, second

        first, second = asyncio.run(go())
        assert first["type"] == "price-update"
        assert second["data"]["current"]["price"] == 16.0
        assert dist.subscriber_count == 0
