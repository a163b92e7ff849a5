"""Shared payload factories for the Amber API."""

from __future__ import annotations

from typing import Optional

import pytest


def interval_payload(
    price: float = 16.0,
    kind: str = "CurrentInterval",
    channel: str = "feedIn",
    nem_time: str = "2026-10-19T10:05:00+10:00",
    descriptor: str = "high",
    estimate: Optional[bool] = False,
) -> dict:
    payload = {
        "type": kind,
        "duration": 5,
        "spotPerKwh": round(price * 0.8, 2),
        "perKwh": price,
        "date": "2026-10-19",
        "nemTime": nem_time,
        "startTime": "2026-10-19T00:00:01Z",
        "endTime": "2026-10-19T00:05:00Z",
        "renewables": 42.5,
        "channelType": channel,
        "spikeStatus": "none",
        "descriptor": descriptor,
    }
    if estimate is not None:
        payload["estimate"] = estimate
    return payload


def site_payload(site_id: str = "SITE-1", status: str = "active") -> dict:
    return {
        "id": site_id,
        "nmi": "4102000000",
        "channels": [
            {"identifier": "E1", "type": "general", "tariff": "EA116"},
            {"identifier": "B1", "type": "feedIn", "tariff": "EA116"},
        ],
        "network": "Ausgrid",
        "status": status,
        "intervalLength": 5,
    }


@pytest.fixture
def make_interval():
    """Build a PriceInterval from the raw API shape."""
    from amber_monitor.schemas import PriceInterval

    def _make(**kwargs) -> PriceInterval:
        return PriceInterval.model_validate(interval_payload(**kwargs))

    return _make


@pytest.fixture
def make_interval_json():
    return interval_payload


@pytest.fixture
def make_site_json():
    return site_payload


@pytest.fixture
def make_alert(make_interval):
    """Alert over a feed-in interval, raised at 2026-10-19 00:00 UTC."""
    from datetime import datetime, timezone

    from amber_monitor.alert_detector import Alert

    def _make(threshold: float = 15.0, **kwargs) -> Alert:
        return Alert(
            interval=make_interval(**kwargs),
            threshold=threshold,
            raised_at=datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc),
        )

    return _make
