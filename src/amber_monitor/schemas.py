"""Pydantic models for the Amber API payloads and the snapshot messages.

Upstream field names are camelCase; models expose snake_case attributes
and keep the upstream names as aliases so ``model_validate`` accepts raw
API JSON and ``model_dump(by_alias=True)`` reproduces it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

# ── Enums ──────────────────────────────────────────────────────────────


class IntervalKind(str, Enum):
    CURRENT = "CurrentInterval"
    FORECAST = "ForecastInterval"
    ACTUAL = "ActualInterval"


class ChannelKind(str, Enum):
    FEED_IN = "feedIn"
    GENERAL = "general"
    CONTROLLED_LOAD = "controlledLoad"


class SpikeStatus(str, Enum):
    NONE = "none"
    POTENTIAL = "potential"
    SPIKE = "spike"


class PriceDescriptor(str, Enum):
    """Price severity label, declared from cheapest to most severe."""

    NEGATIVE = "negative"
    EXTREMELY_LOW = "extremelyLow"
    VERY_LOW = "veryLow"
    LOW = "low"
    NEUTRAL = "neutral"
    HIGH = "high"
    SPIKE = "spike"

    @property
    def severity(self) -> int:
        return list(PriceDescriptor).index(self)


class SiteStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


# ── Sites ──────────────────────────────────────────────────────────────


class SiteChannel(BaseModel):
    identifier: str
    type: ChannelKind
    tariff: str = ""


class Site(BaseModel):
    id: str
    nmi: str = ""
    channels: list[SiteChannel] = Field(default_factory=list)
    network: str = ""
    status: SiteStatus
    active_from: Optional[str] = Field(None, alias="activeFrom")
    closed_on: Optional[str] = Field(None, alias="closedOn")
    interval_length: int = Field(30, alias="intervalLength")

    model_config = {"populate_by_name": True}


# ── Price intervals ────────────────────────────────────────────────────


class PriceRange(BaseModel):
    min: float
    max: float


class PriceInterval(BaseModel):
    """One price quote as reported by the API. Never mutated."""

    kind: IntervalKind = Field(alias="type")
    channel_kind: ChannelKind = Field(alias="channelType")
    duration: int = 30
    price_per_kwh: float = Field(alias="perKwh")
    spot_price_per_kwh: float = Field(alias="spotPerKwh")
    descriptor: PriceDescriptor
    renewables_percent: float = Field(alias="renewables")
    spike_status: SpikeStatus = Field(SpikeStatus.NONE, alias="spikeStatus")
    nem_time: str = Field(alias="nemTime")
    valid_from: datetime = Field(alias="startTime")
    valid_until: datetime = Field(alias="endTime")
    date: Optional[str] = None
    is_estimate: Optional[bool] = Field(None, alias="estimate")
    range: Optional[PriceRange] = None

    model_config = {"populate_by_name": True, "frozen": True}


class UsageRecord(BaseModel):
    channel_identifier: str = Field("", alias="channelIdentifier")
    channel_kind: ChannelKind = Field(alias="channelType")
    kwh: float = 0.0
    cost: float = 0.0
    quality: str = "estimated"
    nem_time: str = Field(alias="nemTime")
    price_per_kwh: Optional[float] = Field(None, alias="perKwh")
    descriptor: Optional[PriceDescriptor] = None

    model_config = {"populate_by_name": True, "frozen": True}


# ── History / rate limit / snapshot ────────────────────────────────────


class HistoryRecord(BaseModel):
    """One captured observation of the current price."""

    price: float
    nem_time: str = Field(alias="nemTime")
    descriptor: PriceDescriptor
    renewables: float
    captured_at: datetime = Field(alias="timestamp")
    channel_type: Optional[ChannelKind] = Field(None, alias="channelType")

    model_config = {"populate_by_name": True, "frozen": True}

    @classmethod
    def from_interval(cls, interval: PriceInterval, captured_at: datetime) -> HistoryRecord:
        return cls(
            price=interval.price_per_kwh,
            nem_time=interval.nem_time,
            descriptor=interval.descriptor,
            renewables=interval.renewables_percent,
            captured_at=captured_at,
            channel_type=interval.channel_kind,
        )


class RateLimitState(BaseModel):
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None


class CurrentPrice(BaseModel):
    price: float
    spot_per_kwh: float = Field(alias="spotPerKwh")
    descriptor: PriceDescriptor
    renewables: float
    estimate: bool = False
    spike_status: SpikeStatus = Field(alias="spikeStatus")
    end_time: datetime = Field(alias="endTime")
    nem_time: str = Field(alias="nemTime")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_interval(cls, interval: PriceInterval) -> CurrentPrice:
        return cls(
            price=interval.price_per_kwh,
            spot_per_kwh=interval.spot_price_per_kwh,
            descriptor=interval.descriptor,
            renewables=interval.renewables_percent,
            estimate=bool(interval.is_estimate),
            spike_status=interval.spike_status,
            end_time=interval.valid_until,
            nem_time=interval.nem_time,
        )


class ForecastPrice(BaseModel):
    price: float
    nem_time: str = Field(alias="nemTime")
    descriptor: PriceDescriptor
    renewables: float
    type: IntervalKind = IntervalKind.FORECAST

    model_config = {"populate_by_name": True}

    @classmethod
    def from_interval(cls, interval: PriceInterval) -> ForecastPrice:
        return cls(
            price=interval.price_per_kwh,
            nem_time=interval.nem_time,
            descriptor=interval.descriptor,
            renewables=interval.renewables_percent,
            type=interval.kind,
        )


class Snapshot(BaseModel):
    current: Optional[CurrentPrice] = None
    forecast: list[ForecastPrice] = Field(default_factory=list)
    history: list[HistoryRecord] = Field(default_factory=list)
    rate_limit: RateLimitState = Field(default_factory=RateLimitState, alias="rateLimit")

    model_config = {"populate_by_name": True}


class PriceUpdateMessage(BaseModel):
    type: Literal["price-update"] = "price-update"
    data: Snapshot

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── Helpers ────────────────────────────────────────────────────────────


def select_price_channel(intervals: list[PriceInterval]) -> list[PriceInterval]:
    """Feed-in intervals, or general intervals when the site has no feed-in.

    Returns an empty list when neither channel is present.
    """
    feed_in = [i for i in intervals if i.channel_kind == ChannelKind.FEED_IN]
    if feed_in:
        return feed_in
    return [i for i in intervals if i.channel_kind == ChannelKind.GENERAL]


def find_current(intervals: list[PriceInterval]) -> Optional[PriceInterval]:
    return next((i for i in intervals if i.kind == IntervalKind.CURRENT), None)
