"""Pydantic data models for the market data service."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SerializationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic.functional_serializers import PlainSerializer

TREND_LENGTH = 8
FULL_PRECISION = "full_precision"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def display_time(moment: datetime, tz: tzinfo | None = None) -> str:
    """Format a timestamp the way the terminal shows it (24h ``HH:MM``)."""

    if tz is not None:
        moment = moment.astimezone(tz)
    return moment.strftime("%H:%M")


def _round_for_display(value: float, info: SerializationInfo) -> float:
    context = info.context or {}
    if context.get(FULL_PRECISION):
        return value
    return round(value, 2)


DisplayNumber = Annotated[
    float,
    PlainSerializer(_round_for_display, return_type=float, when_used="json"),
]


class Region(str, Enum):
    """Geographic instrument groupings shown by the terminal."""

    AMERICAS = "americas"
    EMEA = "emea"
    ASIA_PACIFIC = "asiaPacific"

    @property
    def field_name(self) -> str:
        return _REGION_FIELDS[self]

    @property
    def rank_prefix(self) -> str:
        return _REGION_RANK_PREFIX[self]


_REGION_FIELDS = {
    Region.AMERICAS: "americas",
    Region.EMEA: "emea",
    Region.ASIA_PACIFIC: "asia_pacific",
}

_REGION_RANK_PREFIX = {
    Region.AMERICAS: "1",
    Region.EMEA: "2",
    Region.ASIA_PACIFIC: "3",
}


class DataSource(str, Enum):
    """Provenance of a dataset."""

    AUTHORITATIVE = "authoritative"
    CACHED = "cached"
    SYNTHETIC = "synthetic"
    SIMULATED = "simulated"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MarketItem(CamelModel):
    """A single index row."""

    id: str = Field(..., min_length=1, description="Instrument identifier, unique within its region")
    num: str = Field("", description="Display rank such as '13)'")
    value: DisplayNumber = Field(..., ge=0)
    change: DisplayNumber = 0.0
    pct_change: DisplayNumber = 0.0
    avat: DisplayNumber = Field(0.0, description="Volume-delta proxy")
    time: str = ""
    ytd: DisplayNumber = 0.0
    ytd_cur: DisplayNumber = 0.0
    trend1: List[float] = Field(default_factory=list)
    trend2: List[float] = Field(default_factory=list)
    last_updated: Optional[datetime] = None
    trend_updated: Optional[datetime] = None

    @field_validator("trend1", "trend2")
    @classmethod
    def clamp_trend(cls, value: List[float]) -> List[float]:
        return [min(1.0, max(0.0, float(sample))) for sample in value]


class MarketData(CamelModel):
    """Complete dataset: three fixed regions plus freshness metadata."""

    americas: List[MarketItem] = Field(default_factory=list)
    emea: List[MarketItem] = Field(default_factory=list)
    asia_pacific: List[MarketItem] = Field(default_factory=list)
    last_updated: Optional[datetime] = None
    last_full_refresh: Optional[datetime] = None
    last_trend_update: Optional[datetime] = None
    source: DataSource = DataSource.SYNTHETIC

    @model_validator(mode="after")
    def unique_ids_per_region(self) -> "MarketData":
        for region in Region:
            ids = [item.id for item in self.region(region)]
            if len(ids) != len(set(ids)):
                raise ValueError(f"duplicate instrument identifiers in region {region.value}")
        return self

    def region(self, region: Region) -> List[MarketItem]:
        return getattr(self, region.field_name)

    def items(self) -> List[MarketItem]:
        return [item for region in Region for item in self.region(region)]

    def instrument_count(self) -> int:
        return sum(len(self.region(region)) for region in Region)

    def to_cache_json(self) -> str:
        return self.model_dump_json(by_alias=True, context={FULL_PRECISION: True})

    def to_display(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UpdateRequest(BaseModel):
    """Body accepted by the market data write endpoint."""

    action: str


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=4000)


class AnalysisRequest(CamelModel):
    """Payload accepted by the AI analysis endpoint."""

    messages: List[ChatMessage] = Field(..., max_length=20)
    market_data: Optional[Dict[str, Any]] = None


class RateLimitDecision(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset: int = Field(..., description="Epoch seconds when the window resets")
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }
