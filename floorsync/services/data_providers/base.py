"""Upstream data contracts consumed by the selection and sync engines."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class EntitySnapshot:
    """One collection from the full market-cap listing."""

    slug: str
    name: str | None = None
    rank: int | None = None
    market_cap: float | None = None  # USD
    total_supply: int | None = None
    owners: int | None = None
    image: str | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RawPricePoint:
    """One price-history point as returned by the upstream API."""

    timestamp: int | None  # unix seconds
    floor_native: float | None = None
    floor_usd: float | None = None
    volume_native: float | None = None
    volume_usd: float | None = None
    sales_count: int | None = None


@runtime_checkable
class MarketCapProvider(Protocol):
    async def fetch_all_entities(self) -> list[EntitySnapshot]:
        """Full listing with market caps. Raises FetchError subclasses."""
        ...


@runtime_checkable
class PriceHistoryProvider(Protocol):
    async def fetch_price_history(
        self,
        slug: str,
        granularity: str,
        start_ts: int,
        end_ts: int,
    ) -> list[RawPricePoint]:
        """Price points in [start_ts, end_ts]. Raises FetchError subclasses."""
        ...
