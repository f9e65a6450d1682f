"""Upstream data providers."""

from .base import EntitySnapshot, MarketCapProvider, PriceHistoryProvider, RawPricePoint
from .nft_price_floor import NFTPriceFloorClient


__all__ = [
    "EntitySnapshot",
    "MarketCapProvider",
    "NFTPriceFloorClient",
    "PriceHistoryProvider",
    "RawPricePoint",
]
