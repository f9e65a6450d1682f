"""Selection, sync and price validation services."""

from . import data_providers, prices, selection, sync


__all__ = [
    "data_providers",
    "prices",
    "selection",
    "sync",
]
