"""Repositories: one per table, composed by the Store facade."""

from .collections_orm import CollectionRepository
from .price_history_orm import PriceHistoryRepository
from .selection_periods_orm import SelectionPeriodRepository
from .store import Store
from .sync_log_orm import SyncLogRepository


__all__ = [
    "CollectionRepository",
    "PriceHistoryRepository",
    "SelectionPeriodRepository",
    "Store",
    "SyncLogRepository",
]
