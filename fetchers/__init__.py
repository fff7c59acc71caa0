# fetchers/__init__.py
from .backend import BackendClient, normalize_synced_count
from .steam import fetch_full_collection, fetch_inventory_page, fetch_price_history

__all__ = [
    "BackendClient",
    "fetch_full_collection",
    "fetch_inventory_page",
    "fetch_price_history",
    "normalize_synced_count",
]
