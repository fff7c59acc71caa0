import os

# Keep test runs off /data
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest

from core.errors import FetchError
from core.models import InventoryItem, RawCollectionPage, SteamCredentials, UploadResult


class FakeBackend:
    def __init__(self, items=None, inserted=0):
        self.items = list(items or [])
        self.inserted = inserted
        self.inventory_uploads = []
        self.history_uploads = []
        self.portfolio_calls = 0
        self.history_calls = 0
        self.list_error = None
        self.upload_error = None

    def upload_inventory(self, collection):
        if self.upload_error is not None:
            raise self.upload_error
        self.inventory_uploads.append(collection)
        return UploadResult(items_synced=collection.total_inventory_count)

    def list_inventory_items(self):
        if self.list_error is not None:
            raise self.list_error
        return [InventoryItem(market_hash_name=name) for name in self.items]

    def upload_price_history(self, market_hash_name, history_data):
        self.history_uploads.append((market_hash_name, history_data))
        return self.inserted

    def get_portfolio(self, steam_id):
        self.portfolio_calls += 1
        return {"steam_id": steam_id, "total_value": 42.0, "items": [{"market_hash_name": "AK"}]}

    def get_portfolio_history(self, steam_id, days):
        self.history_calls += 1
        return {"steam_id": steam_id, "history": [{"date": "2024-03-20", "total_value": 42.0}]}


class PageScript:
    """Serves pre-built inventory pages and records the cursors asked for."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.cursors = []

    def __call__(self, cursor):
        self.cursors.append(cursor)
        if not self.pages:
            raise FetchError("no more scripted pages")
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


def make_page(asset_ids, more=False, last=None, total=None):
    return RawCollectionPage(
        assets=[{"assetid": str(a), "classid": "1", "instanceid": "0", "amount": "1"} for a in asset_ids],
        descriptions=[{"classid": "1", "instanceid": "0", "market_hash_name": "AK-47 | Redline (Field-Tested)"}],
        properties=[],
        last_assetid=last,
        more_items=more,
        total_inventory_count=total,
    )


@pytest.fixture
def creds():
    return SteamCredentials(session_id="sid", steam_login_secure="secure")


@pytest.fixture
def fake_backend():
    return FakeBackend(items=["AK-47 | Redline (Field-Tested)", "AWP | Asiimov (Field-Tested)"])
