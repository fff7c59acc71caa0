# core/prices.py
import asyncio
import os
from typing import Callable, Iterable, List, Optional

import requests

from fetchers.backend import BackendClient
from fetchers.steam import fetch_price_history

from .errors import SyncCancelledError, SyncError
from .events import CancellationToken, EventBus, PriceProgressEvent, pause
from .logger import get_logger
from .models import PriceSyncStats, SteamCredentials

logger = get_logger(__name__)

# Seconds between two items; Steam's market endpoints are abuse-protected
PRICE_ITEM_DELAY = float(os.getenv("PRICE_ITEM_DELAY", "1.0"))

CredentialsProvider = Callable[[], Optional[SteamCredentials]]
HistoryFetcher = Callable[[str, Optional[SteamCredentials]], List[list]]
ProgressCallback = Callable[[int, int], None]


class SingleFlightGuard:
    """Allows one holder at a time; others are turned away, not queued."""

    def __init__(self) -> None:
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def try_acquire(self) -> bool:
        if self._busy:
            return False
        self._busy = True
        return True

    def release(self) -> None:
        self._busy = False


def unique_names(names: Iterable[str]) -> List[str]:
    """Distinct, non-empty names in first-seen order."""
    seen: set[str] = set()
    out: List[str] = []
    for name in names:
        name = (name or "").strip()
        if name and name not in seen:
            seen.add(name)
            out.append(name)
    return out


class PriceHistoryBatchSynchronizer:
    """
    Pulls each item's raw Steam price history and hands it to the backend.

    Items are processed one at a time in the order given. Only one batch runs
    per instance; overlapping calls return None without doing anything.
    """

    def __init__(
        self,
        backend: BackendClient,
        credentials_provider: CredentialsProvider,
        history_fetcher: HistoryFetcher | None = None,
        item_delay: float = PRICE_ITEM_DELAY,
        events: EventBus | None = None,
    ):
        self.backend = backend
        self.credentials_provider = credentials_provider
        self.item_delay = item_delay
        self.events = events
        self.guard = SingleFlightGuard()

        if history_fetcher is None:
            session = requests.Session()

            def history_fetcher(name: str, credentials: Optional[SteamCredentials]) -> List[list]:
                return fetch_price_history(session, name, credentials)

        self.history_fetcher = history_fetcher

    @property
    def in_progress(self) -> bool:
        return self.guard.busy

    async def sync_item(self, market_hash_name: str) -> bool:
        """Fetch and upload one item. Returns False on any failure, never raises SyncError."""
        credentials = self.credentials_provider()
        if credentials is None or not credentials.is_complete:
            logger.warning("Steam cookies missing; cannot fetch history for %s", market_hash_name)
            return False

        try:
            rows = await asyncio.to_thread(self.history_fetcher, market_hash_name, credentials)
        except SyncError as e:
            logger.warning("Price history fetch failed for %s: %s", market_hash_name, e)
            return False
        except (requests.RequestException, ValueError) as e:
            logger.warning("Price history fetch failed for %s: %s", market_hash_name, e)
            return False

        if not rows:
            logger.info("Steam has no price history for %s", market_hash_name)
            return False

        try:
            inserted = await asyncio.to_thread(
                self.backend.upload_price_history, market_hash_name, rows
            )
        except SyncError as e:
            logger.warning("Price history upload failed for %s: %s", market_hash_name, e)
            return False

        if inserted > 0:
            logger.info("Uploaded history for %s: %d new records", market_hash_name, inserted)
        else:
            logger.info("History for %s already up to date", market_hash_name)
        return True

    async def sync_all(
        self,
        names: List[str],
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> Optional[PriceSyncStats]:
        if not self.guard.try_acquire():
            logger.info("Price history batch already running; ignoring duplicate call.")
            return None

        stats = PriceSyncStats(total=len(names))
        try:
            for index, name in enumerate(names):
                if token is not None:
                    token.check()

                current = index + 1
                if on_progress is not None:
                    try:
                        on_progress(current, stats.total)
                    except Exception as e:
                        logger.warning("Progress callback failed at %d/%d: %s", current, stats.total, e)
                if self.events is not None:
                    self.events.publish(PriceProgressEvent(current, stats.total))

                if await self.sync_item(name):
                    stats.success += 1
                else:
                    stats.failed += 1

                if current % 5 == 0 or current == stats.total:
                    logger.info("Price history progress: %d/%d", current, stats.total)

                if current < stats.total:
                    await pause(self.item_delay, token)
        except SyncCancelledError:
            logger.warning(
                "Price history batch cancelled after %d/%d items.",
                stats.success + stats.failed, stats.total,
            )
            raise
        finally:
            self.guard.release()

        logger.info(
            "Price history batch done: %d/%d success, %d failed",
            stats.success, stats.total, stats.failed,
        )
        return stats
