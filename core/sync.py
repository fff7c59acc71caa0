# core/sync.py
import asyncio
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fetchers.backend import BackendClient
from fetchers.steam import fetch_full_collection

from .errors import FetchError, RateLimitError, SyncCancelledError, SyncError, SyncInProgressError
from .events import CancellationToken, EventBus, RunFinished, StepEvent, pause
from .logger import get_logger
from .models import (
    STEP_COMPLETED,
    STEP_PENDING,
    STEP_PROCESSING,
    AggregatedCollection,
    InventoryItem,
    PriceSyncStats,
    SteamCredentials,
    SyncJobState,
    SyncResult,
    UploadResult,
)
from .prices import CredentialsProvider, PriceHistoryBatchSynchronizer, unique_names
from .storage import ViewCache, view_key

logger = get_logger(__name__)

# Full re-fetches attempted when pagination stops on a bad cursor
PARTIAL_RETRIES = int(os.getenv("PARTIAL_RETRIES", "1"))
PARTIAL_RETRY_DELAY = float(os.getenv("PARTIAL_RETRY_DELAY", "5.0"))
PORTFOLIO_HISTORY_DAYS = int(os.getenv("PORTFOLIO_HISTORY_DAYS", "30"))

CollectionFetcher = Callable[
    [str, Optional[SteamCredentials], Optional[CancellationToken]],
    Awaitable[AggregatedCollection],
]


async def _default_collection_fetcher(
    account_id: str,
    credentials: Optional[SteamCredentials],
    token: Optional[CancellationToken],
) -> AggregatedCollection:
    return await fetch_full_collection(account_id, credentials, token=token)


class SyncOrchestrator:
    """
    Runs the three refresh steps for one account: sync, prices, load.

    Steps run strictly in order. A failing step rolls back to pending, later
    steps are left pending and the error propagates. Per-item price failures
    are only counted.
    """

    def __init__(
        self,
        backend: BackendClient,
        credentials_provider: CredentialsProvider,
        views: ViewCache,
        prices: PriceHistoryBatchSynchronizer | None = None,
        events: EventBus | None = None,
        collection_fetcher: CollectionFetcher | None = None,
        partial_retries: int = PARTIAL_RETRIES,
        partial_retry_delay: float = PARTIAL_RETRY_DELAY,
        history_days: int = PORTFOLIO_HISTORY_DAYS,
    ):
        self.backend = backend
        self.credentials_provider = credentials_provider
        self.views = views
        self.events = events or EventBus()
        self.prices = prices or PriceHistoryBatchSynchronizer(
            backend, credentials_provider, events=self.events
        )
        self.collection_fetcher = collection_fetcher or _default_collection_fetcher
        self.partial_retries = max(0, partial_retries)
        self.partial_retry_delay = partial_retry_delay
        self.history_days = history_days
        self.job = SyncJobState()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _publish(self, step_id: str, status: str) -> None:
        self.events.publish(StepEvent(step_id, status))

    async def _step(self, step_id: str, work: Callable[[], Awaitable[Any]]) -> Any:
        self.job.start(step_id)
        self._publish(step_id, STEP_PROCESSING)
        try:
            result = await work()
        except SyncError:
            self.job.abort(step_id)
            self._publish(step_id, STEP_PENDING)
            raise
        except Exception as e:
            self.job.abort(step_id)
            self._publish(step_id, STEP_PENDING)
            logger.exception("Unexpected error in step %s: %s", step_id, e)
            raise SyncError(f"Step {step_id} failed: {e}") from e
        self.job.complete(step_id)
        self._publish(step_id, STEP_COMPLETED)
        return result

    async def _fetch_collection(
        self,
        account_id: str,
        credentials: Optional[SteamCredentials],
        token: CancellationToken | None,
    ) -> AggregatedCollection:
        collection = await self.collection_fetcher(account_id, credentials, token)
        retries = 0
        while collection.partial and retries < self.partial_retries:
            retries += 1
            logger.warning(
                "Inventory fetch for %s was partial (%s); retrying full fetch (%d/%d).",
                account_id, collection.partial_reason, retries, self.partial_retries,
            )
            await pause(self.partial_retry_delay, token)
            try:
                collection = await self.collection_fetcher(account_id, credentials, token)
            except (RateLimitError, FetchError) as e:
                # Keep what the first pass got; a session failure stays fatal
                logger.warning("Retry fetch for %s failed (%s); keeping partial result.", account_id, e)
                break
        return collection

    async def sync_inventory(
        self, account_id: str, token: CancellationToken | None = None
    ) -> Tuple[UploadResult, AggregatedCollection, List[InventoryItem]]:
        credentials = self.credentials_provider()
        collection = await self._fetch_collection(account_id, credentials, token)

        if collection.partial:
            logger.warning(
                "Accepting partial inventory for %s (%d assets, %s).",
                account_id, collection.total_inventory_count, collection.partial_reason,
            )

        items = collection.to_items()
        logger.info(
            "Inventory for %s: %d assets, %d distinct items.",
            account_id,
            collection.total_inventory_count,
            len({item.market_hash_name for item in items}),
        )

        if token is not None:
            token.check()
        upload = await asyncio.to_thread(self.backend.upload_inventory, collection)
        return upload, collection, items

    async def refresh_prices(
        self, token: CancellationToken | None = None
    ) -> Optional[PriceSyncStats]:
        try:
            items = await asyncio.to_thread(self.backend.list_inventory_items)
        except FetchError as e:
            logger.warning("Could not list inventory items for price refresh: %s", e)
            items = []

        names = unique_names(item.market_hash_name for item in items)
        logger.info("Found %d unique items to refresh price history for.", len(names))
        if not names:
            return PriceSyncStats()
        return await self.prices.sync_all(names, token=token)

    async def reload_views(self, account_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        portfolio_key = view_key("portfolio", account_id)
        history_key = view_key("portfolio-history", account_id, self.history_days)
        await asyncio.to_thread(self.views.invalidate, [portfolio_key, history_key])

        portfolio = await asyncio.to_thread(
            self.views.get_or_fetch,
            portfolio_key,
            lambda: self.backend.get_portfolio(account_id),
        )
        history = await asyncio.to_thread(
            self.views.get_or_fetch,
            history_key,
            lambda: self.backend.get_portfolio_history(account_id, self.history_days),
        )
        logger.info(
            "Reloaded views for %s: %d portfolio items, %d history points",
            account_id,
            len(portfolio.get("items") or []),
            len(history.get("history") or []),
        )
        return portfolio, history

    async def run(self, account_id: str, token: CancellationToken | None = None) -> SyncResult:
        if self._running:
            raise SyncInProgressError(f"Sync already running for {account_id}")

        self._running = True
        self.job.reset()
        ok = False
        logger.info("Starting full refresh for %s", account_id)
        try:
            upload, collection, items = await self._step(
                "sync", lambda: self.sync_inventory(account_id, token)
            )
            warnings: List[str] = []
            if collection.partial:
                warnings.append(f"Inventory may be incomplete: {collection.partial_reason}")

            stats = await self._step("prices", lambda: self.refresh_prices(token))
            if stats is None:
                warnings.append("Price history refresh skipped: another batch is running")

            portfolio, history = await self._step("load", lambda: self.reload_views(account_id))
            ok = True
        except SyncCancelledError:
            logger.warning("Refresh for %s cancelled.", account_id)
            raise
        except SyncError as e:
            logger.error("Refresh for %s failed: %s", account_id, e)
            raise
        finally:
            self._running = False
            self.events.publish(RunFinished(account_id, ok))

        logger.info(
            "Refresh for %s complete: %d items synced%s",
            account_id, upload.items_synced, " (partial)" if collection.partial else "",
        )
        return SyncResult(
            upload=upload,
            price_stats=stats,
            partial=collection.partial,
            warnings=warnings,
            items=items,
            portfolio=portfolio,
            history=history,
        )
