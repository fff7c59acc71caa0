import asyncio

import pytest

from conftest import FakeBackend
from core.errors import (
    CredentialError,
    FetchError,
    RateLimitError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
)
from core.events import CancellationToken, EventBus, RunFinished, StepEvent
from core.models import STEP_COMPLETED, STEP_PENDING, AggregatedCollection
from core.prices import PriceHistoryBatchSynchronizer
from core.storage import ViewCache, view_key
from core.sync import SyncOrchestrator

ROWS = [["Mar 20 2024 01: +0", 10.0, "9"]]


def _collection(n=3, partial=False):
    collection = AggregatedCollection(assets=[{"assetid": str(i)} for i in range(n)], pages_fetched=1)
    if partial:
        collection.mark_partial("missing continuation cursor")
    return collection


class ScriptedCollections:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, account_id, credentials, token):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def _orchestrator(tmp_path, backend, collections, creds, history_fetcher=None, **kwargs):
    events = EventBus()
    prices = PriceHistoryBatchSynchronizer(
        backend,
        lambda: creds,
        history_fetcher=history_fetcher or (lambda name, c: ROWS),
        item_delay=0,
        events=events,
    )
    return SyncOrchestrator(
        backend=backend,
        credentials_provider=lambda: creds,
        views=ViewCache(str(tmp_path / "views.sqlite3")),
        prices=prices,
        events=events,
        collection_fetcher=collections,
        partial_retry_delay=0,
        **kwargs,
    )


def _step_events(orchestrator):
    seen = []
    orchestrator.events.subscribe(lambda e: seen.append(e) if isinstance(e, StepEvent) else None)
    return seen


def test_full_run_completes_steps_in_order(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection(3)), creds)
    seen = _step_events(orch)

    result = asyncio.run(orch.run("7656"))

    assert [(e.step_id, e.status) for e in seen] == [
        ("sync", "processing"), ("sync", "completed"),
        ("prices", "processing"), ("prices", "completed"),
        ("load", "processing"), ("load", "completed"),
    ]
    assert orch.job.done
    assert result.upload.items_synced == 3
    assert (result.price_stats.total, result.price_stats.success) == (2, 2)
    assert result.portfolio["total_value"] == 42.0
    assert result.history["history"]
    assert not result.partial
    assert len(fake_backend.inventory_uploads) == 1


def test_inventory_failure_aborts_and_leaves_later_steps_pending(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(CredentialError("403")), creds)
    seen = _step_events(orch)

    with pytest.raises(CredentialError):
        asyncio.run(orch.run("7656"))

    assert [s.status for s in orch.job.steps] == [STEP_PENDING] * 3
    assert ("sync", "pending") == (seen[-1].step_id, seen[-1].status)
    assert fake_backend.inventory_uploads == []
    assert fake_backend.history_uploads == []
    assert fake_backend.portfolio_calls == 0
    assert not orch.running


def test_upload_failure_is_fatal(tmp_path, fake_backend, creds):
    fake_backend.upload_error = FetchError("backend 500")
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds)
    with pytest.raises(FetchError):
        asyncio.run(orch.run("7656"))
    assert fake_backend.history_uploads == []


def test_rate_limit_surfaces_as_rate_limit(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(RateLimitError("429")), creds)
    with pytest.raises(RateLimitError):
        asyncio.run(orch.run("7656"))


def test_item_failures_do_not_abort_job(tmp_path, fake_backend, creds):
    def flaky(name, c):
        if name.startswith("AWP"):
            raise FetchError("steam 500")
        return ROWS

    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds, history_fetcher=flaky)
    result = asyncio.run(orch.run("7656"))
    assert orch.job.done
    assert (result.price_stats.success, result.price_stats.failed) == (1, 1)


def test_listing_failure_is_not_fatal(tmp_path, fake_backend, creds):
    fake_backend.list_error = FetchError("backend timeout")
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds)
    result = asyncio.run(orch.run("7656"))
    assert orch.job.done
    assert (result.price_stats.total, result.price_stats.success, result.price_stats.failed) == (0, 0, 0)


def test_unexpected_batch_error_aborts_at_prices(tmp_path, fake_backend, creds):
    fake_backend.list_error = KeyError("items")
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds)
    with pytest.raises(SyncError):
        asyncio.run(orch.run("7656"))
    assert [s.status for s in orch.job.steps] == [STEP_COMPLETED, STEP_PENDING, STEP_PENDING]
    assert fake_backend.portfolio_calls == 0


def test_partial_fetch_is_retried_then_accepted(tmp_path, fake_backend, creds):
    collections = ScriptedCollections(_collection(2, partial=True), _collection(2, partial=True))
    orch = _orchestrator(tmp_path, fake_backend, collections, creds, partial_retries=1)
    result = asyncio.run(orch.run("7656"))
    assert collections.calls == 2
    assert result.partial
    assert result.warnings
    assert len(fake_backend.inventory_uploads) == 1


def test_failed_retry_keeps_partial_collection(tmp_path, fake_backend, creds):
    collections = ScriptedCollections(_collection(2, partial=True), RateLimitError("429 on retry"))
    orch = _orchestrator(tmp_path, fake_backend, collections, creds, partial_retries=1)
    result = asyncio.run(orch.run("7656"))
    assert collections.calls == 2
    assert result.partial
    assert result.warnings
    assert result.upload.items_synced == 2
    assert len(fake_backend.inventory_uploads) == 1
    assert orch.job.done


def test_session_failure_on_retry_is_still_fatal(tmp_path, fake_backend, creds):
    collections = ScriptedCollections(_collection(2, partial=True), CredentialError("403"))
    orch = _orchestrator(tmp_path, fake_backend, collections, creds, partial_retries=1)
    with pytest.raises(CredentialError):
        asyncio.run(orch.run("7656"))
    assert fake_backend.inventory_uploads == []


def test_partial_fetch_recovered_by_retry(tmp_path, fake_backend, creds):
    collections = ScriptedCollections(_collection(2, partial=True), _collection(5))
    orch = _orchestrator(tmp_path, fake_backend, collections, creds, partial_retries=2)
    result = asyncio.run(orch.run("7656"))
    assert collections.calls == 2
    assert not result.partial
    assert result.upload.items_synced == 5


def test_concurrent_run_is_rejected(tmp_path, fake_backend, creds):
    class SlowCollections:
        def __init__(self):
            self.release = None

        async def __call__(self, account_id, credentials, token):
            await self.release.wait()
            return _collection()

    slow = SlowCollections()
    orch = _orchestrator(tmp_path, fake_backend, slow, creds)

    async def scenario():
        slow.release = asyncio.Event()
        first = asyncio.create_task(orch.run("7656"))
        await asyncio.sleep(0)
        with pytest.raises(SyncInProgressError):
            await orch.run("7656")
        slow.release.set()
        return await first

    result = asyncio.run(scenario())
    assert result.upload.items_synced == 3
    assert not orch.running


def test_cancelled_run_stops_before_upload(tmp_path, fake_backend, creds):
    token = CancellationToken()

    async def cancel_during_fetch(account_id, credentials, t):
        token.cancel("screen closed")
        return _collection()

    orch = _orchestrator(tmp_path, fake_backend, cancel_during_fetch, creds)
    with pytest.raises(SyncCancelledError):
        asyncio.run(orch.run("7656", token=token))
    assert fake_backend.inventory_uploads == []
    assert orch.job.get("sync").status == STEP_PENDING


def test_load_step_refetches_even_when_views_are_fresh(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds)
    orch.views.put(view_key("portfolio", "7656"), {"total_value": 1.0, "items": []})

    result = asyncio.run(orch.run("7656"))

    assert fake_backend.portfolio_calls == 1
    assert result.portfolio["total_value"] == 42.0
    assert orch.views.get(view_key("portfolio", "7656"))["total_value"] == 42.0


def test_result_carries_inventory_items(tmp_path, fake_backend, creds):
    collection = AggregatedCollection(
        assets=[{"assetid": "1", "classid": "5", "instanceid": "0"}],
        descriptions=[{"classid": "5", "instanceid": "0", "market_hash_name": "AK-47 | Redline (Field-Tested)"}],
        pages_fetched=1,
    )
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(collection), creds)
    result = asyncio.run(orch.run("7656"))
    assert [item.market_hash_name for item in result.items] == ["AK-47 | Redline (Field-Tested)"]


def test_stream_ends_when_run_finishes(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds)

    async def scenario():
        seen = []

        async def consume():
            async for event in orch.events.stream():
                seen.append(event)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await orch.run("7656")
        await asyncio.wait_for(task, 1)
        return seen

    seen = asyncio.run(scenario())
    assert seen[0] == StepEvent("sync", "processing")
    assert seen[-1] == RunFinished("7656", True)


def test_stream_ends_on_failed_run(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(RateLimitError("429")), creds)

    async def scenario():
        stream = orch.events.stream()
        with pytest.raises(RateLimitError):
            await orch.run("7656")
        return [event async for event in stream]

    seen = asyncio.run(scenario())
    assert seen == [StepEvent("sync", "processing"), StepEvent("sync", "pending"), RunFinished("7656", False)]


def test_out_of_order_step_never_starts_its_work(tmp_path, fake_backend, creds):
    orch = _orchestrator(tmp_path, fake_backend, ScriptedCollections(_collection()), creds)
    started = []

    with pytest.raises(RuntimeError):
        asyncio.run(orch._step("prices", lambda: started.append("prices")))
    assert started == []
    assert orch.job.get("prices").status == STEP_PENDING
