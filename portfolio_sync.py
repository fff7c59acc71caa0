import asyncio
import json
import os
import random
import time
from typing import Any, Dict, List, Tuple

from core.errors import SyncError, describe_error
from core.events import Event, EventBus, PriceProgressEvent, StepEvent
from core.logger import get_logger
from core.storage import ViewCache
from core.sync import SyncOrchestrator
from core.windows import LONG_WINDOW_DAYS, SHORT_WINDOW_DAYS, TimeWindowCache
from fetchers.backend import BackendClient
from fetchers.steam import load_credentials_from_env

logger = get_logger(__name__)

POLL_MINUTES = int(os.getenv("POLL_MINUTES", "60"))
MODE = os.getenv("MODE", "once").lower()  # "once", "daemon" or "window"
CONFIG_PATH = os.getenv("CONFIG_PATH", "/data/config.json")
STEAM_ID = os.getenv("STEAM_ID", "").strip()


def jitter_sleep_minutes(minutes: int) -> None:
    base = max(1, minutes)
    jitter = random.uniform(-0.1 * base, 0.1 * base)
    total = base + jitter
    logger.info("Sleeping %.1f minutes before next cycle.", total)
    time.sleep(total * 60)


def load_accounts(path: str = CONFIG_PATH) -> List[Dict[str, Any]]:
    """
    Accounts come from config.json ({"accounts": [{"steam_id": ...}]}) or,
    when no config file exists, from STEAM_ID.
    """
    if not os.path.exists(path):
        if STEAM_ID:
            return [{"steam_id": STEAM_ID, "name": STEAM_ID}]
        logger.error("Config file not found at %s and STEAM_ID is not set", path)
        raise SystemExit(1)
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Failed to load config.json at %s: %s", path, e)
        raise SystemExit(1)

    if not isinstance(cfg, dict) or not isinstance(cfg.get("accounts"), list) or not cfg["accounts"]:
        logger.error("config.json must be an object with a non-empty 'accounts' list.")
        raise SystemExit(1)
    return cfg["accounts"]


def log_progress(event: Event) -> None:
    if isinstance(event, StepEvent):
        logger.info("Step %s -> %s", event.step_id, event.status)
    elif isinstance(event, PriceProgressEvent):
        logger.debug("Price history %d/%d", event.current, event.total)


def build_orchestrator() -> SyncOrchestrator:
    events = EventBus()
    events.subscribe(log_progress)
    return SyncOrchestrator(
        backend=BackendClient(),
        credentials_provider=load_credentials_from_env,
        views=ViewCache(),
        events=events,
    )


def sync_account(orchestrator: SyncOrchestrator, account: Dict[str, Any]) -> bool:
    steam_id = str(account.get("steam_id", "")).strip()
    name = str(account.get("name") or steam_id).strip()
    if not steam_id:
        logger.error("Invalid account entry (missing steam_id): %s", account)
        return False
    if not account.get("enabled", True):
        logger.info("Account '%s' is disabled; skipping.", name)
        return True

    try:
        result = asyncio.run(orchestrator.run(steam_id))
    except SyncError as e:
        title, message = describe_error(e)
        logger.error("Sync for '%s' failed [%s]: %s (%s)", name, title, message, e)
        return False

    stats = result.price_stats
    logger.info(
        "Sync for '%s' done: %d items synced, prices %s, portfolio value %s",
        name,
        result.upload.items_synced,
        f"{stats.success}/{stats.total} ok" if stats else "skipped",
        result.portfolio.get("total_value", "n/a"),
    )
    for warning in result.warnings:
        logger.warning("Sync for '%s': %s", name, warning)
    return True


async def show_windows(market_hash_name: str) -> None:
    backend = BackendClient()
    cache = TimeWindowCache(backend.get_item_history)
    for days in (LONG_WINDOW_DAYS, SHORT_WINDOW_DAYS):
        window = await cache.get_window(market_hash_name, days)
        if not window.has_data:
            logger.info("%s %dd: no data", market_hash_name, days)
            continue
        s = window.summary
        logger.info(
            "%s %dd%s: %d points, start=%.2f end=%.2f min=%.2f max=%.2f avg=%.2f change=%.2f (%.2f%%)",
            market_hash_name, days, " (derived)" if window.derived else "",
            len(window.points), s.start_price, s.end_price, s.min_price,
            s.max_price, s.avg_price, s.price_change, s.price_change_percent,
        )


def run_once() -> int:
    accounts = load_accounts()
    orchestrator = build_orchestrator()
    failures = 0
    for account in accounts:
        try:
            if not sync_account(orchestrator, account):
                failures += 1
        except Exception as e:
            failures += 1
            logger.exception("Unhandled error in run_once: %s", e)
    return 1 if failures else 0


def run_daemon() -> None:
    logger.info("Starting daemon; poll every %d minutes.", POLL_MINUTES)
    orchestrator = build_orchestrator()
    last_run_map: Dict[Tuple[str, ...], float] = {}

    while True:
        try:
            accounts = load_accounts()
            now = time.time()
            for account in accounts:
                if not isinstance(account, dict):
                    logger.error("Invalid account entry: %s", account)
                    continue

                key = (str(account.get("steam_id", "")),)
                try:
                    poll_minutes = int(account.get("poll_minutes") or POLL_MINUTES)
                except (TypeError, ValueError):
                    poll_minutes = POLL_MINUTES
                poll_minutes = max(1, poll_minutes)

                last_ts = last_run_map.get(key)
                if last_ts:
                    elapsed = (now - last_ts) / 60
                    if elapsed < poll_minutes:
                        logger.debug("Skip %s (%.1f < %d minutes).", key[0], elapsed, poll_minutes)
                        continue

                try:
                    sync_account(orchestrator, account)
                except Exception as e:
                    logger.exception("Error syncing %s: %s", key[0], e)
                finally:
                    last_run_map[key] = time.time()

        except SystemExit:
            raise
        except Exception as e:
            logger.exception("Unhandled error in daemon loop: %s", e)

        jitter_sleep_minutes(POLL_MINUTES)


if __name__ == "__main__":
    try:
        if MODE == "window":
            asyncio.run(show_windows(os.getenv("ITEM", "").strip()))
        elif MODE == "daemon":
            run_daemon()
        else:
            raise SystemExit(run_once())
    except SystemExit:
        raise
    except Exception as e:
        logger.exception("Fatal sync error: %s", e)
        raise SystemExit(2)
