# fetchers/steam.py
import asyncio
import os
import time
import warnings
from typing import Any, Callable, List, Optional

import requests

from core.errors import (
    CredentialError,
    EmptyCollectionError,
    FetchError,
    PartialResultWarning,
    RateLimitError,
)
from core.events import CancellationToken, pause
from core.logger import get_logger
from core.models import AggregatedCollection, RawCollectionPage, SteamCredentials

logger = get_logger(__name__)

STEAM_COMMUNITY = "https://steamcommunity.com"
CS2_APP_ID = 730
CS2_CONTEXT_ID = 2

# Steam caps inventory pages at 2000 assets
STEAM_PAGE_SIZE = int(os.getenv("STEAM_PAGE_SIZE", "2000"))
STEAM_PAGE_DELAY = float(os.getenv("STEAM_PAGE_DELAY", "2.0"))
STEAM_MAX_PAGES = int(os.getenv("STEAM_MAX_PAGES", "50"))
STEAM_TIMEOUT = int(os.getenv("STEAM_TIMEOUT", "30"))

USER_AGENT = os.getenv(
    "STEAM_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

PageFetcher = Callable[[Optional[str]], RawCollectionPage]


def load_credentials_from_env() -> SteamCredentials:
    return SteamCredentials(
        session_id=os.getenv("STEAM_SESSIONID", "").strip(),
        steam_login_secure=os.getenv("STEAM_LOGIN_SECURE", "").strip(),
    )


def _headers(credentials: SteamCredentials, referer: str) -> dict[str, str]:
    return {
        "Cookie": credentials.cookie_header(),
        "User-Agent": USER_AGENT,
        "Accept": "application/json, text/javascript, */*; q=0.01",
        "Referer": referer,
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
    }


def _raise_for_status(resp: requests.Response, what: str) -> None:
    status = resp.status_code
    if status == 403:
        raise CredentialError(f"{what}: inventory is private or cookies are invalid")
    if status == 429:
        raise RateLimitError(f"{what}: Steam rate limit reached, wait a few minutes")
    if status != 200:
        raise FetchError(f"{what}: bad status code {status}", status_code=status)


def _json_object(resp: requests.Response, what: str) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise FetchError(f"{what}: invalid JSON from Steam ({exc})") from exc
    if not isinstance(data, dict):
        raise FetchError(f"{what}: response is not a JSON object")
    return data


def fetch_inventory_page(
    session: requests.Session,
    steam_id: str,
    credentials: SteamCredentials,
    cursor: str | None = None,
    count: int = STEAM_PAGE_SIZE,
) -> RawCollectionPage:
    """Fetch a single inventory page starting at ``cursor`` (a Steam asset id)."""
    url = f"{STEAM_COMMUNITY}/inventory/{steam_id}/{CS2_APP_ID}/{CS2_CONTEXT_ID}"
    params: dict[str, Any] = {
        "l": "english",
        "count": count,
        "include_properties": 1,
        "_": int(time.time() * 1000),
    }
    if cursor:
        params["start_assetid"] = cursor

    referer = f"{STEAM_COMMUNITY}/profiles/{steam_id}/inventory/"
    logger.debug("Fetching inventory page for %s (start_assetid=%s)", steam_id, cursor or "N/A")
    started = time.monotonic()
    try:
        resp = session.get(
            url, params=params, headers=_headers(credentials, referer), timeout=STEAM_TIMEOUT
        )
    except requests.RequestException as exc:
        raise FetchError(f"Inventory request failed: {exc}") from exc

    elapsed_ms = (time.monotonic() - started) * 1000
    if resp.status_code != 200:
        logger.warning(
            "Steam returned status %s for inventory of %s (%.0fms).",
            resp.status_code, steam_id, elapsed_ms,
        )
    _raise_for_status(resp, "Inventory fetch")
    page = RawCollectionPage.from_payload(_json_object(resp, "Inventory fetch"))
    logger.debug(
        "Inventory page: assets=%d descriptions=%d properties=%d reported_total=%s more=%s last_assetid=%s (%.0fms)",
        len(page.assets),
        len(page.descriptions),
        len(page.properties),
        page.total_inventory_count,
        page.more_items,
        page.last_assetid or "N/A",
        elapsed_ms,
    )
    return page


def _page_bound(hint: int | None, page_size: int, max_pages: int) -> int:
    if hint and hint > 0 and page_size > 0:
        return max(1, min(max_pages, hint // page_size + 1))
    return max(1, max_pages)


async def fetch_full_collection(
    account_id: str,
    credentials: SteamCredentials | None,
    page_fetcher: PageFetcher | None = None,
    page_size: int = STEAM_PAGE_SIZE,
    page_delay: float = STEAM_PAGE_DELAY,
    max_pages: int = STEAM_MAX_PAGES,
    token: CancellationToken | None = None,
) -> AggregatedCollection:
    """
    Walk the inventory cursor until Steam reports no more items.

    A page that says more items exist but carries no usable cursor ends the
    walk early; the accumulated data is returned flagged as partial. An empty
    result raises EmptyCollectionError.
    """
    if credentials is None or not credentials.is_complete:
        logger.error("Steam cookies missing or incomplete: %s",
                     credentials.describe() if credentials else "none")
        raise CredentialError("Cookies not found. Please sign in to Steam again.")

    if page_fetcher is None:
        session = requests.Session()

        def page_fetcher(cursor: Optional[str]) -> RawCollectionPage:
            return fetch_inventory_page(session, account_id, credentials, cursor, page_size)

    logger.info("Fetching Steam inventory for %s (page size %d).", account_id, page_size)

    collection = AggregatedCollection()
    cursor: str | None = None
    seen_cursors: set[str] = set()
    bound = max(1, max_pages)

    while True:
        if token is not None:
            token.check()

        page_number = collection.pages_fetched + 1
        try:
            page = await asyncio.to_thread(page_fetcher, cursor)
        except (CredentialError, RateLimitError, FetchError):
            logger.error("Inventory page %d for %s failed.", page_number, account_id)
            raise
        collection.extend(page)

        if collection.pages_fetched == 1:
            bound = _page_bound(page.total_inventory_count, page_size, max_pages)

        logger.debug(
            "Inventory %s: page %d brought %d assets (%d so far).",
            account_id, page_number, len(page.assets), collection.total_inventory_count,
        )

        if not page.more_items:
            break

        next_cursor = page.last_assetid
        if not next_cursor:
            logger.warning(
                "Steam reported more items for %s but sent no last_assetid on page %d; "
                "stopping pagination, later items may be missing.",
                account_id, page_number,
            )
            collection.mark_partial("missing continuation cursor")
            break

        if next_cursor in seen_cursors:
            logger.warning(
                "Steam repeated cursor %s for %s on page %d; stopping pagination.",
                next_cursor, account_id, page_number,
            )
            collection.mark_partial("repeated continuation cursor")
            break

        if collection.pages_fetched >= bound:
            logger.warning(
                "Reached page limit %d for %s with more items reported; stopping pagination.",
                bound, account_id,
            )
            collection.mark_partial("page limit reached")
            break

        seen_cursors.add(next_cursor)
        cursor = next_cursor
        logger.debug("Sleeping %.1fs before inventory page %d.", page_delay, page_number + 1)
        await pause(page_delay, token)

    logger.info(
        "Inventory fetch for %s finished: pages=%d assets=%d descriptions=%d properties=%d%s",
        account_id,
        collection.pages_fetched,
        collection.total_inventory_count,
        len(collection.descriptions),
        len(collection.properties),
        f" (partial: {collection.partial_reason})" if collection.partial else "",
    )

    if collection.partial:
        warnings.warn(
            f"Inventory for {account_id} may be incomplete: {collection.partial_reason}",
            PartialResultWarning,
            stacklevel=2,
        )

    if collection.total_inventory_count == 0:
        raise EmptyCollectionError(
            "No items found in inventory. Check that you have items and that cookies are valid."
        )
    return collection


def fetch_price_history(
    session: requests.Session,
    market_hash_name: str,
    credentials: SteamCredentials | None,
) -> List[list]:
    """
    Fetch the raw Steam market price history for one item.

    Returns the ``prices`` rows ([date, price, volume]); an empty list means
    Steam has no history for the item.
    """
    if credentials is None or not credentials.is_complete:
        raise CredentialError("Cookies not found, cannot fetch price history")

    url = f"{STEAM_COMMUNITY}/market/pricehistory/"
    params = {"appid": CS2_APP_ID, "market_hash_name": market_hash_name}
    try:
        resp = session.get(
            url,
            params=params,
            headers=_headers(credentials, f"{STEAM_COMMUNITY}/market/"),
            timeout=STEAM_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise FetchError(f"Price history request failed: {exc}") from exc

    _raise_for_status(resp, f"Price history for {market_hash_name}")
    data = _json_object(resp, f"Price history for {market_hash_name}")
    prices = data.get("prices")
    if not data.get("success") or not isinstance(prices, list):
        raise FetchError(f"Invalid price history response for {market_hash_name}")
    return prices
