# fetchers/backend.py
import os
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from core.errors import FetchError, UnauthorizedError
from core.logger import get_logger
from core.models import AggregatedCollection, InventoryItem, UploadResult

logger = get_logger(__name__)

BACKEND_URL = os.getenv("BACKEND_URL", "https://skinfolio-backend-v2.onrender.com/api/v1").rstrip("/")
BACKEND_TOKEN = os.getenv("BACKEND_TOKEN", "").strip()
BACKEND_TIMEOUT = int(os.getenv("BACKEND_TIMEOUT", "60"))
BACKEND_RETRIES = int(os.getenv("BACKEND_RETRIES", "3"))

# Priority order for the synced-item count. The backend has used each of these
# names at some point; the first one present wins.
SYNCED_COUNT_FIELDS = (
    "items_synced",
    "total_items",
    "new_items_synced",
    "items_count",
    "count",
)


def normalize_synced_count(payload: Mapping[str, Any] | None) -> int:
    """Return the first present numeric synced-item count, or 0."""
    if not payload:
        return 0
    for name in SYNCED_COUNT_FIELDS:
        value = payload.get(name)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric %s=%r in upload response", name, value)
    return 0


class _TransientBackendError(FetchError):
    """Connection problems and 5xx answers; retried."""


def _error_detail(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"Failed to fetch: {resp.reason or resp.status_code}"
    if isinstance(data, dict):
        for key in ("detail", "message", "error"):
            if data.get(key):
                return str(data[key])
    return "Unknown error"


class BackendClient:
    """Thin client for the portfolio backend of record."""

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        token: str = BACKEND_TOKEN,
        session: requests.Session | None = None,
        timeout: int = BACKEND_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @retry(
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(BACKEND_RETRIES),
        retry=retry_if_exception_type(_TransientBackendError),
        reraise=True,
    )
    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.warning("Backend %s %s failed: %s", method, endpoint, exc)
            raise _TransientBackendError(f"{method} {endpoint} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise FetchError(f"{method} {endpoint} failed: {exc}") from exc

        status = resp.status_code
        if status == 401:
            raise UnauthorizedError("UNAUTHORIZED")
        if status >= 500:
            logger.warning("Backend %s %s returned %s", method, endpoint, status)
            raise _TransientBackendError(_error_detail(resp), status_code=status)
        if status >= 400:
            raise FetchError(_error_detail(resp), status_code=status)

        try:
            return resp.json()
        except ValueError as exc:
            raise FetchError(f"{method} {endpoint}: invalid JSON from backend") from exc

    def get(self, endpoint: str, **params: Any) -> Any:
        return self._request("GET", endpoint, params=params or None)

    def post(self, endpoint: str, data: Any) -> Any:
        return self._request("POST", endpoint, json=data)

    def upload_inventory(self, collection: AggregatedCollection) -> UploadResult:
        """Send the full aggregated inventory in one request."""
        logger.info(
            "Uploading inventory to backend: assets=%d descriptions=%d properties=%d",
            collection.total_inventory_count,
            len(collection.descriptions),
            len(collection.properties),
        )
        data = self.post("/inventory/upload", {"inventory_data": collection.to_payload()})
        if not isinstance(data, dict):
            data = {}
        count = normalize_synced_count(data)
        result = UploadResult(
            items_synced=count,
            status=data.get("status") or "success",
            message=data.get("message") or f"Inventory updated: {count} items synced",
        )
        logger.info("Inventory upload done: items_synced=%d status=%s", count, result.status)
        return result

    def list_inventory_items(self) -> List[InventoryItem]:
        data = self.get("/inventory/")
        rows = data.get("items") if isinstance(data, dict) else None
        return [InventoryItem.from_backend(r) for r in rows or [] if isinstance(r, dict)]

    def upload_price_history(self, market_hash_name: str, history_data: List[list]) -> int:
        """Returns the number of new records the backend inserted (0 when already current)."""
        data = self.post(
            "/prices/history/upload",
            {"market_hash_name": market_hash_name, "history_data": history_data},
        )
        if not isinstance(data, dict):
            return 0
        try:
            return int(data.get("records_inserted") or 0)
        except (TypeError, ValueError):
            return 0

    def get_item_history(self, market_hash_name: str, days: int) -> Optional[Dict[str, Any]]:
        """Backend price history for one item; None when the item has none yet (404)."""
        encoded = quote(market_hash_name, safe="")
        try:
            data = self.get(f"/prices/{encoded}/history", days=days)
        except FetchError as exc:
            if exc.status_code == 404:
                logger.info("No price history yet for %s", market_hash_name)
                return None
            raise
        return data if isinstance(data, dict) else None

    def get_portfolio(self, steam_id: str) -> Dict[str, Any]:
        data = self.get(f"/portfolio/current/{steam_id}")
        if isinstance(data, dict) and data.get("steam_id") is not None:
            data["steam_id"] = str(data["steam_id"])
        return data if isinstance(data, dict) else {}

    def get_portfolio_history(self, steam_id: str, days: int) -> Dict[str, Any]:
        data = self.get(f"/portfolio/history/{steam_id}", days=days)
        if isinstance(data, dict) and data.get("steam_id") is not None:
            data["steam_id"] = str(data["steam_id"])
        return data if isinstance(data, dict) else {}
