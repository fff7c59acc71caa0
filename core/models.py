# core/models.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

STEAM_IMAGE_BASE = "https://community.cloudflare.steamstatic.com/economy/image/"

# Steam asset property ids
PROPERTY_PATTERN = 1
PROPERTY_WEAR = 2

STEP_PENDING = "pending"
STEP_PROCESSING = "processing"
STEP_COMPLETED = "completed"


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class SteamCredentials:
    """Steam community session cookies. Never log the values."""
    session_id: str = ""
    steam_login_secure: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.session_id) and bool(self.steam_login_secure)

    def cookie_header(self) -> str:
        return f"sessionid={self.session_id}; steamLoginSecure={self.steam_login_secure}"

    def describe(self) -> Dict[str, Any]:
        return {
            "has_session_id": bool(self.session_id),
            "has_steam_login_secure": bool(self.steam_login_secure),
            "session_id_length": len(self.session_id),
            "steam_login_secure_length": len(self.steam_login_secure),
        }


@dataclass
class InventoryItem:
    """
    Normalized representation of one inventory entry.
    Rebuilt on every full sync; never diffed locally.
    """
    market_hash_name: str
    asset_id: Optional[str] = None
    quantity: int = 1
    price: float = 0.0
    current_price: Optional[float] = None
    float_value: Optional[float] = None
    paint_seed: Optional[int] = None
    is_stattrak: bool = False
    rarity: Optional[str] = None
    image_url: str = ""

    def __post_init__(self) -> None:
        if self.quantity < 1:
            self.quantity = 1

    @classmethod
    def from_backend(cls, row: Dict[str, Any]) -> "InventoryItem":
        quantity = _to_int(row.get("quantity")) or 1
        return cls(
            market_hash_name=str(row.get("market_hash_name") or "").strip(),
            asset_id=str(row["asset_id"]) if row.get("asset_id") else None,
            quantity=quantity,
            price=_to_float(row.get("price")) or 0.0,
            current_price=_to_float(row.get("current_price")),
            float_value=_to_float(row.get("float_value")),
            paint_seed=_to_int(row.get("paint_seed")),
            is_stattrak=bool(row.get("is_stattrak", False)),
            rarity=row.get("rarity"),
            image_url=row.get("image_url") or "",
        )


@dataclass
class RawCollectionPage:
    assets: List[Dict[str, Any]] = field(default_factory=list)
    descriptions: List[Dict[str, Any]] = field(default_factory=list)
    properties: List[Dict[str, Any]] = field(default_factory=list)
    last_assetid: Optional[str] = None
    more_items: bool = False
    total_inventory_count: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RawCollectionPage":
        """
        Build a page from the raw inventory JSON.

        asset_properties may arrive either as a list or as an object keyed by
        asset id; both are flattened to a list.
        """
        raw_props = data.get("asset_properties")
        if raw_props is None:
            raw_props = data.get("properties")
        if isinstance(raw_props, list):
            properties = list(raw_props)
        elif isinstance(raw_props, dict):
            properties = list(raw_props.values())
        else:
            properties = []

        more = data.get("more_items")
        last = data.get("last_assetid")
        return cls(
            assets=list(data.get("assets") or []),
            descriptions=list(data.get("descriptions") or []),
            properties=properties,
            last_assetid=str(last) if last else None,
            more_items=more is True or more == 1,
            total_inventory_count=_to_int(data.get("total_inventory_count")),
        )


@dataclass
class AggregatedCollection:
    assets: List[Dict[str, Any]] = field(default_factory=list)
    descriptions: List[Dict[str, Any]] = field(default_factory=list)
    properties: List[Dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    partial: bool = False
    partial_reason: str = ""

    @property
    def total_inventory_count(self) -> int:
        return len(self.assets)

    def extend(self, page: RawCollectionPage) -> None:
        self.assets.extend(page.assets)
        self.descriptions.extend(page.descriptions)
        self.properties.extend(page.properties)
        self.pages_fetched += 1

    def mark_partial(self, reason: str) -> None:
        self.partial = True
        self.partial_reason = reason

    def to_payload(self) -> Dict[str, Any]:
        return {
            "assets": self.assets,
            "descriptions": self.descriptions,
            "asset_properties": self.properties,
            "total_inventory_count": self.total_inventory_count,
        }

    def to_items(self) -> List[InventoryItem]:
        """Join assets with their descriptions and wear/pattern properties."""
        desc_map = {
            (str(d.get("classid")), str(d.get("instanceid", "0"))): d
            for d in self.descriptions
        }
        prop_map: Dict[str, Dict[int, Any]] = {}
        for rec in self.properties:
            if not isinstance(rec, dict):
                continue
            values: Dict[int, Any] = {}
            for prop in rec.get("asset_properties") or []:
                pid = _to_int(prop.get("propertyid"))
                if pid == PROPERTY_WEAR:
                    values[pid] = _to_float(prop.get("float_value"))
                elif pid == PROPERTY_PATTERN:
                    values[pid] = _to_int(prop.get("int_value"))
            prop_map[str(rec.get("assetid"))] = values

        items: List[InventoryItem] = []
        for asset in self.assets:
            key = (str(asset.get("classid")), str(asset.get("instanceid", "0")))
            desc = desc_map.get(key)
            if desc is None:
                continue
            name = str(desc.get("market_hash_name") or "").strip()
            if not name:
                continue

            rarity = None
            for tag in desc.get("tags") or []:
                if tag.get("category") == "Rarity":
                    rarity = tag.get("localized_tag_name") or tag.get("name")
                    break

            asset_id = str(asset.get("assetid")) if asset.get("assetid") else None
            props = prop_map.get(asset_id or "", {})
            icon = desc.get("icon_url") or ""
            items.append(
                InventoryItem(
                    market_hash_name=name,
                    asset_id=asset_id,
                    quantity=_to_int(asset.get("amount")) or 1,
                    float_value=props.get(PROPERTY_WEAR),
                    paint_seed=props.get(PROPERTY_PATTERN),
                    is_stattrak=name.startswith("StatTrak"),
                    rarity=rarity,
                    image_url=f"{STEAM_IMAGE_BASE}{icon}" if icon else "",
                )
            )
        return items


@dataclass
class UploadResult:
    items_synced: int = 0
    status: str = "success"
    message: str = ""


@dataclass
class SyncStep:
    step_id: str
    label: str
    status: str = STEP_PENDING


DEFAULT_STEPS = (
    ("sync", "Syncing inventory with Steam"),
    ("prices", "Updating price history"),
    ("load", "Loading updated data"),
)


@dataclass
class SyncJobState:
    """
    Ordered step list for one sync run.

    At most one step is processing; steps complete strictly in declared order.
    """
    steps: List[SyncStep] = field(
        default_factory=lambda: [SyncStep(sid, label) for sid, label in DEFAULT_STEPS]
    )

    def reset(self) -> None:
        for step in self.steps:
            step.status = STEP_PENDING

    def get(self, step_id: str) -> SyncStep:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    @property
    def current(self) -> Optional[SyncStep]:
        for step in self.steps:
            if step.status == STEP_PROCESSING:
                return step
        return None

    @property
    def done(self) -> bool:
        return all(step.status == STEP_COMPLETED for step in self.steps)

    def start(self, step_id: str) -> SyncStep:
        if self.current is not None:
            raise RuntimeError(
                f"Cannot start {step_id!r}: {self.current.step_id!r} is still processing"
            )
        for step in self.steps:
            if step.step_id == step_id:
                break
            if step.status != STEP_COMPLETED:
                raise RuntimeError(
                    f"Cannot start {step_id!r} before {step.step_id!r} has completed"
                )
        step = self.get(step_id)
        step.status = STEP_PROCESSING
        return step

    def complete(self, step_id: str) -> SyncStep:
        step = self.get(step_id)
        if step.status != STEP_PROCESSING:
            raise RuntimeError(f"Step {step_id!r} is not processing")
        step.status = STEP_COMPLETED
        return step

    def abort(self, step_id: str) -> SyncStep:
        """Roll a failed step back to pending; later steps are untouched."""
        step = self.get(step_id)
        step.status = STEP_PENDING
        return step


@dataclass
class PriceHistoryPoint:
    date: str
    price: float


@dataclass
class PriceSummary:
    start_price: float
    end_price: float
    min_price: float
    max_price: float
    avg_price: float
    price_change: float
    price_change_percent: float

    @classmethod
    def from_backend(cls, data: Any) -> Optional["PriceSummary"]:
        """Accept the backend summary only when every figure is present."""
        if not isinstance(data, dict):
            return None
        values = {}
        for name in ("start_price", "end_price", "min_price", "max_price", "avg_price"):
            val = _to_float(data.get(name))
            if val is None:
                return None
            values[name] = val
        values["price_change"] = _to_float(data.get("price_change")) or 0.0
        values["price_change_percent"] = _to_float(data.get("price_change_percent")) or 0.0
        return cls(**values)


@dataclass
class PriceSyncStats:
    total: int = 0
    success: int = 0
    failed: int = 0


@dataclass
class CachedHistoryWindow:
    market_hash_name: str
    days: int
    points: List[PriceHistoryPoint] = field(default_factory=list)


@dataclass
class HistoryWindow:
    market_hash_name: str
    days: int
    points: List[PriceHistoryPoint] = field(default_factory=list)
    summary: Optional[PriceSummary] = None
    derived: bool = False

    @property
    def has_data(self) -> bool:
        return self.summary is not None


@dataclass
class SyncResult:
    upload: UploadResult
    price_stats: Optional[PriceSyncStats] = None
    partial: bool = False
    warnings: List[str] = field(default_factory=list)
    items: List[InventoryItem] = field(default_factory=list)
    portfolio: Dict[str, Any] = field(default_factory=dict)
    history: Dict[str, Any] = field(default_factory=dict)
