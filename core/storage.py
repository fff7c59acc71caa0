# core/storage.py
import datetime
import json
import os
import sqlite3
from typing import Any, Callable, Dict, Optional, Sequence

import pytz

from .logger import get_logger

logger = get_logger(__name__)

DB_PATH = os.getenv("DB_PATH", "/data/portfolio_views.sqlite3")
# Portfolio views are considered fresh for five minutes
VIEW_TTL_SECONDS = int(os.getenv("VIEW_TTL_SECONDS", "300"))


def now_utc() -> datetime.datetime:
    return datetime.datetime.now(tz=pytz.UTC)


def view_key(*parts: Any) -> str:
    """Stable key for a cached view, e.g. view_key('portfolio', steam_id)."""
    return ":".join(str(p) for p in parts)


class ViewCache:
    """
    SQLite-backed cache of backend read views (portfolio, portfolio history).

    Entries expire after ``ttl_seconds`` or when invalidated.
    """

    def __init__(self, db_path: str = DB_PATH, ttl_seconds: int = VIEW_TTL_SECONDS):
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self.ensure_db()

    def _connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        return sqlite3.connect(self.db_path)

    def ensure_db(self) -> None:
        with self._connect() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS views (
                    key TEXT PRIMARY KEY,
                    payload TEXT,
                    fetched_at TEXT,
                    stale INTEGER DEFAULT 0
                )
            """
            )
            con.commit()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the cached payload if present, fresh and not invalidated."""
        with self._connect() as con:
            cur = con.cursor()
            cur.execute("SELECT payload, fetched_at, stale FROM views WHERE key=?", (key,))
            row = cur.fetchone()
        if row is None:
            return None

        payload, fetched_at, stale = row
        if stale:
            return None
        age = (now_utc() - datetime.datetime.fromisoformat(fetched_at)).total_seconds()
        if age > self.ttl_seconds:
            logger.debug("View %s is %.0fs old; treating as stale", key, age)
            return None
        return json.loads(payload)

    def put(self, key: str, payload: Dict[str, Any]) -> None:
        with self._connect() as con:
            cur = con.cursor()
            cur.execute(
                """
                INSERT INTO views (key, payload, fetched_at, stale)
                VALUES (?,?,?,0)
                ON CONFLICT(key) DO UPDATE SET
                    payload=excluded.payload,
                    fetched_at=excluded.fetched_at,
                    stale=0
            """,
                (key, json.dumps(payload), now_utc().isoformat()),
            )
            con.commit()

    def invalidate(self, keys: Sequence[str]) -> int:
        """Mark views stale. Returns how many cached rows were affected."""
        if not keys:
            return 0
        with self._connect() as con:
            cur = con.cursor()
            cur.executemany("UPDATE views SET stale=1 WHERE key=?", [(k,) for k in keys])
            con.commit()
            affected = cur.rowcount
        logger.debug("Invalidated views %s", list(keys))
        return affected

    def get_or_fetch(self, key: str, fetch: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        cached = self.get(key)
        if cached is not None:
            return cached
        payload = fetch()
        self.put(key, payload)
        return payload
