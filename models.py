"""
SQLite persistence for Aparto state and enrichment caches.

No ORM, just raw sqlite3 in WAL mode so readers keep seeing the previous
committed state while a writer replaces it. One Store instance per
process is built from AppConfig.db_path and injected where needed.

Tables:
  known_ids            listing ids as of the last reconcile
  app_state            small JSON documents (snapshot, last poll, filters)
  push_subscriptions   keyed by sha256(endpoint)
  notifications        bounded history, newest = highest id
  livability_scores    7-day TTL
  commute_cache        no expiry, except failure placeholders
"""

import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from listing_types import (
    CommuteInfo,
    FilterSettings,
    LivabilityScore,
    NotificationRecord,
    PushSubscriptionRecord,
)

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 50
SCORE_TTL = timedelta(days=7)

_LISTINGS_KEY = "properties:latest"
_POLL_TIMESTAMP_KEY = "poll:last_timestamp"
_FILTERS_KEY = "settings:filters"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS known_ids (
        listing_id  INTEGER PRIMARY KEY
    );

    CREATE TABLE IF NOT EXISTS app_state (
        key         TEXT PRIMARY KEY,
        value_json  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS push_subscriptions (
        endpoint_hash TEXT PRIMARY KEY,
        endpoint      TEXT NOT NULL,
        p256dh        TEXT NOT NULL,
        auth          TEXT NOT NULL,
        created_at    TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS notifications (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        record_json TEXT NOT NULL,
        created_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS livability_scores (
        listing_id  INTEGER PRIMARY KEY,
        score_json  TEXT NOT NULL,
        created_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS commute_cache (
        listing_id   INTEGER PRIMARY KEY,
        commute_json TEXT NOT NULL,
        created_at   TEXT NOT NULL,
        expires_at   TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_commute_expires ON commute_cache(expires_at);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    # Handle naive timestamps by assuming UTC
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def endpoint_hash(endpoint: str) -> str:
    """Stable registry key for a push endpoint."""
    return hashlib.sha256(endpoint.encode()).hexdigest()


class Store:
    """Durable state behind the synchronizer, dispatcher and engines."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _get_db(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self):
        """Create tables if they don't exist. Safe to call on every startup."""
        conn = self._get_db()
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Small JSON documents
    # ------------------------------------------------------------------

    def _get_state(self, key: str):
        conn = self._get_db()
        try:
            row = conn.execute(
                "SELECT value_json FROM app_state WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        try:
            return json.loads(row["value_json"])
        except (json.JSONDecodeError, TypeError):
            logger.error("Corrupted app_state entry for %s", key)
            return None

    @staticmethod
    def _put_state(conn, key: str, value) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO app_state (key, value_json, updated_at)
               VALUES (?, ?, ?)""",
            (key, json.dumps(value, default=str), _now().isoformat()),
        )

    # ------------------------------------------------------------------
    # Known ids and the listing snapshot
    # ------------------------------------------------------------------

    def get_known_ids(self) -> Set[int]:
        conn = self._get_db()
        try:
            rows = conn.execute("SELECT listing_id FROM known_ids").fetchall()
        finally:
            conn.close()
        return {row["listing_id"] for row in rows}

    def replace_known_ids(self, ids: Iterable[int]) -> None:
        """Swap the known-id set for exactly ``ids`` in one transaction."""
        self.replace_snapshot(ids, listings=None, timestamp=None)

    def replace_snapshot(
        self,
        ids: Iterable[int],
        listings: Optional[List[dict]],
        timestamp: Optional[str],
    ) -> None:
        """Atomically replace known ids, and optionally the snapshot + timestamp.

        Delete and bulk insert share one IMMEDIATE transaction; WAL readers
        see either the old set or the new one, never an empty interim.
        """
        unique_ids = sorted(set(ids))
        conn = self._get_db()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM known_ids")
            conn.executemany(
                "INSERT INTO known_ids (listing_id) VALUES (?)",
                [(i,) for i in unique_ids],
            )
            if listings is not None:
                self._put_state(conn, _LISTINGS_KEY, listings)
            if timestamp is not None:
                self._put_state(conn, _POLL_TIMESTAMP_KEY, timestamp)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_cached_listings(self) -> List[dict]:
        return self._get_state(_LISTINGS_KEY) or []

    def get_last_poll_timestamp(self) -> Optional[str]:
        return self._get_state(_POLL_TIMESTAMP_KEY)

    # ------------------------------------------------------------------
    # Filter settings
    # ------------------------------------------------------------------

    def get_filter_settings(self) -> FilterSettings:
        data = self._get_state(_FILTERS_KEY)
        if not data:
            return FilterSettings()
        return FilterSettings.from_dict(data)

    def set_filter_settings(self, settings: FilterSettings) -> None:
        conn = self._get_db()
        try:
            self._put_state(conn, _FILTERS_KEY, settings.to_dict())
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Push subscriptions
    # ------------------------------------------------------------------

    def add_subscription(self, sub: PushSubscriptionRecord) -> None:
        """Register (or re-register) a subscription; idempotent per endpoint."""
        conn = self._get_db()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO push_subscriptions
                   (endpoint_hash, endpoint, p256dh, auth, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (endpoint_hash(sub.endpoint), sub.endpoint, sub.p256dh, sub.auth,
                 sub.created_at or _now().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def remove_subscription(self, endpoint: str) -> bool:
        conn = self._get_db()
        try:
            cur = conn.execute(
                "DELETE FROM push_subscriptions WHERE endpoint_hash = ?",
                (endpoint_hash(endpoint),),
            )
            changed = cur.rowcount
            conn.commit()
        finally:
            conn.close()
        return changed > 0

    def get_all_subscriptions(self) -> List[PushSubscriptionRecord]:
        conn = self._get_db()
        try:
            rows = conn.execute(
                "SELECT * FROM push_subscriptions ORDER BY created_at"
            ).fetchall()
        finally:
            conn.close()
        return [
            PushSubscriptionRecord(
                endpoint=row["endpoint"],
                p256dh=row["p256dh"],
                auth=row["auth"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Notification history
    # ------------------------------------------------------------------

    def add_notifications(self, records: List[NotificationRecord]) -> None:
        """Append records and trim the log to the newest MAX_NOTIFICATIONS."""
        if not records:
            return
        now = _now().isoformat()
        conn = self._get_db()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                "INSERT INTO notifications (record_json, created_at) VALUES (?, ?)",
                [(json.dumps(r.to_dict()), now) for r in records],
            )
            conn.execute(
                """DELETE FROM notifications WHERE id NOT IN (
                       SELECT id FROM notifications ORDER BY id DESC LIMIT ?
                   )""",
                (MAX_NOTIFICATIONS,),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_notification_history(self, limit: int = MAX_NOTIFICATIONS) -> List[NotificationRecord]:
        """Newest first."""
        conn = self._get_db()
        try:
            rows = conn.execute(
                "SELECT record_json FROM notifications ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        out = []
        for row in rows:
            try:
                out.append(NotificationRecord.from_dict(json.loads(row["record_json"])))
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning("Skipping corrupted notification history row")
        return out

    # ------------------------------------------------------------------
    # Livability scores (7-day TTL)
    # ------------------------------------------------------------------

    def get_cached_score(self, listing_id: int) -> Optional[LivabilityScore]:
        return self.get_cached_scores([listing_id]).get(listing_id)

    def get_cached_scores(self, listing_ids: List[int]) -> Dict[int, LivabilityScore]:
        """Unexpired cached scores for the given ids. Cache errors never raise."""
        if not listing_ids:
            return {}
        placeholders = ",".join("?" for _ in listing_ids)
        try:
            conn = self._get_db()
            try:
                rows = conn.execute(
                    f"""SELECT listing_id, score_json, created_at FROM livability_scores
                        WHERE listing_id IN ({placeholders})""",
                    list(listing_ids),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.warning("Score cache lookup failed", exc_info=True)
            return {}

        now = _now()
        scores = {}
        for row in rows:
            created = _parse_ts(row["created_at"])
            if created is not None and now - created > SCORE_TTL:
                continue  # Expired
            try:
                scores[row["listing_id"]] = LivabilityScore.from_dict(
                    json.loads(row["score_json"])
                )
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning("Corrupted score cache entry for %s", row["listing_id"])
        return scores

    def set_cached_score(self, score: LivabilityScore) -> None:
        conn = self._get_db()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO livability_scores (listing_id, score_json, created_at)
                   VALUES (?, ?, ?)""",
                (score.property_id, json.dumps(score.to_dict()), _now().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Commute cache
    # ------------------------------------------------------------------

    def get_cached_commute(self, listing_id: int) -> Optional[CommuteInfo]:
        return self.get_cached_commutes([listing_id]).get(listing_id)

    def get_cached_commutes(self, listing_ids: List[int]) -> Dict[int, CommuteInfo]:
        if not listing_ids:
            return {}
        placeholders = ",".join("?" for _ in listing_ids)
        try:
            conn = self._get_db()
            try:
                rows = conn.execute(
                    f"""SELECT listing_id, commute_json, expires_at FROM commute_cache
                        WHERE listing_id IN ({placeholders})""",
                    list(listing_ids),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.warning("Commute cache lookup failed", exc_info=True)
            return {}

        now = _now()
        commutes = {}
        for row in rows:
            expires = _parse_ts(row["expires_at"])
            if expires is not None and expires <= now:
                continue
            try:
                commutes[row["listing_id"]] = CommuteInfo.from_dict(
                    json.loads(row["commute_json"])
                )
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning("Corrupted commute cache entry for %s", row["listing_id"])
        return commutes

    def set_cached_commute(self, commute: CommuteInfo, ttl: Optional[timedelta] = None) -> None:
        """Cache a commute. ``ttl=None`` keeps it until overwritten."""
        now = _now()
        expires_at = (now + ttl).isoformat() if ttl is not None else None
        conn = self._get_db()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO commute_cache
                   (listing_id, commute_json, created_at, expires_at)
                   VALUES (?, ?, ?, ?)""",
                (commute.property_id, json.dumps(commute.to_dict()), now.isoformat(), expires_at),
            )
            conn.commit()
        finally:
            conn.close()

    def flush_commutes(self) -> int:
        """Delete every cached commute. Returns the number removed."""
        conn = self._get_db()
        try:
            cur = conn.execute("DELETE FROM commute_cache")
            count = cur.rowcount
            conn.commit()
        finally:
            conn.close()
        return count
