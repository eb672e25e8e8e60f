"""
Web Push delivery for newly detected listings.

One payload is built per cycle and fanned out to every registered
subscription on a small thread pool. Endpoints the push service reports
as gone (404/410) are pruned; anything else is logged and dropped, the
next cycle's notification being the only retry. Notification records are
appended to the bounded history once every attempt has finished.
"""

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional

from pywebpush import WebPushException, webpush

from config import VapidConfig
from listing_types import Listing, NotificationRecord, PushSubscriptionRecord
from models import Store

logger = logging.getLogger(__name__)

GONE_STATUSES = (404, 410)
MAX_SUMMARY_LINES = 3
MAX_WORKERS = 8
PUSH_TTL_SECONDS = 24 * 3600


def _fmt_number(value) -> str:
    """45.0 -> "45", 45.5 -> "45.5"."""
    return f"{value:g}" if isinstance(value, float) else str(value)


def format_listing_summary(listing: Listing) -> str:
    """Detailed one-line summary used when a single listing is new."""
    parts = [
        f"¥{listing.rent_amount:,}/mo",
        f"{listing.bed_rooms} bed",
        f"{_fmt_number(listing.size_sqm)}m²",
        listing.layout,
    ]
    nearest = listing.nearest_station()
    if nearest:
        parts.append(f"{nearest.name} {nearest.walking_minutes}min")
    if listing.key_money == 0:
        parts.append("No key money")
    if listing.security_deposit == 0:
        parts.append("No deposit")
    return " · ".join(p for p in parts if p)


def build_payload(listings: List[Listing]) -> dict:
    """The single shared payload for one dispatch."""
    if len(listings) == 1:
        listing = listings[0]
        return {
            "title": f"New listing: {listing.name}",
            "body": format_listing_summary(listing),
            "url": listing.url,
            "propertyCount": 1,
        }
    return {
        "title": f"{len(listings)} new listings found",
        "body": "\n".join(
            f"{p.name} - ¥{p.rent_amount:,}" for p in listings[:MAX_SUMMARY_LINES]
        ),
        "url": "/",
        "propertyCount": len(listings),
    }


class PushDispatcher:
    def __init__(self, store: Store, vapid: VapidConfig, timeout: int = 20):
        self.store = store
        self.vapid = vapid
        self.timeout = timeout

    def notify(
        self, listings: List[Listing], now: Optional[datetime] = None
    ) -> List[NotificationRecord]:
        """Dispatch one notification covering ``listings`` and record history.

        Returns the records appended to the history, not a delivery count.
        """
        if not listings:
            return []
        now = now or datetime.now(timezone.utc)
        records = [NotificationRecord.for_listing(p, now) for p in listings]
        payload = json.dumps(build_payload(listings), ensure_ascii=False)

        if not self.vapid.enabled:
            logger.warning("[push] VAPID keys not configured; push delivery disabled")
        else:
            subscriptions = self.store.get_all_subscriptions()
            if not subscriptions:
                logger.info("[push] No push subscriptions registered")
            else:
                self._deliver_all(subscriptions, payload)

        self.store.add_notifications(records)
        return records

    def _deliver_all(self, subscriptions: List[PushSubscriptionRecord], payload: str) -> None:
        workers = min(MAX_WORKERS, len(subscriptions))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda s: self._send(s, payload), subscriptions))

        gone = [sub for sub, status in zip(subscriptions, outcomes) if status in GONE_STATUSES]
        for sub in gone:
            logger.info("[push] Removing expired subscription ...%s", sub.endpoint[-20:])
            self.store.remove_subscription(sub.endpoint)

        delivered = sum(1 for status in outcomes if status is not None and status < 300)
        logger.info(
            "[push] Delivered to %d/%d subscriptions (%d pruned)",
            delivered, len(subscriptions), len(gone),
        )

    def _send(self, sub: PushSubscriptionRecord, payload: str) -> Optional[int]:
        """Deliver to one endpoint. Returns the HTTP status, or None if unknown.

        Runs on a pool thread. Never raises.
        """
        start = time.monotonic()
        try:
            resp = webpush(
                subscription_info=sub.subscription_info(),
                data=payload,
                vapid_private_key=self.vapid.private_key,
                # webpush adds aud/exp to the claims dict, so each call gets its own
                vapid_claims={"sub": self.vapid.subject},
                ttl=PUSH_TTL_SECONDS,
                timeout=self.timeout,
            )
        except WebPushException as e:
            status = getattr(e.response, "status_code", None)
            if not isinstance(status, int):
                status = None
            if status not in GONE_STATUSES:
                logger.error("[push] Push notification failed (status=%s): %s", status, e)
            return status
        except Exception as e:
            logger.error("[push] Push notification failed: %s", e)
            return None
        logger.debug(
            "[push] Delivered to ...%s in %dms",
            sub.endpoint[-20:], int((time.monotonic() - start) * 1000),
        )
        status = getattr(resp, "status_code", None)
        return status if isinstance(status, int) else 201
