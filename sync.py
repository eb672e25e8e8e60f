"""
State synchronizer: new-vs-known diff and atomic reconcile.

The known-id set is fully replaced on every reconcile, never unioned, so
ids from a previous search filter cannot linger. An empty known-id set
means nothing has been seeded yet; callers must not notify on that cycle.
"""

import logging
from typing import List, Optional

from listing_types import Listing, utc_now_iso
from models import Store

logger = logging.getLogger(__name__)


class StateSynchronizer:
    def __init__(self, store: Store):
        self.store = store

    def is_seeded(self) -> bool:
        return bool(self.store.get_known_ids())

    def diff_new(self, current: List[Listing]) -> List[Listing]:
        """Listings in ``current`` whose id is not yet known, in input order."""
        known = self.store.get_known_ids()
        return [listing for listing in current if listing.id not in known]

    def reconcile(self, current: List[Listing], timestamp: Optional[str] = None) -> str:
        """Replace known ids, snapshot and last-synced timestamp in one step.

        Returns the timestamp that was stored.
        """
        timestamp = timestamp or utc_now_iso()
        self.store.replace_snapshot(
            [listing.id for listing in current],
            listings=[listing.to_dict() for listing in current],
            timestamp=timestamp,
        )
        logger.info("[sync] Reconciled %d listings at %s", len(current), timestamp)
        return timestamp

    def reset(self) -> None:
        """Forget every known id (the next reconcile reseeds silently)."""
        self.store.replace_known_ids([])
