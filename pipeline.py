"""
Cycle orchestration: poll, manual refresh and settings change.

    poll     fetch -> diff -> dispatch (only once seeded) -> reconcile
    refresh  fetch -> reconcile, never dispatches
    settings validate -> persist -> forget known ids -> fetch -> reconcile

Cycles are single-flight by convention and not locked against each other;
the atomic reconcile means a concurrent cycle can only ever lose a write,
never leave a half-replaced known-id set behind.

Each poll runs under its own TraceContext so the cycle logs one summary
line with stage timings and outbound calls.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from ap_trace import TraceContext, clear_trace, set_trace
from config import AppConfig
from ehousing import ListingFetcher, build_search_url
from listing_types import FilterSettings, PollResult, utc_now_iso
from models import Store
from push import PushDispatcher
from sync import StateSynchronizer

logger = logging.getLogger(__name__)


class Pipeline:
    def __init__(
        self,
        store: Store,
        fetcher: ListingFetcher,
        synchronizer: StateSynchronizer,
        dispatcher: PushDispatcher,
    ):
        self.store = store
        self.fetcher = fetcher
        self.synchronizer = synchronizer
        self.dispatcher = dispatcher

    def poll(self, trace_id: Optional[str] = None) -> PollResult:
        """Run one poll cycle. Errors propagate; state is untouched on failure.

        The first cycle against an empty known-id set only seeds state:
        every listing counts as new but nothing is dispatched.
        """
        trace = TraceContext(trace_id=trace_id or f"poll-{uuid.uuid4().hex[:8]}")
        set_trace(trace)
        try:
            settings = self.store.get_filter_settings()
            with trace.stage("fetch"):
                page = self.fetcher.fetch(settings)
            listings = page.listings

            with trace.stage("diff"):
                seeded = self.synchronizer.is_seeded()
                new = self.synchronizer.diff_new(listings)

            if new and seeded:
                with trace.stage("dispatch"):
                    self.dispatcher.notify(new)
            elif new:
                logger.info("[poll] First run: seeding %d known listings", len(new))

            with trace.stage("sync"):
                timestamp = self.synchronizer.reconcile(listings)

            logger.info(
                "[poll] %d listings, %d new%s",
                len(listings), len(new), "" if seeded else " (seeded)",
            )
            return PollResult(
                success=True,
                timestamp=timestamp,
                total_listings=len(listings),
                new_listings=len(new),
                new_properties=new,
                seeded=not seeded,
            )
        finally:
            trace.log_summary()
            clear_trace()

    def refresh(self) -> Dict[str, Any]:
        """Fetch and reconcile without notifying anyone."""
        page = self.fetcher.fetch(self.store.get_filter_settings())
        timestamp = self.synchronizer.reconcile(page.listings)
        return {
            "listings": [p.to_dict() for p in page.listings],
            "lastPoll": timestamp,
            "notifications": self._history(),
            "count": len(page.listings),
        }

    def update_settings(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Persist new filters and silently reseed against them.

        Raises ValidationError before anything is written.
        """
        settings = FilterSettings.from_dict(data)
        self.store.set_filter_settings(settings)
        self.synchronizer.reset()
        logger.info("[settings] Filters updated; known listings cleared")

        page = self.fetcher.fetch(settings)
        self.synchronizer.reconcile(page.listings)
        return {
            "success": True,
            "filters": settings.to_dict(),
            "listings": [p.to_dict() for p in page.listings],
            "count": len(page.listings),
        }

    def listings_view(self) -> Dict[str, Any]:
        """Cached snapshot for the UI; no upstream traffic."""
        listings = self.store.get_cached_listings()
        return {
            "listings": listings,
            "lastPoll": self.store.get_last_poll_timestamp(),
            "notifications": self._history(),
            "count": len(listings),
            "searchUrl": build_search_url(self.store.get_filter_settings()),
        }

    def failed_result(self, error: Exception) -> PollResult:
        return PollResult(success=False, timestamp=utc_now_iso(), error=str(error))

    def _history(self):
        return [n.to_dict() for n in self.store.get_notification_history()]


def create_pipeline(config: AppConfig, store: Optional[Store] = None) -> Pipeline:
    """Wire the production collaborators from one AppConfig."""
    store = store or Store(config.db_path)
    return Pipeline(
        store=store,
        fetcher=ListingFetcher(timeout=config.http_timeout),
        synchronizer=StateSynchronizer(store),
        dispatcher=PushDispatcher(store, config.vapid, timeout=config.http_timeout),
    )
