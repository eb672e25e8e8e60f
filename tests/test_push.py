"""Unit tests for push.py: payload building, fan-out and pruning."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from pywebpush import WebPushException

from config import VapidConfig
from listing_types import PushSubscriptionRecord
from models import MAX_NOTIFICATIONS
from push import PushDispatcher, build_payload, format_listing_summary

VAPID = VapidConfig(public_key="pub", private_key="priv", subject="mailto:test@example.com")


def _sub(n):
    return PushSubscriptionRecord(
        endpoint=f"https://push.example.com/{n}", p256dh=f"p{n}", auth=f"a{n}"
    )


def _gone(status=410):
    resp = MagicMock()
    resp.status_code = status
    return WebPushException("Push failed", response=resp)


# =========================================================================
# Payload
# =========================================================================

class TestPayload:
    def test_single_listing(self, make_listing):
        listing = make_listing(1, key_money=0, security_deposit=0)
        payload = build_payload([listing])

        assert payload["title"] == "New listing: Residence 1"
        assert payload["url"] == listing.url
        assert payload["propertyCount"] == 1
        assert "¥250,000/mo" in payload["body"]
        assert "Azabu-juban 4min" in payload["body"]
        assert "No key money" in payload["body"]
        assert "No deposit" in payload["body"]

    def test_summary_omits_costs_when_charged(self, make_listing):
        summary = format_listing_summary(make_listing(1, key_money=100000))
        assert "No key money" not in summary
        assert "55.5m²" in summary

    def test_many_listings_share_one_payload(self, make_listing):
        listings = [make_listing(i, rent_amount=200000 + i) for i in range(5)]
        payload = build_payload(listings)

        assert payload["title"] == "5 new listings found"
        assert payload["propertyCount"] == 5
        assert payload["url"] == "/"
        assert payload["body"].count("\n") == 2  # first three only
        assert "Residence 0 - ¥200,000" in payload["body"]


# =========================================================================
# Dispatch
# =========================================================================

class TestNotify:
    def test_empty_is_noop(self, store):
        with patch("push.webpush") as mock_push:
            assert PushDispatcher(store, VAPID).notify([]) == []
        mock_push.assert_not_called()
        assert store.get_notification_history() == []

    def test_one_payload_per_cycle(self, store, make_listing):
        store.add_subscription(_sub(1))
        store.add_subscription(_sub(2))
        listings = [make_listing(1), make_listing(2)]

        with patch("push.webpush") as mock_push:
            records = PushDispatcher(store, VAPID).notify(listings)

        assert len(records) == 2
        assert mock_push.call_count == 2
        payloads = {c.kwargs["data"] for c in mock_push.call_args_list}
        assert len(payloads) == 1
        assert json.loads(payloads.pop())["title"] == "2 new listings found"
        for c in mock_push.call_args_list:
            assert c.kwargs["vapid_private_key"] == "priv"
            assert c.kwargs["vapid_claims"] == {"sub": "mailto:test@example.com"}

    def test_gone_endpoint_pruned_others_still_attempted(self, store, make_listing):
        for n in (1, 2, 3):
            store.add_subscription(_sub(n))

        def _fake_webpush(subscription_info, **kwargs):
            if subscription_info["endpoint"].endswith("/2"):
                raise _gone(410)
            return MagicMock(status_code=201)

        with patch("push.webpush", side_effect=_fake_webpush) as mock_push:
            PushDispatcher(store, VAPID).notify([make_listing(1)])

        assert mock_push.call_count == 3
        remaining = {s.endpoint for s in store.get_all_subscriptions()}
        assert remaining == {"https://push.example.com/1", "https://push.example.com/3"}

    def test_transient_failure_keeps_subscription(self, store, make_listing):
        store.add_subscription(_sub(1))
        with patch("push.webpush", side_effect=_gone(500)):
            records = PushDispatcher(store, VAPID).notify([make_listing(1)])

        assert len(records) == 1
        assert len(store.get_all_subscriptions()) == 1

    def test_unexpected_error_does_not_raise(self, store, make_listing):
        store.add_subscription(_sub(1))
        with patch("push.webpush", side_effect=RuntimeError("boom")):
            PushDispatcher(store, VAPID).notify([make_listing(1)])
        assert len(store.get_all_subscriptions()) == 1

    def test_history_recorded_without_vapid(self, store, make_listing):
        store.add_subscription(_sub(1))
        with patch("push.webpush") as mock_push:
            PushDispatcher(store, VapidConfig()).notify([make_listing(7)])

        mock_push.assert_not_called()
        assert [r.property_id for r in store.get_notification_history()] == [7]

    def test_history_bounded(self, store, make_listing):
        dispatcher = PushDispatcher(store, VAPID)
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        with patch("push.webpush"):
            dispatcher.notify([make_listing(i) for i in range(30)], now=now)
            dispatcher.notify([make_listing(i) for i in range(30, 60)], now=now)

        history = store.get_notification_history()
        assert len(history) == MAX_NOTIFICATIONS
        assert history[0].property_id == 59
