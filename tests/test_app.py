"""Route tests for app.py via the Flask test client.

Outbound collaborators (fetcher, Overpass client, Routes client) are
replaced with mocks on the module-level instances.
"""

import dataclasses
from unittest.mock import MagicMock, patch

import pytest

import app as app_module
from errors import EnrichmentUnavailable, MalformedInput, UpstreamUnavailable
from listing_types import ParsedPage


@pytest.fixture()
def fetcher(make_listing):
    mock = MagicMock()
    mock.fetch.return_value = ParsedPage(listings=[make_listing(1), make_listing(2)])
    with patch.object(app_module.pipeline, "fetcher", mock):
        yield mock


def _sub_body(endpoint="https://push.example.com/xyz", action=None):
    body = {"subscription": {"endpoint": endpoint, "keys": {"p256dh": "p", "auth": "a"}}}
    if action:
        body["action"] = action
    return body


# =========================================================================
# Health / misc
# =========================================================================

class TestHealth:
    def test_healthz_ok(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_healthz_degraded(self, client):
        degraded = dataclasses.replace(app_module.config, google_maps_api_key="")
        with patch.object(app_module, "config", degraded):
            resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["GOOGLE_MAPS_API_KEY"]

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Not found"}

    def test_public_key(self, client):
        resp = client.get("/api/push/public-key")
        assert resp.get_json() == {"publicKey": app_module.config.vapid.public_key}


# =========================================================================
# Poll
# =========================================================================

class TestPoll:
    def test_first_poll_seeds(self, client, fetcher):
        resp = client.post("/api/poll")
        data = resp.get_json()

        assert resp.status_code == 200
        assert data["success"] is True
        assert data["totalListings"] == 2
        assert data["seeded"] is True

    def test_secret_required_when_configured(self, client, fetcher):
        secured = dataclasses.replace(app_module.config, poll_secret="s3cret")
        with patch.object(app_module, "config", secured):
            assert client.post("/api/poll").status_code == 401
            assert client.post(
                "/api/poll", headers={"Authorization": "Bearer wrong"}
            ).status_code == 401
            ok = client.post("/api/poll", headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200

    @pytest.mark.parametrize("exc", [
        UpstreamUnavailable("Failed to fetch e-housing: 503 Service Unavailable", status=503),
        MalformedInput("No RSC flight data found in HTML"),
    ])
    def test_upstream_failure_is_502(self, client, fetcher, exc):
        fetcher.fetch.side_effect = exc
        resp = client.post("/api/poll")
        data = resp.get_json()

        assert resp.status_code == 502
        assert data["success"] is False
        assert data["error"] == str(exc)

    def test_unexpected_failure_is_500(self, client, fetcher):
        fetcher.fetch.side_effect = RuntimeError("boom")
        resp = client.post("/api/poll")
        assert resp.status_code == 500
        assert resp.get_json()["success"] is False


# =========================================================================
# Refresh / listings / settings
# =========================================================================

class TestListingsAndSettings:
    def test_refresh(self, client, fetcher):
        resp = client.post("/api/refresh")
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["count"] == 2
        assert data["lastPoll"]
        assert data["notifications"] == []

    def test_refresh_upstream_error(self, client, fetcher):
        fetcher.fetch.side_effect = UpstreamUnavailable("down")
        resp = client.post("/api/refresh")
        assert resp.status_code == 502
        assert resp.get_json() == {"error": "down"}

    def test_listings_after_refresh(self, client, fetcher):
        client.post("/api/refresh")
        data = client.get("/api/listings").get_json()
        assert data["count"] == 2
        assert [p["id"] for p in data["listings"]] == [1, 2]
        assert "wards=" in data["searchUrl"]

    def test_get_settings_defaults(self, client):
        data = client.get("/api/settings").get_json()
        assert data["wards"] == [1, 2, 4, 5, 9]
        assert data["area_to"] is None

    def test_post_settings(self, client, fetcher):
        resp = client.post("/api/settings", json={"wards": [2, 9], "price_to": 300000})
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["success"] is True
        assert data["filters"]["wards"] == [2, 9]
        assert data["count"] == 2
        assert client.get("/api/settings").get_json()["price_to"] == 300000

    def test_post_settings_rejects_empty_wards(self, client, fetcher):
        resp = client.post("/api/settings", json={"wards": []})
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "At least one ward must be selected"}
        fetcher.fetch.assert_not_called()

    def test_post_settings_requires_json(self, client):
        resp = client.post("/api/settings", data="wards=1")
        assert resp.status_code == 400


# =========================================================================
# Enrichment
# =========================================================================

class TestScores:
    def test_missing_parameter(self, client):
        resp = client.get("/api/scores")
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Missing properties parameter"}

    def test_bad_format(self, client):
        resp = client.get("/api/scores?properties=abc:1:2")
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid property format"}

    @pytest.mark.parametrize("coords", ["nan:139.72", "35.65:inf", "-inf:139.72"])
    def test_non_finite_coordinates_rejected(self, client, coords):
        resp = client.get(f"/api/scores?properties=1:{coords}:4")
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid property format"}

    def test_scores_computed_then_cached(self, client):
        overpass = MagicMock()
        overpass.query.return_value = {"elements": [{"tags": {"shop": "supermarket"}}]}
        with patch.object(app_module.livability, "client", overpass), \
                patch("livability.time.sleep"):
            first = client.get("/api/scores?properties=1:35.65:139.72:4,2:35.66:139.73").get_json()
            second = client.get("/api/scores?properties=1:35.65:139.72:4").get_json()

        assert (first["cached"], first["computed"]) == (0, 2)
        assert first["scores"]["1"]["station"] == 8
        # walk minutes default to 15 -> station sub-score 2
        assert first["scores"]["2"]["station"] == 2
        assert (second["cached"], second["computed"]) == (1, 0)

    def test_failed_score_is_placeholder(self, client):
        overpass = MagicMock()
        overpass.query.side_effect = EnrichmentUnavailable("All Overpass mirrors failed")
        with patch.object(app_module.livability, "client", overpass):
            data = client.get("/api/scores?properties=5:35.65:139.72:4").get_json()
        assert data["scores"]["5"]["overall"] == 0.0


class TestCommute:
    def test_commutes(self, client):
        routes = MagicMock()
        routes.compute_route.return_value = {
            "duration": "1500s",
            "legs": [{"steps": [{"transitDetails": {}}, {"transitDetails": {}}]}],
        }
        with patch.object(app_module.commute, "client", routes):
            data = client.get("/api/commute?properties=1:35.65:139.72").get_json()

        assert data["computed"] == 1
        assert data["commutes"]["1"]["durationMinutes"] == 25
        assert data["commutes"]["1"]["transferCount"] == 1

    def test_nan_coordinates_rejected(self, client):
        resp = client.get("/api/commute?properties=1:nan:139.72")
        assert resp.status_code == 400

    def test_flush(self, client):
        routes = MagicMock()
        routes.compute_route.return_value = {"duration": "600s", "legs": []}
        with patch.object(app_module.commute, "client", routes):
            client.get("/api/commute?properties=1:35.65:139.72")
        data = client.get("/api/commute?flush=true").get_json()
        assert data["flushed"] == 1

    def test_missing_parameter(self, client):
        assert client.get("/api/commute").status_code == 400


# =========================================================================
# Subscriptions
# =========================================================================

class TestSubscribe:
    def test_subscribe_is_idempotent(self, client):
        for _ in range(2):
            resp = client.post("/api/subscribe", json=_sub_body())
            assert resp.get_json() == {"success": True, "action": "subscribed"}
        assert len(app_module.store.get_all_subscriptions()) == 1

    def test_unsubscribe(self, client):
        client.post("/api/subscribe", json=_sub_body())
        resp = client.post("/api/subscribe", json=_sub_body(action="unsubscribe"))
        assert resp.get_json() == {"success": True, "action": "unsubscribed"}
        assert app_module.store.get_all_subscriptions() == []

    def test_invalid_subscription(self, client):
        resp = client.post("/api/subscribe", json={"subscription": {"endpoint": "x"}})
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid subscription data"}
