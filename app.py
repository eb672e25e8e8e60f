import hmac
import math
import os
import logging
import uuid
from typing import List, Optional

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from commute import CommuteEngine, CommuteInput, RoutesClient
from config import load_config
from errors import AppError, MalformedInput, UpstreamUnavailable, ValidationError
from listing_types import PushSubscriptionRecord
from livability import DEFAULT_STATION_MINUTES, LivabilityEngine, ScoreInput
from models import Store
from overpass_http import OverpassHTTPClient
from pipeline import create_pipeline

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    from errors import EnrichmentUnavailable

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # e-housing down or returned a page we could not parse
            if exc_type is not None and issubclass(exc_type, (UpstreamUnavailable, MalformedInput)):
                sentry_sdk.add_breadcrumb(category="ehousing", message=msg, level="warning")
                return None
            # Overpass mirrors exhausted / Routes API refused
            if exc_type is not None and issubclass(exc_type, EnrichmentUnavailable):
                sentry_sdk.add_breadcrumb(category="enrichment", message=msg, level="warning")
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="http", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

config = load_config()

app = Flask(__name__)

# Proxy fix: the PaaS router sets X-Forwarded-For; rewrite remote_addr so
# Flask-Limiter and logging see the real client IP.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: the enrichment endpoints fan out to Overpass and Google.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[config.rate_limit_default],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Collaborators: built once per process from AppConfig
# ---------------------------------------------------------------------------
store = Store(config.db_path)
pipeline = create_pipeline(config, store=store)
livability = LivabilityEngine(
    store, OverpassHTTPClient(mirrors=config.overpass_mirrors, timeout=config.http_timeout)
)
commute = CommuteEngine(
    store,
    RoutesClient(
        config.google_maps_api_key,
        destination=config.commute_destination,
        timeout=config.http_timeout,
    ),
)

# ---------------------------------------------------------------------------
# Startup: warn immediately if expected config is missing
# ---------------------------------------------------------------------------
for _key in config.missing_keys():
    logger.warning("%s is not set; the features that need it are disabled.", _key)


@app.before_request
def _set_request_context():
    """Every request gets a short id for log correlation."""
    g.request_id = uuid.uuid4().hex[:10]


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _parse_properties(raw: Optional[str], with_walk: bool) -> List:
    """Parse ``id:lat:lng[:walk],...``. Raises ValidationError."""
    if not raw:
        raise ValidationError("Missing properties parameter")
    items = []
    for entry in raw.split(","):
        parts = entry.split(":")
        try:
            prop_id = int(parts[0])
            lat = float(parts[1])
            lng = float(parts[2])
        except (IndexError, ValueError):
            raise ValidationError("Invalid property format")
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise ValidationError("Invalid property format")
        if with_walk:
            try:
                walk = int(parts[3]) if len(parts) > 3 else 0
            except ValueError:
                walk = 0
            items.append(ScoreInput(prop_id, lat, lng, walk or DEFAULT_STATION_MINUTES))
        else:
            items.append(CommuteInput(prop_id, lat, lng))
    return items


def _poll_authorized() -> bool:
    if not config.poll_secret:
        return True
    expected = f"Bearer {config.poll_secret}"
    return hmac.compare_digest(request.headers.get("Authorization", ""), expected)


# ---------------------------------------------------------------------------
# Listing cycle
# ---------------------------------------------------------------------------

@app.route("/api/poll", methods=["POST"])
@limiter.exempt
def poll():
    """Scheduled poll cycle. Called by an external scheduler or cron."""
    if not _poll_authorized():
        return _error("Unauthorized", 401)
    try:
        result = pipeline.poll(trace_id=g.request_id)
    except (UpstreamUnavailable, MalformedInput) as e:
        logger.warning("[poll] Upstream failure: %s", e)
        return jsonify(pipeline.failed_result(e).to_dict()), 502
    except Exception as e:
        logger.exception("[poll] Poll cycle failed")
        return jsonify(pipeline.failed_result(e).to_dict()), 500
    return jsonify(result.to_dict())


@app.route("/api/refresh", methods=["POST"])
def refresh():
    """Manual refresh: fetch and reconcile, never notifies."""
    try:
        return jsonify(pipeline.refresh())
    except AppError as e:
        logger.warning("[refresh] Failed: %s", e)
        return _error(str(e), e.status_code)
    except Exception:
        logger.exception("[refresh] Failed")
        return _error("Failed to refresh listings", 500)


@app.route("/api/listings")
def listings():
    """Cached snapshot, last poll time and notification history."""
    return jsonify(pipeline.listings_view())


@app.route("/api/settings", methods=["GET"])
def get_settings():
    return jsonify(store.get_filter_settings().to_dict())


@app.route("/api/settings", methods=["POST"])
def update_settings():
    data = request.get_json(silent=True)
    if data is None:
        return _error("Request body must be JSON", 400)
    try:
        return jsonify(pipeline.update_settings(data))
    except AppError as e:
        if e.status_code >= 500:
            logger.warning("[settings] Refetch failed: %s", e)
        return _error(str(e), e.status_code)
    except Exception:
        logger.exception("[settings] Failed to update settings")
        return _error("Failed to update settings", 500)


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

@app.route("/api/scores")
def scores():
    """GET /api/scores?properties=id:lat:lng:walkMin,..."""
    try:
        items = _parse_properties(request.args.get("properties"), with_walk=True)
    except ValidationError as e:
        return _error(str(e), 400)
    try:
        return jsonify(livability.scores_for(items))
    except Exception:
        logger.exception("[scores] Error")
        return _error("Failed to compute scores", 500)


@app.route("/api/commute")
def commutes():
    """GET /api/commute?properties=id:lat:lng,...  or  ?flush=true"""
    if request.args.get("flush") == "true":
        flushed = commute.flush()
        return jsonify({
            "flushed": flushed,
            "message": f"Cleared {flushed} commute cache entries",
        })
    try:
        items = _parse_properties(request.args.get("properties"), with_walk=False)
    except ValidationError as e:
        return _error(str(e), 400)
    try:
        return jsonify(commute.commutes_for(items))
    except Exception:
        logger.exception("[commute] Error")
        return _error("Failed to compute commutes", 500)


# ---------------------------------------------------------------------------
# Push subscriptions
# ---------------------------------------------------------------------------

@app.route("/api/subscribe", methods=["POST"])
def subscribe():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("Invalid subscription data", 400)
    try:
        record = PushSubscriptionRecord.from_dict(data.get("subscription"))
    except ValidationError as e:
        return _error(str(e), 400)

    if data.get("action") == "unsubscribe":
        store.remove_subscription(record.endpoint)
        return jsonify({"success": True, "action": "unsubscribed"})

    store.add_subscription(record)
    return jsonify({"success": True, "action": "subscribed"})


@app.route("/api/push/public-key")
def push_public_key():
    if not config.vapid.public_key:
        return _error("Push notifications are not configured", 503)
    return jsonify({"publicKey": config.vapid.public_key})


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    missing = config.missing_keys()
    return jsonify({
        "status": "ok" if not missing else "degraded",
        "missing_keys": missing,
    }), 200 if not missing else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("Not found", 404)


@app.errorhandler(500)
def internal_error(e):
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
store.init_db()

if os.environ.get("START_POLLER") == "1":
    try:
        from worker import start_poller
        start_poller(pipeline, config.poll_interval_seconds)
    except Exception:
        logger.exception("Failed to start poll thread via START_POLLER=1")

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
