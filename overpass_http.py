"""
Overpass API HTTP layer with multi-mirror failover.

All Overpass HTTP requests in the application go through this module.
It provides:
- A fixed priority list of mirrors (OVERPASS_MIRRORS overrides the default)
- Up to MAX_ATTEMPTS attempts per mirror, exponential backoff 3s/6s between
  attempts, on 429, HTTP errors, timeouts, non-JSON and error remarks alike
- Fall-through to the next mirror once a mirror's attempts are spent
- EnrichmentUnavailable once every mirror is exhausted
- ap_trace integration for observability

There is no response cache here: callers cache the derived result (the
livability score), which is the source of truth for "already computed".
"""

import logging
import time
from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlparse

import requests

from ap_trace import get_trace
from config import DEFAULT_OVERPASS_MIRRORS
from errors import EnrichmentUnavailable

logger = logging.getLogger(__name__)


class OverpassRateLimitError(Exception):
    """Overpass returned 429 or a rate-limit remark."""

    pass


class OverpassQueryError(Exception):
    """Overpass returned an error status, bad body, or the request failed."""

    pass


def _host(url: str) -> str:
    return urlparse(url).netloc or url


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 30  # seconds
    MAX_ATTEMPTS = 3  # per mirror
    BACKOFF_BASE = 3  # seconds, doubled on each retry

    def __init__(self, mirrors: Optional[Sequence[str]] = None, timeout: Optional[int] = None):
        self.mirrors = tuple(mirrors or DEFAULT_OVERPASS_MIRRORS)
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def query(self, overpass_ql: str, caller: str = "unknown") -> Dict[str, Any]:
        """
        Execute an Overpass QL query, failing over across mirrors.

        Args:
            overpass_ql: The Overpass QL query string.
            caller: Identifier for log and trace attribution.

        Returns:
            Parsed JSON response dict from the first mirror that answers.

        Raises:
            EnrichmentUnavailable: every mirror failed MAX_ATTEMPTS times.
        """
        last_exception: Optional[Exception] = None
        for mirror in self.mirrors:
            for attempt in range(self.MAX_ATTEMPTS):
                if attempt > 0:
                    backoff = self.BACKOFF_BASE * (2 ** (attempt - 1))
                    logger.info(
                        "[overpass] Retry %d/%d on %s after %ds [caller=%s]",
                        attempt, self.MAX_ATTEMPTS - 1, _host(mirror), backoff, caller,
                    )
                    time.sleep(backoff)
                try:
                    return self._do_request(mirror, overpass_ql, caller)
                except (OverpassRateLimitError, OverpassQueryError) as e:
                    last_exception = e
                    logger.warning(
                        "[overpass] Attempt %d/%d on %s failed: %s",
                        attempt + 1, self.MAX_ATTEMPTS, _host(mirror), e,
                    )
            logger.warning("[overpass] Falling back from %s [caller=%s]", _host(mirror), caller)

        raise EnrichmentUnavailable(
            f"All Overpass mirrors failed [caller={caller}]: {last_exception}"
        )

    def _do_request(self, mirror: str, overpass_ql: str, caller: str) -> Dict[str, Any]:
        """Make a single HTTP request to one mirror."""
        host = _host(mirror)
        start = time.monotonic()
        trace = get_trace()

        def _record(status_code: int, provider_status: str = "") -> None:
            if trace:
                trace.record_api_call(
                    service="overpass",
                    endpoint=host,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                )

        # Fresh session per request (no shared state)
        session = requests.Session()
        session.trust_env = False
        try:
            resp = session.post(mirror, data={"data": overpass_ql}, timeout=self.timeout)
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise OverpassQueryError(f"Overpass request timeout after {self.timeout}s on {host}")
        except requests.exceptions.RequestException as e:
            _record(0, "exception")
            raise OverpassQueryError(f"Overpass request failed on {host}: {e}") from e
        finally:
            session.close()

        status_code = resp.status_code
        if status_code == 429:
            _record(429, "rate_limit")
            raise OverpassRateLimitError(f"Rate limited (429) on {host}")
        if status_code >= 400:
            _record(status_code, "http_error")
            raise OverpassQueryError(f"Overpass HTTP {status_code} on {host}")

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status_code}) on {host}"
            )

        # Overpass may put errors in osm3s.remark or top-level remark
        remark = ""
        if isinstance(data, dict):
            osm3s = data.get("osm3s", {}) or {}
            remark = str(osm3s.get("remark") or data.get("remark") or "")
        remark_lower = remark.lower()
        if "too many requests" in remark_lower:
            _record(status_code, "rate_limit")
            raise OverpassRateLimitError(f"Overpass rate limit in response body on {host}")
        if any(ind in remark_lower for ind in ("runtime error", "timed out", "out of memory")):
            _record(status_code, "body_error")
            raise OverpassQueryError(f"Overpass server error in response body: {remark[:100]}")

        _record(status_code)
        return data
