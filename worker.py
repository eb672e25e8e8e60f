"""
Background poll thread.

Runs Pipeline.poll() every POLL_INTERVAL_SECONDS in a daemon thread, one
per process. Started from the gunicorn post_fork hook, or from app.py when
START_POLLER=1 (local development). Deployments that use an external
scheduler leave both off and call POST /api/poll instead.

A failed cycle is logged (and sent to Sentry when configured) and the loop
carries on; the next cycle is the retry. Supports graceful shutdown via a
stop event.
"""

import logging
import os
import threading

from errors import AppError

logger = logging.getLogger(__name__)

# Minimum gap between cycles, whatever the configuration says (seconds)
MIN_INTERVAL = 30.0

# Stop event: set by the main process to signal the poll thread to exit
_stop_event = threading.Event()
_poller_thread = None


def _run_cycle(pipeline) -> None:
    try:
        result = pipeline.poll()
        logger.info(
            "[worker] Poll complete: %d listings, %d new",
            result.total_listings, result.new_listings,
        )
    except AppError as e:
        # Upstream trouble is expected now and then; no stack trace needed
        logger.warning("[worker] Poll failed: %s", e)
    except Exception as e:
        logger.exception("[worker] Unhandled error in poll cycle")
        if os.environ.get("SENTRY_DSN"):
            import sentry_sdk
            sentry_sdk.capture_exception(e)


def _poller_loop(pipeline, interval: float) -> None:
    """Loop: run one cycle, wait, repeat until stop event is set."""
    logger.info("[worker] Poll thread started (every %ds)", interval)
    while not _stop_event.is_set():
        _run_cycle(pipeline)
        _stop_event.wait(timeout=interval)
    logger.info("[worker] Poll thread stopped")


def start_poller(pipeline, interval: float) -> bool:
    """
    Start the background poll thread. Safe to call from the main process
    or from a gunicorn post_fork hook. Only one thread is started per process.

    Returns False (and starts nothing) when interval is not positive.
    """
    global _poller_thread
    if interval <= 0:
        logger.info("[worker] Poll interval not set; scheduled polling disabled")
        return False
    if _poller_thread is not None and _poller_thread.is_alive():
        return True
    interval = max(float(interval), MIN_INTERVAL)
    # Ensure DB tables exist in this process before the thread starts.
    pipeline.store.init_db()
    _stop_event.clear()
    _poller_thread = threading.Thread(
        target=_poller_loop, args=(pipeline, interval), daemon=True
    )
    _poller_thread.start()
    return True


def stop_poller() -> None:
    """Signal the poll thread to stop (for tests or graceful shutdown)."""
    _stop_event.set()
