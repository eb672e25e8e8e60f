"""
Gunicorn config. Starts the scheduled poll thread in each worker process
(post_fork) when POLL_INTERVAL_SECONDS is set. Run with --workers 1 when
polling in-process; every worker would otherwise poll on its own.

when_ready hook runs a post-deploy smoke test against localhost once the
server is accepting connections.
"""

import logging
import os
import threading


def when_ready(server):
    """Run smoke test in a background thread once gunicorn is listening."""
    port = os.environ.get("PORT", "8000")
    base_url = f"http://127.0.0.1:{port}"

    def _run_smoke():
        import time
        time.sleep(2)  # brief grace period for workers to finish forking
        logger = logging.getLogger("gunicorn.error")
        try:
            from smoke_test import run_tests
            logger.info("Post-deploy smoke test starting against %s", base_url)
            ok = run_tests(base_url)
            if ok:
                logger.info("Post-deploy smoke test PASSED")
            else:
                logger.error("Post-deploy smoke test FAILED")
        except Exception:
            logger.exception("Post-deploy smoke test crashed")

    t = threading.Thread(target=_run_smoke, daemon=True)
    t.start()


def post_fork(server, worker):
    """Start the poll thread in this gunicorn worker process."""
    try:
        from app import config, pipeline
        from worker import start_poller
        start_poller(pipeline, config.poll_interval_seconds)
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to start poll thread: %s", e)
