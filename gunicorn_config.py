"""
Gunicorn config.

when_ready hook runs a post-deploy smoke test against localhost once the
server is accepting connections.  The free-usage counter and session
store live in SQLite, so workers share no in-process state; only the
rate limiter is per-process.
"""

import logging
import os
import threading

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
# Pro analyses wait on the narrative service; leave headroom over its timeout.
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "60"))


def when_ready(server):
    """Run smoke test in a background thread once gunicorn is listening."""
    if os.environ.get("SMOKE_ON_START", "1") != "1":
        return
    port = os.environ.get("PORT", "8000")
    base_url = f"http://127.0.0.1:{port}"

    def _run_smoke():
        import time
        time.sleep(2)  # brief grace period for workers to finish forking
        logger = logging.getLogger("gunicorn.error")
        try:
            from smoke_test import run_tests
            logger.info("Post-deploy smoke test starting against %s", base_url)
            if run_tests(base_url):
                logger.info("Post-deploy smoke test PASSED")
            else:
                logger.error("Post-deploy smoke test FAILED")
        except Exception:
            logger.exception("Post-deploy smoke test crashed")

    t = threading.Thread(target=_run_smoke, daemon=True)
    t.start()
