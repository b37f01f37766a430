"""
Gunicorn hooks for SiteGrade.

post_fork: every worker process gets its own grading-job thread and raster
health monitor (both are per-process singletons).
when_ready: once the master is listening, the post-deploy smoke test runs
against localhost in a background thread.
"""

import importlib
import logging
import os
import threading
import time

# /api/grading is synchronous; a default-scale run needs well over the
# gunicorn default of 30 s.
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "300"))

_SMOKE_DELAY_SECONDS = 2


def _smoke_test(base_url: str) -> None:
    log = logging.getLogger("gunicorn.error")
    time.sleep(_SMOKE_DELAY_SECONDS)
    try:
        from smoke_test import run_tests
        log.info("[smoke] Running post-deploy checks against %s", base_url)
        if run_tests(base_url):
            log.info("[smoke] All post-deploy checks passed")
        else:
            log.error("[smoke] Post-deploy checks failed")
    except Exception:
        log.exception("[smoke] Post-deploy checks crashed")


def when_ready(server):
    base_url = "http://127.0.0.1:%s" % os.environ.get("PORT", "8000")
    threading.Thread(target=_smoke_test, args=(base_url,), daemon=True).start()


def post_fork(server, worker):
    log = logging.getLogger(__name__)
    for name, starter in (("grading worker", "worker:start_worker"),
                          ("health monitor", "health_monitor:start_monitor")):
        module_name, func_name = starter.split(":")
        try:
            module = importlib.import_module(module_name)
            getattr(module, func_name)()
        except Exception:
            log.exception("Failed to start %s in pid %s", name, worker.pid)
