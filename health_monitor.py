"""
Raster service health for SiteGrade.

Every WMS endpoint in the layer catalog gets one status, built from:
  - passive tracking: a rolling window of real GetFeatureInfo outcomes,
    fed by wms_http through record_call()
  - active probes: a GetCapabilities request per endpoint, run by a daemon
    thread every HEALTH_CHECK_INTERVAL seconds

A probe result younger than two intervals decides the status; otherwise
the passive window does.  "No data at this point" answers count as
successful calls.

Module-level singleton: all callers in this process share one HealthMonitor.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

_PROBE_TIMEOUT = 10

# One area task at the detailed scale is up to 1600 reads against a single
# endpoint; the window covers roughly the last layer's worth.
_WINDOW_SIZE = 500

# Success-rate thresholds.
_HEALTHY_THRESHOLD = 0.95
_DEGRADED_THRESHOLD = 0.70


def endpoint_key(service_url: str) -> str:
    """Status key for a WMS endpoint, e.g. 'wms:data.rivm.nl/geo/alo/wms'."""
    parsed = urlparse(service_url)
    return f"wms:{parsed.netloc}{parsed.path}"


def _catalog_endpoints() -> List[str]:
    # Lazy: layer_config is not needed until the first probe or status read.
    from layer_config import GRADING_POLICY_TABLE

    return sorted({
        layer.service_url
        for layer in GRADING_POLICY_TABLE.layers()
        if layer.service_url
    })


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _classify(success_rate: float) -> str:
    if success_rate >= _HEALTHY_THRESHOLD:
        return "healthy"
    if success_rate >= _DEGRADED_THRESHOLD:
        return "degraded"
    return "down"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class _Outcome:
    timestamp: float
    success: bool
    latency_ms: int
    error: Optional[str] = None


@dataclass
class ProbeResult:
    """One GetCapabilities probe."""
    endpoint: str
    status: str          # "healthy" | "degraded" | "down"
    latency_ms: int
    checked_at: float
    error: Optional[str] = None


@dataclass
class EndpointStatus:
    """Combined view of one endpoint."""
    endpoint: str
    status: str          # "healthy" | "degraded" | "down" | "unknown"
    source: str          # "active" | "passive" | "none"
    latency_ms: int = 0
    last_checked: str = ""
    error: Optional[str] = None
    success_rate: Optional[float] = None
    sample_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status,
            "source": self.source,
            "latency_ms": self.latency_ms,
            "last_checked": self.last_checked,
            "sample_size": self.sample_size,
        }
        if self.success_rate is not None:
            d["success_rate"] = self.success_rate
        if self.error:
            d["error"] = self.error
        return d


# ---------------------------------------------------------------------------
# HealthMonitor
# ---------------------------------------------------------------------------

class HealthMonitor:
    """Thread-safe per-endpoint health tracker."""

    def __init__(self, endpoints: Optional[List[str]] = None) -> None:
        self._lock = threading.Lock()
        self._endpoints = endpoints
        self._windows: Dict[str, Deque[_Outcome]] = {}
        self._probes: Dict[str, ProbeResult] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def endpoints(self) -> List[str]:
        if self._endpoints is None:
            self._endpoints = _catalog_endpoints()
        return self._endpoints

    # ------------------------------------------------------------------
    # Passive tracking
    # ------------------------------------------------------------------

    def record_call(
        self,
        endpoint: str,
        success: bool,
        latency_ms: int,
        error: Optional[str] = None,
    ) -> None:
        outcome = _Outcome(time.time(), success, latency_ms, error)
        with self._lock:
            window = self._windows.get(endpoint)
            if window is None:
                window = self._windows[endpoint] = deque(maxlen=_WINDOW_SIZE)
            window.append(outcome)

    def passive_status(self, endpoint: str) -> EndpointStatus:
        with self._lock:
            window = list(self._windows.get(endpoint, ()))
        if not window:
            return EndpointStatus(endpoint=endpoint, status="unknown", source="none")

        rate = sum(1 for o in window if o.success) / len(window)
        last_error = next(
            (o.error for o in reversed(window) if not o.success and o.error), None
        )
        return EndpointStatus(
            endpoint=endpoint,
            status=_classify(rate),
            source="passive",
            latency_ms=int(sum(o.latency_ms for o in window) / len(window)),
            last_checked=_iso(window[-1].timestamp),
            error=last_error,
            success_rate=round(rate, 3),
            sample_size=len(window),
        )

    # ------------------------------------------------------------------
    # Active probes
    # ------------------------------------------------------------------

    def probe(self, service_url: str) -> ProbeResult:
        """GetCapabilities against one endpoint (no feature query cost)."""
        t0 = time.time()
        status, error = "down", None
        try:
            resp = requests.get(
                service_url,
                params={"SERVICE": "WMS", "REQUEST": "GetCapabilities"},
                timeout=_PROBE_TIMEOUT,
            )
            if resp.status_code == 200:
                status = "healthy"
            else:
                status, error = "degraded", f"HTTP {resp.status_code}"
        except requests.Timeout:
            error = "timeout"
        except requests.RequestException as e:
            error = str(e)
        return ProbeResult(
            endpoint=endpoint_key(service_url),
            status=status,
            latency_ms=int((time.time() - t0) * 1000),
            checked_at=time.time(),
            error=error,
        )

    def run_probes(self) -> None:
        """Probe every endpoint and log status transitions."""
        for service_url in self.endpoints:
            result = self.probe(service_url)
            with self._lock:
                previous = self._probes.get(result.endpoint)
                self._probes[result.endpoint] = result
            if previous is not None and previous.status != result.status:
                logger.warning(
                    "[health] %s status changed: %s -> %s (error=%s)",
                    result.endpoint, previous.status, result.status, result.error,
                )
            else:
                logger.info("[health] %s: %s (%dms)", result.endpoint, result.status, result.latency_ms)

    # ------------------------------------------------------------------
    # Combined view
    # ------------------------------------------------------------------

    def endpoint_status(self, key: str) -> EndpointStatus:
        passive = self.passive_status(key)
        with self._lock:
            probe = self._probes.get(key)
        if probe is None or time.time() - probe.checked_at > 2 * HEALTH_CHECK_INTERVAL:
            return passive
        return EndpointStatus(
            endpoint=key,
            status=probe.status,
            source="active",
            latency_ms=probe.latency_ms,
            last_checked=_iso(probe.checked_at),
            error=probe.error,
            success_rate=passive.success_rate,
            sample_size=passive.sample_size,
        )

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        """Status per endpoint: every catalog endpoint plus any endpoint seen in calls."""
        keys = {endpoint_key(url) for url in self.endpoints}
        with self._lock:
            keys.update(self._windows)
        return {key: self.endpoint_status(key).to_dict() for key in sorted(keys)}

    # ------------------------------------------------------------------
    # Background thread lifecycle
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        logger.info("[health] Health monitor thread started (interval=%ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop_event.is_set():
            try:
                self.run_probes()
            except Exception:
                logger.exception("[health] Unexpected error in endpoint probes")
            self._stop_event.wait(timeout=HEALTH_CHECK_INTERVAL)
        logger.info("[health] Health monitor thread stopped")

    def start(self) -> None:
        """Start the probe thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()


# ---------------------------------------------------------------------------
# Module-level singleton and public API
# ---------------------------------------------------------------------------

_monitor = HealthMonitor()


def record_call(
    endpoint: str,
    success: bool,
    latency_ms: int,
    error: Optional[str] = None,
) -> None:
    """Record a GetFeatureInfo outcome for an endpoint key (see endpoint_key)."""
    _monitor.record_call(endpoint, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.get_all_status()


def start_monitor() -> None:
    _monitor.start()


def stop_monitor() -> None:
    _monitor.stop()
