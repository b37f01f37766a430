"""
Coordinated WMS GetFeatureInfo HTTP layer.

All raster service requests in the application MUST go through this module.
It provides:
- Process-wide cap on in-flight requests (WMS_MAX_IN_FLIGHT, default 8)
- Optional minimum spacing between requests (WMS_MIN_SPACING seconds)
- Thread-safe request execution (no shared requests.Session)
- Retry with exponential backoff on 429/5xx/connection errors
  (2 retries, 0.25s/0.75s); timeouts are not retried, a slow grid cell
  is simply dropped by the sampler
- sg_trace and health_monitor integration for observability

A GetFeatureInfo request is a 101x101 px map around the point with the
query pixel in the centre, so the service answers for the exact coordinate.
An empty feature collection means "no data here" and is returned as None,
never raised.
"""

import logging
import os
import re
import threading
import time
from typing import Any, Dict, Optional, Union

import requests

from grading_errors import RasterTimeoutError, RasterUpstreamError
from health_monitor import endpoint_key, record_call
from layer_config import LayerDescriptor, ValueKind
from sg_trace import get_trace

logger = logging.getLogger(__name__)

RasterValue = Union[float, str]


class WMSRateLimitError(RasterUpstreamError):
    """Raised when the service returns 429 after all retries are exhausted."""

    pass


class WMSQueryError(RasterUpstreamError):
    """Raised when the service returns an error response or an unreadable body."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class WMSHTTPClient:
    DEFAULT_TIMEOUT = float(os.environ.get("WMS_TIMEOUT", "10"))  # seconds
    MIN_SPACING = float(os.environ.get("WMS_MIN_SPACING", "0"))  # seconds between requests
    MAX_IN_FLIGHT = int(os.environ.get("WMS_MAX_IN_FLIGHT", "8"))
    MAX_RETRIES = 2
    RETRY_BACKOFF = [0.25, 0.75]  # seconds

    # Half-width of the GetFeatureInfo bbox in degrees (~100 m in NL).
    BBOX_HALF_SIZE = 0.001
    IMAGE_SIZE = 101

    def __init__(self, max_in_flight: Optional[int] = None):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self._in_flight = threading.BoundedSemaphore(max_in_flight or self.MAX_IN_FLIGHT)

    def get_feature_info(
        self,
        service_url: str,
        service_layer: str,
        lat: float,
        lng: float,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Query the properties of the first feature at (lat, lng).

        Args:
            service_url: WMS endpoint without query string.
            service_layer: WMS layer name (LAYERS / QUERY_LAYERS).
            lat, lng: WGS84 coordinate.
            timeout: HTTP timeout in seconds. Defaults to DEFAULT_TIMEOUT.

        Returns:
            The feature's properties dict, or None when the service has no
            feature at this point.

        Raises:
            RasterTimeoutError: the request timed out (not retried).
            WMSRateLimitError: 429 after MAX_RETRIES retries.
            WMSQueryError: non-retryable error, or a retryable one after
                MAX_RETRIES retries.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT

        last_exception: Optional[Exception] = None
        for attempt in range(1 + self.MAX_RETRIES):
            try:
                return self._do_request(service_url, service_layer, lat, lng, timeout, attempt > 0)
            except WMSRateLimitError as e:
                last_exception = e
            except WMSQueryError as e:
                if not e.retryable:
                    raise
                last_exception = e
            if attempt < self.MAX_RETRIES:
                sleep_time = self.RETRY_BACKOFF[attempt]
                logger.info(
                    "WMS request failed (attempt %d/%d), sleeping %.2fs before retry [layer=%s]: %s",
                    attempt + 1,
                    1 + self.MAX_RETRIES,
                    sleep_time,
                    service_layer,
                    last_exception,
                )
                time.sleep(sleep_time)

        raise last_exception or WMSQueryError(
            f"WMS request failed after all retries [layer={service_layer}]"
        )

    def build_params(self, service_layer: str, lat: float, lng: float) -> Dict[str, str]:
        """GetFeatureInfo query parameters for a point (WMS 1.3.0, EPSG:4326 lon/lat bbox)."""
        half = self.BBOX_HALF_SIZE
        bbox = (lng - half, lat - half, lng + half, lat + half)
        center = str(self.IMAGE_SIZE // 2)
        return {
            "SERVICE": "WMS",
            "VERSION": "1.3.0",
            "REQUEST": "GetFeatureInfo",
            "LAYERS": service_layer,
            "QUERY_LAYERS": service_layer,
            "BBOX": ",".join(repr(v) for v in bbox),
            "CRS": "EPSG:4326",
            "WIDTH": str(self.IMAGE_SIZE),
            "HEIGHT": str(self.IMAGE_SIZE),
            "I": center,
            "J": center,
            "INFO_FORMAT": "application/json",
        }

    def _do_request(
        self,
        service_url: str,
        service_layer: str,
        lat: float,
        lng: float,
        timeout: float,
        retried: bool,
    ) -> Optional[Dict[str, Any]]:
        """Make a single GetFeatureInfo request."""
        if self.MIN_SPACING > 0:
            with self._lock:
                now = time.monotonic()
                elapsed_since_last = now - self._last_request_time
                if elapsed_since_last < self.MIN_SPACING:
                    time.sleep(self.MIN_SPACING - elapsed_since_last)
                self._last_request_time = time.monotonic()

        trace = get_trace()

        def _record(status_code: int, provider_status: str, elapsed_ms: int, error: Optional[str] = None):
            if trace:
                trace.record_api_call(
                    service="wms",
                    endpoint=service_layer,
                    elapsed_ms=elapsed_ms,
                    status_code=status_code,
                    provider_status=provider_status,
                    retried=retried,
                )
            record_call(endpoint_key(service_url), error is None, elapsed_ms, error)

        with self._in_flight:
            start = time.monotonic()
            try:
                # Fresh session per request (thread-safe, no shared state)
                session = requests.Session()
                session.trust_env = False
                resp = session.get(
                    service_url,
                    params=self.build_params(service_layer, lat, lng),
                    headers={"Accept": "application/json"},
                    timeout=timeout,
                )
            except requests.exceptions.Timeout:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                _record(0, "timeout", elapsed_ms, "timeout")
                raise RasterTimeoutError(
                    f"WMS request timeout after {timeout}s [layer={service_layer}]"
                )
            except requests.exceptions.RequestException as e:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                _record(0, "exception", elapsed_ms, str(e))
                raise WMSQueryError(
                    f"WMS request failed: {e} [layer={service_layer}]", retryable=True
                ) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status_code = resp.status_code

        if status_code == 429:
            _record(429, "rate_limit", elapsed_ms, "HTTP 429")
            raise WMSRateLimitError(f"WMS 429 Too Many Requests [layer={service_layer}]")
        if status_code >= 500:
            _record(status_code, "http_error", elapsed_ms, f"HTTP {status_code}")
            raise WMSQueryError(
                f"WMS HTTP {status_code} [layer={service_layer}]", retryable=True
            )
        if status_code >= 400:
            _record(status_code, "http_error", elapsed_ms, f"HTTP {status_code}")
            raise WMSQueryError(f"WMS HTTP {status_code} [layer={service_layer}]")

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error", elapsed_ms, "non-JSON response")
            raise WMSQueryError(
                f"WMS returned non-JSON response (HTTP {status_code}) [layer={service_layer}]"
            )

        features = data.get("features") if isinstance(data, dict) else None
        if not features:
            _record(status_code, "no_data", elapsed_ms)
            return None

        _record(status_code, "ok", elapsed_ms)
        return features[0].get("properties") or {}


# =============================================================================
# Value extraction
# =============================================================================

# Property names that usually carry the raster value, in priority order.
VALUE_FIELD_HINTS = (
    "value",
    "waarde",
    "gray_index",
    "pixel_value",
    "concentration",
    "concentratie",
    "percentage",
    "score",
    "niveau",
    "level",
    "aantal",
    "count",
)

_IDENTIFIER_HINTS = ("id", "name", "naam")

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def parse_numeric_value(value: Any) -> Optional[float]:
    """Parse a property value as a number, tolerating unit suffixes ("55 dB")."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value:  # NaN
            return None
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if match:
            return float(match.group(0))
    return None


def _first_string(properties: Dict[str, Any]) -> Optional[str]:
    for key, value in properties.items():
        if any(hint in key.lower() for hint in _IDENTIFIER_HINTS):
            continue
        if isinstance(value, str) and value.strip():
            return value.strip()
    for value in properties.values():
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_value(
    properties: Dict[str, Any],
    value_kind: ValueKind = ValueKind.NUMERIC,
) -> Optional[RasterValue]:
    """Pick the layer value out of a feature's properties.

    Numeric layers: hinted field names first, then any numeric field that
    is not an identifier, then the first non-empty string.  Categorical
    layers: the first non-identifier string, falling back to the numeric
    search (class codes are sometimes integers).
    """
    if not properties:
        return None

    if value_kind == ValueKind.CATEGORICAL:
        text = _first_string(properties)
        if text is not None:
            return text

    for hint in VALUE_FIELD_HINTS:
        for key, value in properties.items():
            if hint in key.lower():
                number = parse_numeric_value(value)
                if number is not None:
                    return number

    for key, value in properties.items():
        if any(hint in key.lower() for hint in _IDENTIFIER_HINTS):
            continue
        number = parse_numeric_value(value)
        if number is not None:
            return number

    return _first_string(properties)


# =============================================================================
# Raster source backed by WMS
# =============================================================================

class WMSRasterSource:
    """RasterSource that reads layer values through GetFeatureInfo."""

    def __init__(self, client: Optional[WMSHTTPClient] = None, timeout: Optional[float] = None):
        self._client = client or _client
        self._timeout = timeout

    def read(self, layer: LayerDescriptor, lat: float, lng: float) -> Optional[RasterValue]:
        if not layer.service_url or not layer.service_layer:
            raise WMSQueryError(f"Layer {layer.layer_id!r} has no WMS endpoint configured")
        properties = self._client.get_feature_info(
            layer.service_url, layer.service_layer, lat, lng, timeout=self._timeout,
        )
        if properties is None:
            return None
        return extract_value(properties, layer.value_kind)


# Module-level singleton — all callers in this process share one instance
_client = WMSHTTPClient()
