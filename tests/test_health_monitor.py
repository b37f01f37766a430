"""
Tests for the raster service health monitor.

Covers:
  - passive windows per endpoint (record_call → passive_status)
  - GetCapabilities probes with mocked HTTP
  - combined endpoint status (fresh probe wins, stale probe falls back)
  - /api/health rollup
"""

import time
from unittest.mock import patch, MagicMock

import pytest
import requests

import health_monitor
from health_monitor import HealthMonitor, endpoint_key

ALO = "https://data.rivm.nl/geo/alo/wms"
PDOK = "https://service.pdok.nl/rce/ikaw/wms/v1_0"
ALO_KEY = endpoint_key(ALO)
PDOK_KEY = endpoint_key(PDOK)


@pytest.fixture
def monitor():
    """Monitor over two endpoints, no background thread."""
    return HealthMonitor(endpoints=[ALO, PDOK])


def _response(status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    return resp


# ---------------------------------------------------------------------------
# Passive windows
# ---------------------------------------------------------------------------

class TestPassiveStatus:

    def test_endpoint_key(self):
        assert ALO_KEY == "wms:data.rivm.nl/geo/alo/wms"
        assert endpoint_key(ALO + "?SERVICE=WMS") == ALO_KEY

    def test_unknown_without_calls(self, monitor):
        result = monitor.passive_status(ALO_KEY)
        assert result.status == "unknown"
        assert result.source == "none"
        assert result.sample_size == 0

    @pytest.mark.parametrize("failures,expected", [
        (1, "healthy"),    # 95%
        (4, "degraded"),   # 80%
        (10, "down"),      # 50%
    ])
    def test_thresholds(self, monitor, failures, expected):
        for i in range(20):
            monitor.record_call(ALO_KEY, i >= failures, 100)
        assert monitor.passive_status(ALO_KEY).status == expected

    def test_windows_are_per_endpoint(self, monitor):
        for _ in range(5):
            monitor.record_call(ALO_KEY, False, 100, "HTTP 503")
        monitor.record_call(PDOK_KEY, True, 80)

        assert monitor.passive_status(ALO_KEY).status == "down"
        assert monitor.passive_status(PDOK_KEY).status == "healthy"

    def test_latency_rate_and_last_error(self, monitor):
        monitor.record_call(ALO_KEY, False, 100, "first error")
        monitor.record_call(ALO_KEY, True, 300)
        monitor.record_call(ALO_KEY, False, 200, "latest error")

        result = monitor.passive_status(ALO_KEY)
        assert result.source == "passive"
        assert result.latency_ms == 200
        assert result.error == "latest error"
        assert result.success_rate == 0.333

    def test_window_is_bounded(self, monitor):
        for _ in range(600):
            monitor.record_call(ALO_KEY, True, 10)
        assert monitor.passive_status(ALO_KEY).sample_size == 500


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

class TestProbe:

    @patch("health_monitor.requests.get")
    def test_healthy(self, mock_get, monitor):
        mock_get.return_value = _response(200)

        result = monitor.probe(ALO)
        assert result.status == "healthy"
        assert result.endpoint == ALO_KEY
        assert result.error is None
        assert mock_get.call_args[1]["params"]["REQUEST"] == "GetCapabilities"

    @patch("health_monitor.requests.get")
    def test_non_200_is_degraded(self, mock_get, monitor):
        mock_get.return_value = _response(503)

        result = monitor.probe(ALO)
        assert result.status == "degraded"
        assert result.error == "HTTP 503"

    @patch("health_monitor.requests.get")
    def test_timeout_is_down(self, mock_get, monitor):
        mock_get.side_effect = requests.Timeout("timed out")

        result = monitor.probe(ALO)
        assert result.status == "down"
        assert result.error == "timeout"

    @patch("health_monitor.requests.get")
    def test_connection_error_is_down(self, mock_get, monitor):
        mock_get.side_effect = requests.ConnectionError("DNS resolution failed")

        result = monitor.probe(ALO)
        assert result.status == "down"
        assert "DNS" in result.error

    @patch("health_monitor.requests.get")
    def test_transition_logged(self, mock_get, monitor, caplog):
        mock_get.return_value = _response(200)
        monitor.run_probes()

        mock_get.return_value = None
        mock_get.side_effect = requests.Timeout("timeout")
        with caplog.at_level("WARNING", logger="health_monitor"):
            monitor.run_probes()

        assert monitor.endpoint_status(ALO_KEY).status == "down"
        assert "healthy -> down" in caplog.text

    def test_default_endpoints_come_from_catalog(self):
        endpoints = HealthMonitor().endpoints
        assert endpoints
        assert endpoints == sorted(set(endpoints))
        assert all(url.startswith("https://") for url in endpoints)


# ---------------------------------------------------------------------------
# Combined view
# ---------------------------------------------------------------------------

class TestCombinedStatus:

    def test_all_unknown_without_data(self, monitor):
        status = monitor.get_all_status()
        assert set(status) == {ALO_KEY, PDOK_KEY}
        assert all(s["status"] == "unknown" for s in status.values())

    @patch("health_monitor.requests.get")
    def test_fresh_probe_wins_over_window(self, mock_get, monitor):
        for _ in range(10):
            monitor.record_call(ALO_KEY, False, 150, "HTTP 500")
        mock_get.return_value = _response(200)
        monitor.run_probes()

        entry = monitor.get_all_status()[ALO_KEY]
        assert entry["status"] == "healthy"
        assert entry["source"] == "active"
        assert entry["success_rate"] == 0.0
        assert entry["sample_size"] == 10

    @patch("health_monitor.requests.get")
    def test_stale_probe_falls_back_to_window(self, mock_get, monitor):
        mock_get.return_value = _response(200)
        monitor.run_probes()
        for _ in range(10):
            monitor.record_call(ALO_KEY, False, 150, "HTTP 500")

        later = time.time() + 2 * health_monitor.HEALTH_CHECK_INTERVAL + 1
        with patch("health_monitor.time.time", return_value=later):
            entry = monitor.endpoint_status(ALO_KEY)
        assert entry.source == "passive"
        assert entry.status == "down"
        assert entry.error == "HTTP 500"

    def test_endpoint_outside_catalog_is_listed(self, monitor):
        monitor.record_call("wms:example.org/wms", True, 20)
        status = monitor.get_all_status()
        assert status["wms:example.org/wms"]["status"] == "healthy"


# ---------------------------------------------------------------------------
# /api/health
# ---------------------------------------------------------------------------

class TestApiHealthEndpoint:

    def test_ok_when_nothing_reported(self, client):
        with patch("health_monitor._monitor", HealthMonitor(endpoints=[ALO])):
            resp = client.get("/api/health")
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["status"] == "ok"
        assert data["services"][ALO_KEY]["status"] == "unknown"

    @patch("health_monitor._monitor")
    def test_down_when_any_endpoint_down(self, mock_monitor, client):
        mock_monitor.get_all_status.return_value = {
            PDOK_KEY: {"status": "healthy", "source": "passive"},
            ALO_KEY: {"status": "down", "source": "active", "error": "timeout"},
        }
        data = client.get("/api/health").get_json()
        assert data["status"] == "down"

    @patch("health_monitor._monitor")
    def test_degraded_when_any_endpoint_degraded(self, mock_monitor, client):
        mock_monitor.get_all_status.return_value = {
            ALO_KEY: {"status": "degraded", "source": "passive"},
        }
        data = client.get("/api/health").get_json()
        assert data["status"] == "degraded"


# ---------------------------------------------------------------------------
# Thread lifecycle
# ---------------------------------------------------------------------------

class TestThreadLifecycle:

    @patch("health_monitor.requests.get")
    def test_start_stop(self, mock_get, monitor):
        mock_get.return_value = _response(200)
        monitor.start()
        assert monitor._thread.is_alive()

        monitor.stop()
        monitor._thread.join(timeout=2)
        assert not monitor._thread.is_alive()

    @patch("health_monitor.requests.get")
    def test_start_is_idempotent(self, mock_get, monitor):
        mock_get.return_value = _response(200)
        monitor.start()
        first = monitor._thread
        monitor.start()
        assert monitor._thread is first
        monitor.stop()
        first.join(timeout=2)
