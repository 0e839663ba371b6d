"""
Unit tests for metrics and the monitoring endpoint
"""

import json
import urllib.error
import urllib.request
from unittest.mock import Mock

import pytest

from shadowrepl.services.metrics_endpoint import MetricsEndpoint
from shadowrepl.services.metrics_service import MetricsService


class TestMetricsService:
    """Test MetricsService"""

    def test_counters(self, metrics_service):
        metrics_service.record_event_received("cart", "insert")
        metrics_service.record_event_received("cart", "insert", origin="dlq")
        metrics_service.record_event_applied("cart", "insert")
        metrics_service.record_event_discarded("cart")
        metrics_service.record_event_filtered("cart")
        metrics_service.record_event_failed("cart", "retryable", "write")
        metrics_service.record_dlq_reconsume("exhausted")

        output = metrics_service.get_metrics()
        assert 'shadowrepl_events_received_total{operation_type="insert",origin="live",table_name="cart"} 1.0' in output
        assert 'shadowrepl_events_received_total{operation_type="insert",origin="dlq",table_name="cart"} 1.0' in output
        assert 'shadowrepl_events_discarded_total{table_name="cart"} 1.0' in output
        assert 'shadowrepl_events_failed_total{classification="retryable",stage="write",table_name="cart"} 1.0' in output
        assert 'shadowrepl_dlq_entries_reconsumed_total{outcome="exhausted"} 1.0' in output

    def test_gauges(self, metrics_service):
        metrics_service.set_work_queue_size(12)
        metrics_service.set_active_workers(4)
        output = metrics_service.get_metrics()
        assert "shadowrepl_work_queue_size 12.0" in output
        assert "shadowrepl_active_workers 4.0" in output

    def test_separate_registries(self):
        first, second = MetricsService(), MetricsService()
        first.record_event_discarded("cart")
        assert "shadowrepl_events_discarded_total{" not in second.get_metrics()

    def test_content_type(self, metrics_service):
        assert metrics_service.get_content_type().startswith("text/plain")

    def test_health_without_components(self, metrics_service):
        assert metrics_service.get_health_status()["status"] == "healthy"

    @pytest.mark.parametrize("workers,connected,expected", [
        (2, True, "healthy"),
        (0, True, "warning"),
        (2, False, "unhealthy"),
    ])
    def test_health_status(self, metrics_service, workers, connected, expected):
        pipeline = Mock()
        pipeline.get_worker_count.return_value = workers
        database_service = Mock()
        database_service.test_connection.return_value = connected
        metrics_service.set_pipeline(pipeline)
        metrics_service.set_database_service(database_service)

        health = metrics_service.get_health_status()

        assert health["status"] == expected
        assert health["components"]["workers"]["count"] == workers


class TestMetricsEndpoint:
    """Test the HTTP endpoint"""

    @pytest.fixture
    def endpoint(self, metrics_service):
        endpoint = MetricsEndpoint(metrics_service, host="127.0.0.1", port=0)
        endpoint.start()
        yield endpoint
        endpoint.stop()

    def test_metrics(self, endpoint, metrics_service):
        metrics_service.record_event_applied("cart", "update")
        with urllib.request.urlopen(endpoint.get_url(), timeout=5) as response:
            body = response.read().decode("utf-8")
        assert response.status == 200
        assert 'shadowrepl_events_applied_total{operation_type="update",table_name="cart"} 1.0' in body
        assert "shadowrepl_system_info" in body

    def test_health(self, endpoint):
        with urllib.request.urlopen(endpoint.get_health_url(), timeout=5) as response:
            health = json.loads(response.read())
        assert health["status"] == "healthy"

    def test_unhealthy_returns_503(self, endpoint, metrics_service):
        database_service = Mock()
        database_service.test_connection.return_value = False
        metrics_service.set_database_service(database_service)

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(endpoint.get_health_url(), timeout=5)
        assert exc_info.value.code == 503

    def test_not_found(self, endpoint):
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(f"http://127.0.0.1:{endpoint.port}/nope", timeout=5)
        assert exc_info.value.code == 404

    def test_running_state(self, metrics_service):
        endpoint = MetricsEndpoint(metrics_service, host="127.0.0.1", port=0)
        assert not endpoint.is_running()
        endpoint.start()
        assert endpoint.is_running()
        endpoint.stop()
        assert not endpoint.is_running()
