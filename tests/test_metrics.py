"""
Tests for metrics collection and Prometheus exposition
"""
import pytest
import time

from creator_billing.services.metrics import (
    MAX_SAMPLES,
    MetricsCollector,
    Timer,
    get_metrics_collector,
    record_charge_outcome,
    record_webhook_outcome,
)


class TestMetricsHelpers:
    """Test metrics helper functions"""

    def test_record_webhook_outcome(self):
        collector = get_metrics_collector()

        record_webhook_outcome("stripe", "processed")
        record_webhook_outcome("stripe", "processed")
        record_webhook_outcome("paystack", "rejected")

        assert collector.get_counter("webhook_events_total", {"provider": "stripe", "status": "processed"}) == 2.0
        assert collector.get_counter("webhook_events_total", {"provider": "paystack", "status": "rejected"}) == 1.0
        assert collector.get_counter("webhook_events_total", {"provider": "paystack", "status": "processed"}) == 0.0

    def test_record_charge_outcome(self):
        record_charge_outcome("recurring_billing", "failed")

        assert get_metrics_collector().get_counter(
            "billing_charges_total", {"job": "recurring_billing", "outcome": "failed"}
        ) == 1.0

    def test_timer_records_histogram(self):
        with Timer("billing_charge_seconds", {"job": "billing_retries"}):
            time.sleep(0.01)

        output = get_metrics_collector().format_prometheus()
        assert 'billing_charge_seconds_count{job="billing_retries"} 1' in output

    def test_timer_records_on_exception(self):
        with pytest.raises(RuntimeError):
            with Timer("webhook_processing_seconds", {"provider": "stripe"}):
                raise RuntimeError("boom")

        assert 'webhook_processing_seconds_count{provider="stripe"} 1' in get_metrics_collector().format_prometheus()


class TestPrometheusFormat:
    """Test Prometheus text exposition"""

    def test_counter_format(self):
        collector = MetricsCollector()
        collector.increment_counter("billing_job_runs_total", labels={"job": "recurring_billing"})

        output = collector.format_prometheus()

        assert "# HELP billing_job_runs_total" in output
        assert "# TYPE billing_job_runs_total counter" in output
        assert 'billing_job_runs_total{job="recurring_billing"} 1.0' in output

    def test_histogram_format(self):
        collector = MetricsCollector()
        for value in (0.1, 0.2, 0.3):
            collector.record_histogram("webhook_processing_seconds", value, {"provider": "paystack"})

        output = collector.format_prometheus()

        assert "# TYPE webhook_processing_seconds summary" in output
        assert 'webhook_processing_seconds{provider="paystack",quantile="0.5"}' in output
        assert 'webhook_processing_seconds_count{provider="paystack"} 3' in output

    def test_histogram_keeps_recent_samples(self):
        collector = MetricsCollector()
        for i in range(MAX_SAMPLES + 10):
            collector.record_histogram("billing_charge_seconds", float(i))

        assert f"billing_charge_seconds_count {MAX_SAMPLES}" in collector.format_prometheus()

    def test_reset(self):
        collector = MetricsCollector()
        collector.increment_counter("webhook_events_total", labels={"provider": "stripe", "status": "failed"})
        collector.reset()

        assert collector.format_prometheus() == "\n"


class TestMetricsEndpoint:
    """Test GET /metrics"""

    def test_metrics_endpoint_format(self, client):
        record_webhook_outcome("stripe", "ignored")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'webhook_events_total{provider="stripe",status="ignored"} 1.0' in response.text
