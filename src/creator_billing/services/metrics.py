"""
Prometheus metrics for webhook reconciliation and recurring billing
In-memory, thread-safe; exposed as text on GET /metrics
"""
import time
from collections import defaultdict
from threading import Lock
from typing import Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]

# name -> (type, help)
METRIC_HELP = {
    "webhook_events_total": ("counter", "Inbound provider webhook deliveries by outcome"),
    "webhook_processing_seconds": ("summary", "Time spent applying one webhook event"),
    "billing_charges_total": ("counter", "Recurring charge attempts by job and outcome"),
    "billing_charge_seconds": ("summary", "Processor round-trip for one recurring charge"),
    "billing_job_runs_total": ("counter", "Completed scheduler job runs"),
}

# Samples kept per histogram series
MAX_SAMPLES = 1000


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _format_labels(label_key: LabelKey, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(label_key) + ([extra] if extra else [])
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


class MetricsCollector:
    """Thread-safe labeled counters and sample histograms"""

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: Dict[str, Dict[LabelKey, List[float]]] = defaultdict(lambda: defaultdict(list))

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
        """
        Increment a counter metric

        Args:
            name: Metric name (e.g., "webhook_events_total")
            value: Increment value (default: 1.0)
            labels: Optional labels dict (e.g., {"provider": "stripe", "status": "processed"})
        """
        with self._lock:
            self._counters[name][_label_key(labels)] += value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record one observation, keeping the most recent MAX_SAMPLES per series"""
        with self._lock:
            samples = self._histograms[name][_label_key(labels)]
            samples.append(value)
            if len(samples) > MAX_SAMPLES:
                del samples[:-MAX_SAMPLES]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Get current counter value"""
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def format_prometheus(self) -> str:
        """
        Format metrics in Prometheus text exposition format

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        with self._lock:
            for name in sorted(set(self._counters) | set(self._histograms)):
                metric_type, help_text = METRIC_HELP.get(name, ("untyped", name))
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {metric_type}")

                for label_key, value in sorted(self._counters.get(name, {}).items()):
                    lines.append(f"{name}{_format_labels(label_key)} {value}")

                for label_key, values in sorted(self._histograms.get(name, {}).items()):
                    if not values:
                        continue
                    ordered = sorted(values)
                    for quantile in ("0.5", "0.95", "0.99"):
                        index = min(int(len(ordered) * float(quantile)), len(ordered) - 1)
                        lines.append(f"{name}{_format_labels(label_key, ('quantile', quantile))} {ordered[index]}")
                    lines.append(f"{name}_count{_format_labels(label_key)} {len(values)}")
                    lines.append(f"{name}_sum{_format_labels(label_key)} {sum(values)}")

        return "\n".join(lines) + "\n"


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def record_webhook_outcome(provider: str, status: str):
    get_metrics_collector().increment_counter("webhook_events_total", labels={"provider": provider, "status": status})


def record_charge_outcome(job: str, outcome: str):
    get_metrics_collector().increment_counter("billing_charges_total", labels={"job": job, "outcome": outcome})


class Timer:
    """Context manager that records its elapsed time into a histogram"""

    def __init__(self, metric_name: str, labels: Optional[Dict[str, str]] = None):
        self.metric_name = metric_name
        self.labels = labels or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.monotonic() - self.start_time
        get_metrics_collector().record_histogram(self.metric_name, duration, self.labels)
