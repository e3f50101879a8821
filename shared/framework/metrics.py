"""Prometheus instruments for one service process."""

from typing import Dict, List, Optional, Sequence, Type, TypeVar, Union

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

# Flush and request latencies live in the millisecond to second range
DEFAULT_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

Instrument = Union[Counter, Gauge, Histogram]
_I = TypeVar("_I", Counter, Gauge, Histogram)


class MetricsCollector:
    """Owns a private registry and names every instrument ``<service>_<name>``.

    A private registry per collector lets several services, or many
    tests, build their instruments in one process without clashing on
    the global default registry.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self.metrics: Dict[str, Instrument] = {}

        self.info = Info(
            f"{service_name}_build",
            f"Version and environment of {service_name}",
            registry=self.registry,
        )
        self.errors_total = self.create_counter(
            "errors_total",
            "Errors by type and component",
            labels=["error_type", "component"],
        )
        self.health_status = self.create_gauge(
            "health_status",
            "1 when every critical health check passes, else 0",
        )
        self.memory_usage = self.create_gauge(
            "memory_usage_bytes",
            "Resident set size of the process",
        )

    def _register(self, kind: Type[_I], name: str, description: str,
                  labels: Optional[Sequence[str]], **kwargs) -> _I:
        instrument = kind(
            f"{self.service_name}_{name}",
            description,
            list(labels or []),
            registry=self.registry,
            **kwargs,
        )
        self.metrics[name] = instrument
        return instrument

    def create_counter(self, name: str, description: str, labels: Optional[List[str]] = None) -> Counter:
        return self._register(Counter, name, description, labels)

    def create_gauge(self, name: str, description: str, labels: Optional[List[str]] = None) -> Gauge:
        return self._register(Gauge, name, description, labels)

    def create_histogram(self, name: str, description: str, labels: Optional[List[str]] = None,
                         buckets: Optional[Sequence[float]] = None) -> Histogram:
        return self._register(Histogram, name, description, labels, buckets=buckets or DEFAULT_BUCKETS)

    def record_error(self, error_type: str, component: str) -> None:
        self.errors_total.labels(error_type=error_type, component=component).inc()

    def set_health_status(self, healthy: bool) -> None:
        self.health_status.set(1 if healthy else 0)

    def set_memory_usage(self, bytes_used: int) -> None:
        self.memory_usage.set(bytes_used)

    def update_service_info(self, version: str, environment: str, **labels: str) -> None:
        self.info.info({"version": version, "environment": environment, **labels})

    def get_metrics(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST
