"""
Shared metrics configuration for the RBAC service.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector registers into its own registry unless one is passed in,
    so several services can live in one process (tests, embedded use).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_rbac_metrics()

    def _setup_rbac_metrics(self):
        """Set up authorization-specific metrics."""
        self._metrics["rbac_authorization_decisions_total"] = Counter(
            "rbac_authorization_decisions_total",
            "Total authorization decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["rbac_authorization_duration_seconds"] = Histogram(
            "rbac_authorization_duration_seconds",
            "Authorization decision duration in seconds",
            registry=self.registry
        )

        self._metrics["rbac_cache_requests_total"] = Counter(
            "rbac_cache_requests_total",
            "Effective-permission cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["rbac_mutations_total"] = Counter(
            "rbac_mutations_total",
            "Total role, permission, policy and assignment mutations",
            ["event_type"],
            registry=self.registry
        )

        self._metrics["rbac_audit_handler_errors_total"] = Counter(
            "rbac_audit_handler_errors_total",
            "Audit event handlers that raised",
            registry=self.registry
        )

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_authorization(self, allowed: bool, duration: float):
        """Record one authorization decision."""
        decision = "allowed" if allowed else "denied"
        self._metrics["rbac_authorization_decisions_total"].labels(decision=decision).inc()
        self._metrics["rbac_authorization_duration_seconds"].observe(duration)

    def record_cache_lookup(self, hit: bool):
        """Record an effective-permission cache lookup."""
        self._metrics["rbac_cache_requests_total"].labels(result="hit" if hit else "miss").inc()

    def record_mutation(self, event_type: str):
        """Record a state-changing operation."""
        self._metrics["rbac_mutations_total"].labels(event_type=event_type).inc()

    def record_audit_handler_error(self):
        """Record a failing audit handler."""
        self._metrics["rbac_audit_handler_errors_total"].inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
