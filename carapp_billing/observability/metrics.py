"""
Billing metrics.

The manager operates in two modes:
1. No-op mode: every recording call exists but does nothing
2. Active mode: counters are registered with prometheus_client

The process-wide manager starts in no-op mode and is switched to active
mode by ``register_metrics`` when the app config sets METRICS_ENABLED.
Collectors are registered at most once per registry.
"""

import typing as t

from flask import Flask, Response


class MetricsManager:
    """Central manager for billing metrics."""

    def __init__(self, enabled: bool = False, registry: t.Any = None):
        self.enabled = enabled
        self.registry = registry
        self._initialize_metrics()

    def enable(self) -> None:
        if self.enabled:
            return
        self.enabled = True
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        if self.enabled:
            from prometheus_client import REGISTRY, Counter

            registry = self.registry if self.registry is not None else REGISTRY

            self.charge_attempts_total = Counter(
                "billing_charge_attempts_total",
                "Recurring charge attempts by outcome",
                ["outcome"],
                registry=registry,
            )
            self.token_recoveries_total = Counter(
                "billing_token_recoveries_total",
                "Stored instrument recovery attempts",
                ["result"],
                registry=registry,
            )
            self.subscriptions_demoted_total = Counter(
                "billing_subscriptions_demoted_total",
                "Subscriptions moved from active to pending after a failed charge",
                registry=registry,
            )
            self.settlement_failures_total = Counter(
                "billing_settlement_failures_total",
                "Gateway callbacks reporting a failed or rejected payment",
                registry=registry,
            )
            self.runs_total = Counter(
                "billing_runs_total",
                "Billing scheduler runs",
                ["status"],
                registry=registry,
            )
            self.task_executions_total = Counter(
                "task_executions_total",
                "Total background task executions",
                ["task_name", "status"],
                registry=registry,
            )
        else:
            self.charge_attempts_total = _DummyMetric()
            self.token_recoveries_total = _DummyMetric()
            self.subscriptions_demoted_total = _DummyMetric()
            self.settlement_failures_total = _DummyMetric()
            self.runs_total = _DummyMetric()
            self.task_executions_total = _DummyMetric()

    def record_charge(self, outcome: str) -> None:
        self.charge_attempts_total.labels(outcome=outcome).inc()

    def record_recovery(self, result: str) -> None:
        self.token_recoveries_total.labels(result=result).inc()

    def record_demotion(self) -> None:
        self.subscriptions_demoted_total.inc()

    def record_settlement_failure(self) -> None:
        self.settlement_failures_total.inc()

    def record_run(self, status: str) -> None:
        self.runs_total.labels(status=status).inc()

    def record_task(self, task_name: str, status: str) -> None:
        self.task_executions_total.labels(task_name=task_name, status=status).inc()


class _DummyMetric:
    """Dummy metric class for no-op mode."""

    def labels(self, *args: t.Any, **kwargs: t.Any) -> "_DummyMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def observe(self, value: float) -> None:
        pass

    def set(self, value: float) -> None:
        pass


metrics = MetricsManager()


def register_metrics(app: Flask) -> None:
    """Expose /metrics for Prometheus scraping (empty in no-op mode)."""
    if app.config.get("METRICS_ENABLED"):
        metrics.enable()

    @app.route("/metrics")
    def metrics_endpoint() -> Response:
        if metrics.enabled:
            from prometheus_client import generate_latest

            return Response(
                generate_latest(),
                mimetype="text/plain",
                headers={"Cache-Control": "no-cache"},
            )
        return Response("", mimetype="text/plain")
