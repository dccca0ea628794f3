"""
Entitlement engine metrics.

Uses the OpenTelemetry metrics API; without a configured SDK every
instrument is a no-op.
"""

from opentelemetry import metrics

from docvault.entitlements.settings import get_settings


class EntitlementMetrics:
    """Entitlement metrics collector"""

    def __init__(self, meter: metrics.Meter | None = None) -> None:
        observability = get_settings().observability
        self.meter = meter or metrics.get_meter(observability.otel_service_name)
        self.enabled = observability.enable_metrics

        self.decisions = self.meter.create_counter(
            "entitlements.decisions",
            unit="1",
            description="Entitlement decisions by gate, outcome and reason",
        )
        self.unknown_plans = self.meter.create_counter(
            "entitlements.unknown_plan",
            unit="1",
            description="Stored plan identifiers missing from the plan catalog",
        )
        self.invariant_violations = self.meter.create_counter(
            "entitlements.invariant_violations",
            unit="1",
            description="Stored state that violates an engine invariant",
        )
        self.counter_resets = self.meter.create_counter(
            "entitlements.counter_resets",
            unit="1",
            description="Monthly upload counters rolled over",
        )

    def record_decision(self, gate: str, allowed: bool, reason: str | None = None) -> None:
        if not self.enabled:
            return
        self.decisions.add(
            1,
            {"gate": gate, "outcome": "allow" if allowed else "deny", "reason": reason or "none"},
        )

    def record_unknown_plan(self, plan: str) -> None:
        if self.enabled:
            self.unknown_plans.add(1, {"plan": plan})

    def record_invariant_violation(self, kind: str) -> None:
        if self.enabled:
            self.invariant_violations.add(1, {"kind": kind})

    def record_counter_reset(self, count: int = 1) -> None:
        if self.enabled and count:
            self.counter_resets.add(count)


_metrics: EntitlementMetrics | None = None


def get_entitlement_metrics() -> EntitlementMetrics:
    """Get the process-wide metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = EntitlementMetrics()
    return _metrics


__all__ = ["EntitlementMetrics", "get_entitlement_metrics"]
