"""Prometheus metrics for charges, discounts, installments and reconciliation health"""

from prometheus_client import Counter, Histogram

# Charge metrics
charge_counter = Counter(
    "charge_engine_charges_total",
    "Charges driven through the orchestrator",
    ["outcome"],  # free | completed | pending | failed | already_processed
)

discount_counter = Counter(
    "charge_engine_discounts_total",
    "Discount decisions by outcome",
    ["outcome"],  # none | full | partial | seasonal_limit_reached | usage_limit_reached
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "charge_engine_gateway_latency_seconds",
    "Payment gateway response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "charge_engine_gateway_failures_total",
    "Gateway calls that raised (timeouts, transport and HTTP errors)",
    ["kind"],  # timeout | error
)

# Accounting sync metrics
sync_failure_counter = Counter(
    "charge_engine_accounting_sync_failures_total",
    "Failed accounting sync notifications",
)

# Installment metrics
installment_attempt_counter = Counter(
    "charge_engine_installment_attempts_total",
    "Installment charge attempts",
    ["outcome"],  # succeeded | pending | failed | exhausted
)

# Integrity alarms
reconciliation_link_failure_counter = Counter(
    "charge_engine_reconciliation_link_failures_total",
    "Payments created but not linked to their staging record",
)

configuration_error_counter = Counter(
    "charge_engine_configuration_errors_total",
    "Charges blocked by missing accounting configuration",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_charge(outcome: str) -> None:
    charge_counter.labels(outcome=outcome).inc()


def record_discount(outcome: str) -> None:
    discount_counter.labels(outcome=outcome).inc()
