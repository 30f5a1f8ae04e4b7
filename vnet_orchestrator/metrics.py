# File: metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "operations_total": Counter(
        "vnet_orchestrator_operations_total",
        "Create-or-update operations issued against the provider",
        ["kind", "outcome"],
    ),
    "operation_latency": Histogram(
        "vnet_orchestrator_operation_duration_ms",
        "Time taken for a create-or-update to reach a terminal state in milliseconds",
        ["kind"],
        buckets=(100, 1000, 5000, 30000, 60000, 300000, 900000, 2700000),
    ),
    "resources_created": Gauge(
        "vnet_orchestrator_resources_created",
        "Resources created or updated in the current run",
    ),
    "diagnostics_total": Counter(
        "vnet_orchestrator_diagnostics_total",
        "Troubleshooting runs by reported health status",
        ["status"],
    ),
    "teardown_total": Counter(
        "vnet_orchestrator_teardown_total",
        "Resource group teardown attempts by outcome",
        ["outcome"],
    ),
}
