"""
smartauth - Metrics

Prometheus counters and histograms for the dispatcher, the validation
modules and the bundler. All collectors live on a dedicated registry so
multiple ledgers or apps in one process never collide on registration.
"""

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry(auto_describe=True)

OPS_VALIDATED = Counter(
    "smartauth_user_ops_validated_total",
    "User operations validated by the entry point",
    ["outcome"],
    registry=REGISTRY,
)

OPS_EXECUTED = Counter(
    "smartauth_user_ops_executed_total",
    "User operations executed after successful validation",
    ["success"],
    registry=REGISTRY,
)

VALIDATION_DENIALS = Counter(
    "smartauth_validation_denials_total",
    "Denied validation verdicts by module and reason",
    ["module", "reason"],
    registry=REGISTRY,
)

MEMPOOL_REJECTIONS = Counter(
    "smartauth_mempool_rejections_total",
    "User operations rejected at submission by JSON-RPC error code",
    ["code"],
    registry=REGISTRY,
)

RECOVERY_REQUESTS = Counter(
    "smartauth_recovery_requests_total",
    "Account recovery requests by lifecycle stage",
    ["stage"],
    registry=REGISTRY,
)

BUNDLE_SIZE = Histogram(
    "smartauth_bundle_size",
    "Number of user operations per submitted bundle",
    buckets=[1, 2, 5, 10, 20, 50, 100],
    registry=REGISTRY,
)


def export_metrics() -> bytes:
    """Prometheus text exposition of the smartauth registry."""
    return generate_latest(REGISTRY)
