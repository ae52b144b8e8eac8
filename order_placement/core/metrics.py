"""Prometheus metrics for monitoring"""
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest

registry = CollectorRegistry()

request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status'],
    registry=registry
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=registry
)

placement_outcomes = Counter(
    'order_placement_outcomes_total',
    'Order placement attempts by resulting status',
    ['status'],
    registry=registry
)

verification_outcomes = Counter(
    'price_verification_outcomes_total',
    'Price verification runs by resulting verification status',
    ['status'],
    registry=registry
)

validation_failures = Counter(
    'order_validation_failures_total',
    'Blocking validation errors by rule',
    ['validation_type'],
    registry=registry
)

challenge_events = Counter(
    'two_factor_challenge_events_total',
    'Two-factor challenge lifecycle events',
    ['event'],
    registry=registry
)

adapter_call_duration = Histogram(
    'adapter_call_duration_seconds',
    'Supplier adapter round-trip duration in seconds',
    ['operation', 'outcome'],
    registry=registry
)

credential_lock_contention = Counter(
    'credential_lock_contention_total',
    'Jobs re-queued because another job held the credential lock',
    registry=registry
)

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total rate limit exceeded events',
    ['user_id'],
    registry=registry
)

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Total webhook delivery attempts',
    ['status', 'retry_count'],
    registry=registry
)

webhook_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Webhook delivery duration in seconds',
    ['status'],
    registry=registry
)

audit_logs_created = Counter(
    'audit_logs_created_total',
    'Total audit logs created',
    ['action'],
    registry=registry
)

redis_connected = Gauge(
    'redis_connected',
    'Redis connection status (1=connected, 0=disconnected)',
    registry=registry
)

db_connected = Gauge(
    'db_connected',
    'Database connection status (1=connected, 0=disconnected)',
    registry=registry
)


def get_metrics_text() -> str:
    """Generate Prometheus metrics in text format"""
    return generate_latest(registry).decode('utf-8')
