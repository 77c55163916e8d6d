"""
Prometheus metric definitions

All metrics live on one custom registry exposed at /metrics (API) and on the
outbox worker's metrics port. Defining them here once avoids duplicate
registration errors when modules are re-imported in tests.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

registry = CollectorRegistry()

# =============================================================================
# HTTP API METRICS
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code group",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=registry,
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method", "endpoint"],
    registry=registry,
)

# =============================================================================
# DATABASE METRICS
# =============================================================================

db_pool_in_use = Gauge(
    "db_pool_in_use",
    "Number of database connections currently in use",
    registry=registry,
)

db_pool_available = Gauge(
    "db_pool_available",
    "Number of idle database connections available",
    registry=registry,
)

db_connection_hold_seconds = Histogram(
    "db_connection_hold_seconds",
    "Time a database connection stays checked out of the pool",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
    registry=registry,
)

db_query_duration_seconds = Histogram(
    "db_query_duration_seconds",
    "Database query execution time in seconds",
    ["operation", "table"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=registry,
)

db_queries_total = Counter(
    "db_queries_total",
    "Total number of database queries by operation type",
    ["operation"],
    registry=registry,
)

db_query_errors_total = Counter(
    "db_query_errors_total",
    "Total number of database query errors by type",
    ["error_type"],
    registry=registry,
)

# =============================================================================
# REDIS METRICS
# =============================================================================

redis_commands_total = Counter(
    "redis_commands_total",
    "Total Redis commands executed by command type",
    ["command"],
    registry=registry,
)

redis_command_duration_seconds = Histogram(
    "redis_command_duration_seconds",
    "Redis command execution time in seconds",
    ["command"],
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
    registry=registry,
)

cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    registry=registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    registry=registry,
)

redis_errors_total = Counter(
    "redis_errors_total",
    "Total Redis errors by type",
    ["error_type"],
    registry=registry,
)

# =============================================================================
# AUTHENTICATION METRICS
# =============================================================================

principal_resolution_total = Counter(
    "principal_resolution_total",
    "Bearer token resolutions by result",
    ["result"],  # cache_hit, auth_service, rejected, error
    registry=registry,
)

principal_resolution_duration_seconds = Histogram(
    "principal_resolution_duration_seconds",
    "Bearer token resolution latency in seconds",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
    registry=registry,
)

# =============================================================================
# CHECKOUT & PAYMENT METRICS
# =============================================================================

checkouts_total = Counter(
    "checkouts_total",
    "Checkout attempts by payment flow and result",
    ["flow", "result"],  # flow: offline, razorpay, paypal; result: committed, replayed, failed
    registry=registry,
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Time to materialize orders for a checkout",
    ["flow"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry,
)

payment_intents_total = Counter(
    "payment_intents_total",
    "Gateway payment intents created",
    ["gateway", "status"],
    registry=registry,
)

payment_verifications_total = Counter(
    "payment_verifications_total",
    "Gateway callback verifications by result",
    ["gateway", "result"],  # verified, bad_signature, unavailable
    registry=registry,
)

inventory_conflicts_total = Counter(
    "inventory_conflicts_total",
    "Conditional stock decrements that lost a race",
    registry=registry,
)

# =============================================================================
# FULFILLMENT METRICS
# =============================================================================

order_transitions_total = Counter(
    "order_transitions_total",
    "Vendor slice state transitions",
    ["from_status", "to_status"],
    registry=registry,
)

tracking_fetch_total = Counter(
    "tracking_fetch_total",
    "Shipment tracking lookups by source",
    ["source"],  # upstream, mock_unconfigured, mock_fallback
    registry=registry,
)

# =============================================================================
# DISPUTE & ESCROW METRICS
# =============================================================================

disputes_total = Counter(
    "disputes_total",
    "Dispute lifecycle actions",
    ["action"],  # opened, auto_opened, message, resolved, closed
    registry=registry,
)

escrow_calls_total = Counter(
    "escrow_calls_total",
    "Escrow relay calls by operation and result",
    ["operation", "result"],  # success, reverted, unavailable
    registry=registry,
)

escrow_call_duration_seconds = Histogram(
    "escrow_call_duration_seconds",
    "Escrow relay call latency in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=registry,
)

# =============================================================================
# KAFKA EVENT METRICS
# =============================================================================

kafka_events_published_total = Counter(
    "kafka_events_published_total",
    "Total events published to Kafka",
    ["topic", "event_type", "status"],
    registry=registry,
)

kafka_events_consumed_total = Counter(
    "kafka_events_consumed_total",
    "Total events consumed from Kafka",
    ["topic", "event_type", "status"],
    registry=registry,
)

kafka_publish_duration_seconds = Histogram(
    "kafka_publish_duration_seconds",
    "Time taken to publish events to Kafka",
    ["topic", "event_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry,
)

kafka_consumer_lag_messages = Gauge(
    "kafka_consumer_lag_messages",
    "Number of messages the consumer is lagging behind",
    ["topic", "consumer_group"],
    registry=registry,
)

kafka_events_duplicate_total = Counter(
    "kafka_events_duplicate_total",
    "Total duplicate events detected (idempotency check)",
    ["topic", "event_type"],
    registry=registry,
)

# =============================================================================
# OUTBOX PATTERN METRICS
# =============================================================================

outbox_events_pending = Gauge(
    "outbox_events_pending",
    "Number of unpublished events in the outbox table",
    registry=registry,
)

outbox_events_processed_total = Counter(
    "outbox_events_processed_total",
    "Total outbox events processed",
    ["status"],
    registry=registry,
)

outbox_publish_duration_seconds = Histogram(
    "outbox_publish_duration_seconds",
    "Time taken to publish events from outbox to Kafka",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=registry,
)

outbox_retry_attempts_total = Counter(
    "outbox_retry_attempts_total",
    "Total number of retry attempts for failed outbox events",
    ["event_type"],
    registry=registry,
)

# =============================================================================
# BACKGROUND TASK METRICS
# =============================================================================

background_tasks_running = Gauge(
    "background_tasks_running",
    "Number of background tasks currently running",
    ["task_name"],
    registry=registry,
)

background_task_errors_total = Counter(
    "background_task_errors_total",
    "Total errors in background tasks",
    ["task_name", "error_type"],
    registry=registry,
)
