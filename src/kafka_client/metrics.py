"""
Prometheus metrics for client monitoring.

Provides instrumentation for:
- Record production, batch delivery and retries
- Record consumption and consumer lag
- Offset commits and group rebalances
- Broker connections, metadata refreshes and request latency
- Circuit breaker state tracking

Metrics are process-wide (prometheus_client's default registry); they
observe clients but hold no client state.
"""

from prometheus_client import Counter, Gauge, Histogram

# Production metrics
records_produced_total = Counter(
    "kafka_client_records_produced_total",
    "Total number of records acknowledged or failed by the broker",
    ["topic", "status"],  # status: success, error
)

batches_sent_total = Counter(
    "kafka_client_batches_sent_total",
    "Total number of producer batches by outcome",
    ["topic", "status"],  # status: success, retry, error
)

batch_size_records = Histogram(
    "kafka_client_batch_size_records",
    "Number of records per sealed producer batch",
    ["topic"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000),
)

producer_buffer_wait_seconds = Histogram(
    "kafka_client_producer_buffer_wait_seconds",
    "Time send() spent blocked on the in-flight limit",
    ["topic"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

# Consumption metrics
records_consumed_total = Counter(
    "kafka_client_records_consumed_total",
    "Total number of records handed to the application",
    ["topic", "consumer_group"],
)

consumer_lag = Gauge(
    "kafka_client_consumer_lag",
    "High watermark minus position for assigned partitions",
    ["topic", "partition", "consumer_group"],
)

offset_commits_total = Counter(
    "kafka_client_offset_commits_total",
    "Total number of offset commit attempts",
    ["consumer_group", "status"],  # status: success, error
)

rebalances_total = Counter(
    "kafka_client_rebalances_total",
    "Total number of completed group joins",
    ["consumer_group"],
)

assigned_partitions = Gauge(
    "kafka_client_assigned_partitions",
    "Number of partitions currently assigned to this member",
    ["consumer_group"],
)

# Connection metrics
connection_status = Gauge(
    "kafka_client_connection_status",
    "Broker connection status (1=connected, 0=disconnected)",
    ["node"],
)

metadata_refreshes_total = Counter(
    "kafka_client_metadata_refreshes_total",
    "Total number of metadata refreshes",
    ["status"],  # status: success, error
)

request_latency_seconds = Histogram(
    "kafka_client_request_latency_seconds",
    "Broker request round-trip latency",
    ["api"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)

circuit_breaker_state = Gauge(
    "kafka_client_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["circuit"],
)


def record_batch_delivered(topic: str, record_count: int) -> None:
    """
    Record a successfully acknowledged batch.

    Args:
        topic: Topic name
        record_count: Records in the batch
    """
    batches_sent_total.labels(topic=topic, status="success").inc()
    records_produced_total.labels(topic=topic, status="success").inc(record_count)


def record_batch_retry(topic: str) -> None:
    batches_sent_total.labels(topic=topic, status="retry").inc()


def record_batch_failed(topic: str, record_count: int) -> None:
    """Record a batch that failed with DeliveryError."""
    batches_sent_total.labels(topic=topic, status="error").inc()
    records_produced_total.labels(topic=topic, status="error").inc(record_count)


def record_batch_sealed(topic: str, record_count: int) -> None:
    batch_size_records.labels(topic=topic).observe(record_count)


def record_buffer_wait(topic: str, seconds: float) -> None:
    producer_buffer_wait_seconds.labels(topic=topic).observe(seconds)


def record_records_consumed(topic: str, consumer_group: str, count: int = 1) -> None:
    records_consumed_total.labels(topic=topic, consumer_group=consumer_group or "").inc(count)


def update_consumer_lag(topic: str, partition: int, consumer_group: str, lag: int) -> None:
    """
    Update consumer lag for a partition.

    Args:
        topic: Topic name
        partition: Partition number
        consumer_group: Consumer group (empty for standalone consumers)
        lag: High watermark minus current position
    """
    consumer_lag.labels(
        topic=topic, partition=str(partition), consumer_group=consumer_group or ""
    ).set(max(lag, 0))


def record_commit(consumer_group: str, success: bool = True) -> None:
    status = "success" if success else "error"
    offset_commits_total.labels(consumer_group=consumer_group, status=status).inc()


def record_rebalance(consumer_group: str, partition_count: int) -> None:
    """Record a completed join and the resulting assignment size."""
    rebalances_total.labels(consumer_group=consumer_group).inc()
    assigned_partitions.labels(consumer_group=consumer_group).set(partition_count)


def update_assigned_partitions(consumer_group: str, count: int) -> None:
    assigned_partitions.labels(consumer_group=consumer_group).set(count)


def update_connection_status(node: str, connected: bool) -> None:
    connection_status.labels(node=node).set(1 if connected else 0)


def record_metadata_refresh(success: bool = True) -> None:
    metadata_refreshes_total.labels(status="success" if success else "error").inc()


def record_request_latency(api: str, seconds: float) -> None:
    request_latency_seconds.labels(api=api).observe(seconds)


def update_circuit_breaker_state(circuit: str, state: int) -> None:
    """
    Update circuit breaker state.

    Args:
        circuit: Circuit name (broker node)
        state: 0=closed, 1=open, 2=half_open
    """
    circuit_breaker_state.labels(circuit=circuit).set(state)


__all__ = [
    "records_produced_total",
    "batches_sent_total",
    "batch_size_records",
    "producer_buffer_wait_seconds",
    "records_consumed_total",
    "consumer_lag",
    "offset_commits_total",
    "rebalances_total",
    "assigned_partitions",
    "connection_status",
    "metadata_refreshes_total",
    "request_latency_seconds",
    "circuit_breaker_state",
    "record_batch_delivered",
    "record_batch_retry",
    "record_batch_failed",
    "record_batch_sealed",
    "record_buffer_wait",
    "record_records_consumed",
    "update_consumer_lag",
    "record_commit",
    "record_rebalance",
    "update_assigned_partitions",
    "update_connection_status",
    "record_metadata_refresh",
    "record_request_latency",
    "update_circuit_breaker_state",
]
