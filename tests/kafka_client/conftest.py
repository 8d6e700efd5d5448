"""
Fixtures for client tests against the in-memory FakeCluster.

Provides:
- A three-broker fake cluster
- A ClientConfig with short timeouts wired to it
- Connected ConnectionManager, Producer and Consumer factories that are
  closed after each test
"""

import sys
from dataclasses import replace
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from fake_cluster import FakeCluster  # noqa: E402

from kafka_client.cluster import ConnectionManager  # noqa: E402
from kafka_client.config import ClientConfig  # noqa: E402
from kafka_client.consumer import Consumer  # noqa: E402
from kafka_client.producer import Producer  # noqa: E402


@pytest.fixture
def cluster() -> FakeCluster:
    """Three brokers, coordinator on broker 0."""
    return FakeCluster(broker_count=3)


@pytest.fixture
def config(cluster: FakeCluster) -> ClientConfig:
    """Config with timings scaled down so rebalances finish in well under a second."""
    return ClientConfig(
        bootstrap_servers=cluster.bootstrap_servers,
        client_id="test-client",
        request_timeout_ms=2000,
        reconnect_attempts=3,
        retry_backoff_ms=10,
        retry_backoff_max_ms=50,
        retries=3,
        linger_ms=5,
        max_block_ms=2000,
        session_timeout_ms=400,
        heartbeat_interval_ms=50,
        rebalance_timeout_ms=2000,
        auto_commit_interval_ms=100,
        fetch_max_wait_ms=50,
    )


@pytest.fixture
async def manager(cluster: FakeCluster, config: ClientConfig):
    """Connected manager routed to the fake cluster."""
    mgr = ConnectionManager(config, connection_factory=cluster.connection_factory)
    await mgr.connect()
    yield mgr
    await mgr.close()


@pytest.fixture
async def producer_factory(cluster: FakeCluster, config: ClientConfig):
    """Build started producers with their own manager; all closed at teardown."""
    producers = []

    async def make(**overrides) -> Producer:
        cfg = replace(config, **overrides)
        mgr = ConnectionManager(cfg, connection_factory=cluster.connection_factory)
        producer = Producer(cfg, manager=mgr)
        producers.append((producer, mgr))
        return await producer.start()

    yield make

    for producer, mgr in producers:
        await producer.close(timeout=1.0)
        await mgr.close()


@pytest.fixture
async def consumer_factory(cluster: FakeCluster, config: ClientConfig):
    """Build started consumers with their own manager; all closed at teardown."""
    consumers = []

    async def make(**overrides) -> Consumer:
        cfg = replace(config, **overrides)
        mgr = ConnectionManager(cfg, connection_factory=cluster.connection_factory)
        consumer = Consumer(cfg, manager=mgr)
        consumers.append((consumer, mgr))
        return await consumer.start()

    yield make

    for consumer, mgr in consumers:
        await consumer.close()
        await mgr.close()
