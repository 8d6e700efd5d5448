"""Tests for Producer batching, ordering, backpressure and delivery failures."""

import asyncio
import json

import pytest
from pydantic import BaseModel

from core.errors.exceptions import (
    BufferTimeoutError,
    Cancelled,
    DeliveryError,
    IllegalStateError,
)
from core.errors.kafka_classifier import MESSAGE_SIZE_TOO_LARGE, REQUEST_TIMED_OUT
from kafka_client.producer import Producer
from kafka_client.producer.producer import serialize
from kafka_client.protocol.messages import ProduceRequest
from kafka_client.structs import TopicPartition


class Invoice(BaseModel):
    invoice_id: int
    customer: str


class TestSerialize:
    """Tests for key/value serialization."""

    def test_supported_types(self):
        """bytes pass through, str is UTF-8, models are JSON."""
        assert serialize(None) is None
        assert serialize(b"raw") == b"raw"
        assert serialize(bytearray(b"raw")) == b"raw"
        assert serialize("héllo") == "héllo".encode("utf-8")
        assert json.loads(serialize(Invoice(invoice_id=1, customer="acme"))) == {
            "invoice_id": 1,
            "customer": "acme",
        }

    def test_unsupported_type(self):
        """Anything else is rejected."""
        with pytest.raises(TypeError, match="Cannot serialize"):
            serialize(12.5)


class TestLifecycle:
    """Tests for start/close state."""

    @pytest.mark.asyncio
    async def test_send_before_start(self, config, manager):
        """send requires start()."""
        producer = Producer(config, manager=manager)
        with pytest.raises(IllegalStateError, match="not started"):
            await producer.send("events", b"x")

    @pytest.mark.asyncio
    async def test_send_after_close(self, cluster, producer_factory):
        """A closed producer rejects sends."""
        cluster.create_topic("events", 1)
        producer = await producer_factory()
        await producer.close()
        with pytest.raises(IllegalStateError, match="closed"):
            await producer.send("events", b"x")

    @pytest.mark.asyncio
    async def test_unknown_partition(self, cluster, producer_factory):
        """An explicit partition must exist."""
        cluster.create_topic("events", 2)
        producer = await producer_factory()
        with pytest.raises(ValueError, match="Partition 5"):
            await producer.send("events", b"x", partition=5)


class TestDelivery:
    """Tests for acknowledged delivery."""

    @pytest.mark.asyncio
    async def test_send_and_wait(self, cluster, producer_factory):
        """Metadata carries the partition and offset the broker assigned."""
        cluster.create_topic("events", 3)
        producer = await producer_factory()

        metadata = await producer.send_and_wait("events", b"hello", partition=2)
        assert metadata.topic_partition == TopicPartition("events", 2)
        assert metadata.offset == 0
        assert cluster.values("events", 2) == [b"hello"]

    @pytest.mark.asyncio
    async def test_pydantic_value(self, cluster, producer_factory):
        """Models are written as JSON."""
        cluster.create_topic("invoices", 1)
        producer = await producer_factory()

        await producer.send_and_wait("invoices", Invoice(invoice_id=7, customer="acme"), key="acme")
        stored = cluster.records("invoices", 0)[0]
        assert stored.key == b"acme"
        assert Invoice.model_validate_json(stored.value) == Invoice(invoice_id=7, customer="acme")

    @pytest.mark.asyncio
    async def test_keyed_records_keep_order(self, cluster, producer_factory):
        """Records with one key land on one partition in send order."""
        cluster.create_topic("events", 3)
        producer = await producer_factory(batch_max_count=5)

        futures = [
            await producer.send("events", f"v{i}".encode(), key=b"customer-9") for i in range(30)
        ]
        results = await asyncio.gather(*futures)

        partitions = {m.partition for m in results}
        assert len(partitions) == 1
        offsets = [m.offset for m in results]
        assert offsets == sorted(offsets)
        assert cluster.values("events", partitions.pop()) == [f"v{i}".encode() for i in range(30)]

    @pytest.mark.asyncio
    async def test_order_kept_across_retries(self, cluster, producer_factory):
        """A retried batch is still written before the batches behind it."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(batch_max_count=4, retries=5)
        cluster.fail_requests(ProduceRequest.API_KEY, count=2)

        futures = [await producer.send("events", f"v{i}".encode()) for i in range(20)]
        await asyncio.gather(*futures)

        assert cluster.values("events", 0) == [f"v{i}".encode() for i in range(20)]

    @pytest.mark.asyncio
    async def test_transport_failure_no_duplicates(self, cluster, producer_factory):
        """A request dropped before the broker saw it is resent exactly once."""
        cluster.create_topic("events", 1)
        producer = await producer_factory()
        cluster.fail_requests(ProduceRequest.API_KEY, count=1)

        metadata = await producer.send_and_wait("events", b"once")
        assert metadata.offset == 0
        assert cluster.values("events", 0) == [b"once"]
        assert len(cluster.requests_of(ProduceRequest)) == 2

    @pytest.mark.asyncio
    async def test_leader_change_retried(self, cluster, producer_factory):
        """NOT_LEADER refreshes metadata and the batch goes to the new leader."""
        cluster.create_topic("events", 1, leaders=[0])
        producer = await producer_factory(retries=10)
        await producer.send_and_wait("events", b"first")

        cluster.move_leader("events", 0, 1)
        metadata = await producer.send_and_wait("events", b"second")

        assert metadata.offset == 1
        assert cluster.values("events", 0) == [b"first", b"second"]
        assert cluster.requests_of(ProduceRequest)[-1][0] == 1


class TestBatching:
    """Tests for sticky keyless batching and flush."""

    @pytest.mark.asyncio
    async def test_keyless_batches_fill_before_moving_on(self, cluster, producer_factory):
        """25 keyless records with 10-record batches give batches of 10, 10 and 5."""
        cluster.create_topic("events", 3)
        producer = await producer_factory(batch_max_count=10, linger_ms=60_000)

        futures = [await producer.send("events", f"v{i}".encode()) for i in range(25)]
        await producer.flush(timeout=5.0)

        assert all(f.done() for f in futures)
        counts = sorted(count for _, count in cluster.produced_batches)
        assert counts == [5, 10, 10]
        assert len({tp for tp, _ in cluster.produced_batches}) == 3

    @pytest.mark.asyncio
    async def test_flush_when_idle_returns(self, cluster, producer_factory):
        """flush with nothing buffered returns at once, and can be repeated."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(linger_ms=60_000)

        await asyncio.wait_for(producer.flush(), 0.5)
        future = await producer.send("events", b"x")
        await producer.flush()
        await producer.flush()
        assert future.done()
        assert cluster.values("events", 0) == [b"x"]

    @pytest.mark.asyncio
    async def test_linger_sends_partial_batch(self, cluster, producer_factory):
        """A partial batch is sent once linger_ms passes."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(linger_ms=20, batch_max_count=100)

        future = await producer.send("events", b"x")
        metadata = await asyncio.wait_for(future, 2.0)
        assert metadata.offset == 0


class TestBackpressure:
    """Tests for blocking when a partition has too many batches in flight."""

    @pytest.mark.asyncio
    async def test_buffer_timeout(self, cluster, producer_factory):
        """A send blocked past its timeout raises BufferTimeoutError."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(batch_max_count=1)
        cluster.delay_requests(ProduceRequest.API_KEY, 0.5, count=3)

        await producer.send("events", b"a", partition=0)
        await producer.send("events", b"b", partition=0)
        with pytest.raises(BufferTimeoutError):
            await producer.send("events", b"c", partition=0, timeout_ms=50)

    @pytest.mark.asyncio
    async def test_cancel_blocked_send(self, cluster, producer_factory):
        """Setting the cancel event abandons a blocked send."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(batch_max_count=1)
        cluster.delay_requests(ProduceRequest.API_KEY, 0.5, count=3)

        await producer.send("events", b"a", partition=0)
        await producer.send("events", b"b", partition=0)

        cancel = asyncio.Event()
        blocked = asyncio.create_task(producer.send("events", b"c", partition=0, cancel=cancel))
        await asyncio.sleep(0.05)
        assert not blocked.done()
        cancel.set()
        with pytest.raises(Cancelled):
            await blocked

    @pytest.mark.asyncio
    async def test_already_cancelled(self, cluster, producer_factory):
        """A set cancel event fails the send before buffering."""
        cluster.create_topic("events", 1)
        producer = await producer_factory()
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            await producer.send("events", b"x", cancel=cancel)

    @pytest.mark.asyncio
    async def test_unblocks_when_batch_acknowledged(self, cluster, producer_factory):
        """A blocked send proceeds once an in-flight batch completes."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(batch_max_count=1)
        cluster.delay_requests(ProduceRequest.API_KEY, 0.1, count=1)

        first = await producer.send("events", b"a", partition=0)
        await producer.send("events", b"b", partition=0)
        third = await producer.send("events", b"c", partition=0, timeout_ms=2000)

        await asyncio.wait_for(third, 2.0)
        assert first.done()
        assert cluster.values("events", 0) == [b"a", b"b", b"c"]


class TestFailures:
    """Tests for records that cannot be delivered."""

    @pytest.mark.asyncio
    async def test_non_retriable_error(self, cluster, producer_factory):
        """A permanent broker error fails the records at once with DeliveryError."""
        cluster.create_topic("events", 1)
        producer = await producer_factory()
        cluster.fail_produce(MESSAGE_SIZE_TOO_LARGE)

        future = await producer.send("events", b"too-big", key=b"k")
        with pytest.raises(DeliveryError) as exc_info:
            await future

        err = exc_info.value
        assert err.attempts == 1
        assert err.topic_partition == TopicPartition("events", 0)
        assert [r.value for r in err.records] == [b"too-big"]
        assert err.records[0].key == b"k"
        assert cluster.values("events", 0) == []

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, cluster, producer_factory):
        """Retriable errors fail with DeliveryError after retries + 1 attempts."""
        cluster.create_topic("events", 1)
        producer = await producer_factory(retries=2)
        cluster.fail_produce(REQUEST_TIMED_OUT, count=10)

        future = await producer.send("events", b"x")
        with pytest.raises(DeliveryError, match="retry budget exhausted") as exc_info:
            await future
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_later_batches_still_delivered(self, cluster, producer_factory):
        """A failed batch does not block the partition for later batches."""
        cluster.create_topic("events", 1)
        producer = await producer_factory()
        cluster.fail_produce(MESSAGE_SIZE_TOO_LARGE)

        failed = await producer.send("events", b"bad")
        with pytest.raises(DeliveryError):
            await failed
        metadata = await producer.send_and_wait("events", b"good")
        assert metadata.offset == 0

    @pytest.mark.asyncio
    async def test_close_cancels_unacknowledged(self, cluster, producer_factory):
        """Records still pending when close times out fail with Cancelled."""
        cluster.create_topic("events", 1)
        producer = await producer_factory()
        cluster.delay_requests(ProduceRequest.API_KEY, 5.0)

        future = await producer.send("events", b"slow")
        await producer.close(timeout=0.1)

        with pytest.raises(Cancelled):
            await future
