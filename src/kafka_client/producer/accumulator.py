"""
Record accumulator: per-partition batching with backpressure.

Holds one open batch per partition. A batch becomes ready when it reaches
``batch_max_bytes`` or ``batch_max_count``, when its linger timer fires,
or when a flush is requested. A ready batch is sealed and put on the
sender queue as soon as the partition has fewer than
``max_in_flight_per_partition`` sealed, unacknowledged batches. While the
limit is reached and the open batch is full, ``append`` blocks.

Only the producer's batching logic touches the open batches; the sender
only sees sealed batches through the queue.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set

from core.errors.exceptions import BufferTimeoutError, Cancelled
from core.logging.utilities import log_with_context
from kafka_client import metrics
from kafka_client.config import ClientConfig
from kafka_client.partitioner import DefaultPartitioner
from kafka_client.producer.batch import ProducerBatch
from kafka_client.protocol.records import Headers
from kafka_client.structs import ClusterMetadata, TopicPartition

logger = logging.getLogger(__name__)


class RecordAccumulator:
    """Per-partition open batches feeding a queue of sealed batches."""

    def __init__(
        self,
        config: ClientConfig,
        partitioner: DefaultPartitioner,
        ready_queue: "asyncio.Queue[ProducerBatch]",
        metadata_view,
    ):
        """
        Args:
            config: Client configuration (batch limits, linger, in-flight limit)
            partitioner: Notified when a sticky keyless batch seals
            ready_queue: Hand-off to the sender task
            metadata_view: Zero-argument callable returning the current
                ClusterMetadata snapshot
        """
        self.config = config
        self._partitioner = partitioner
        self._queue = ready_queue
        self._metadata_view = metadata_view

        self._open: Dict[TopicPartition, ProducerBatch] = {}
        self._in_flight: Dict[TopicPartition, int] = {}
        self._sequences: Dict[TopicPartition, int] = {}
        self._slot_events: Dict[TopicPartition, asyncio.Event] = {}
        self._incomplete: Set[ProducerBatch] = set()
        self._closed = False

    # =========================================================================
    # Append path
    # =========================================================================

    async def append(
        self,
        tp: TopicPartition,
        key: Optional[bytes],
        value: Optional[bytes],
        timestamp_ms: Optional[int] = None,
        headers: Optional[Headers] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> asyncio.Future:
        """
        Add a record to the partition's open batch.

        Args:
            tp: Target partition
            key: Serialized key
            value: Serialized value
            timestamp_ms: Create time; None uses the current time
            headers: Record headers
            timeout: Max seconds to block on the in-flight limit
            cancel: Event that abandons the wait when set

        Returns:
            Future resolved with RecordMetadata on acknowledgement

        Raises:
            BufferTimeoutError: In-flight limit still reached after ``timeout``
            Cancelled: ``cancel`` was set before the record was accepted
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        wait_started: Optional[float] = None

        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled("send cancelled before the record was buffered")
            if self._closed:
                raise Cancelled("Producer is closing")

            batch = self._open.get(tp)
            if batch is None:
                batch = self._new_batch(tp)

            future = batch.try_append(key, value, timestamp_ms, headers)
            if future is not None:
                if batch.is_full or self.config.linger_ms == 0:
                    self._mark_ready(batch)
                if wait_started is not None:
                    metrics.record_buffer_wait(tp.topic, time.monotonic() - wait_started)
                return future

            # Open batch has no room: it must seal before this record fits
            self._mark_ready(batch)
            if self._open.get(tp) is not batch:
                continue

            if wait_started is None:
                wait_started = time.monotonic()
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "In-flight limit reached, send blocked",
                    topic=tp.topic,
                    partition=tp.partition,
                )
            await self._wait_for_slot(tp, deadline, cancel)

    def _new_batch(self, tp: TopicPartition) -> ProducerBatch:
        sequence = self._sequences.get(tp, 0)
        self._sequences[tp] = sequence + 1
        batch = ProducerBatch(
            tp,
            sequence=sequence,
            max_bytes=self.config.batch_max_bytes,
            max_count=self.config.batch_max_count,
        )
        self._open[tp] = batch
        self._incomplete.add(batch)
        if self.config.linger_ms > 0:
            batch.linger_handle = asyncio.get_running_loop().call_later(
                self.config.linger_ms / 1000, self._on_linger, batch
            )
        return batch

    def _on_linger(self, batch: ProducerBatch) -> None:
        batch.linger_handle = None
        if self._open.get(batch.tp) is batch:
            self._mark_ready(batch)

    def _mark_ready(self, batch: ProducerBatch) -> None:
        batch.ready = True
        self._maybe_seal(batch.tp)

    def _maybe_seal(self, tp: TopicPartition) -> None:
        batch = self._open.get(tp)
        if batch is None or not batch.ready or batch.record_count == 0:
            return
        if self._in_flight.get(tp, 0) >= self.config.max_in_flight_per_partition:
            return

        del self._open[tp]
        batch.seal()
        self._in_flight[tp] = self._in_flight.get(tp, 0) + 1

        metadata: ClusterMetadata = self._metadata_view()
        partitions = metadata.partitions_for(tp.topic) or []
        self._partitioner.on_batch_sealed(tp.topic, tp.partition, partitions)

        metrics.record_batch_sealed(tp.topic, batch.record_count)
        log_with_context(
            logger,
            logging.DEBUG,
            "Batch sealed",
            topic=tp.topic,
            partition=tp.partition,
            batch_sequence=batch.sequence,
            record_count=batch.record_count,
            batch_bytes=batch.size_bytes,
        )
        self._queue.put_nowait(batch)

    async def _wait_for_slot(
        self,
        tp: TopicPartition,
        deadline: Optional[float],
        cancel: Optional[asyncio.Event],
    ) -> None:
        event = self._slot_events.setdefault(tp, asyncio.Event())
        waiters = [asyncio.ensure_future(event.wait())]
        if cancel is not None:
            waiters.append(asyncio.ensure_future(cancel.wait()))

        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        if cancel is not None and cancel.is_set():
            raise Cancelled("send cancelled while waiting for buffer space")
        if not done:
            raise BufferTimeoutError(
                f"Timed out waiting for in-flight batches on {tp.topic}-{tp.partition}",
                context={"topic": tp.topic, "partition": tp.partition},
            )

    # =========================================================================
    # Completion and flush
    # =========================================================================

    def batch_done(self, batch: ProducerBatch) -> None:
        """Called by the sender once a batch is acknowledged or failed."""
        self._incomplete.discard(batch)
        tp = batch.tp
        if batch.sealed:
            self._in_flight[tp] = max(0, self._in_flight.get(tp, 0) - 1)
        self._maybe_seal(tp)

        event = self._slot_events.pop(tp, None)
        if event is not None:
            event.set()

    def in_flight(self, tp: TopicPartition) -> int:
        return self._in_flight.get(tp, 0)

    def has_incomplete(self) -> bool:
        return bool(self._incomplete)

    def begin_flush(self) -> List[ProducerBatch]:
        """Mark every open batch ready; return all batches not yet done."""
        pending = [b for b in self._incomplete if not b.done]
        for batch in list(self._open.values()):
            self._mark_ready(batch)
        return pending

    def abort(self, error: BaseException) -> List[ProducerBatch]:
        """Fail every open batch and wake blocked senders. Returns the aborted batches."""
        self._closed = True
        aborted = []
        for tp, batch in list(self._open.items()):
            if batch.linger_handle is not None:
                batch.linger_handle.cancel()
                batch.linger_handle = None
            batch.fail(error)
            self._incomplete.discard(batch)
            aborted.append(batch)
            del self._open[tp]
        for event in self._slot_events.values():
            event.set()
        self._slot_events.clear()
        return aborted
