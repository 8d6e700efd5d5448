"""
Batching producer with per-partition ordering and at-least-once delivery.

Provides an async producer that:
- Partitions records by key (murmur2) or sticky round-robin when keyless
- Batches records per partition, sealing on size, count, linger or flush
- Applies backpressure once a partition has too many unacknowledged batches
- Retries retryable failures in order and surfaces DeliveryError otherwise
- Serializes pydantic models to JSON
"""

import asyncio
import logging
from typing import Any, Optional, Sequence, Tuple

from pydantic import BaseModel

from core.errors.exceptions import Cancelled, IllegalStateError
from core.logging.context import set_log_context
from core.logging.utilities import log_with_context
from kafka_client.cluster import ConnectionManager
from kafka_client.config import ClientConfig
from kafka_client.partitioner import DefaultPartitioner
from kafka_client.producer.accumulator import RecordAccumulator
from kafka_client.producer.batch import ProducerBatch
from kafka_client.producer.sender import Sender
from kafka_client.structs import RecordMetadata, TopicPartition

logger = logging.getLogger(__name__)


def serialize(obj: Any) -> Optional[bytes]:
    """Turn a key or value into bytes: bytes, str (UTF-8) or a pydantic model (JSON)."""
    if obj is None:
        return None
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return bytes(obj)
    if isinstance(obj, str):
        return obj.encode("utf-8")
    if isinstance(obj, BaseModel):
        return obj.model_dump_json().encode("utf-8")
    raise TypeError(
        f"Cannot serialize {type(obj).__name__}; pass bytes, str or a pydantic model"
    )


class Producer:
    """
    Async producer.

    Usage:
        async with Producer(config) as producer:
            future = await producer.send("events", b"payload", key=b"user-1")
            metadata = await future

    A producer created without a ConnectionManager builds its own and closes
    it on close(); a shared manager is left open for its owner.
    """

    def __init__(
        self,
        config: ClientConfig,
        manager: Optional[ConnectionManager] = None,
        partitioner: Optional[DefaultPartitioner] = None,
    ):
        self.config = config
        self._manager = manager or ConnectionManager(config)
        self._owns_manager = manager is None
        self._partitioner = partitioner or DefaultPartitioner()

        self._queue: Optional["asyncio.Queue[ProducerBatch]"] = None
        self._accumulator: Optional[RecordAccumulator] = None
        self._sender: Optional[Sender] = None
        self._started = False
        self._closed = False

        log_with_context(
            logger,
            logging.INFO,
            "Initialized producer",
            operation="init",
            policy=f"acks={config.acks}",
            retry_count=config.retries,
        )

    async def start(self) -> "Producer":
        """Connect (if the manager is ours) and start the sender task."""
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return self
        if self._closed:
            raise IllegalStateError("Producer is closed")

        set_log_context(client_id=self.config.client_id, component="producer")
        if not self._manager.is_connected:
            await self._manager.connect()

        self._queue = asyncio.Queue()
        self._accumulator = RecordAccumulator(
            self.config,
            self._partitioner,
            self._queue,
            lambda: self._manager.metadata,
        )
        self._sender = Sender(self._manager, self._accumulator, self._queue, self.config)
        self._sender.start()
        self._started = True
        logger.info(
            "Producer started",
            extra={"operation": "start", "policy": f"linger_ms={self.config.linger_ms}"},
        )
        return self

    async def __aenter__(self) -> "Producer":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_started(self) -> bool:
        return self._started and not self._closed

    def _ensure_started(self) -> None:
        if not self._started or self._accumulator is None:
            raise IllegalStateError("Producer not started. Call start() first.")
        if self._closed:
            raise IllegalStateError("Producer is closed")

    # =========================================================================
    # Sending
    # =========================================================================

    async def partitions_for(self, topic: str) -> Sequence[int]:
        return await self._manager.partitions_for(topic)

    async def send(
        self,
        topic: str,
        value: Any = None,
        key: Any = None,
        timestamp_ms: Optional[int] = None,
        headers: Optional[Sequence[Tuple[str, bytes]]] = None,
        partition: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> "asyncio.Future[RecordMetadata]":
        """
        Buffer a record for sending.

        Returns once the record is in a batch; await the returned future for
        the broker acknowledgement.

        Args:
            topic: Target topic
            value: Record value (bytes, str, pydantic model or None)
            key: Record key; equal keys always land on the same partition
            timestamp_ms: Create time, defaults to now
            headers: (name, bytes) pairs
            partition: Explicit partition, bypassing the partitioner
            timeout_ms: Max time to block on backpressure
                (default: config.max_block_ms)
            cancel: Event that abandons a blocked send with Cancelled

        Returns:
            Future resolving to RecordMetadata, or failing with DeliveryError
            or Cancelled

        Raises:
            MetadataError: Topic unknown after the metadata retry budget
            BufferTimeoutError: Backpressure wait exceeded timeout_ms
            Cancelled: ``cancel`` was set while blocked
        """
        self._ensure_started()
        assert self._accumulator is not None

        if cancel is not None and cancel.is_set():
            raise Cancelled("send cancelled")

        key_bytes = serialize(key)
        value_bytes = serialize(value)

        partitions = await self._manager.partitions_for(topic)
        if partition is None:
            partition = self._partitioner.partition(topic, key_bytes, partitions)
        elif partition not in partitions:
            raise ValueError(f"Partition {partition} does not exist for topic '{topic}'")

        timeout = timeout_ms if timeout_ms is not None else self.config.max_block_ms
        return await self._accumulator.append(
            TopicPartition(topic, partition),
            key_bytes,
            value_bytes,
            timestamp_ms=timestamp_ms,
            headers=headers,
            timeout=timeout / 1000,
            cancel=cancel,
        )

    async def send_and_wait(
        self,
        topic: str,
        value: Any = None,
        key: Any = None,
        **kwargs: Any,
    ) -> RecordMetadata:
        """Send a record and wait for its acknowledgement."""
        future = await self.send(topic, value, key=key, **kwargs)
        return await future

    async def flush(self, timeout: Optional[float] = None) -> None:
        """
        Seal every open batch and wait until all batches pending at call
        time are acknowledged or failed. Returns at once when nothing is
        pending.

        Raises:
            asyncio.TimeoutError: If ``timeout`` seconds elapse first
        """
        self._ensure_started()
        assert self._accumulator is not None

        pending = self._accumulator.begin_flush()
        if not pending:
            return

        log_with_context(
            logger,
            logging.DEBUG,
            "Flushing producer",
            operation="flush",
            record_count=sum(b.record_count for b in pending),
        )
        await asyncio.wait_for(
            asyncio.gather(*(batch.wait() for batch in pending)), timeout
        )

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Flush, stop the sender and release resources.

        Records still unacknowledged after ``timeout`` seconds fail with
        Cancelled. Safe to call more than once.
        """
        if self._closed:
            return
        if not self._started:
            self._closed = True
            if self._owns_manager:
                await self._manager.close()
            return

        logger.info("Closing producer", extra={"operation": "close"})
        try:
            await self.flush(timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Flush timed out during close, cancelling remaining records",
                extra={"operation": "close"},
            )
        finally:
            self._closed = True
            error = Cancelled("Producer closed before acknowledgement")
            assert self._accumulator is not None and self._sender is not None
            self._accumulator.abort(error)
            await self._sender.stop(error)
            if self._owns_manager:
                await self._manager.close()
            logger.info("Producer closed", extra={"operation": "close"})
