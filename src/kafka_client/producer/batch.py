"""Producer batch: records bound for one partition, sent and acknowledged together."""

import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional

from kafka_client.protocol.records import Headers, RecordBatchWriter
from kafka_client.structs import RecordMetadata, TopicPartition

# RecordMetadata.timestamp_type values
CREATE_TIME = 0
LOG_APPEND_TIME = 1


@dataclass(frozen=True)
class ProducerRecord:
    """A record as the caller handed it over; returned inside DeliveryError."""

    topic: str
    partition: int
    key: Optional[bytes]
    value: Optional[bytes]
    timestamp_ms: int
    headers: tuple = ()


class ProducerBatch:
    """
    Records for one partition.

    Lifecycle: open (accepting records) -> sealed (encoded, queued for the
    sender) -> done (every record future resolved or failed). A sealed
    batch is re-sent unchanged on retry.
    """

    def __init__(
        self,
        tp: TopicPartition,
        sequence: int,
        max_bytes: int,
        max_count: int,
    ):
        self.tp = tp
        self.sequence = sequence
        self.max_count = max_count
        self.created_at = time.monotonic()

        self.records: List[ProducerRecord] = []
        self.attempts = 0
        self.ready = False
        self.encoded: Optional[bytes] = None
        self.linger_handle: Optional[asyncio.TimerHandle] = None

        self._writer = RecordBatchWriter(max_bytes)
        self._max_bytes = max_bytes
        self._futures: List[asyncio.Future] = []
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def size_bytes(self) -> int:
        return len(self.encoded) if self.encoded is not None else self._writer.size()

    @property
    def sealed(self) -> bool:
        return self.encoded is not None

    @property
    def is_full(self) -> bool:
        return self.record_count >= self.max_count or self._writer.size() >= self._max_bytes

    @property
    def done(self) -> bool:
        return self._done.done()

    def try_append(
        self,
        key: Optional[bytes],
        value: Optional[bytes],
        timestamp_ms: Optional[int],
        headers: Optional[Headers] = None,
    ) -> Optional[asyncio.Future]:
        """Add a record; None if the batch is sealed or has no room left."""
        if self.sealed or self.record_count >= self.max_count:
            return None
        timestamp = self._writer.append(key, value, timestamp_ms, headers)
        if timestamp is None:
            return None

        self.records.append(
            ProducerRecord(
                topic=self.tp.topic,
                partition=self.tp.partition,
                key=key,
                value=value,
                timestamp_ms=timestamp,
                headers=tuple(headers or ()),
            )
        )
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._futures.append(future)
        return future

    def seal(self) -> bytes:
        """Encode the batch; no records can be added afterwards."""
        if self.linger_handle is not None:
            self.linger_handle.cancel()
            self.linger_handle = None
        if self.encoded is None:
            self.encoded = self._writer.build()
        return self.encoded

    def complete(self, base_offset: int, log_append_time: int = -1) -> None:
        """Resolve every record future with its offset (base_offset + index)."""
        for index, (record, future) in enumerate(zip(self.records, self._futures)):
            if future.done():
                continue
            if log_append_time is not None and log_append_time >= 0:
                timestamp, timestamp_type = log_append_time, LOG_APPEND_TIME
            else:
                timestamp, timestamp_type = record.timestamp_ms, CREATE_TIME
            future.set_result(
                RecordMetadata(
                    topic=self.tp.topic,
                    partition=self.tp.partition,
                    topic_partition=self.tp,
                    offset=base_offset + index,
                    timestamp=timestamp,
                    timestamp_type=timestamp_type,
                    log_start_offset=None,
                )
            )
        if not self._done.done():
            self._done.set_result(None)

    def fail(self, error: BaseException) -> None:
        """Fail every unresolved record future with ``error``."""
        for future in self._futures:
            if not future.done():
                future.set_exception(error)
                # Mark retrieved so an unobserved future does not log at GC
                future.exception()
        if not self._done.done():
            self._done.set_result(None)

    async def wait(self) -> None:
        await asyncio.shield(self._done)

    def __repr__(self) -> str:
        state = "done" if self.done else ("sealed" if self.sealed else "open")
        return (
            f"<ProducerBatch {self.tp.topic}-{self.tp.partition} seq={self.sequence} "
            f"records={self.record_count} {state}>"
        )
