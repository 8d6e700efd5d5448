"""
Record batch (magic v2) encoding and decoding.

Built on aiokafka's record codec. Producers write relative offsets starting
at 0; the broker stamps the base offset when it appends the batch, which is
why ``set_base_offset`` only has to patch the first eight bytes (the CRC
does not cover them).
"""

import struct
from typing import Iterator, List, Optional, Sequence, Tuple

from aiokafka.record.default_records import DefaultRecordBatchBuilder
from aiokafka.record.memory_records import MemoryRecords

from kafka_client.structs import ConsumerRecord

MAGIC_V2 = 2
NO_COMPRESSION = 0

Headers = Sequence[Tuple[str, bytes]]


class RecordBatchWriter:
    """
    Accumulates records into one v2 batch.

    ``append`` returns None once the batch cannot take the record without
    exceeding ``max_bytes``; the first record is always accepted.
    """

    def __init__(self, max_bytes: int):
        self._builder = DefaultRecordBatchBuilder(
            MAGIC_V2,
            NO_COMPRESSION,
            0,  # is_transactional
            -1,  # producer_id
            -1,  # producer_epoch
            -1,  # base_sequence
            max_bytes,
        )
        self._count = 0

    def append(
        self,
        key: Optional[bytes],
        value: Optional[bytes],
        timestamp_ms: Optional[int],
        headers: Optional[Headers] = None,
    ) -> Optional[int]:
        """Append a record; return its timestamp, or None if the batch is full."""
        meta = self._builder.append(
            self._count, timestamp_ms, key, value, list(headers or [])
        )
        if meta is None:
            return None
        self._count += 1
        return meta.timestamp

    @property
    def record_count(self) -> int:
        return self._count

    def size(self) -> int:
        return self._builder.size()

    def build(self) -> bytes:
        return bytes(self._builder.build())


def _iter_batches(data: bytes) -> Iterator:
    records = MemoryRecords(bytes(data))
    while True:
        batch = records.next_batch()
        if batch is None:
            return
        yield batch


def decode_records(
    topic: str, partition: int, data: Optional[bytes], fetch_offset: int = 0
) -> List[ConsumerRecord]:
    """
    Decode the record set of a fetch response.

    Records below ``fetch_offset`` are dropped: a broker returns whole
    batches, so the first batch may start before the requested position.
    Control batches carry no user records and are skipped.
    """
    if not data:
        return []

    out: List[ConsumerRecord] = []
    for batch in _iter_batches(data):
        if getattr(batch, "is_control_batch", False):
            continue
        for record in batch:
            if record.offset < fetch_offset:
                continue
            key = record.key
            value = record.value
            out.append(
                ConsumerRecord(
                    topic=topic,
                    partition=partition,
                    offset=record.offset,
                    timestamp=record.timestamp,
                    timestamp_type=record.timestamp_type,
                    key=key,
                    value=value,
                    checksum=record.checksum,
                    serialized_key_size=len(key) if key is not None else -1,
                    serialized_value_size=len(value) if value is not None else -1,
                    headers=tuple(record.headers),
                )
            )
    return out


def count_records(data: bytes) -> int:
    """Number of records in an encoded record set."""
    return sum(sum(1 for _ in batch) for batch in _iter_batches(data))


def set_base_offset(data: bytes, base_offset: int) -> bytes:
    """Copy of a single batch with its base offset replaced."""
    buf = bytearray(data)
    struct.pack_into(">q", buf, 0, base_offset)
    return bytes(buf)
