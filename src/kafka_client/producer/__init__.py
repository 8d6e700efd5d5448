"""
Producer package.

    - batch: ProducerBatch, ProducerRecord
    - accumulator: per-partition batching and backpressure
    - sender: background delivery with ordered retries
    - producer: the public Producer
"""

from kafka_client.producer.batch import ProducerBatch, ProducerRecord
from kafka_client.producer.producer import Producer, serialize

__all__ = [
    "Producer",
    "ProducerBatch",
    "ProducerRecord",
    "serialize",
]
