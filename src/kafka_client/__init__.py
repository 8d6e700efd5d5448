"""
Async streaming client for partitioned, topic-based logs.

    - config: ClientConfig (env vars, config.yaml)
    - cluster: ConnectionManager (bootstrap, metadata, per-node connections)
    - producer: batching Producer with ordered retries
    - group: consumer group coordination and partition assignors
    - consumer: group Consumer with offset tracking
"""

from kafka_client.cluster import ConnectionManager
from kafka_client.config import ClientConfig
from kafka_client.consumer import Consumer, PollResult
from kafka_client.group import ConsumerRebalanceListener, GroupCoordinator
from kafka_client.partitioner import DefaultPartitioner
from kafka_client.producer import Producer
from kafka_client.structs import (
    ConsumerRecord,
    MemberAssignment,
    OffsetAndMetadata,
    RecordMetadata,
    TopicPartition,
)

__all__ = [
    "ClientConfig",
    "ConnectionManager",
    "Consumer",
    "ConsumerRebalanceListener",
    "ConsumerRecord",
    "DefaultPartitioner",
    "GroupCoordinator",
    "MemberAssignment",
    "OffsetAndMetadata",
    "PollResult",
    "Producer",
    "RecordMetadata",
    "TopicPartition",
]
