"""
Consumer group coordination.

    - assignors: range and round-robin partition assignment
    - coordinator: join/sync/heartbeat/leave and offset storage for one member
"""

from kafka_client.group.assignors import (
    AbstractPartitionAssignor,
    RangePartitionAssignor,
    RoundRobinPartitionAssignor,
    assignor_for,
)
from kafka_client.group.coordinator import ConsumerRebalanceListener, GroupCoordinator

__all__ = [
    "AbstractPartitionAssignor",
    "ConsumerRebalanceListener",
    "GroupCoordinator",
    "RangePartitionAssignor",
    "RoundRobinPartitionAssignor",
    "assignor_for",
]
