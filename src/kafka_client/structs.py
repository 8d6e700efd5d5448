"""
Value types shared across the client.

Kafka's own record types (TopicPartition, RecordMetadata, ConsumerRecord,
OffsetAndMetadata) come from aiokafka.structs; this module adds the cluster
and group snapshots. Every type here is immutable: a refresh or a rebalance
builds a new instance and swaps the reference.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from aiokafka.structs import (
    ConsumerRecord,
    OffsetAndMetadata,
    RecordMetadata,
    TopicPartition,
)

__all__ = [
    "BrokerNode",
    "ClusterMetadata",
    "ConsumerRecord",
    "MemberAssignment",
    "OffsetAndMetadata",
    "PartitionInfo",
    "RebalanceRequired",
    "RecordMetadata",
    "TopicPartition",
]


@dataclass(frozen=True)
class BrokerNode:
    """A broker as advertised in metadata."""

    node_id: int
    host: str
    port: int
    rack: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class PartitionInfo:
    """Leader and replica placement for one partition."""

    topic: str
    partition: int
    leader: int
    replicas: Tuple[int, ...] = ()
    isr: Tuple[int, ...] = ()
    error_code: int = 0

    @property
    def topic_partition(self) -> TopicPartition:
        return TopicPartition(self.topic, self.partition)


@dataclass(frozen=True)
class ClusterMetadata:
    """
    Immutable snapshot of brokers and topic layouts.

    Readers hold a reference to one snapshot for the duration of an
    operation; ``merge`` returns a new snapshot rather than editing this one.
    """

    brokers: Mapping[int, BrokerNode] = field(default_factory=dict)
    topics: Mapping[str, Mapping[int, PartitionInfo]] = field(default_factory=dict)
    controller_id: int = -1
    topic_errors: Mapping[str, int] = field(default_factory=dict)
    created_at: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "brokers", MappingProxyType(dict(self.brokers)))
        object.__setattr__(
            self,
            "topics",
            MappingProxyType(
                {t: MappingProxyType(dict(p)) for t, p in self.topics.items()}
            ),
        )
        object.__setattr__(self, "topic_errors", MappingProxyType(dict(self.topic_errors)))

    def broker(self, node_id: int) -> Optional[BrokerNode]:
        return self.brokers.get(node_id)

    def partitions_for(self, topic: str) -> Optional[List[int]]:
        """Sorted partition ids, or None if the topic is unknown."""
        parts = self.topics.get(topic)
        if parts is None:
            return None
        return sorted(parts)

    def leader_for(self, tp: TopicPartition) -> Optional[int]:
        """Leader node id, or None if unknown or leaderless."""
        info = self.topics.get(tp.topic, {}).get(tp.partition)
        if info is None or info.leader < 0:
            return None
        return info.leader

    def partition_map(self, topic: str) -> Dict[int, int]:
        """partition -> leader node id for a topic."""
        return {
            p: info.leader for p, info in sorted(self.topics.get(topic, {}).items())
        }

    def merge(self, other: "ClusterMetadata") -> "ClusterMetadata":
        """New snapshot: brokers from ``other``, topics of ``other`` replacing ours."""
        topics: Dict[str, Mapping[int, PartitionInfo]] = dict(self.topics)
        topics.update(other.topics)
        errors = {t: c for t, c in self.topic_errors.items() if t not in other.topics}
        errors.update(other.topic_errors)
        return ClusterMetadata(
            brokers=other.brokers or self.brokers,
            topics=topics,
            controller_id=other.controller_id,
            topic_errors=errors,
            created_at=other.created_at,
        )


@dataclass(frozen=True)
class MemberAssignment:
    """Partitions owned by this member for one group generation."""

    group_id: str
    generation_id: int
    member_id: str
    partitions: FrozenSet[TopicPartition] = frozenset()

    @classmethod
    def empty(cls, group_id: str = "") -> "MemberAssignment":
        return cls(group_id=group_id, generation_id=-1, member_id="")

    def sorted_partitions(self) -> List[TopicPartition]:
        return sorted(self.partitions)

    def __contains__(self, tp: object) -> bool:
        return tp in self.partitions

    def __len__(self) -> int:
        return len(self.partitions)


@dataclass(frozen=True)
class RebalanceRequired:
    """Heartbeat-task message telling the member to rejoin."""

    reason: str
    error_code: Optional[int] = None
