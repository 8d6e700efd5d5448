"""
Embedded consumer protocol (version 0).

JoinGroup carries each member's subscription as opaque bytes and SyncGroup
carries each member's assignment the same way; the coordinator never looks
inside. These classes encode and decode those payloads.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from kafka_client.protocol.primitives import Reader, Writer
from kafka_client.structs import TopicPartition

PROTOCOL_TYPE = "consumer"
VERSION = 0


@dataclass
class ConsumerProtocolMemberMetadata:
    """Subscription sent by a member in JoinGroup."""

    topics: List[str]
    user_data: Optional[bytes] = None
    version: int = VERSION

    def encode(self) -> bytes:
        w = Writer().int16(self.version)
        w.array(sorted(self.topics), lambda wr, t: wr.string(t))
        w.bytes(self.user_data)
        return w.getvalue()

    @classmethod
    def decode(cls, data: bytes) -> "ConsumerProtocolMemberMetadata":
        r = Reader(data)
        version = r.int16()
        topics = r.array(lambda x: x.string())
        user_data = r.bytes() if r.remaining >= 4 else None
        return cls(topics=topics, user_data=user_data, version=version)


@dataclass
class ConsumerProtocolMemberAssignment:
    """Partitions handed to one member in SyncGroup."""

    # topic -> sorted partition ids
    assignment: Dict[str, List[int]] = field(default_factory=dict)
    user_data: Optional[bytes] = None
    version: int = VERSION

    @classmethod
    def from_partitions(cls, partitions) -> "ConsumerProtocolMemberAssignment":
        grouped: Dict[str, List[int]] = {}
        for tp in partitions:
            grouped.setdefault(tp.topic, []).append(tp.partition)
        return cls({t: sorted(p) for t, p in sorted(grouped.items())})

    def partitions(self) -> FrozenSet[TopicPartition]:
        return frozenset(
            TopicPartition(topic, p) for topic, parts in self.assignment.items() for p in parts
        )

    def encode(self) -> bytes:
        w = Writer().int16(self.version)
        w.int32(len(self.assignment))
        for topic in sorted(self.assignment):
            w.string(topic).array(sorted(self.assignment[topic]), lambda wr, p: wr.int32(p))
        w.bytes(self.user_data)
        return w.getvalue()

    @classmethod
    def decode(cls, data: bytes) -> "ConsumerProtocolMemberAssignment":
        # An empty payload means "nothing assigned"
        if not data:
            return cls()
        r = Reader(data)
        version = r.int16()
        assignment: Dict[str, List[int]] = {}
        for _ in range(r.int32()):
            topic = r.string()
            assignment[topic] = r.array(lambda x: x.int32())
        user_data = r.bytes() if r.remaining >= 4 else None
        return cls(assignment=assignment, user_data=user_data, version=version)
