"""
Partition assignment strategies.

The group leader runs an assignor over every member's subscription and the
topic layout. Both strategies sort members and partitions first, so the
result depends only on who is in the group and what they subscribe to, not
on the order in which members joined or metadata arrived.
"""

from abc import ABC, abstractmethod
from typing import Collection, Dict, FrozenSet, List, Mapping, Sequence

from kafka_client.protocol.consumer_protocol import ConsumerProtocolMemberMetadata
from kafka_client.structs import TopicPartition

Assignment = Dict[str, FrozenSet[TopicPartition]]


class AbstractPartitionAssignor(ABC):
    """Computes member -> partitions for one generation."""

    name: str = ""

    @abstractmethod
    def assign(
        self,
        partitions_per_topic: Mapping[str, Sequence[int]],
        subscriptions: Mapping[str, Collection[str]],
    ) -> Assignment:
        """
        Args:
            partitions_per_topic: topic -> partition ids
            subscriptions: member id -> subscribed topics

        Returns:
            member id -> assigned partitions, with an entry for every member
        """

    def metadata(self, topics: Collection[str]) -> ConsumerProtocolMemberMetadata:
        return ConsumerProtocolMemberMetadata(topics=sorted(topics))


class RangePartitionAssignor(AbstractPartitionAssignor):
    """
    Per topic, split the sorted partitions into contiguous ranges over the
    sorted subscribed members. The first ``partitions % members`` members
    receive one extra partition.

    Example, 7 partitions and 3 members: [0, 1, 2], [3, 4], [5, 6].
    """

    name = "range"

    def assign(
        self,
        partitions_per_topic: Mapping[str, Sequence[int]],
        subscriptions: Mapping[str, Collection[str]],
    ) -> Assignment:
        result: Dict[str, List[TopicPartition]] = {m: [] for m in subscriptions}

        for topic in sorted(partitions_per_topic):
            members = sorted(m for m, topics in subscriptions.items() if topic in topics)
            if not members:
                continue
            partitions = sorted(partitions_per_topic[topic])
            per_member, extra = divmod(len(partitions), len(members))

            start = 0
            for i, member in enumerate(members):
                count = per_member + (1 if i < extra else 0)
                result[member].extend(
                    TopicPartition(topic, p) for p in partitions[start : start + count]
                )
                start += count

        return {m: frozenset(tps) for m, tps in result.items()}


class RoundRobinPartitionAssignor(AbstractPartitionAssignor):
    """
    Deal all sorted partitions of all topics to the sorted members in turn,
    skipping members not subscribed to a partition's topic.
    """

    name = "roundrobin"

    def assign(
        self,
        partitions_per_topic: Mapping[str, Sequence[int]],
        subscriptions: Mapping[str, Collection[str]],
    ) -> Assignment:
        result: Dict[str, List[TopicPartition]] = {m: [] for m in subscriptions}
        members = sorted(subscriptions)
        if not members:
            return {}

        cursor = 0
        for topic in sorted(partitions_per_topic):
            eligible = {m for m in members if topic in subscriptions[m]}
            if not eligible:
                continue
            for partition in sorted(partitions_per_topic[topic]):
                while members[cursor % len(members)] not in eligible:
                    cursor += 1
                result[members[cursor % len(members)]].append(TopicPartition(topic, partition))
                cursor += 1

        return {m: frozenset(tps) for m, tps in result.items()}


ASSIGNORS = {
    RangePartitionAssignor.name: RangePartitionAssignor,
    RoundRobinPartitionAssignor.name: RoundRobinPartitionAssignor,
}


def assignor_for(name: str) -> AbstractPartitionAssignor:
    """Instantiate an assignor by protocol name."""
    try:
        return ASSIGNORS[name]()
    except KeyError:
        raise ValueError(f"Unknown partition assignment strategy '{name}'") from None
