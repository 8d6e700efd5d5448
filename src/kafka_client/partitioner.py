"""
Partition selection for produced records.

Keyed records hash with murmur2, the same function the Java client uses,
so a key lands on the same partition regardless of which client wrote it.

Keyless records use a per-topic rotating counter. The accumulator keeps
appending to the partition the counter points at until that partition's
open batch seals, then calls ``on_batch_sealed`` to advance the counter.
Batches stay full while records still spread evenly across partitions.
"""

import random
from typing import Dict, Optional, Sequence

from aiokafka.partitioner import murmur2


class DefaultPartitioner:
    """Keyed murmur2 hashing plus sticky round-robin for keyless records."""

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)
        self._counters: Dict[str, int] = {}

    @staticmethod
    def partition_for_key(key: bytes, partition_count: int) -> int:
        return (murmur2(key) & 0x7FFFFFFF) % partition_count

    def partition(
        self,
        topic: str,
        key: Optional[bytes],
        partitions: Sequence[int],
    ) -> int:
        """
        Choose a partition for one record.

        Args:
            topic: Target topic
            key: Serialized key, or None
            partitions: Sorted partition ids of the topic

        Returns:
            Partition id
        """
        if not partitions:
            raise ValueError(f"Topic '{topic}' has no partitions")
        if key is not None:
            return partitions[self.partition_for_key(key, len(partitions))]

        counter = self._counters.get(topic)
        if counter is None:
            counter = self._random.randrange(len(partitions))
            self._counters[topic] = counter
        return partitions[counter % len(partitions)]

    def on_batch_sealed(self, topic: str, partition: int, partitions: Sequence[int]) -> None:
        """Advance the keyless counter once the sticky partition's batch seals."""
        counter = self._counters.get(topic)
        if counter is None or not partitions:
            return
        if partitions[counter % len(partitions)] == partition:
            self._counters[topic] = (counter + 1) % len(partitions)
