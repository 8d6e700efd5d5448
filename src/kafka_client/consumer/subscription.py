"""
Consumer-side partition state: assignment snapshot, positions, buffers.

Positions are "next offset to hand to the application". A record fetched
from the broker sits in its partition buffer until the application iterates
past it in a PollResult; only then does the position move. That makes a
poll result restartable: whatever was not iterated is still buffered and
comes back on the next poll.
"""

from collections import deque
from typing import Callable, Deque, Dict, FrozenSet, Iterable, Iterator, List, Optional

from kafka_client.structs import (
    ConsumerRecord,
    MemberAssignment,
    OffsetAndMetadata,
    TopicPartition,
)


class SubscriptionState:
    """Per-consumer bookkeeping for assigned partitions."""

    def __init__(self) -> None:
        self._assignment = MemberAssignment.empty()
        self._positions: Dict[TopicPartition, int] = {}
        self._buffers: Dict[TopicPartition, Deque[ConsumerRecord]] = {}
        self._committed: Dict[TopicPartition, int] = {}

    # =========================================================================
    # Assignment
    # =========================================================================

    @property
    def assignment(self) -> MemberAssignment:
        return self._assignment

    def assigned_partitions(self) -> FrozenSet[TopicPartition]:
        return self._assignment.partitions

    def is_assigned(self, tp: TopicPartition) -> bool:
        return tp in self._assignment

    def assign(self, assignment: MemberAssignment) -> None:
        """Install a new assignment snapshot; state of other partitions is dropped."""
        self._assignment = assignment
        for state in (self._positions, self._buffers, self._committed):
            for tp in [tp for tp in state if tp not in assignment]:
                del state[tp]

    def revoke(self) -> Dict[TopicPartition, int]:
        """
        Release every partition.

        Returns:
            Positions of the released partitions that moved past their last
            commit, for a final commit
        """
        pending = self.uncommitted_positions()
        self.assign(MemberAssignment.empty(self._assignment.group_id))
        return pending

    # =========================================================================
    # Positions
    # =========================================================================

    def has_position(self, tp: TopicPartition) -> bool:
        return tp in self._positions

    def position(self, tp: TopicPartition) -> Optional[int]:
        return self._positions.get(tp)

    def missing_positions(self) -> List[TopicPartition]:
        return [tp for tp in self._assignment.sorted_partitions() if tp not in self._positions]

    def seek(self, tp: TopicPartition, offset: int) -> None:
        """Set the position and discard anything buffered for the partition."""
        if not self.is_assigned(tp):
            raise ValueError(f"Partition {tp.topic}-{tp.partition} is not assigned")
        if offset < 0:
            raise ValueError("offset must not be negative")
        self._positions[tp] = offset
        self._buffers.pop(tp, None)

    # =========================================================================
    # Commit tracking
    # =========================================================================

    def uncommitted_positions(self) -> Dict[TopicPartition, int]:
        return {
            tp: position
            for tp, position in sorted(self._positions.items())
            if self._committed.get(tp) != position
        }

    def uncommitted_offsets(self) -> Dict[TopicPartition, OffsetAndMetadata]:
        return {
            tp: OffsetAndMetadata(position, "")
            for tp, position in self.uncommitted_positions().items()
        }

    def mark_committed(self, offsets: Dict[TopicPartition, OffsetAndMetadata]) -> None:
        for tp, meta in offsets.items():
            if self.is_assigned(tp):
                self._committed[tp] = meta.offset

    def set_committed(self, tp: TopicPartition, offset: int) -> None:
        if self.is_assigned(tp):
            self._committed[tp] = offset

    # =========================================================================
    # Buffered records
    # =========================================================================

    def fetchable_partitions(self) -> List[TopicPartition]:
        """Assigned partitions with a position and nothing buffered."""
        return [
            tp
            for tp in self._assignment.sorted_partitions()
            if tp in self._positions and not self._buffers.get(tp)
        ]

    def add_records(
        self, tp: TopicPartition, fetch_offset: int, records: Iterable[ConsumerRecord]
    ) -> int:
        """
        Buffer fetched records if the fetch is still current.

        A fetch is stale when the partition was revoked or seeked while the
        request was in flight; its records are dropped.

        Returns:
            Number of records buffered
        """
        if not self.is_assigned(tp) or self._positions.get(tp) != fetch_offset:
            return 0
        if self._buffers.get(tp):
            return 0
        records = [r for r in records if r.offset >= fetch_offset]
        if records:
            self._buffers[tp] = deque(records)
        return len(records)

    def has_buffered(self) -> bool:
        return any(self._buffers.values())

    def snapshot(self, max_records: int) -> List[ConsumerRecord]:
        """Up to ``max_records`` buffered records, partition by partition."""
        out: List[ConsumerRecord] = []
        for tp in sorted(self._buffers):
            for record in self._buffers[tp]:
                if len(out) >= max_records:
                    return out
                out.append(record)
        return out

    def consume(self, record: ConsumerRecord) -> bool:
        """
        Hand one record to the application.

        The record must still be the head of its partition buffer; otherwise
        a seek, a revoke or another poll result already moved past it.
        """
        tp = TopicPartition(record.topic, record.partition)
        buffer = self._buffers.get(tp)
        if not buffer or buffer[0] is not record:
            return False
        buffer.popleft()
        if not buffer:
            del self._buffers[tp]
        self._positions[tp] = record.offset + 1
        return True


class PollResult:
    """
    Records returned by one poll.

    Lazy: positions advance only as the result is iterated. Records not
    iterated stay buffered and are returned again by the next poll.
    """

    def __init__(
        self,
        state: Optional[SubscriptionState] = None,
        records: Optional[List[ConsumerRecord]] = None,
        on_consumed: Optional[Callable[[ConsumerRecord], None]] = None,
    ):
        self._state = state
        self._records = records or []
        self._on_consumed = on_consumed

    @classmethod
    def empty(cls) -> "PollResult":
        return cls()

    def __iter__(self) -> Iterator[ConsumerRecord]:
        for record in self._records:
            if self._state is None or not self._state.consume(record):
                continue
            if self._on_consumed is not None:
                self._on_consumed(record)
            yield record

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)

    @property
    def partitions(self) -> FrozenSet[TopicPartition]:
        return frozenset(TopicPartition(r.topic, r.partition) for r in self._records)

    def __repr__(self) -> str:
        return f"<PollResult records={len(self._records)}>"
