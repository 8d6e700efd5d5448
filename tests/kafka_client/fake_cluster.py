"""
In-memory broker cluster for tests.

FakeCluster answers the client's typed requests directly (no sockets): it
keeps partition logs as real v2 record batches, long-polls fetches, runs a
simplified group membership protocol with session expiry, stores committed
offsets, and can inject transport failures and error codes.

Hook it into a ConnectionManager with ``connection_factory=cluster.connection_factory``.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from core.errors.exceptions import RequestTimeoutError, TransportError
from core.errors.kafka_classifier import (
    ILLEGAL_GENERATION,
    NO_ERROR,
    NOT_COORDINATOR,
    NOT_LEADER_FOR_PARTITION,
    OFFSET_OUT_OF_RANGE,
    REBALANCE_IN_PROGRESS,
    UNKNOWN_MEMBER_ID,
    UNKNOWN_TOPIC_OR_PARTITION,
)
from kafka_client.protocol.messages import (
    EARLIEST_TIMESTAMP,
    FetchPartitionResponse,
    FetchRequest,
    FetchResponse,
    FindCoordinatorRequest,
    FindCoordinatorResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    JoinGroupRequest,
    JoinGroupResponse,
    LeaveGroupRequest,
    LeaveGroupResponse,
    ListOffsetsPartitionResponse,
    ListOffsetsRequest,
    ListOffsetsResponse,
    MetadataRequest,
    MetadataResponse,
    OffsetCommitRequest,
    OffsetCommitResponse,
    OffsetFetchPartitionResponse,
    OffsetFetchRequest,
    OffsetFetchResponse,
    ProducePartitionResponse,
    ProduceRequest,
    ProduceResponse,
    SyncGroupRequest,
    SyncGroupResponse,
    TopicMetadata,
)
from kafka_client.protocol.records import (
    RecordBatchWriter,
    count_records,
    decode_records,
    set_base_offset,
)
from kafka_client.structs import BrokerNode, ConsumerRecord, PartitionInfo, TopicPartition

BROKER_PORT = 9092


# =============================================================================
# Partition logs
# =============================================================================


class FakePartition:
    """One partition log: a list of (base offset, record count, batch bytes)."""

    def __init__(self, leader: int, start_offset: int = 0):
        self.leader = leader
        self.start_offset = start_offset
        self.batches: List[Tuple[int, int, bytes]] = []

    @property
    def high_watermark(self) -> int:
        return self.start_offset + sum(count for _, count, _ in self.batches)

    def append_batch(self, data: bytes) -> int:
        base = self.high_watermark
        count = count_records(data)
        self.batches.append((base, count, set_base_offset(data, base)))
        return base

    def read(self, offset: int, max_bytes: int) -> bytes:
        out = bytearray()
        for base, count, data in self.batches:
            if base + count <= offset:
                continue
            if out and len(out) + len(data) > max_bytes:
                break
            out.extend(data)
        return bytes(out)


# =============================================================================
# Groups
# =============================================================================


@dataclass
class FakeMember:
    member_id: str
    session_timeout: float
    rebalance_timeout: float
    protocols: List[Tuple[str, bytes]]
    last_seen: float = field(default_factory=time.monotonic)
    awaiting_join: bool = False
    join_future: Optional[asyncio.Future] = None
    sync_future: Optional[asyncio.Future] = None


@dataclass
class FakeGroup:
    group_id: str
    generation: int = 0
    state: str = "Empty"
    leader_id: str = ""
    protocol: str = ""
    members: Dict[str, FakeMember] = field(default_factory=dict)
    assignments: Dict[str, bytes] = field(default_factory=dict)
    barrier: Optional[asyncio.Task] = None


# =============================================================================
# Faults
# =============================================================================


@dataclass
class Fault:
    api_key: Optional[int]
    remaining: int
    node_id: Optional[int] = None
    error_code: Optional[int] = None
    topic: Optional[str] = None
    partition: Optional[int] = None
    delay: Optional[float] = None

    def matches(self, api_key: int, node_id: int) -> bool:
        if self.remaining <= 0:
            return False
        if self.api_key is not None and self.api_key != api_key:
            return False
        return self.node_id is None or self.node_id == node_id


# =============================================================================
# Connection stand-in
# =============================================================================


class FakeConnection:
    """Same surface as BrokerConnection, routed to a FakeCluster."""

    def __init__(self, cluster: "FakeCluster", node: BrokerNode, request_timeout_ms: int):
        self.node = node
        self._cluster = cluster
        self._node_id = cluster.resolve(node)
        self._request_timeout_ms = request_timeout_ms
        self._closed = True
        self._in_flight = 0
        self.last_activity = time.monotonic()

    @property
    def connected(self) -> bool:
        return not self._closed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def connect(self) -> None:
        if self._node_id is None or self._node_id in self._cluster.down:
            raise TransportError(
                f"Connection to {self.node.address} refused", node_id=self.node.node_id
            )
        self._closed = False
        self._cluster.connections_opened += 1

    async def send(self, request, timeout_ms: Optional[int] = None):
        if self._closed:
            raise TransportError("Connection closed", node_id=self.node.node_id)
        timeout = (timeout_ms if timeout_ms is not None else self._request_timeout_ms) / 1000
        self._in_flight += 1
        try:
            return await asyncio.wait_for(
                self._cluster.handle(self._node_id, request), timeout
            )
        except asyncio.TimeoutError as e:
            self._closed = True
            raise RequestTimeoutError(
                f"{request.api_name} timed out", node_id=self.node.node_id, cause=e
            ) from e
        except TransportError:
            self._closed = True
            raise
        finally:
            self._in_flight -= 1
            self.last_activity = time.monotonic()

    async def close(self) -> None:
        self._closed = True


# =============================================================================
# Cluster
# =============================================================================


class FakeCluster:
    """Brokers ``broker-0`` .. ``broker-{n-1}``, all on port 9092."""

    def __init__(self, broker_count: int = 3, coordinator_id: int = 0):
        self.brokers: Dict[int, BrokerNode] = {
            i: BrokerNode(i, f"broker-{i}", BROKER_PORT) for i in range(broker_count)
        }
        self.coordinator_id = coordinator_id
        self.topics: Dict[str, Dict[int, FakePartition]] = {}
        self.groups: Dict[str, FakeGroup] = {}
        self.offsets: Dict[str, Dict[TopicPartition, Tuple[int, Optional[str]]]] = {}

        self.down: set = set()
        self.faults: List[Fault] = []
        self.requests: List[Tuple[int, object]] = []
        self.produced_batches: List[Tuple[TopicPartition, int]] = []
        self.connections_opened = 0

        self._member_ids = itertools.count(1)
        self._data_event = asyncio.Event()

    @property
    def bootstrap_servers(self) -> str:
        return ",".join(b.address for b in self.brokers.values())

    def connection_factory(self, node: BrokerNode, config) -> FakeConnection:
        return FakeConnection(self, node, config.request_timeout_ms)

    def resolve(self, node: BrokerNode) -> Optional[int]:
        for broker in self.brokers.values():
            if (broker.host, broker.port) == (node.host, node.port):
                return broker.node_id
        return None

    # =========================================================================
    # Test setup and inspection
    # =========================================================================

    def create_topic(
        self,
        name: str,
        partitions: int,
        start_offset: int = 0,
        leaders: Optional[Sequence[int]] = None,
    ) -> None:
        ids = sorted(self.brokers)
        self.topics[name] = {
            p: FakePartition(
                leaders[p] if leaders is not None else ids[p % len(ids)], start_offset
            )
            for p in range(partitions)
        }

    def move_leader(self, topic: str, partition: int, leader: int) -> None:
        self.topics[topic][partition].leader = leader

    def append(
        self,
        topic: str,
        partition: int,
        values: Sequence[Optional[bytes]],
        key: Optional[bytes] = None,
    ) -> int:
        """Write records straight into a log; returns the base offset."""
        writer = RecordBatchWriter(1 << 20)
        now = int(time.time() * 1000)
        for value in values:
            writer.append(key, value, now)
        base = self.topics[topic][partition].append_batch(writer.build())
        self._notify_data()
        return base

    def append_raw(self, topic: str, partition: int, data: bytes, count: int = 1) -> int:
        """Store bytes as a batch without validating them; returns the base offset."""
        log = self.topics[topic][partition]
        base = log.high_watermark
        log.batches.append((base, count, data))
        self._notify_data()
        return base

    def records(self, topic: str, partition: int) -> List[ConsumerRecord]:
        log = self.topics[topic][partition]
        data = b"".join(batch for _, _, batch in log.batches)
        return decode_records(topic, partition, data, log.start_offset)

    def values(self, topic: str, partition: int) -> List[Optional[bytes]]:
        return [r.value for r in self.records(topic, partition)]

    def high_watermark(self, topic: str, partition: int) -> int:
        return self.topics[topic][partition].high_watermark

    def committed(self, group_id: str, tp: TopicPartition) -> Optional[int]:
        entry = self.offsets.get(group_id, {}).get(tp)
        return entry[0] if entry is not None else None

    def members(self, group_id: str) -> List[str]:
        group = self.groups.get(group_id)
        return sorted(group.members) if group else []

    def requests_of(self, request_type) -> List[Tuple[int, object]]:
        return [(n, r) for n, r in self.requests if isinstance(r, request_type)]

    # =========================================================================
    # Fault injection
    # =========================================================================

    def fail_requests(
        self, api_key: Optional[int] = None, count: int = 1, node_id: Optional[int] = None
    ) -> None:
        """Drop the next ``count`` matching requests with a transport error, unhandled."""
        self.faults.append(Fault(api_key, count, node_id=node_id))

    def delay_requests(
        self, api_key: int, seconds: float, count: int = 1, node_id: Optional[int] = None
    ) -> None:
        self.faults.append(Fault(api_key, count, node_id=node_id, delay=seconds))

    def fail_produce(
        self,
        error_code: int,
        count: int = 1,
        topic: Optional[str] = None,
        partition: Optional[int] = None,
    ) -> None:
        """Answer the next ``count`` matching produce partitions with ``error_code``."""
        self.faults.append(
            Fault(ProduceRequest.API_KEY, count, error_code=error_code, topic=topic, partition=partition)
        )

    def _take_fault(self, api_key: int, node_id: int) -> Optional[Fault]:
        for fault in self.faults:
            if fault.error_code is None and fault.matches(api_key, node_id):
                fault.remaining -= 1
                return fault
        return None

    def _take_produce_error(self, topic: str, partition: int) -> Optional[int]:
        for fault in self.faults:
            if fault.error_code is None or fault.remaining <= 0:
                continue
            if fault.topic is not None and fault.topic != topic:
                continue
            if fault.partition is not None and fault.partition != partition:
                continue
            fault.remaining -= 1
            return fault.error_code
        return None

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, node_id: int, request):
        self.requests.append((node_id, request))
        if node_id in self.down:
            raise TransportError(f"Broker {node_id} is down", node_id=node_id)

        fault = self._take_fault(request.API_KEY, node_id)
        if fault is not None:
            if fault.delay is None:
                raise TransportError(
                    f"Injected failure for {request.api_name}", node_id=node_id
                )
            await asyncio.sleep(fault.delay)

        handler = {
            MetadataRequest: self._metadata,
            ProduceRequest: self._produce,
            FetchRequest: self._fetch,
            ListOffsetsRequest: self._list_offsets,
            FindCoordinatorRequest: self._find_coordinator,
            JoinGroupRequest: self._join_group,
            SyncGroupRequest: self._sync_group,
            HeartbeatRequest: self._heartbeat,
            LeaveGroupRequest: self._leave_group,
            OffsetCommitRequest: self._offset_commit,
            OffsetFetchRequest: self._offset_fetch,
        }[type(request)]
        return await handler(node_id, request)

    def _notify_data(self) -> None:
        event, self._data_event = self._data_event, asyncio.Event()
        event.set()

    # =========================================================================
    # Metadata / produce / fetch / list offsets
    # =========================================================================

    async def _metadata(self, node_id: int, request: MetadataRequest) -> MetadataResponse:
        names = sorted(self.topics) if request.topics is None else request.topics
        topics = []
        for name in names:
            parts = self.topics.get(name)
            if parts is None:
                topics.append(TopicMetadata(UNKNOWN_TOPIC_OR_PARTITION, name, False, []))
                continue
            topics.append(
                TopicMetadata(
                    NO_ERROR,
                    name,
                    False,
                    [
                        PartitionInfo(name, p, part.leader, (part.leader,), (part.leader,))
                        for p, part in sorted(parts.items())
                    ],
                )
            )
        return MetadataResponse(list(self.brokers.values()), 0, topics)

    async def _produce(self, node_id: int, request: ProduceRequest) -> ProduceResponse:
        result: Dict[str, Dict[int, ProducePartitionResponse]] = {}
        appended = False
        for topic, parts in request.topics.items():
            out = result.setdefault(topic, {})
            for partition, data in parts.items():
                error_code = self._take_produce_error(topic, partition)
                log = self.topics.get(topic, {}).get(partition)
                if error_code is not None:
                    out[partition] = ProducePartitionResponse(error_code, -1)
                elif log is None:
                    out[partition] = ProducePartitionResponse(UNKNOWN_TOPIC_OR_PARTITION, -1)
                elif log.leader != node_id:
                    out[partition] = ProducePartitionResponse(NOT_LEADER_FOR_PARTITION, -1)
                else:
                    base = log.append_batch(data)
                    self.produced_batches.append(
                        (TopicPartition(topic, partition), count_records(data))
                    )
                    out[partition] = ProducePartitionResponse(NO_ERROR, base)
                    appended = True
        if appended:
            self._notify_data()
        return ProduceResponse(result)

    def _fetch_once(
        self, node_id: int, request: FetchRequest
    ) -> Tuple[Dict[str, Dict[int, FetchPartitionResponse]], bool]:
        result: Dict[str, Dict[int, FetchPartitionResponse]] = {}
        ready = False
        for topic, parts in request.topics.items():
            out = result.setdefault(topic, {})
            for fp in parts:
                log = self.topics.get(topic, {}).get(fp.partition)
                if log is None:
                    out[fp.partition] = FetchPartitionResponse(UNKNOWN_TOPIC_OR_PARTITION, -1)
                    ready = True
                elif log.leader != node_id:
                    out[fp.partition] = FetchPartitionResponse(NOT_LEADER_FOR_PARTITION, -1)
                    ready = True
                elif not log.start_offset <= fp.fetch_offset <= log.high_watermark:
                    out[fp.partition] = FetchPartitionResponse(
                        OFFSET_OUT_OF_RANGE, log.high_watermark
                    )
                    ready = True
                else:
                    data = log.read(fp.fetch_offset, fp.max_bytes)
                    out[fp.partition] = FetchPartitionResponse(
                        NO_ERROR, log.high_watermark, log.high_watermark, None, data or None
                    )
                    ready = ready or bool(data)
        return result, ready

    async def _fetch(self, node_id: int, request: FetchRequest) -> FetchResponse:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + request.max_wait_ms / 1000
        while True:
            event = self._data_event
            result, ready = self._fetch_once(node_id, request)
            remaining = deadline - loop.time()
            if ready or remaining <= 0:
                return FetchResponse(result)
            try:
                await asyncio.wait_for(event.wait(), remaining)
            except asyncio.TimeoutError:
                pass

    async def _list_offsets(self, node_id: int, request: ListOffsetsRequest) -> ListOffsetsResponse:
        result: Dict[str, Dict[int, ListOffsetsPartitionResponse]] = {}
        for topic, parts in request.topics.items():
            out = result.setdefault(topic, {})
            for partition, timestamp in parts.items():
                log = self.topics.get(topic, {}).get(partition)
                if log is None:
                    out[partition] = ListOffsetsPartitionResponse(UNKNOWN_TOPIC_OR_PARTITION, -1, -1)
                elif log.leader != node_id:
                    out[partition] = ListOffsetsPartitionResponse(NOT_LEADER_FOR_PARTITION, -1, -1)
                else:
                    offset = log.start_offset if timestamp == EARLIEST_TIMESTAMP else log.high_watermark
                    out[partition] = ListOffsetsPartitionResponse(NO_ERROR, -1, offset)
        return ListOffsetsResponse(result)

    # =========================================================================
    # Group membership
    # =========================================================================

    async def _find_coordinator(
        self, node_id: int, request: FindCoordinatorRequest
    ) -> FindCoordinatorResponse:
        node = self.brokers[self.coordinator_id]
        return FindCoordinatorResponse(NO_ERROR, node.node_id, node.host, node.port)

    def _group(self, group_id: str) -> FakeGroup:
        group = self.groups.get(group_id)
        if group is None:
            group = self.groups[group_id] = FakeGroup(group_id)
        return group

    def _expire(self, group: FakeGroup) -> None:
        now = time.monotonic()
        rebalancing = group.state == "PreparingRebalance"
        expired = [
            m.member_id
            for m in group.members.values()
            if not m.awaiting_join
            and now - m.last_seen
            > (m.rebalance_timeout if rebalancing else m.session_timeout)
        ]
        if not expired:
            return
        for member_id in expired:
            self._remove_member(group, member_id)
        if group.state in ("Stable", "CompletingRebalance"):
            self._prepare_rebalance(group)

    def _remove_member(self, group: FakeGroup, member_id: str) -> None:
        member = group.members.pop(member_id)
        if member.sync_future is not None and not member.sync_future.done():
            member.sync_future.set_result(SyncGroupResponse(UNKNOWN_MEMBER_ID, b""))
        if not group.members:
            group.state = "Empty"

    def _prepare_rebalance(self, group: FakeGroup) -> None:
        if not group.members:
            group.state = "Empty"
            return
        group.state = "PreparingRebalance"
        for member in group.members.values():
            if member.sync_future is not None and not member.sync_future.done():
                member.sync_future.set_result(SyncGroupResponse(REBALANCE_IN_PROGRESS, b""))
        if group.barrier is None or group.barrier.done():
            group.barrier = asyncio.get_running_loop().create_task(self._join_barrier(group))

    async def _join_barrier(self, group: FakeGroup) -> None:
        timeout = max((m.rebalance_timeout for m in group.members.values()), default=0.0)
        deadline = time.monotonic() + timeout
        while True:
            self._expire(group)
            members = list(group.members.values())
            if members and all(m.awaiting_join for m in members):
                break
            if time.monotonic() >= deadline:
                for m in [m for m in members if not m.awaiting_join]:
                    self._remove_member(group, m.member_id)
                break
            await asyncio.sleep(0.01)
        self._complete_join(group)

    def _complete_join(self, group: FakeGroup) -> None:
        members = [m for m in group.members.values() if m.awaiting_join]
        if not members:
            group.state = "Empty"
            return

        group.generation += 1
        if group.leader_id not in group.members:
            group.leader_id = members[0].member_id
        leader = group.members[group.leader_id]
        supported = [name for name, _ in leader.protocols]
        group.protocol = next(
            name
            for name in supported
            if all(name in [p for p, _ in m.protocols] for m in members)
        )
        group.state = "CompletingRebalance"
        group.assignments = {}

        metadata = [
            (m.member_id, dict(m.protocols)[group.protocol]) for m in members
        ]
        now = time.monotonic()
        for m in members:
            m.awaiting_join = False
            m.last_seen = now
            response = JoinGroupResponse(
                NO_ERROR,
                group.generation,
                group.protocol,
                group.leader_id,
                m.member_id,
                metadata if m.member_id == group.leader_id else [],
            )
            if m.join_future is not None and not m.join_future.done():
                m.join_future.set_result(response)

    async def _join_group(self, node_id: int, request: JoinGroupRequest) -> JoinGroupResponse:
        if node_id != self.coordinator_id:
            return JoinGroupResponse(NOT_COORDINATOR, -1, "", "", "")
        group = self._group(request.group_id)
        self._expire(group)

        if request.member_id and request.member_id not in group.members:
            return JoinGroupResponse(UNKNOWN_MEMBER_ID, -1, "", "", "")

        member = group.members.get(request.member_id)
        if member is None:
            member = FakeMember(
                member_id=f"member-{next(self._member_ids)}",
                session_timeout=request.session_timeout_ms / 1000,
                rebalance_timeout=request.rebalance_timeout_ms / 1000,
                protocols=list(request.protocols),
            )
            group.members[member.member_id] = member
        member.protocols = list(request.protocols)
        member.last_seen = time.monotonic()
        member.awaiting_join = True
        member.join_future = asyncio.get_running_loop().create_future()

        if group.state != "PreparingRebalance":
            self._prepare_rebalance(group)
        return await member.join_future

    async def _sync_group(self, node_id: int, request: SyncGroupRequest) -> SyncGroupResponse:
        if node_id != self.coordinator_id:
            return SyncGroupResponse(NOT_COORDINATOR, b"")
        group = self._group(request.group_id)
        self._expire(group)

        member = group.members.get(request.member_id)
        if member is None:
            return SyncGroupResponse(UNKNOWN_MEMBER_ID, b"")
        if group.state == "PreparingRebalance":
            return SyncGroupResponse(REBALANCE_IN_PROGRESS, b"")
        if request.generation_id != group.generation:
            return SyncGroupResponse(ILLEGAL_GENERATION, b"")

        member.last_seen = time.monotonic()
        if request.member_id == group.leader_id and group.state == "CompletingRebalance":
            group.assignments = dict(request.assignments)
            group.state = "Stable"
            for other in group.members.values():
                if other.sync_future is not None and not other.sync_future.done():
                    other.sync_future.set_result(
                        SyncGroupResponse(NO_ERROR, group.assignments.get(other.member_id, b""))
                    )

        if group.state == "Stable":
            return SyncGroupResponse(NO_ERROR, group.assignments.get(member.member_id, b""))

        member.sync_future = asyncio.get_running_loop().create_future()
        return await member.sync_future

    async def _heartbeat(self, node_id: int, request: HeartbeatRequest) -> HeartbeatResponse:
        if node_id != self.coordinator_id:
            return HeartbeatResponse(NOT_COORDINATOR)
        group = self._group(request.group_id)
        self._expire(group)

        member = group.members.get(request.member_id)
        if member is None:
            return HeartbeatResponse(UNKNOWN_MEMBER_ID)
        if request.generation_id != group.generation:
            return HeartbeatResponse(ILLEGAL_GENERATION)
        member.last_seen = time.monotonic()
        if group.state == "PreparingRebalance":
            return HeartbeatResponse(REBALANCE_IN_PROGRESS)
        return HeartbeatResponse(NO_ERROR)

    async def _leave_group(self, node_id: int, request: LeaveGroupRequest) -> LeaveGroupResponse:
        if node_id != self.coordinator_id:
            return LeaveGroupResponse(NOT_COORDINATOR)
        group = self._group(request.group_id)
        if request.member_id not in group.members:
            return LeaveGroupResponse(UNKNOWN_MEMBER_ID)
        self._remove_member(group, request.member_id)
        if group.members and group.state in ("Stable", "CompletingRebalance"):
            self._prepare_rebalance(group)
        return LeaveGroupResponse(NO_ERROR)

    # =========================================================================
    # Offsets
    # =========================================================================

    async def _offset_commit(
        self, node_id: int, request: OffsetCommitRequest
    ) -> OffsetCommitResponse:
        code = NO_ERROR
        if node_id != self.coordinator_id:
            code = NOT_COORDINATOR
        else:
            group = self._group(request.group_id)
            self._expire(group)
            if request.generation_id >= 0 or request.member_id:
                if request.member_id not in group.members:
                    code = UNKNOWN_MEMBER_ID
                elif request.generation_id != group.generation:
                    code = ILLEGAL_GENERATION

        result: Dict[str, Dict[int, int]] = {}
        store = self.offsets.setdefault(request.group_id, {})
        for topic, parts in request.topics.items():
            out = result.setdefault(topic, {})
            for partition, (offset, metadata) in parts.items():
                out[partition] = code
                if code == NO_ERROR:
                    store[TopicPartition(topic, partition)] = (offset, metadata)
        return OffsetCommitResponse(result)

    async def _offset_fetch(self, node_id: int, request: OffsetFetchRequest) -> OffsetFetchResponse:
        result: Dict[str, Dict[int, OffsetFetchPartitionResponse]] = {}
        store = self.offsets.get(request.group_id, {})
        for topic, partitions in request.topics.items():
            out = result.setdefault(topic, {})
            for partition in partitions:
                if node_id != self.coordinator_id:
                    out[partition] = OffsetFetchPartitionResponse(-1, None, NOT_COORDINATOR)
                    continue
                offset, metadata = store.get(TopicPartition(topic, partition), (-1, None))
                out[partition] = OffsetFetchPartitionResponse(offset, metadata, NO_ERROR)
        return OffsetFetchResponse(result)


# =============================================================================
# Test helpers
# =============================================================================


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until true; AssertionError after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


async def poll_until(consumer, count: int, timeout: float = 5.0) -> List[ConsumerRecord]:
    """Poll and iterate until ``count`` records were consumed."""
    records: List[ConsumerRecord] = []
    deadline = time.monotonic() + timeout
    while len(records) < count:
        if time.monotonic() >= deadline:
            raise AssertionError(f"Consumed {len(records)} of {count} records before timeout")
        for record in await consumer.poll(timeout_ms=100):
            records.append(record)
    return records
