"""
Typed request and response messages for the broker APIs the client uses.

All APIs are in non-flexible versions: request header v1 (api key, api
version, correlation id, client id) and response header v0 (correlation
id). Requests encode themselves with ``encode_body``; each request names the
response type that decodes its reply.

Per-topic collections are ``Dict[topic, Dict[partition, ...]]`` so callers
can look results up directly.
"""

from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Tuple, Type

from kafka_client.protocol.primitives import Reader, Writer
from kafka_client.structs import BrokerNode, PartitionInfo

# ListOffsets sentinel timestamps
EARLIEST_TIMESTAMP = -2
LATEST_TIMESTAMP = -1


class Response:
    """Base class for decoded responses."""

    @classmethod
    def decode(cls, reader: Reader) -> "Response":
        raise NotImplementedError


class Request:
    """Base class for requests."""

    API_KEY: ClassVar[int]
    API_VERSION: ClassVar[int]
    RESPONSE_TYPE: ClassVar[Type[Response]]

    def encode_body(self, writer: Writer) -> None:
        raise NotImplementedError

    @property
    def api_name(self) -> str:
        return type(self).__name__[: -len("Request")]


# =============================================================================
# Framing
# =============================================================================


def encode_request(request: Request, correlation_id: int, client_id: Optional[str]) -> bytes:
    """Frame a request: int32 size, header v1, body."""
    w = Writer()
    w.int16(request.API_KEY).int16(request.API_VERSION).int32(correlation_id)
    w.nullable_string(client_id)
    request.encode_body(w)
    payload = w.getvalue()
    return len(payload).to_bytes(4, "big", signed=True) + payload


def read_correlation_id(payload: bytes) -> int:
    """Correlation id from a response payload (size prefix already stripped)."""
    return Reader(payload).int32()


def decode_response(request: Request, payload: bytes) -> Tuple[int, Response]:
    """Decode a response payload for ``request``: (correlation_id, response)."""
    reader = Reader(payload)
    correlation_id = reader.int32()
    return correlation_id, request.RESPONSE_TYPE.decode(reader)


# =============================================================================
# Metadata v1
# =============================================================================


@dataclass
class TopicMetadata:
    error_code: int
    name: str
    is_internal: bool
    partitions: List[PartitionInfo] = field(default_factory=list)


@dataclass
class MetadataResponse(Response):
    brokers: List[BrokerNode]
    controller_id: int
    topics: List[TopicMetadata]

    @classmethod
    def decode(cls, reader: Reader) -> "MetadataResponse":
        brokers = reader.array(
            lambda r: BrokerNode(
                node_id=r.int32(), host=r.string(), port=r.int32(), rack=r.nullable_string()
            )
        )
        controller_id = reader.int32()

        def read_topic(r: Reader) -> TopicMetadata:
            error_code = r.int16()
            name = r.string()
            is_internal = bool(r.int8())

            def read_partition(pr: Reader) -> PartitionInfo:
                err = pr.int16()
                index = pr.int32()
                leader = pr.int32()
                replicas = tuple(pr.array(lambda x: x.int32()))
                isr = tuple(pr.array(lambda x: x.int32()))
                return PartitionInfo(name, index, leader, replicas, isr, err)

            return TopicMetadata(error_code, name, is_internal, r.array(read_partition))

        return cls(brokers, controller_id, reader.array(read_topic))


@dataclass
class MetadataRequest(Request):
    API_KEY = 3
    API_VERSION = 1
    RESPONSE_TYPE = MetadataResponse

    # None asks for every topic
    topics: Optional[List[str]] = None

    def encode_body(self, writer: Writer) -> None:
        writer.array(self.topics, lambda w, t: w.string(t))


# =============================================================================
# Produce v3
# =============================================================================


@dataclass
class ProducePartitionResponse:
    error_code: int
    base_offset: int
    log_append_time: int = -1


@dataclass
class ProduceResponse(Response):
    topics: Dict[str, Dict[int, ProducePartitionResponse]]
    throttle_time_ms: int = 0

    @classmethod
    def decode(cls, reader: Reader) -> "ProduceResponse":
        topics: Dict[str, Dict[int, ProducePartitionResponse]] = {}
        for _ in range(reader.int32()):
            name = reader.string()
            parts = topics.setdefault(name, {})
            for _ in range(reader.int32()):
                index = reader.int32()
                parts[index] = ProducePartitionResponse(
                    error_code=reader.int16(),
                    base_offset=reader.int64(),
                    log_append_time=reader.int64(),
                )
        return cls(topics, reader.int32())


@dataclass
class ProduceRequest(Request):
    API_KEY = 0
    API_VERSION = 3
    RESPONSE_TYPE = ProduceResponse

    acks: int
    timeout_ms: int
    # topic -> partition -> encoded record batch
    topics: Dict[str, Dict[int, bytes]]
    transactional_id: Optional[str] = None

    def encode_body(self, writer: Writer) -> None:
        writer.nullable_string(self.transactional_id)
        writer.int16(self.acks).int32(self.timeout_ms)
        writer.int32(len(self.topics))
        for name, parts in self.topics.items():
            writer.string(name).int32(len(parts))
            for index, records in parts.items():
                writer.int32(index).bytes(records)


# =============================================================================
# Fetch v4
# =============================================================================


@dataclass
class FetchPartition:
    partition: int
    fetch_offset: int
    max_bytes: int


@dataclass
class FetchPartitionResponse:
    error_code: int
    high_watermark: int
    last_stable_offset: int = -1
    aborted_transactions: Optional[List[Tuple[int, int]]] = None
    records: Optional[bytes] = None


@dataclass
class FetchResponse(Response):
    topics: Dict[str, Dict[int, FetchPartitionResponse]]
    throttle_time_ms: int = 0

    @classmethod
    def decode(cls, reader: Reader) -> "FetchResponse":
        throttle = reader.int32()
        topics: Dict[str, Dict[int, FetchPartitionResponse]] = {}
        for _ in range(reader.int32()):
            name = reader.string()
            parts = topics.setdefault(name, {})
            for _ in range(reader.int32()):
                index = reader.int32()
                error_code = reader.int16()
                high_watermark = reader.int64()
                last_stable = reader.int64()
                aborted = reader.nullable_array(lambda r: (r.int64(), r.int64()))
                parts[index] = FetchPartitionResponse(
                    error_code, high_watermark, last_stable, aborted, reader.bytes()
                )
        return cls(topics, throttle)


@dataclass
class FetchRequest(Request):
    API_KEY = 1
    API_VERSION = 4
    RESPONSE_TYPE = FetchResponse

    max_wait_ms: int
    min_bytes: int
    max_bytes: int
    topics: Dict[str, List[FetchPartition]]
    isolation_level: int = 0
    replica_id: int = -1

    def encode_body(self, writer: Writer) -> None:
        writer.int32(self.replica_id).int32(self.max_wait_ms).int32(self.min_bytes)
        writer.int32(self.max_bytes).int8(self.isolation_level)
        writer.int32(len(self.topics))
        for name, parts in self.topics.items():
            writer.string(name)
            writer.array(
                parts,
                lambda w, p: w.int32(p.partition).int64(p.fetch_offset).int32(p.max_bytes),
            )


# =============================================================================
# ListOffsets v1
# =============================================================================


@dataclass
class ListOffsetsPartitionResponse:
    error_code: int
    timestamp: int
    offset: int


@dataclass
class ListOffsetsResponse(Response):
    topics: Dict[str, Dict[int, ListOffsetsPartitionResponse]]

    @classmethod
    def decode(cls, reader: Reader) -> "ListOffsetsResponse":
        topics: Dict[str, Dict[int, ListOffsetsPartitionResponse]] = {}
        for _ in range(reader.int32()):
            name = reader.string()
            parts = topics.setdefault(name, {})
            for _ in range(reader.int32()):
                index = reader.int32()
                parts[index] = ListOffsetsPartitionResponse(
                    error_code=reader.int16(),
                    timestamp=reader.int64(),
                    offset=reader.int64(),
                )
        return cls(topics)


@dataclass
class ListOffsetsRequest(Request):
    API_KEY = 2
    API_VERSION = 1
    RESPONSE_TYPE = ListOffsetsResponse

    # topic -> partition -> timestamp (EARLIEST_TIMESTAMP / LATEST_TIMESTAMP)
    topics: Dict[str, Dict[int, int]]
    replica_id: int = -1

    def encode_body(self, writer: Writer) -> None:
        writer.int32(self.replica_id).int32(len(self.topics))
        for name, parts in self.topics.items():
            writer.string(name).int32(len(parts))
            for index, timestamp in parts.items():
                writer.int32(index).int64(timestamp)


# =============================================================================
# FindCoordinator v0
# =============================================================================


@dataclass
class FindCoordinatorResponse(Response):
    error_code: int
    node_id: int
    host: str
    port: int

    @classmethod
    def decode(cls, reader: Reader) -> "FindCoordinatorResponse":
        return cls(reader.int16(), reader.int32(), reader.string(), reader.int32())


@dataclass
class FindCoordinatorRequest(Request):
    API_KEY = 10
    API_VERSION = 0
    RESPONSE_TYPE = FindCoordinatorResponse

    group_id: str

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id)


# =============================================================================
# JoinGroup v2 / SyncGroup v0 / Heartbeat v0 / LeaveGroup v0
# =============================================================================


@dataclass
class JoinGroupResponse(Response):
    error_code: int
    generation_id: int
    protocol_name: str
    leader_id: str
    member_id: str
    # (member_id, protocol metadata)
    members: List[Tuple[str, bytes]] = field(default_factory=list)
    throttle_time_ms: int = 0

    @property
    def is_leader(self) -> bool:
        return bool(self.member_id) and self.member_id == self.leader_id

    @classmethod
    def decode(cls, reader: Reader) -> "JoinGroupResponse":
        throttle = reader.int32()
        error_code = reader.int16()
        generation_id = reader.int32()
        protocol_name = reader.string()
        leader_id = reader.string()
        member_id = reader.string()
        members = reader.array(lambda r: (r.string(), r.bytes() or b""))
        return cls(
            error_code, generation_id, protocol_name, leader_id, member_id, members, throttle
        )


@dataclass
class JoinGroupRequest(Request):
    API_KEY = 11
    API_VERSION = 2
    RESPONSE_TYPE = JoinGroupResponse

    group_id: str
    session_timeout_ms: int
    rebalance_timeout_ms: int
    member_id: str
    # (assignor name, subscription metadata)
    protocols: List[Tuple[str, bytes]]
    protocol_type: str = "consumer"

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id).int32(self.session_timeout_ms)
        writer.int32(self.rebalance_timeout_ms).string(self.member_id)
        writer.string(self.protocol_type)
        writer.array(self.protocols, lambda w, p: w.string(p[0]).bytes(p[1]))


@dataclass
class SyncGroupResponse(Response):
    error_code: int
    assignment: bytes

    @classmethod
    def decode(cls, reader: Reader) -> "SyncGroupResponse":
        return cls(reader.int16(), reader.bytes() or b"")


@dataclass
class SyncGroupRequest(Request):
    API_KEY = 14
    API_VERSION = 0
    RESPONSE_TYPE = SyncGroupResponse

    group_id: str
    generation_id: int
    member_id: str
    # (member_id, encoded assignment); only the leader sends a non-empty list
    assignments: List[Tuple[str, bytes]] = field(default_factory=list)

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id).int32(self.generation_id).string(self.member_id)
        writer.array(self.assignments, lambda w, a: w.string(a[0]).bytes(a[1]))


@dataclass
class HeartbeatResponse(Response):
    error_code: int

    @classmethod
    def decode(cls, reader: Reader) -> "HeartbeatResponse":
        return cls(reader.int16())


@dataclass
class HeartbeatRequest(Request):
    API_KEY = 12
    API_VERSION = 0
    RESPONSE_TYPE = HeartbeatResponse

    group_id: str
    generation_id: int
    member_id: str

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id).int32(self.generation_id).string(self.member_id)


@dataclass
class LeaveGroupResponse(Response):
    error_code: int

    @classmethod
    def decode(cls, reader: Reader) -> "LeaveGroupResponse":
        return cls(reader.int16())


@dataclass
class LeaveGroupRequest(Request):
    API_KEY = 13
    API_VERSION = 0
    RESPONSE_TYPE = LeaveGroupResponse

    group_id: str
    member_id: str

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id).string(self.member_id)


# =============================================================================
# OffsetCommit v2 / OffsetFetch v1
# =============================================================================


@dataclass
class OffsetCommitResponse(Response):
    # topic -> partition -> error code
    topics: Dict[str, Dict[int, int]]

    @classmethod
    def decode(cls, reader: Reader) -> "OffsetCommitResponse":
        topics: Dict[str, Dict[int, int]] = {}
        for _ in range(reader.int32()):
            name = reader.string()
            parts = topics.setdefault(name, {})
            for _ in range(reader.int32()):
                index = reader.int32()
                parts[index] = reader.int16()
        return cls(topics)


@dataclass
class OffsetCommitRequest(Request):
    API_KEY = 8
    API_VERSION = 2
    RESPONSE_TYPE = OffsetCommitResponse

    group_id: str
    generation_id: int
    member_id: str
    # topic -> partition -> (offset, metadata)
    topics: Dict[str, Dict[int, Tuple[int, Optional[str]]]]
    retention_time_ms: int = -1

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id).int32(self.generation_id).string(self.member_id)
        writer.int64(self.retention_time_ms).int32(len(self.topics))
        for name, parts in self.topics.items():
            writer.string(name).int32(len(parts))
            for index, (offset, metadata) in parts.items():
                writer.int32(index).int64(offset).nullable_string(metadata)


@dataclass
class OffsetFetchPartitionResponse:
    offset: int
    metadata: Optional[str]
    error_code: int


@dataclass
class OffsetFetchResponse(Response):
    topics: Dict[str, Dict[int, OffsetFetchPartitionResponse]]

    @classmethod
    def decode(cls, reader: Reader) -> "OffsetFetchResponse":
        topics: Dict[str, Dict[int, OffsetFetchPartitionResponse]] = {}
        for _ in range(reader.int32()):
            name = reader.string()
            parts = topics.setdefault(name, {})
            for _ in range(reader.int32()):
                index = reader.int32()
                parts[index] = OffsetFetchPartitionResponse(
                    offset=reader.int64(),
                    metadata=reader.nullable_string(),
                    error_code=reader.int16(),
                )
        return cls(topics)


@dataclass
class OffsetFetchRequest(Request):
    API_KEY = 9
    API_VERSION = 1
    RESPONSE_TYPE = OffsetFetchResponse

    group_id: str
    # topic -> partitions
    topics: Dict[str, List[int]]

    def encode_body(self, writer: Writer) -> None:
        writer.string(self.group_id).int32(len(self.topics))
        for name, parts in self.topics.items():
            writer.string(name).array(parts, lambda w, p: w.int32(p))
