"""Tests for wire framing, response decoding and the record batch codec."""

import struct

import pytest

from kafka_client.protocol.consumer_protocol import (
    ConsumerProtocolMemberAssignment,
    ConsumerProtocolMemberMetadata,
)
from kafka_client.protocol.messages import (
    FetchResponse,
    HeartbeatRequest,
    MetadataRequest,
    MetadataResponse,
    ProduceResponse,
    decode_response,
    encode_request,
    read_correlation_id,
)
from kafka_client.protocol.primitives import Reader, Writer
from kafka_client.protocol.records import (
    RecordBatchWriter,
    count_records,
    decode_records,
    set_base_offset,
)
from kafka_client.structs import TopicPartition


def build_batch(values, key=None, base_offset=0):
    writer = RecordBatchWriter(1 << 20)
    for value in values:
        writer.append(key, value, 1_700_000_000_000)
    return set_base_offset(writer.build(), base_offset)


class TestPrimitives:
    """Tests for Writer and Reader edge cases."""

    def test_null_string_and_bytes(self):
        """Length -1 encodes null."""
        data = Writer().nullable_string(None).bytes(None).array(None, None).getvalue()
        assert data == struct.pack(">hii", -1, -1, -1)

        reader = Reader(data)
        assert reader.nullable_string() is None
        assert reader.bytes() is None
        assert reader.nullable_array(lambda r: r.int32()) is None
        assert reader.remaining == 0

    def test_truncated_input(self):
        """Reading past the end raises ValueError instead of returning garbage."""
        with pytest.raises(ValueError, match="Truncated"):
            Reader(b"\x00\x01").int32()
        with pytest.raises(ValueError, match="Truncated"):
            Reader(struct.pack(">h", 10) + b"abc").string()


class TestFraming:
    """Tests for request framing and response headers."""

    def test_request_header(self):
        """Frame is size, api key, version, correlation id, client id, body."""
        frame = encode_request(HeartbeatRequest("billing", 3, "member-1"), 42, "client-a")
        size, api_key, version, correlation_id = struct.unpack_from(">ihhi", frame)

        assert size == len(frame) - 4
        assert (api_key, version, correlation_id) == (12, 0, 42)
        reader = Reader(frame, 12)
        assert reader.nullable_string() == "client-a"
        assert reader.string() == "billing"
        assert reader.int32() == 3
        assert reader.string() == "member-1"

    def test_metadata_all_topics_is_null_array(self):
        """MetadataRequest(topics=None) asks for every topic."""
        frame = encode_request(MetadataRequest(topics=None), 1, None)
        assert frame.endswith(struct.pack(">i", -1))

    def test_decode_response(self):
        """Correlation id is read before the typed body."""
        body = (
            Writer()
            .int32(7)  # correlation id
            .int32(1)
            .int32(0)
            .string("broker-0")
            .int32(9092)
            .nullable_string(None)
            .int32(0)  # controller
            .int32(1)
            .int16(0)
            .string("events")
            .int8(0)
            .int32(1)
            .int16(0)
            .int32(0)
            .int32(0)
            .array([0], lambda w, n: w.int32(n))
            .array([0], lambda w, n: w.int32(n))
            .getvalue()
        )
        assert read_correlation_id(body) == 7

        correlation_id, response = decode_response(MetadataRequest(topics=["events"]), body)
        assert correlation_id == 7
        assert isinstance(response, MetadataResponse)
        assert response.brokers[0].address == "broker-0:9092"
        partition = response.topics[0].partitions[0]
        assert partition.topic_partition == TopicPartition("events", 0)
        assert partition.leader == 0

    def test_produce_response(self):
        """Per-partition base offsets and the throttle time are decoded."""
        body = (
            Writer()
            .int32(1)
            .string("events")
            .int32(1)
            .int32(2)
            .int16(0)
            .int64(100)
            .int64(-1)
            .int32(5)
            .getvalue()
        )
        response = ProduceResponse.decode(Reader(body))
        assert response.topics["events"][2].base_offset == 100
        assert response.throttle_time_ms == 5

    def test_fetch_response_with_records(self):
        """Record bytes come back untouched for the record decoder."""
        batch = build_batch([b"a", b"b"], base_offset=10)
        body = (
            Writer()
            .int32(0)  # throttle
            .int32(1)
            .string("events")
            .int32(1)
            .int32(0)
            .int16(0)
            .int64(12)
            .int64(12)
            .array(None, None)
            .bytes(batch)
            .getvalue()
        )
        part = FetchResponse.decode(Reader(body)).topics["events"][0]
        assert part.high_watermark == 12
        assert part.aborted_transactions is None
        assert part.records == batch


class TestRecords:
    """Tests for record batch encoding and decoding."""

    def test_base_offset_applied(self):
        """Offsets are base + relative index after the broker stamps the batch."""
        records = decode_records("events", 1, build_batch([b"a", b"b", b"c"], base_offset=40))
        assert [r.offset for r in records] == [40, 41, 42]
        assert [r.value for r in records] == [b"a", b"b", b"c"]
        assert records[0].topic == "events"
        assert records[0].partition == 1

    def test_records_below_fetch_offset_dropped(self):
        """A batch starting before the fetch position is trimmed."""
        data = build_batch([b"a", b"b", b"c"], base_offset=40)
        assert [r.offset for r in decode_records("events", 0, data, fetch_offset=42)] == [42]

    def test_multiple_batches(self):
        """Concatenated batches decode in order."""
        data = build_batch([b"a"], base_offset=0) + build_batch([b"b", b"c"], base_offset=1)
        assert count_records(data) == 3
        assert [r.value for r in decode_records("events", 0, data)] == [b"a", b"b", b"c"]

    def test_key_headers_and_null_value(self):
        """Keys, headers and tombstones survive the codec."""
        writer = RecordBatchWriter(1 << 20)
        writer.append(b"user-1", None, 1_700_000_000_000, [("trace", b"abc")])
        record = decode_records("events", 0, writer.build())[0]

        assert record.key == b"user-1"
        assert record.value is None
        assert record.serialized_value_size == -1
        assert record.headers == (("trace", b"abc"),)
        assert record.timestamp == 1_700_000_000_000

    def test_empty(self):
        """No bytes means no records."""
        assert decode_records("events", 0, None) == []
        assert decode_records("events", 0, b"") == []

    def test_writer_full(self):
        """append returns None once the size limit is reached; the first record always fits."""
        writer = RecordBatchWriter(100)
        assert writer.append(None, b"x" * 200, 1) is not None
        assert writer.append(None, b"y" * 200, 1) is None
        assert writer.record_count == 1


class TestConsumerProtocol:
    """Tests for subscription and assignment payloads."""

    def test_metadata(self):
        """Topics are encoded sorted."""
        data = ConsumerProtocolMemberMetadata(topics=["b", "a"]).encode()
        decoded = ConsumerProtocolMemberMetadata.decode(data)
        assert decoded.topics == ["a", "b"]
        assert decoded.version == 0

    def test_assignment(self):
        """Partitions group per topic and come back as TopicPartitions."""
        tps = {TopicPartition("a", 2), TopicPartition("a", 0), TopicPartition("b", 1)}
        assignment = ConsumerProtocolMemberAssignment.from_partitions(tps)
        assert assignment.assignment == {"a": [0, 2], "b": [1]}

        decoded = ConsumerProtocolMemberAssignment.decode(assignment.encode())
        assert decoded.partitions() == frozenset(tps)

    def test_empty_assignment(self):
        """An empty payload means no partitions."""
        assert ConsumerProtocolMemberAssignment.decode(b"").partitions() == frozenset()
