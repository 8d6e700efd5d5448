"""
Kafka wire protocol.

    - primitives: big-endian Writer / Reader
    - messages: typed requests and responses, request framing
    - consumer_protocol: subscription and assignment payloads
    - records: record batch v2 encode/decode
"""

from kafka_client.protocol.messages import (
    EARLIEST_TIMESTAMP,
    LATEST_TIMESTAMP,
    Request,
    Response,
    decode_response,
    encode_request,
    read_correlation_id,
)

__all__ = [
    "EARLIEST_TIMESTAMP",
    "LATEST_TIMESTAMP",
    "Request",
    "Response",
    "decode_response",
    "encode_request",
    "read_correlation_id",
]
