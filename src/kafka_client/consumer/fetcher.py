"""
Fetcher: pulls records for assigned partitions from their leaders.

One Fetch request per leader node, sent concurrently and long-polled by the
broker for up to ``fetch_max_wait_ms`` (never longer than the caller's
remaining poll time). Results land in the SubscriptionState buffers.

Also resolves starting positions with ListOffsets when the group has no
committed offset, or when a fetch hits OFFSET_OUT_OF_RANGE.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from core.errors.exceptions import (
    BrokerResponseError,
    CircuitOpenError,
    ClientError,
    ConnectError,
    MetadataError,
    PermanentError,
    TransportError,
    wrap_exception,
)
from core.errors.kafka_classifier import NO_ERROR, OFFSET_OUT_OF_RANGE, KafkaErrorClassifier
from core.logging.utilities import log_with_context
from core.resilience.retry import retry_async
from kafka_client import metrics
from kafka_client.cluster import ConnectionManager
from kafka_client.config import ClientConfig
from kafka_client.consumer.subscription import SubscriptionState
from kafka_client.protocol.messages import (
    EARLIEST_TIMESTAMP,
    LATEST_TIMESTAMP,
    FetchPartition,
    FetchRequest,
    FetchResponse,
    ListOffsetsRequest,
    ListOffsetsResponse,
)
from kafka_client.protocol.records import decode_records
from kafka_client.structs import TopicPartition

logger = logging.getLogger(__name__)

POLICY_TIMESTAMPS = {
    "earliest": EARLIEST_TIMESTAMP,
    "latest": LATEST_TIMESTAMP,
}

_SEND_ERRORS = (TransportError, ConnectError, CircuitOpenError)


class Fetcher:
    """Fetch and offset-reset requests for one consumer."""

    def __init__(
        self,
        manager: ConnectionManager,
        config: ClientConfig,
        subscriptions: SubscriptionState,
        group_id: str = "",
    ):
        self._manager = manager
        self.config = config
        self._subscriptions = subscriptions
        self.group_id = group_id
        self._retry = config.retry_policy()

    # =========================================================================
    # Offset reset
    # =========================================================================

    async def reset_offsets(
        self, partitions: Iterable[TopicPartition], policy: Optional[str] = None
    ) -> None:
        """
        Move partitions to the earliest or latest offset.

        Args:
            partitions: Partitions to reset
            policy: "earliest" or "latest"; defaults to auto_offset_reset

        Raises:
            MetadataError: Offsets could not be resolved within the retry budget
            BrokerResponseError: Non-retriable ListOffsets error
        """
        policy = policy or self.config.auto_offset_reset
        timestamp = POLICY_TIMESTAMPS[policy]
        remaining = sorted(set(partitions))

        async def attempt() -> None:
            nonlocal remaining
            remaining = [tp for tp in remaining if self._subscriptions.is_assigned(tp)]
            if not remaining:
                return

            by_node = self._group_by_leader(remaining)
            failed: List[TopicPartition] = list(by_node.pop(None, []))
            last_error: Optional[ClientError] = None
            for node_id, tps in by_node.items():
                error = await self._list_offsets(node_id, tps, timestamp, policy)
                if error is not None:
                    last_error = error
                    failed.extend(tps)
            if not failed:
                return

            remaining = failed
            raise MetadataError(
                f"Could not reset offsets for {len(failed)} partition(s)",
                cause=last_error
                or MetadataError(f"No leader for {len(failed)} partition(s) while resetting offsets"),
                context={"policy": policy},
            )

        await retry_async(attempt, self._retry, operation="offset_reset")

    async def _list_offsets(
        self, node_id: int, tps: List[TopicPartition], timestamp: int, policy: str
    ) -> Optional[ClientError]:
        topics: Dict[str, Dict[int, int]] = defaultdict(dict)
        for tp in tps:
            topics[tp.topic][tp.partition] = timestamp

        try:
            response = await self._manager.send(
                node_id, ListOffsetsRequest(dict(topics)), retry=False
            )
        except _SEND_ERRORS as e:
            self._manager.request_metadata_update()
            return e
        assert isinstance(response, ListOffsetsResponse)

        error: Optional[ClientError] = None
        for tp in tps:
            part = response.topics.get(tp.topic, {}).get(tp.partition)
            if part is None:
                error = MetadataError(
                    f"ListOffsets response omitted {tp.topic}-{tp.partition}", topic=tp.topic
                )
                continue
            if part.error_code != NO_ERROR:
                error = KafkaErrorClassifier.for_code(
                    part.error_code, {"topic": tp.topic, "partition": tp.partition}
                )
                if not error.is_retryable:
                    raise error
                if isinstance(error, BrokerResponseError) and error.invalid_metadata:
                    self._manager.request_metadata_update()
                continue
            if not self._subscriptions.is_assigned(tp):
                continue

            self._subscriptions.seek(tp, part.offset)
            log_with_context(
                logger,
                logging.INFO,
                "Reset offset",
                topic=tp.topic,
                partition=tp.partition,
                offset=part.offset,
                policy=policy,
            )
        return error

    def _group_by_leader(
        self, partitions: Iterable[TopicPartition]
    ) -> Dict[Optional[int], List[TopicPartition]]:
        metadata = self._manager.metadata
        by_node: Dict[Optional[int], List[TopicPartition]] = defaultdict(list)
        for tp in partitions:
            leader = metadata.leader_for(tp)
            by_node[leader].append(tp)
        if None in by_node:
            self._manager.request_metadata_update()
        return by_node

    # =========================================================================
    # Fetch
    # =========================================================================

    async def fetch(self, timeout_ms: int) -> int:
        """
        Fetch once from every leader of a fetchable partition.

        Args:
            timeout_ms: Caller's remaining poll time; bounds the long poll

        Returns:
            Number of records buffered

        Raises:
            ClientError: Nothing was buffered and at least one request failed;
                the caller backs off before trying again
        """
        partitions = self._subscriptions.fetchable_partitions()
        if not partitions:
            return 0

        by_node = self._group_by_leader(partitions)
        leaderless = by_node.pop(None, [])
        if not by_node:
            raise MetadataError(f"No leader for {len(leaderless)} assigned partition(s)")

        max_wait_ms = max(0, min(self.config.fetch_max_wait_ms, timeout_ms))
        results = await asyncio.gather(
            *(self._fetch_from(node_id, tps, max_wait_ms) for node_id, tps in by_node.items()),
            return_exceptions=True,
        )

        buffered = 0
        first_error: Optional[BaseException] = None
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                if not isinstance(result, ClientError) or not result.is_retryable:
                    raise result
                if first_error is None:
                    first_error = result
                continue
            buffered += result

        if buffered == 0 and first_error is not None:
            raise first_error
        return buffered

    async def _fetch_from(
        self, node_id: int, tps: List[TopicPartition], max_wait_ms: int
    ) -> int:
        offsets: Dict[TopicPartition, int] = {}
        topics: Dict[str, List[FetchPartition]] = defaultdict(list)
        for tp in tps:
            position = self._subscriptions.position(tp)
            if position is None:
                continue
            offsets[tp] = position
            topics[tp.topic].append(
                FetchPartition(tp.partition, position, self.config.max_partition_fetch_bytes)
            )
        if not offsets:
            return 0

        request = FetchRequest(
            max_wait_ms=max_wait_ms,
            min_bytes=self.config.fetch_min_bytes,
            max_bytes=self.config.fetch_max_bytes,
            topics=dict(topics),
        )
        try:
            response = await self._manager.send(
                node_id,
                request,
                retry=False,
                timeout_ms=self.config.request_timeout_ms + max_wait_ms,
            )
        except _SEND_ERRORS:
            self._manager.request_metadata_update()
            raise
        assert isinstance(response, FetchResponse)

        buffered = 0
        out_of_range: List[TopicPartition] = []
        retry_error: Optional[ClientError] = None

        for tp, fetch_offset in offsets.items():
            part = response.topics.get(tp.topic, {}).get(tp.partition)
            if part is None:
                continue

            if part.error_code == OFFSET_OUT_OF_RANGE:
                out_of_range.append(tp)
                continue
            if part.error_code != NO_ERROR:
                error = KafkaErrorClassifier.for_code(
                    part.error_code,
                    {"topic": tp.topic, "partition": tp.partition, "node_id": node_id},
                )
                if not error.is_retryable:
                    raise error
                if isinstance(error, BrokerResponseError) and error.invalid_metadata:
                    self._manager.request_metadata_update()
                retry_error = error
                continue

            try:
                records = decode_records(tp.topic, tp.partition, part.records, fetch_offset)
            except Exception as e:
                # The same bytes come back on every fetch
                raise wrap_exception(
                    e,
                    PermanentError,
                    context={
                        "topic": tp.topic,
                        "partition": tp.partition,
                        "offset": fetch_offset,
                        "node_id": node_id,
                    },
                ) from e
            added = self._subscriptions.add_records(tp, fetch_offset, records)
            buffered += added

            metrics.update_consumer_lag(
                tp.topic, tp.partition, self.group_id, max(0, part.high_watermark - fetch_offset)
            )
            if added:
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "Fetched records",
                    topic=tp.topic,
                    partition=tp.partition,
                    offset=fetch_offset,
                    record_count=added,
                )

        if out_of_range:
            for tp in out_of_range:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Fetch offset out of range, resetting",
                    topic=tp.topic,
                    partition=tp.partition,
                    offset=offsets[tp],
                    policy=self.config.auto_offset_reset,
                )
            await self.reset_offsets(out_of_range)

        if buffered == 0 and retry_error is not None:
            raise retry_error
        return buffered
