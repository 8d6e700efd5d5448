"""
Sender: the network side of the producer.

A single background task takes sealed batches off the accumulator queue,
keeps them in per-partition pending lists ordered by batch sequence, and
groups ready batches by leader into one ProduceRequest per broker node.

Ordering: a partition has at most one batch on the wire at a time. A batch
that fails with a retryable error goes back to the head of its partition
(by sequence) and the partition backs off, so later batches can never be
acknowledged ahead of it.
"""

import asyncio
import bisect
import logging
import time
from collections import defaultdict
from typing import Dict, List, Optional, Set

from core.errors.exceptions import (
    BrokerResponseError,
    Cancelled,
    ClientError,
    DeliveryError,
    TransportError,
    wrap_exception,
)
from core.errors.kafka_classifier import NO_ERROR, KafkaErrorClassifier
from core.logging.utilities import log_exception, log_with_context
from kafka_client import metrics
from kafka_client.cluster import ConnectionManager
from kafka_client.config import ClientConfig
from kafka_client.producer.accumulator import RecordAccumulator
from kafka_client.producer.batch import ProducerBatch
from kafka_client.protocol.messages import ProduceRequest, ProduceResponse
from kafka_client.structs import TopicPartition

logger = logging.getLogger(__name__)


class Sender:
    """Background task delivering sealed batches with retry and backoff."""

    def __init__(
        self,
        manager: ConnectionManager,
        accumulator: RecordAccumulator,
        ready_queue: "asyncio.Queue[ProducerBatch]",
        config: ClientConfig,
    ):
        self._manager = manager
        self._accumulator = accumulator
        self._queue = ready_queue
        self.config = config
        # Retry budget: ``retries`` resends after the first attempt
        self._retry = config.retry_policy(max_attempts=config.retries + 1)

        self._pending: Dict[TopicPartition, List[ProducerBatch]] = defaultdict(list)
        self._on_wire: Set[TopicPartition] = set()
        self._backoff_until: Dict[TopicPartition, float] = {}
        self._requests: Set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name="kafka-producer-sender")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # Main loop
    # =========================================================================

    async def _run(self) -> None:
        get_task: Optional[asyncio.Future] = None
        try:
            while True:
                self._drain_queue()
                next_check = self._dispatch()

                self._wakeup.clear()
                if get_task is None:
                    get_task = asyncio.ensure_future(self._queue.get())
                wake_task = asyncio.ensure_future(self._wakeup.wait())
                try:
                    done, _ = await asyncio.wait(
                        {get_task, wake_task},
                        timeout=next_check,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    wake_task.cancel()
                if get_task in done:
                    self._enqueue(get_task.result())
                    get_task = None
        finally:
            if get_task is not None:
                get_task.cancel()

    def _drain_queue(self) -> None:
        while True:
            try:
                batch = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._enqueue(batch)

    def _enqueue(self, batch: ProducerBatch) -> None:
        """Insert a batch into its partition list at its sequence position."""
        pending = self._pending[batch.tp]
        keys = [b.sequence for b in pending]
        pending.insert(bisect.bisect_left(keys, batch.sequence), batch)

    def _dispatch(self) -> Optional[float]:
        """
        Start one produce request per leader for every sendable partition.

        Returns:
            Seconds until the earliest partition backoff expires, or None
        """
        now = time.monotonic()
        next_check: Optional[float] = None
        by_node: Dict[int, List[ProducerBatch]] = defaultdict(list)
        metadata = self._manager.metadata

        for tp, pending in self._pending.items():
            if not pending or tp in self._on_wire:
                continue
            until = self._backoff_until.get(tp, 0.0)
            if until > now:
                wait = until - now
                next_check = wait if next_check is None else min(next_check, wait)
                continue

            batch = pending[0]
            leader = metadata.leader_for(tp)
            if leader is None:
                self._manager.request_metadata_update()
                pending.pop(0)
                self._retry_or_fail(
                    batch,
                    TransportError(f"No known leader for {tp.topic}-{tp.partition}"),
                )
                wait = self._backoff_until.get(tp, now) - now
                if wait > 0:
                    next_check = wait if next_check is None else min(next_check, wait)
                continue

            pending.pop(0)
            self._on_wire.add(tp)
            by_node[leader].append(batch)

        for node_id, batches in by_node.items():
            task = asyncio.create_task(
                self._send_request(node_id, batches), name=f"kafka-produce-{node_id}"
            )
            self._requests.add(task)
            task.add_done_callback(self._requests.discard)
        return next_check

    # =========================================================================
    # Requests and outcomes
    # =========================================================================

    async def _send_request(self, node_id: int, batches: List[ProducerBatch]) -> None:
        topics: Dict[str, Dict[int, bytes]] = defaultdict(dict)
        for batch in batches:
            topics[batch.tp.topic][batch.tp.partition] = batch.seal()
        request = ProduceRequest(
            acks=self.config.acks_value,
            timeout_ms=self.config.request_timeout_ms,
            topics=dict(topics),
        )

        try:
            try:
                response = await self._manager.send(node_id, request, retry=False)
            except asyncio.CancelledError:
                for batch in batches:
                    self._fail(batch, Cancelled("Producer closed before acknowledgement"))
                raise
            except ClientError as e:
                for batch in batches:
                    self._retry_or_fail(batch, e)
                return

            assert isinstance(response, ProduceResponse)
            for batch in batches:
                self._handle_partition_response(node_id, batch, response)
        finally:
            for batch in batches:
                self._on_wire.discard(batch.tp)
            self._wakeup.set()

    def _handle_partition_response(
        self, node_id: int, batch: ProducerBatch, response: ProduceResponse
    ) -> None:
        tp = batch.tp
        part = response.topics.get(tp.topic, {}).get(tp.partition)
        if part is None:
            self._retry_or_fail(
                batch,
                TransportError(
                    f"Produce response from node {node_id} omitted {tp.topic}-{tp.partition}",
                    node_id=node_id,
                ),
            )
            return

        if part.error_code == NO_ERROR:
            batch.complete(part.base_offset, part.log_append_time)
            self._backoff_until.pop(tp, None)
            self._accumulator.batch_done(batch)
            metrics.record_batch_delivered(tp.topic, batch.record_count)
            log_with_context(
                logger,
                logging.DEBUG,
                "Batch acknowledged",
                topic=tp.topic,
                partition=tp.partition,
                offset=part.base_offset,
                record_count=batch.record_count,
                batch_sequence=batch.sequence,
            )
            return

        error = KafkaErrorClassifier.for_code(
            part.error_code,
            {"topic": tp.topic, "partition": tp.partition, "node_id": node_id},
        )
        if isinstance(error, BrokerResponseError) and error.invalid_metadata:
            self._manager.request_metadata_update()
        self._retry_or_fail(batch, error)

    def _retry_or_fail(self, batch: ProducerBatch, error: BaseException) -> None:
        batch.attempts += 1
        error = wrap_exception(error)
        tp = batch.tp

        if error.is_retryable and batch.attempts <= self.config.retries:
            delay = self._retry.get_delay(batch.attempts - 1)
            self._backoff_until[tp] = time.monotonic() + delay
            self._enqueue(batch)
            metrics.record_batch_retry(tp.topic)
            log_with_context(
                logger,
                logging.WARNING,
                "Batch send failed, retrying",
                topic=tp.topic,
                partition=tp.partition,
                batch_sequence=batch.sequence,
                attempt=batch.attempts,
                delay_ms=int(delay * 1000),
                error_category=error.category.value,
                error_message=str(error)[:200],
            )
            return

        if error.is_retryable:
            reason = f"retry budget exhausted after {batch.attempts} attempts"
        else:
            reason = "non-retriable error"
        self._fail(
            batch,
            DeliveryError(
                f"Delivery to {tp.topic}-{tp.partition} failed: {reason}",
                topic_partition=tp,
                records=list(batch.records),
                attempts=batch.attempts,
                cause=error,
                context={"topic": tp.topic, "partition": tp.partition},
            ),
        )

    def _fail(self, batch: ProducerBatch, error: BaseException) -> None:
        batch.fail(error)
        self._accumulator.batch_done(batch)
        if isinstance(error, DeliveryError):
            metrics.record_batch_failed(batch.tp.topic, batch.record_count)
            log_exception(
                logger,
                error,
                "Batch delivery failed",
                level=logging.ERROR,
                include_traceback=False,
                topic=batch.tp.topic,
                partition=batch.tp.partition,
                record_count=batch.record_count,
                attempt=batch.attempts,
            )

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def stop(self, error: BaseException) -> None:
        """Stop the loop and fail every batch not yet acknowledged with ``error``."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        requests = list(self._requests)
        for task in requests:
            task.cancel()
        if requests:
            await asyncio.gather(*requests, return_exceptions=True)

        self._drain_queue()
        for pending in self._pending.values():
            while pending:
                self._fail(pending.pop(0), error)
        self._pending.clear()
