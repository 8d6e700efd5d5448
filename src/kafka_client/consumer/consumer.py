"""
Group consumer with at-least-once offset tracking.

Provides an async consumer that:
- Joins a consumer group and follows its rebalances (revoke, then assign)
- Starts from the committed offset, else from auto_offset_reset
- Long-polls partition leaders and returns lazy, restartable poll results
- Auto-commits consumed positions or leaves commits to the caller
- Supports cancellation of poll and commit through an asyncio.Event
"""

import asyncio
import logging
import time
from typing import Awaitable, Collection, Dict, Iterator, Optional, TypeVar

from core.errors.exceptions import (
    Cancelled,
    ClientError,
    CommitError,
    IllegalStateError,
)
from core.logging.context import set_log_context
from core.logging.utilities import log_exception, log_with_context
from kafka_client import metrics
from kafka_client.cluster import ConnectionManager
from kafka_client.config import ClientConfig
from kafka_client.consumer.fetcher import Fetcher
from kafka_client.consumer.subscription import PollResult, SubscriptionState
from kafka_client.group.coordinator import ConsumerRebalanceListener, GroupCoordinator
from kafka_client.structs import ConsumerRecord, OffsetAndMetadata, TopicPartition

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_cancellable(awaitable: Awaitable[T], cancel: Optional[asyncio.Event]) -> T:
    """
    Await ``awaitable`` unless ``cancel`` is set first.

    Raises:
        Cancelled: ``cancel`` was set; the awaitable is cancelled
    """
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise Cancelled("Operation cancelled")

    task = asyncio.ensure_future(awaitable)
    cancel_wait = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_wait.cancel()

    if task.done():
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except ClientError:
        pass
    raise Cancelled("Operation cancelled")


class _RevokeHandler(ConsumerRebalanceListener):
    """Commits and releases partition state around a rebalance."""

    def __init__(self, consumer: "Consumer"):
        self._consumer = consumer

    async def on_partitions_revoked(self, revoked: Collection[TopicPartition]) -> None:
        await self._consumer._on_revoked(revoked)

    def on_partitions_assigned(self, assigned: Collection[TopicPartition]) -> None:
        self._consumer._on_assigned()


class Consumer:
    """
    Async group consumer.

    Usage:
        async with Consumer(config) as consumer:
            consumer.subscribe("events", group_id="billing")
            while running:
                for record in await consumer.poll(timeout_ms=1000):
                    handle(record)

    Iterating ``async for record in consumer`` polls until close().
    """

    def __init__(
        self,
        config: ClientConfig,
        manager: Optional[ConnectionManager] = None,
        coordinator: Optional[GroupCoordinator] = None,
    ):
        self.config = config
        self._manager = manager or ConnectionManager(config)
        self._owns_manager = manager is None
        self._coordinator = coordinator or GroupCoordinator(self._manager, config)
        self._coordinator.on_rebalance(_RevokeHandler(self))

        self._subscriptions = SubscriptionState()
        self._fetcher = Fetcher(self._manager, config, self._subscriptions)
        self._retry = config.retry_policy()

        self._group_id: Optional[str] = None
        self._next_auto_commit = 0.0
        self._iterator: Optional[Iterator[ConsumerRecord]] = None
        self._started = False
        self._closed = False

        log_with_context(
            logger,
            logging.INFO,
            "Initialized consumer",
            operation="init",
            policy=f"auto_offset_reset={config.auto_offset_reset}",
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> "Consumer":
        if self._closed:
            raise IllegalStateError("Consumer is closed")
        if self._started:
            return self
        set_log_context(client_id=self.config.client_id, component="consumer")
        if not self._manager.is_connected:
            await self._manager.connect()
        self._started = True
        return self

    async def __aenter__(self) -> "Consumer":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_active(self) -> None:
        if self._closed:
            raise IllegalStateError("Consumer is closed")
        if self._group_id is None:
            raise IllegalStateError("Consumer not subscribed. Call subscribe() first.")

    def subscribe(self, topic, group_id: str) -> None:
        """
        Subscribe to a topic (or list of topics) as a member of ``group_id``.

        The group is joined on the next poll.
        """
        if self._closed:
            raise IllegalStateError("Consumer is closed")
        if not group_id:
            raise ValueError("group_id is required")
        topics = [topic] if isinstance(topic, str) else list(topic)
        self._coordinator.subscribe(group_id, topics)
        # Followers never name the topics in a request of their own
        self._manager.add_topics(topics)
        self._group_id = group_id
        self._fetcher.group_id = group_id
        self._next_auto_commit = time.monotonic() + self.config.auto_commit_interval_ms / 1000
        logger.info(
            "Subscribed",
            extra={"topic": ",".join(topics), "group_id": group_id},
        )

    def assignment(self) -> frozenset:
        """Partitions currently owned by this consumer."""
        return self._subscriptions.assigned_partitions()

    # =========================================================================
    # Poll
    # =========================================================================

    async def poll(
        self,
        timeout_ms: int = 0,
        max_records: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PollResult:
        """
        Wait up to ``timeout_ms`` for records.

        Services the group first (rebalance, auto-commit), returns buffered
        records if any, else long-polls partition leaders.

        Args:
            timeout_ms: Max time to wait for data
            max_records: Cap on returned records (default: max_poll_records)
            cancel: Event that ends the poll early with an empty result

        Returns:
            PollResult; empty on timeout or cancellation
        """
        self._ensure_active()
        if not self._started:
            await self.start()
        max_records = max_records or self.config.max_poll_records

        try:
            return await run_cancellable(self._poll(timeout_ms, max_records), cancel)
        except Cancelled:
            logger.debug("Poll cancelled", extra={"operation": "poll"})
            return PollResult.empty()

    async def _poll(self, timeout_ms: int, max_records: int) -> PollResult:
        deadline = time.monotonic() + timeout_ms / 1000
        attempt = 0

        while True:
            try:
                await self._service_group()
                if not self._subscriptions.has_buffered():
                    remaining_ms = int((deadline - time.monotonic()) * 1000)
                    if self._subscriptions.fetchable_partitions():
                        await self._fetcher.fetch(max(0, remaining_ms))
                    elif remaining_ms > 0:
                        # Nothing assigned to fetch; wake up for heartbeat-driven rejoins
                        await asyncio.sleep(
                            min(remaining_ms, self.config.heartbeat_interval_ms) / 1000
                        )
                attempt = 0
            except ClientError as e:
                if not e.is_retryable:
                    raise
                delay = self._retry.get_delay(attempt)
                attempt += 1
                log_exception(
                    logger,
                    e,
                    "Poll failed, backing off",
                    level=logging.WARNING,
                    include_traceback=False,
                    attempt=attempt,
                    delay_ms=int(delay * 1000),
                )
                await asyncio.sleep(max(0.0, min(delay, deadline - time.monotonic())))

            if self._subscriptions.has_buffered():
                return PollResult(
                    self._subscriptions,
                    self._subscriptions.snapshot(max_records),
                    self._on_consumed,
                )
            if time.monotonic() >= deadline:
                return PollResult.empty()

    def _on_consumed(self, record: ConsumerRecord) -> None:
        metrics.record_records_consumed(record.topic, self._group_id or "")

    async def _service_group(self) -> None:
        await self._coordinator.ensure_active_group()
        await self._ensure_metadata()
        await self._ensure_positions()
        await self._maybe_auto_commit()

    async def _ensure_metadata(self) -> None:
        """Refresh metadata for assigned topics the snapshot does not know yet."""
        metadata = self._manager.metadata
        unknown = sorted(
            {
                tp.topic
                for tp in self._subscriptions.assigned_partitions()
                if metadata.partitions_for(tp.topic) is None
            }
        )
        for topic in unknown:
            await self._manager.refresh_metadata(topic)

    async def _ensure_positions(self) -> None:
        missing = self._subscriptions.missing_positions()
        if not missing:
            return

        committed = await self._coordinator.fetch_committed_offsets(missing)
        to_reset = []
        for tp in missing:
            meta = committed.get(tp)
            if meta is None:
                to_reset.append(tp)
                continue
            self._subscriptions.seek(tp, meta.offset)
            self._subscriptions.set_committed(tp, meta.offset)
            log_with_context(
                logger,
                logging.DEBUG,
                "Resuming from committed offset",
                topic=tp.topic,
                partition=tp.partition,
                offset=meta.offset,
            )
        if to_reset:
            await self._fetcher.reset_offsets(to_reset)

    # =========================================================================
    # Rebalance hooks
    # =========================================================================

    async def _on_revoked(self, revoked: Collection[TopicPartition]) -> None:
        pending = self._subscriptions.revoke()
        self._iterator = None
        if not pending or not self.config.enable_auto_commit:
            return
        offsets = {tp: OffsetAndMetadata(position, "") for tp, position in pending.items()}
        try:
            await self._coordinator.commit_offsets(offsets)
        except CommitError as e:
            log_exception(
                logger,
                e,
                "Commit of revoked partitions failed",
                level=logging.WARNING,
                include_traceback=False,
            )

    def _on_assigned(self) -> None:
        self._subscriptions.assign(self._coordinator.assignment)

    # =========================================================================
    # Commit
    # =========================================================================

    async def _maybe_auto_commit(self) -> None:
        if not self.config.enable_auto_commit or time.monotonic() < self._next_auto_commit:
            return
        self._next_auto_commit = time.monotonic() + self.config.auto_commit_interval_ms / 1000
        await self._auto_commit()

    async def _auto_commit(self) -> None:
        offsets = self._subscriptions.uncommitted_offsets()
        if not offsets:
            return
        try:
            await self._coordinator.commit_offsets(offsets)
        except CommitError as e:
            log_exception(
                logger,
                e,
                "Auto-commit failed, continuing",
                level=logging.WARNING,
                include_traceback=False,
            )
        else:
            self._subscriptions.mark_committed(offsets)

    async def commit(
        self,
        offsets: Optional[Dict[TopicPartition, object]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Commit offsets synchronously.

        Args:
            offsets: TopicPartition -> next offset to read (int or
                OffsetAndMetadata); defaults to the current positions
            cancel: Event that abandons the commit; offset state is unchanged

        Raises:
            CommitError: Broker rejected or could not receive the commit
            Cancelled: ``cancel`` was set first
        """
        self._ensure_active()
        if offsets is None:
            to_commit = self._subscriptions.uncommitted_offsets()
        else:
            to_commit = {
                tp: meta if isinstance(meta, OffsetAndMetadata) else OffsetAndMetadata(int(meta), "")
                for tp, meta in offsets.items()
            }
        if not to_commit:
            return

        await run_cancellable(self._coordinator.commit_offsets(to_commit), cancel)
        self._subscriptions.mark_committed(to_commit)

    async def committed(self, tp: TopicPartition) -> Optional[int]:
        """Last committed offset of a partition, or None."""
        self._ensure_active()
        result = await self._coordinator.fetch_committed_offsets([tp])
        meta = result.get(tp)
        return meta.offset if meta is not None else None

    # =========================================================================
    # Positions
    # =========================================================================

    def seek(self, tp: TopicPartition, offset: int) -> None:
        """Set the next offset to read; buffered records of ``tp`` are discarded."""
        self._subscriptions.seek(tp, offset)
        log_with_context(
            logger,
            logging.INFO,
            "Seek",
            topic=tp.topic,
            partition=tp.partition,
            offset=offset,
        )

    async def seek_to_beginning(self, *partitions: TopicPartition) -> None:
        await self._fetcher.reset_offsets(partitions or self.assignment(), "earliest")

    async def seek_to_end(self, *partitions: TopicPartition) -> None:
        await self._fetcher.reset_offsets(partitions or self.assignment(), "latest")

    async def position(self, tp: TopicPartition) -> int:
        """Next offset to be returned for an assigned partition."""
        if not self._subscriptions.is_assigned(tp):
            raise IllegalStateError(f"Partition {tp.topic}-{tp.partition} is not assigned")
        if not self._subscriptions.has_position(tp):
            await self._ensure_positions()
        position = self._subscriptions.position(tp)
        assert position is not None
        return position

    # =========================================================================
    # Async iteration
    # =========================================================================

    def __aiter__(self) -> "Consumer":
        return self

    async def __anext__(self) -> ConsumerRecord:
        while not self._closed:
            if self._iterator is not None:
                record = next(self._iterator, None)
                if record is not None:
                    return record
                self._iterator = None
            result = await self.poll(timeout_ms=self.config.fetch_max_wait_ms)
            self._iterator = iter(result)
        raise StopAsyncIteration

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def close(self) -> None:
        """Auto-commit, leave the group and release connections. Idempotent."""
        if self._closed:
            return
        self._closed = True
        logger.info("Closing consumer", extra={"operation": "close"})
        try:
            if self._group_id is not None and self._started:
                if self.config.enable_auto_commit:
                    await self._auto_commit()
                await self._coordinator.leave()
        finally:
            self._iterator = None
            if self._owns_manager:
                await self._manager.close()
            logger.info("Consumer closed", extra={"operation": "close"})
