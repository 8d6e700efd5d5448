"""
Consumer group membership through the broker's group protocol.

GroupCoordinator drives FindCoordinator, JoinGroup, SyncGroup, Heartbeat,
LeaveGroup, OffsetCommit and OffsetFetch for one member.

The heartbeat task never touches the assignment. When it learns that the
member must rejoin (rebalance in progress, stale generation, unknown member,
or no successful heartbeat within the session timeout) it posts a
RebalanceRequired message on the coordinator's event queue. The owner of
the member (the consumer's poll) drains that queue in
``ensure_active_group``, which revokes first and only then rejoins.
"""

import asyncio
import inspect
import logging
import time
from typing import Collection, Dict, Iterable, List, Optional, Union

from core.errors.exceptions import (
    CircuitOpenError,
    ClientError,
    CommitError,
    ConnectError,
    IllegalStateError,
    MetadataError,
    RebalanceInProgressError,
    TransportError,
)
from core.errors.kafka_classifier import (
    COORDINATOR_ERROR_CODES,
    NO_ERROR,
    REJOIN_ERROR_CODES,
    UNKNOWN_MEMBER_ID,
    KafkaErrorClassifier,
    error_name,
)
from core.logging.context import set_log_context
from core.logging.utilities import log_exception, log_with_context
from core.resilience.retry import retry_async
from kafka_client import metrics
from kafka_client.cluster import ConnectionManager
from kafka_client.config import ClientConfig
from kafka_client.group.assignors import AbstractPartitionAssignor, assignor_for
from kafka_client.protocol.consumer_protocol import (
    ConsumerProtocolMemberAssignment,
    ConsumerProtocolMemberMetadata,
)
from kafka_client.protocol.messages import (
    HeartbeatRequest,
    HeartbeatResponse,
    JoinGroupRequest,
    JoinGroupResponse,
    LeaveGroupRequest,
    OffsetCommitRequest,
    OffsetCommitResponse,
    OffsetFetchRequest,
    OffsetFetchResponse,
    SyncGroupRequest,
    SyncGroupResponse,
)
from kafka_client.structs import (
    MemberAssignment,
    OffsetAndMetadata,
    RebalanceRequired,
    TopicPartition,
)

logger = logging.getLogger(__name__)

# Transport-level failures that mean "find the coordinator again"
_COORDINATOR_TRANSPORT_ERRORS = (TransportError, ConnectError, CircuitOpenError)


class ConsumerRebalanceListener:
    """
    Hooks run around a rebalance, in the task that drives the group.

    ``on_partitions_revoked`` runs after the member stops fetching and before
    it rejoins; ``on_partitions_assigned`` runs once the new assignment is
    in place. Either may be a coroutine.
    """

    def on_partitions_revoked(self, revoked: Collection[TopicPartition]):
        pass

    def on_partitions_assigned(self, assigned: Collection[TopicPartition]):
        pass


class GroupCoordinator:
    """
    One member of a consumer group.

    Usage:
        coordinator = GroupCoordinator(manager, config)
        coordinator.on_rebalance(listener)
        assignment = await coordinator.join("billing", ["invoices"])
        ...
        await coordinator.leave()
    """

    def __init__(
        self,
        manager: ConnectionManager,
        config: ClientConfig,
        assignors: Optional[List[AbstractPartitionAssignor]] = None,
    ):
        self._manager = manager
        self.config = config
        self._assignors = assignors or [assignor_for(config.partition_assignment_strategy)]
        self._retry = config.retry_policy()

        self.group_id: Optional[str] = None
        self._topics: List[str] = []
        self.member_id = ""
        self.generation_id = -1
        self._assignment = MemberAssignment.empty()

        self._listeners: List[ConsumerRebalanceListener] = []
        self._events: "asyncio.Queue[RebalanceRequired]" = asyncio.Queue()
        self._needs_join = True
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._last_heartbeat_ok = 0.0
        self._join_lock = asyncio.Lock()
        self._rejoining = False

    # =========================================================================
    # Public surface
    # =========================================================================

    @property
    def assignment(self) -> MemberAssignment:
        """Current snapshot; replaced on every rebalance, never mutated."""
        return self._assignment

    @property
    def subscription(self) -> List[str]:
        return list(self._topics)

    def on_rebalance(self, listener: ConsumerRebalanceListener) -> None:
        """Register a listener; listeners run in registration order."""
        self._listeners.append(listener)

    def subscribe(self, group_id: str, topics: Union[str, Iterable[str]]) -> None:
        topics = [topics] if isinstance(topics, str) else sorted(set(topics))
        if not topics:
            raise ValueError("At least one topic is required")
        if self.group_id is not None and self.group_id != group_id:
            raise IllegalStateError(
                f"Already a member of group '{self.group_id}'; leave() first"
            )
        self.group_id = group_id
        if topics != self._topics:
            self._topics = topics
            self._needs_join = True
        set_log_context(group_id=group_id)

    async def join(
        self, group_id: str, topics: Union[str, Iterable[str]]
    ) -> MemberAssignment:
        """
        Join (or rejoin) the group and return this member's assignment.

        Raises:
            MetadataError: Coordinator not found or subscribed topic unknown
            RebalanceInProgressError: Group did not stabilize within the
                rebalance timeout
            BrokerResponseError: Non-retriable group error
        """
        self.subscribe(group_id, topics)
        self._needs_join = True
        await self.ensure_active_group()
        return self._assignment

    def need_rejoin(self) -> bool:
        return self._needs_join or not self._events.empty()

    def request_rejoin(self, reason: str) -> None:
        self._post(RebalanceRequired(reason=reason))

    async def ensure_active_group(self) -> bool:
        """
        Process pending rebalance messages and rejoin if needed.

        Revoke-then-assign: the assignment snapshot becomes empty and
        revoke listeners complete before the member sends JoinGroup.

        Returns:
            True if a (re)join happened
        """
        if self.group_id is None:
            raise IllegalStateError("Not subscribed to a group")

        async with self._join_lock:
            while not self._events.empty():
                event = self._events.get_nowait()
                self._needs_join = True
                log_with_context(
                    logger,
                    logging.INFO,
                    "Rebalance required",
                    reason=event.reason,
                    error_code=event.error_code,
                    generation=self.generation_id,
                )

            if not self._needs_join:
                return False

            await self.stop_heartbeat()
            self._rejoining = True
            try:
                await self._revoke()
                await self._join_and_sync()
            finally:
                self._rejoining = False
            self._needs_join = False
            self._start_heartbeat()
            await self._notify_assigned()
            return True

    async def leave(self) -> None:
        """Stop heartbeats, revoke and send LeaveGroup."""
        await self.stop_heartbeat()
        if self.group_id is None:
            return
        await self._revoke()

        if self.member_id:
            try:
                coordinator = await self._manager.coordinator_for(self.group_id)
                response = await self._manager.send(
                    coordinator, LeaveGroupRequest(self.group_id, self.member_id), retry=False
                )
                if response.error_code != NO_ERROR:
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "LeaveGroup returned error",
                        error_code=response.error_code,
                        error_type=error_name(response.error_code),
                    )
            except ClientError as e:
                log_exception(
                    logger,
                    e,
                    "LeaveGroup failed",
                    level=logging.WARNING,
                    include_traceback=False,
                )
            else:
                log_with_context(
                    logger, logging.INFO, "Left consumer group", generation=self.generation_id
                )

        self.member_id = ""
        self.generation_id = -1
        self._needs_join = True
        self._events = asyncio.Queue()
        metrics.update_assigned_partitions(self.group_id, 0)

    # =========================================================================
    # Revoke / assign
    # =========================================================================

    async def _revoke(self) -> None:
        revoked = self._assignment.partitions
        self._assignment = MemberAssignment.empty(self.group_id or "")
        if not revoked:
            return
        log_with_context(
            logger,
            logging.INFO,
            "Revoking partitions",
            partitions=sorted(f"{tp.topic}-{tp.partition}" for tp in revoked),
            generation=self.generation_id,
        )
        for listener in self._listeners:
            await self._call_listener(listener.on_partitions_revoked, revoked)

    async def _notify_assigned(self) -> None:
        assigned = self._assignment.partitions
        for listener in self._listeners:
            await self._call_listener(listener.on_partitions_assigned, assigned)

    @staticmethod
    async def _call_listener(method, partitions) -> None:
        try:
            result = method(frozenset(partitions))
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(logger, e, "Rebalance listener raised", level=logging.ERROR)

    # =========================================================================
    # Join / sync
    # =========================================================================

    async def _join_and_sync(self) -> None:
        assert self.group_id is not None
        deadline = time.monotonic() + 2 * self.config.rebalance_timeout_ms / 1000
        attempt = 0
        last_error: Optional[ClientError] = None

        while time.monotonic() < deadline:
            try:
                coordinator = await self._manager.coordinator_for(self.group_id)
                joined = await self._send_join(coordinator)
                assignment = await self._send_sync(coordinator, joined)
            except _COORDINATOR_TRANSPORT_ERRORS as e:
                self._manager.mark_coordinator_dead(self.group_id)
                last_error = e
            except ClientError as e:
                if not e.is_retryable:
                    raise
                last_error = e
            else:
                self._assignment = assignment
                self._last_heartbeat_ok = time.monotonic()
                metrics.record_rebalance(self.group_id, len(assignment))
                set_log_context(member_id=self.member_id)
                log_with_context(
                    logger,
                    logging.INFO,
                    "Joined consumer group",
                    generation=self.generation_id,
                    partitions=sorted(f"{tp.topic}-{tp.partition}" for tp in assignment.partitions),
                )
                return

            delay = self._retry.get_delay(attempt)
            attempt += 1
            log_with_context(
                logger,
                logging.WARNING,
                "Group join failed, retrying",
                attempt=attempt,
                delay_ms=int(delay * 1000),
                error_message=str(last_error)[:200],
            )
            await asyncio.sleep(delay)

        raise RebalanceInProgressError(
            f"Group '{self.group_id}' did not stabilize within the rebalance timeout",
            cause=last_error,
            context={"group_id": self.group_id},
        )

    def _group_error(self, code: int, api: str) -> ClientError:
        """
        Exception for a JoinGroup/SyncGroup error code.

        Rejoin codes give RebalanceInProgressError and coordinator codes give
        MetadataError, both retried by the join loop. Anything else is final.
        """
        assert self.group_id is not None
        context = {"group_id": self.group_id, "api": api}
        log_with_context(
            logger,
            logging.INFO,
            f"{api} returned error",
            error_code=code,
            error_type=error_name(code),
        )
        if code == UNKNOWN_MEMBER_ID:
            self.member_id = ""
        if code in COORDINATOR_ERROR_CODES:
            self._manager.mark_coordinator_dead(self.group_id)
            return MetadataError(
                f"Group coordinator unavailable: {error_name(code)}",
                cause=KafkaErrorClassifier.for_code(code, context),
                context=context,
            )
        return KafkaErrorClassifier.for_code(code, context)

    async def _send_join(self, coordinator: int) -> JoinGroupResponse:
        assert self.group_id is not None
        request = JoinGroupRequest(
            group_id=self.group_id,
            session_timeout_ms=self.config.session_timeout_ms,
            rebalance_timeout_ms=self.config.rebalance_timeout_ms,
            member_id=self.member_id,
            protocols=[(a.name, a.metadata(self._topics).encode()) for a in self._assignors],
        )
        response = await self._manager.send(
            coordinator,
            request,
            retry=False,
            timeout_ms=self.config.rebalance_timeout_ms + self.config.request_timeout_ms,
        )
        assert isinstance(response, JoinGroupResponse)
        if response.error_code != NO_ERROR:
            raise self._group_error(response.error_code, "JoinGroup")

        self.member_id = response.member_id
        self.generation_id = response.generation_id
        log_with_context(
            logger,
            logging.DEBUG,
            "JoinGroup succeeded",
            generation=response.generation_id,
            protocol=response.protocol_name,
            member_count=len(response.members),
        )
        return response

    async def _send_sync(
        self, coordinator: int, joined: JoinGroupResponse
    ) -> MemberAssignment:
        assert self.group_id is not None
        assignments = []
        if joined.is_leader:
            assignments = await self._perform_assignment(joined)

        response = await self._manager.send(
            coordinator,
            SyncGroupRequest(self.group_id, self.generation_id, self.member_id, assignments),
            retry=False,
            timeout_ms=self.config.rebalance_timeout_ms + self.config.request_timeout_ms,
        )
        assert isinstance(response, SyncGroupResponse)
        if response.error_code != NO_ERROR:
            raise self._group_error(response.error_code, "SyncGroup")

        decoded = ConsumerProtocolMemberAssignment.decode(response.assignment)
        return MemberAssignment(
            group_id=self.group_id,
            generation_id=self.generation_id,
            member_id=self.member_id,
            partitions=decoded.partitions(),
        )

    async def _perform_assignment(self, joined: JoinGroupResponse):
        """Leader only: compute every member's assignment with fresh metadata."""
        assignor = next((a for a in self._assignors if a.name == joined.protocol_name), None)
        if assignor is None:
            assignor = assignor_for(joined.protocol_name)

        subscriptions: Dict[str, List[str]] = {}
        for member_id, raw in joined.members:
            subscriptions[member_id] = ConsumerProtocolMemberMetadata.decode(raw).topics

        partitions_per_topic: Dict[str, List[int]] = {}
        for topic in sorted({t for topics in subscriptions.values() for t in topics}):
            partitions_per_topic[topic] = sorted(await self._manager.refresh_metadata(topic))

        result = assignor.assign(partitions_per_topic, subscriptions)
        log_with_context(
            logger,
            logging.INFO,
            "Computed group assignment as leader",
            protocol=assignor.name,
            member_count=len(subscriptions),
            generation=self.generation_id,
        )
        return [
            (member_id, ConsumerProtocolMemberAssignment.from_partitions(tps).encode())
            for member_id, tps in sorted(result.items())
        ]

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def _post(self, event: RebalanceRequired) -> None:
        self._events.put_nowait(event)

    def _start_heartbeat(self) -> None:
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"kafka-heartbeat-{self.group_id}"
        )

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    async def _heartbeat_loop(self) -> None:
        assert self.group_id is not None
        interval = self.config.heartbeat_interval_ms / 1000
        session_timeout = self.config.session_timeout_ms / 1000

        while True:
            await asyncio.sleep(interval)
            code = await self._send_heartbeat()

            if code == NO_ERROR:
                self._last_heartbeat_ok = time.monotonic()
                continue

            if code is not None and code in REJOIN_ERROR_CODES:
                self._post(RebalanceRequired(reason=error_name(code), error_code=code))
                return
            if code is not None and code in COORDINATOR_ERROR_CODES:
                self._manager.mark_coordinator_dead(self.group_id)
            elif code is not None:
                self._post(
                    RebalanceRequired(
                        reason=f"heartbeat failed: {error_name(code)}", error_code=code
                    )
                )
                return

            if time.monotonic() - self._last_heartbeat_ok > session_timeout:
                self._post(RebalanceRequired(reason="session timeout"))
                return

    async def _send_heartbeat(self) -> Optional[int]:
        """Error code of one heartbeat, or None if it could not be sent."""
        assert self.group_id is not None
        try:
            coordinator = await self._manager.coordinator_for(self.group_id)
            response = await self._manager.send(
                coordinator,
                HeartbeatRequest(self.group_id, self.generation_id, self.member_id),
                retry=False,
            )
        except _COORDINATOR_TRANSPORT_ERRORS + (MetadataError,) as e:
            self._manager.mark_coordinator_dead(self.group_id)
            log_exception(
                logger,
                e,
                "Heartbeat failed",
                level=logging.WARNING,
                include_traceback=False,
                generation=self.generation_id,
            )
            return None
        assert isinstance(response, HeartbeatResponse)
        return response.error_code

    # =========================================================================
    # Offsets
    # =========================================================================

    async def commit_offsets(self, offsets: Dict[TopicPartition, OffsetAndMetadata]) -> None:
        """
        Commit offsets for the current generation.

        Raises:
            CommitError: Commit failed; ``cause`` holds the underlying error
        """
        if not offsets:
            return
        if self.group_id is None:
            raise CommitError("No consumer group to commit to", offsets=offsets)

        topics: Dict[str, Dict[int, tuple]] = {}
        for tp, meta in sorted(offsets.items()):
            topics.setdefault(tp.topic, {})[tp.partition] = (meta.offset, meta.metadata)

        request = OffsetCommitRequest(
            group_id=self.group_id,
            generation_id=self.generation_id,
            member_id=self.member_id,
            topics=topics,
        )
        try:
            coordinator = await self._manager.coordinator_for(self.group_id)
            response = await self._manager.send(coordinator, request)
        except ClientError as e:
            if isinstance(e, _COORDINATOR_TRANSPORT_ERRORS):
                self._manager.mark_coordinator_dead(self.group_id)
            metrics.record_commit(self.group_id, success=False)
            raise KafkaErrorClassifier.classify_commit_error(e, offsets) from e

        assert isinstance(response, OffsetCommitResponse)
        for topic, parts in response.topics.items():
            for partition, code in parts.items():
                if code == NO_ERROR:
                    continue
                if code in REJOIN_ERROR_CODES and not self._rejoining:
                    self._post(RebalanceRequired(reason=error_name(code), error_code=code))
                elif code in COORDINATOR_ERROR_CODES:
                    self._manager.mark_coordinator_dead(self.group_id)
                metrics.record_commit(self.group_id, success=False)
                cause = KafkaErrorClassifier.for_code(
                    code, {"topic": topic, "partition": partition}
                )
                raise CommitError(
                    f"Offset commit failed for {topic}-{partition}: {error_name(code)}",
                    offsets=offsets,
                    cause=cause,
                )

        metrics.record_commit(self.group_id, success=True)
        log_with_context(
            logger,
            logging.DEBUG,
            "Offsets committed",
            generation=self.generation_id,
            partitions={f"{tp.topic}-{tp.partition}": m.offset for tp, m in offsets.items()},
        )

    async def fetch_committed_offsets(
        self, partitions: Iterable[TopicPartition]
    ) -> Dict[TopicPartition, Optional[OffsetAndMetadata]]:
        """
        Committed offsets for partitions; None where nothing is committed.

        Raises:
            MetadataError: Coordinator unavailable within the retry budget
            BrokerResponseError: Non-retriable error
        """
        if self.group_id is None:
            raise IllegalStateError("Not subscribed to a group")
        partitions = sorted(set(partitions))
        if not partitions:
            return {}

        topics: Dict[str, List[int]] = {}
        for tp in partitions:
            topics.setdefault(tp.topic, []).append(tp.partition)

        async def attempt() -> Dict[TopicPartition, Optional[OffsetAndMetadata]]:
            try:
                coordinator = await self._manager.coordinator_for(self.group_id)
                response = await self._manager.send(
                    coordinator, OffsetFetchRequest(self.group_id, topics), retry=False
                )
            except _COORDINATOR_TRANSPORT_ERRORS as e:
                self._manager.mark_coordinator_dead(self.group_id)
                raise MetadataError(
                    f"Coordinator for group '{self.group_id}' unreachable", cause=e
                ) from e
            assert isinstance(response, OffsetFetchResponse)
            result, retry_error = self._parse_offset_fetch(response, partitions)
            if retry_error is not None:
                raise retry_error
            return result

        try:
            return await retry_async(attempt, self._retry, operation="offset_fetch")
        except ClientError as e:
            if not e.is_retryable:
                raise
            raise MetadataError(
                f"Could not fetch committed offsets for group '{self.group_id}'",
                cause=e,
            ) from e

    def _parse_offset_fetch(self, response: OffsetFetchResponse, partitions):
        result: Dict[TopicPartition, Optional[OffsetAndMetadata]] = {}
        for tp in partitions:
            part = response.topics.get(tp.topic, {}).get(tp.partition)
            if part is None:
                result[tp] = None
                continue
            if part.error_code != NO_ERROR:
                error = KafkaErrorClassifier.for_code(
                    part.error_code, {"topic": tp.topic, "partition": tp.partition}
                )
                if part.error_code in COORDINATOR_ERROR_CODES:
                    self._manager.mark_coordinator_dead(self.group_id)
                    return {}, error
                if error.is_retryable:
                    return {}, error
                raise error
            result[tp] = (
                OffsetAndMetadata(part.offset, part.metadata or "") if part.offset >= 0 else None
            )
        return result, None
