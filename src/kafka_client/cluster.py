"""
Connection manager: cluster sessions and metadata.

The ConnectionManager is the session handle shared by producers and
consumers. It owns:
    - one lazily opened BrokerConnection per broker node
    - the current ClusterMetadata snapshot (replaced, never mutated)
    - a circuit breaker per node, from a registry scoped to this manager
    - background tasks: periodic/on-demand metadata refresh, idle reaper

Usage:
    async with ConnectionManager(config) as manager:
        leaders = await manager.refresh_metadata("events")
        response = await manager.send(leaders[0], request)
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from core.errors.exceptions import (
    CircuitOpenError,
    ClientError,
    ConnectError,
    IllegalStateError,
    MetadataError,
    TransportError,
)
from core.errors.kafka_classifier import (
    COORDINATOR_ERROR_CODES,
    NO_ERROR,
    UNKNOWN_TOPIC_OR_PARTITION,
    KafkaErrorClassifier,
)
from core.logging.utilities import log_exception, log_with_context
from core.resilience.circuit_breaker import (
    BROKER_CIRCUIT_CONFIG,
    CircuitBreakerRegistry,
    CircuitState,
)
from core.resilience.retry import RetryConfig, retry_async
from kafka_client import metrics
from kafka_client.config import ClientConfig
from kafka_client.connection import BrokerConnection
from kafka_client.protocol.messages import (
    FindCoordinatorRequest,
    FindCoordinatorResponse,
    MetadataRequest,
    MetadataResponse,
    Request,
    Response,
)
from kafka_client.structs import BrokerNode, ClusterMetadata, PartitionInfo

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[BrokerNode, ClientConfig], BrokerConnection]

_CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


def default_connection_factory(node: BrokerNode, config: ClientConfig) -> BrokerConnection:
    return BrokerConnection(
        node,
        client_id=config.client_id,
        request_timeout_ms=config.request_timeout_ms,
    )


def _on_circuit_change(name: str, old: CircuitState, new: CircuitState) -> None:
    metrics.update_circuit_breaker_state(name, _CIRCUIT_STATE_VALUES[new])


class ConnectionManager:
    """
    Owns network sessions to broker nodes and the cluster metadata view.

    Connections are opened on first use and closed after
    ``connections_max_idle_ms`` without traffic. Transport failures are
    retried by reconnecting with the shared backoff policy; once
    ``reconnect_attempts`` is exhausted ``send`` raises ConnectError.
    """

    def __init__(
        self,
        config: ClientConfig,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.config = config
        self._connection_factory = connection_factory or default_connection_factory
        self._retry: RetryConfig = config.retry_policy()

        self._metadata = ClusterMetadata()
        self._bootstrap_nodes: List[BrokerNode] = []
        # Nodes learned outside Metadata responses (group coordinators)
        self._extra_nodes: Dict[int, BrokerNode] = {}
        self._connections: Dict[int, BrokerConnection] = {}
        self._connect_locks: Dict[int, asyncio.Lock] = {}
        self._coordinators: Dict[str, int] = {}
        # Topics always included in refreshes (see add_topics)
        self._subscribed_topics: Set[str] = set()
        self._breakers = CircuitBreakerRegistry(
            BROKER_CIRCUIT_CONFIG, on_state_change=_on_circuit_change
        )

        self._metadata_lock = asyncio.Lock()
        self._refresh_needed = asyncio.Event()
        self._refresher_task: Optional[asyncio.Task] = None
        self._reaper_task: Optional[asyncio.Task] = None
        self._connected = False
        self._closed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, bootstrap_servers: Optional[str] = None) -> "ConnectionManager":
        """
        Discover the cluster from the bootstrap list.

        Walks the bootstrap addresses in order until one answers a Metadata
        request, retrying the whole list with backoff.

        Args:
            bootstrap_servers: Comma-separated host:port list overriding config

        Returns:
            self, the connected session handle

        Raises:
            ConnectError: If no bootstrap address answered
        """
        if self._closed:
            raise IllegalStateError("Connection manager is closed")
        if self._connected:
            return self

        servers = bootstrap_servers or self.config.bootstrap_servers
        if bootstrap_servers:
            addresses = ClientConfig(bootstrap_servers=servers).bootstrap_addresses()
        else:
            addresses = self.config.bootstrap_addresses()
        self._bootstrap_nodes = [
            BrokerNode(node_id=-(i + 1), host=host, port=port)
            for i, (host, port) in enumerate(addresses)
        ]

        log_with_context(
            logger,
            logging.INFO,
            "Bootstrapping cluster metadata",
            operation="connect",
            broker_count=len(self._bootstrap_nodes),
        )

        async def bootstrap() -> BrokerNode:
            last_error: Optional[ClientError] = None
            for node in self._bootstrap_nodes:
                try:
                    response = await self._send_to_node(node, MetadataRequest(topics=[]))
                except (TransportError, CircuitOpenError) as e:
                    last_error = e
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "Bootstrap address unreachable",
                        host=node.host,
                        port=node.port,
                        error_message=str(e)[:200],
                    )
                    continue
                self._apply_metadata(response, requested=[])
                return node
            raise TransportError("No bootstrap address answered", cause=last_error)

        try:
            node = await retry_async(bootstrap, self._retry, operation="bootstrap")
        except TransportError as e:
            raise ConnectError(
                f"No bootstrap server reachable after {self._retry.max_attempts} attempts: {servers}",
                cause=e.cause,
                context={"bootstrap_servers": servers},
            ) from e

        self._connected = True
        self._start_background_tasks()
        log_with_context(
            logger,
            logging.INFO,
            "Connected to cluster",
            host=node.host,
            port=node.port,
            broker_count=len(self._metadata.brokers),
        )
        # The bootstrap session is not a broker connection we keep
        await self._close_connection(node.node_id)
        return self

    async def close(self) -> None:
        """Stop background tasks and close every connection."""
        if self._closed:
            return
        self._closed = True

        tasks = [t for t in (self._refresher_task, self._reaper_task) if t is not None]
        self._refresher_task = None
        self._reaper_task = None
        for task in tasks:
            task.cancel()
        # Cancellation of close() itself still propagates out of gather
        await asyncio.gather(*tasks, return_exceptions=True)

        for node_id in list(self._connections):
            await self._close_connection(node_id)
        self._breakers.clear()
        log_with_context(logger, logging.INFO, "Connection manager closed", operation="close")

    async def __aenter__(self) -> "ConnectionManager":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise IllegalStateError("Connection manager is closed")
        if not self._connected:
            raise IllegalStateError("Connection manager not connected. Call connect() first.")

    def _start_background_tasks(self) -> None:
        self._refresher_task = asyncio.create_task(
            self._metadata_refresh_loop(), name="kafka-metadata-refresh"
        )
        self._reaper_task = asyncio.create_task(
            self._idle_reaper_loop(), name="kafka-idle-reaper"
        )

    # =========================================================================
    # Metadata
    # =========================================================================

    @property
    def metadata(self) -> ClusterMetadata:
        """Current snapshot. Hold the reference; it is never mutated."""
        return self._metadata

    def request_metadata_update(self) -> None:
        """Ask the background refresher to refresh all known topics now."""
        self._refresh_needed.set()

    async def partitions_for(self, topic: str) -> List[int]:
        """Sorted partition ids of a topic, refreshing metadata if unknown."""
        partitions = self._metadata.partitions_for(topic)
        if partitions is None:
            await self.refresh_metadata(topic)
            partitions = self._metadata.partitions_for(topic) or []
        return partitions

    async def refresh_metadata(self, topic: Optional[str] = None) -> Dict[int, int]:
        """
        Fetch fresh metadata for a topic (and every other known topic).

        Args:
            topic: Topic that must be fully led after the refresh

        Returns:
            partition -> leader node id for ``topic`` (empty if topic is None)

        Raises:
            MetadataError: Topic unknown or leaderless after the retry budget
        """
        self._ensure_open()
        topics = set(self._metadata.topics) | self._subscribed_topics
        if topic:
            topics.add(topic)
        requested = sorted(topics)

        async def attempt() -> Dict[int, int]:
            try:
                async with self._metadata_lock:
                    response = await self.send(
                        self.least_loaded_node(),
                        MetadataRequest(topics=requested),
                        retry=False,
                    )
                    self._apply_metadata(response, requested)
            except (TransportError, ConnectError, CircuitOpenError) as e:
                metrics.record_metadata_refresh(success=False)
                raise MetadataError("Metadata request failed", topic=topic, cause=e) from e

            if topic is None:
                return {}
            # Non-retriable topic codes come back as permanent MetadataErrors
            error = self._topic_problem(topic)
            if error is not None:
                metrics.record_metadata_refresh(success=False)
                raise error
            return self._metadata.partition_map(topic)

        return await retry_async(attempt, self._retry, operation="metadata_refresh")

    def add_topics(self, topics: Iterable[str]) -> None:
        """
        Include topics in every metadata refresh from now on.

        A consumer whose group leader owns the assignment never asks for its
        topics by name; registering them here lets the periodic and
        on-demand refreshes learn their leaders.
        """
        new = set(topics) - self._subscribed_topics
        if not new:
            return
        self._subscribed_topics.update(new)
        log_with_context(
            logger,
            logging.DEBUG,
            "Tracking topics for metadata",
            topic_count=len(self._subscribed_topics),
        )
        self.request_metadata_update()

    def _topic_problem(self, topic: str) -> Optional[MetadataError]:
        """Why a topic is not usable in the current snapshot, or None."""
        code = self._metadata.topic_errors.get(topic, NO_ERROR)
        if code != NO_ERROR:
            return KafkaErrorClassifier.classify_metadata_error(code, topic)
        partitions = self._metadata.topics.get(topic)
        if not partitions:
            return MetadataError(f"Topic '{topic}' has no partitions", topic=topic)
        leaderless = [p for p, info in partitions.items() if info.leader < 0]
        if leaderless:
            return MetadataError(
                f"Topic '{topic}' has partitions without a leader: {sorted(leaderless)}",
                topic=topic,
            )
        return None

    def _apply_metadata(self, response: MetadataResponse, requested: Iterable[str]) -> None:
        """Build a new snapshot from a response and swap it in."""
        topics: Dict[str, Dict[int, PartitionInfo]] = {}
        errors: Dict[str, int] = {}
        for tm in response.topics:
            if tm.error_code != NO_ERROR:
                errors[tm.name] = tm.error_code
                continue
            topics[tm.name] = {p.partition: p for p in tm.partitions}
        for name in requested:
            if name not in topics and name not in errors:
                errors[name] = UNKNOWN_TOPIC_OR_PARTITION

        fresh = ClusterMetadata(
            brokers={b.node_id: b for b in response.brokers},
            topics=topics,
            controller_id=response.controller_id,
            topic_errors=errors,
            created_at=time.monotonic(),
        )
        self._metadata = self._metadata.merge(fresh)
        metrics.record_metadata_refresh(success=True)
        log_with_context(
            logger,
            logging.DEBUG,
            "Metadata updated",
            broker_count=len(fresh.brokers),
            topic_count=len(topics),
        )

    async def _metadata_refresh_loop(self) -> None:
        interval = self.config.metadata_max_age_ms / 1000
        while not self._closed:
            waiter = asyncio.ensure_future(self._refresh_needed.wait())
            try:
                await asyncio.wait({waiter}, timeout=interval)
            finally:
                waiter.cancel()
            if self._closed:
                break
            self._refresh_needed.clear()
            try:
                await self.refresh_metadata()
            except IllegalStateError:
                break
            except ClientError as e:
                log_exception(
                    logger,
                    e,
                    "Background metadata refresh failed",
                    level=logging.WARNING,
                    include_traceback=False,
                )
                # Avoid hammering an unreachable cluster
                await asyncio.sleep(self._retry.max_delay)

    # =========================================================================
    # Sending
    # =========================================================================

    def node(self, node_id: int) -> Optional[BrokerNode]:
        node = self._metadata.broker(node_id) or self._extra_nodes.get(node_id)
        if node is None:
            for candidate in self._bootstrap_nodes:
                if candidate.node_id == node_id:
                    return candidate
        return node

    def least_loaded_node(self) -> int:
        """
        Pick a node for cluster-wide requests (metadata, coordinator lookup).

        Prefers nodes whose circuit is closed, then connected nodes with the
        fewest requests in flight.
        """
        candidates = list(self._metadata.brokers.values()) or list(self._bootstrap_nodes)
        if not candidates:
            raise IllegalStateError("No known broker nodes")

        def load(node: BrokerNode) -> tuple:
            breaker_ok = self._breakers.get(self._circuit_name(node.node_id)).allow_request()
            conn = self._connections.get(node.node_id)
            connected = conn is not None and conn.connected
            in_flight = conn.in_flight if connected else 0
            return (not breaker_ok, not connected, in_flight, node.node_id)

        return min(candidates, key=load).node_id

    async def send(
        self,
        node_id: int,
        request: Request,
        retry: bool = True,
        timeout_ms: Optional[int] = None,
    ) -> Response:
        """
        Send a request to a broker node and return its response.

        Broker error codes inside the response are left to the caller.

        Args:
            node_id: Target node
            request: Typed request
            retry: Reconnect and resend on transport failure with backoff
            timeout_ms: Override of request_timeout_ms

        Raises:
            TransportError: Transport failure (retry=False)
            CircuitOpenError: The node's circuit is open
            ConnectError: Transport failures exhausted reconnect_attempts
        """
        self._ensure_open()

        async def attempt() -> Response:
            node = self.node(node_id)
            if node is None:
                self.request_metadata_update()
                raise TransportError(f"Unknown broker node {node_id}", node_id=node_id)
            try:
                return await self._send_to_node(node, request, timeout_ms)
            except TransportError:
                self.request_metadata_update()
                raise

        if not retry:
            return await attempt()

        async def reconnecting(exc: BaseException, attempt_no: int) -> None:
            log_with_context(
                logger,
                logging.DEBUG,
                "Request failed, reconnecting",
                node_id=node_id,
                api_key=request.API_KEY,
                attempt=attempt_no + 1,
                error_message=str(exc)[:200],
            )

        try:
            return await retry_async(
                attempt,
                self._retry,
                operation=f"{request.api_name}_request",
                on_retry=reconnecting,
                retry_on=lambda exc: isinstance(exc, TransportError),
            )
        except TransportError as e:
            raise ConnectError(
                f"Node {node_id} unreachable after {self._retry.max_attempts} attempts",
                cause=e,
                context={"node_id": node_id, "api": request.api_name},
            ) from e

    async def _send_to_node(
        self, node: BrokerNode, request: Request, timeout_ms: Optional[int] = None
    ) -> Response:
        breaker = self._breakers.get(self._circuit_name(node.node_id))
        breaker.before_call()
        start = time.perf_counter()
        try:
            conn = await self._get_connection(node)
            response = await conn.send(request, timeout_ms=timeout_ms)
        except TransportError as e:
            breaker.record_failure(e)
            raise
        except BaseException:
            # Cancelled or failed locally: no verdict on the node
            breaker.release_trial()
            raise
        breaker.record_success()
        metrics.record_request_latency(request.api_name, time.perf_counter() - start)
        return response

    @staticmethod
    def _circuit_name(node_id: int) -> str:
        return f"broker-{node_id}"

    async def _get_connection(self, node: BrokerNode) -> BrokerConnection:
        conn = self._connections.get(node.node_id)
        if conn is not None and conn.connected:
            return conn

        lock = self._connect_locks.setdefault(node.node_id, asyncio.Lock())
        async with lock:
            conn = self._connections.get(node.node_id)
            if conn is not None and conn.connected:
                return conn
            conn = self._connection_factory(node, self.config)
            await conn.connect()
            self._connections[node.node_id] = conn
            return conn

    async def _close_connection(self, node_id: int) -> None:
        conn = self._connections.pop(node_id, None)
        if conn is not None:
            await conn.close()

    async def _idle_reaper_loop(self) -> None:
        max_idle = self.config.connections_max_idle_ms / 1000
        interval = min(max(max_idle / 2, 0.05), 30.0)
        while not self._closed:
            await asyncio.sleep(interval)
            now = time.monotonic()
            for node_id, conn in list(self._connections.items()):
                idle = now - conn.last_activity
                if not conn.connected or (conn.in_flight == 0 and idle >= max_idle):
                    log_with_context(
                        logger,
                        logging.DEBUG,
                        "Closing idle connection",
                        node_id=node_id,
                        elapsed_seconds=round(idle, 1),
                    )
                    await self._close_connection(node_id)

    def connection_count(self) -> int:
        return sum(1 for c in self._connections.values() if c.connected)

    def circuit_diagnostics(self) -> Dict[str, dict]:
        return self._breakers.diagnostics()

    # =========================================================================
    # Group coordinator
    # =========================================================================

    async def coordinator_for(self, group_id: str) -> int:
        """
        Node id of the group's coordinator (FindCoordinator), cached.

        Raises:
            BrokerResponseError: Non-retriable lookup error
            MetadataError: Coordinator not available within the retry budget
        """
        self._ensure_open()
        cached = self._coordinators.get(group_id)
        if cached is not None:
            return cached

        def unavailable(cause: ClientError) -> MetadataError:
            return MetadataError(
                f"Coordinator for group '{group_id}' not available",
                cause=cause,
                context={"group_id": group_id},
            )

        async def attempt() -> int:
            try:
                response = await self.send(
                    self.least_loaded_node(), FindCoordinatorRequest(group_id), retry=False
                )
            except (ConnectError, CircuitOpenError, TransportError) as e:
                raise unavailable(e) from e

            assert isinstance(response, FindCoordinatorResponse)
            if response.error_code != NO_ERROR:
                error = KafkaErrorClassifier.for_code(response.error_code, {"group_id": group_id})
                if response.error_code in COORDINATOR_ERROR_CODES or error.is_retryable:
                    raise unavailable(error)
                raise error

            node = BrokerNode(response.node_id, response.host, response.port)
            self._extra_nodes[node.node_id] = node
            self._coordinators[group_id] = node.node_id
            log_with_context(
                logger,
                logging.INFO,
                "Discovered group coordinator",
                node_id=node.node_id,
                host=node.host,
                port=node.port,
            )
            return node.node_id

        return await retry_async(attempt, self._retry, operation="find_coordinator")

    def mark_coordinator_dead(self, group_id: str) -> None:
        """Forget the cached coordinator so the next lookup rediscovers it."""
        node_id = self._coordinators.pop(group_id, None)
        if node_id is not None:
            log_with_context(
                logger,
                logging.INFO,
                "Marking group coordinator dead",
                node_id=node_id,
            )
