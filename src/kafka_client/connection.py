"""
Single broker connection.

One asyncio stream per broker node. Requests are written in order and a
single reader task matches each response to the oldest pending request by
correlation id; brokers answer requests on one connection in the order
they were received. A request timeout or a broken stream closes the
connection and fails every pending request with TransportError, so callers
never wait on a dead socket.
"""

import asyncio
import collections
import logging
import time
from typing import Deque, Optional, Tuple

from core.errors.exceptions import RequestTimeoutError, TransportError
from core.logging.utilities import log_with_context
from kafka_client import metrics
from kafka_client.protocol.messages import (
    Request,
    Response,
    decode_response,
    encode_request,
    read_correlation_id,
)
from kafka_client.structs import BrokerNode

logger = logging.getLogger(__name__)

# Correlation ids wrap at int32 max
MAX_CORRELATION_ID = 2**31 - 1


class BrokerConnection:
    """
    Multiplexed request/response channel to one broker.

    Usage:
        conn = BrokerConnection(node, client_id="app", request_timeout_ms=30000)
        await conn.connect()
        response = await conn.send(MetadataRequest(topics=["events"]))
        await conn.close()
    """

    def __init__(
        self,
        node: BrokerNode,
        client_id: Optional[str] = None,
        request_timeout_ms: int = 30000,
    ):
        self.node = node
        self.client_id = client_id
        self.request_timeout_ms = request_timeout_ms

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pending: Deque[Tuple[int, Request, asyncio.Future]] = collections.deque()
        self._correlation_id = 0
        self._closed = True
        self.last_activity = time.monotonic()

    @property
    def connected(self) -> bool:
        return not self._closed

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """
        Open the stream and start the reader task.

        Raises:
            TransportError: If the broker cannot be reached in time
        """
        timeout = self.request_timeout_ms / 1000
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.node.host, self.node.port), timeout
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"Timed out connecting to {self.node.address}",
                node_id=self.node.node_id,
                cause=e,
            ) from e
        except OSError as e:
            raise TransportError(
                f"Cannot connect to {self.node.address}: {e}",
                node_id=self.node.node_id,
                cause=e,
            ) from e

        self._closed = False
        self.last_activity = time.monotonic()
        self._read_task = asyncio.create_task(
            self._read_loop(), name=f"kafka-conn-reader-{self.node.node_id}"
        )
        metrics.update_connection_status(str(self.node.node_id), True)
        log_with_context(
            logger,
            logging.DEBUG,
            "Connected to broker",
            node_id=self.node.node_id,
            host=self.node.host,
            port=self.node.port,
        )

    def _next_correlation_id(self) -> int:
        self._correlation_id = (self._correlation_id + 1) % MAX_CORRELATION_ID
        return self._correlation_id

    async def send(self, request: Request, timeout_ms: Optional[int] = None) -> Response:
        """
        Send a request and wait for its response.

        Args:
            request: Typed request
            timeout_ms: Override of request_timeout_ms (long-running group calls)

        Raises:
            TransportError: Stream broken or closed while waiting
            RequestTimeoutError: No response in time (the connection is closed)
        """
        if self._closed or self._writer is None:
            raise TransportError(
                f"Connection to node {self.node.node_id} is closed",
                node_id=self.node.node_id,
            )

        correlation_id = self._next_correlation_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.append((correlation_id, request, future))
        self.last_activity = time.monotonic()

        try:
            self._writer.write(encode_request(request, correlation_id, self.client_id))
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            error = TransportError(
                f"Write to node {self.node.node_id} failed: {e}",
                node_id=self.node.node_id,
                cause=e,
            )
            self._fail_all(error)
            raise error from e

        timeout = (timeout_ms if timeout_ms is not None else self.request_timeout_ms) / 1000
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError as e:
            error = RequestTimeoutError(
                f"{request.api_name} request to node {self.node.node_id} timed out "
                f"after {timeout:.1f}s",
                node_id=self.node.node_id,
                cause=e,
            )
            self._fail_all(error)
            raise error from e

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                size_bytes = await self._reader.readexactly(4)
                size = int.from_bytes(size_bytes, "big", signed=True)
                payload = await self._reader.readexactly(size)
                self.last_activity = time.monotonic()
                self._handle_response(payload)
        except asyncio.CancelledError:
            raise
        except (asyncio.IncompleteReadError, OSError) as e:
            self._fail_all(
                TransportError(
                    f"Connection to node {self.node.node_id} lost: {e!r}",
                    node_id=self.node.node_id,
                    cause=e,
                )
            )
        except ValueError as e:
            # Undecodable response: the stream position is no longer trustworthy
            self._fail_all(
                TransportError(
                    f"Malformed response from node {self.node.node_id}: {e}",
                    node_id=self.node.node_id,
                    cause=e,
                )
            )

    def _handle_response(self, payload: bytes) -> None:
        correlation_id = read_correlation_id(payload)
        if not self._pending:
            raise ValueError(f"unexpected correlation id {correlation_id}")

        expected_id, request, future = self._pending.popleft()
        if correlation_id != expected_id:
            raise ValueError(
                f"correlation id {correlation_id} does not match expected {expected_id}"
            )

        _, response = decode_response(request, payload)
        if not future.done():
            future.set_result(response)

    def _fail_all(self, error: TransportError, level: int = logging.WARNING) -> None:
        """Close the stream and fail every pending request."""
        was_open = not self._closed
        self._closed = True

        while self._pending:
            _, _, future = self._pending.popleft()
            if not future.done():
                future.set_exception(error)

        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._read_task = None

        if was_open:
            metrics.update_connection_status(str(self.node.node_id), False)
            log_with_context(
                logger,
                level,
                "Broker connection closed",
                node_id=self.node.node_id,
                error_message=error.message,
            )

    async def close(self) -> None:
        """Close the connection, failing anything still pending."""
        if self._closed and self._writer is None:
            return
        read_task = self._read_task
        self._fail_all(
            TransportError(
                f"Connection to node {self.node.node_id} closed",
                node_id=self.node.node_id,
            ),
            level=logging.DEBUG,
        )
        if read_task is not None:
            try:
                await read_task
            except asyncio.CancelledError:
                pass

    def __repr__(self) -> str:
        state = "connected" if self.connected else "closed"
        return f"<BrokerConnection node={self.node.node_id} {self.node.address} {state}>"
