"""
Per-node circuit breakers.

A broker node that keeps failing at the transport level is taken out of
rotation for a cool-down period instead of being hammered with reconnects:

    CLOSED     requests pass; consecutive transport failures are counted
    OPEN       requests are rejected with CircuitOpenError until the cool-down ends
    HALF_OPEN  a single trial request is let through; its outcome closes or reopens

Only transient (and unclassified) failures count. A broker rejecting a
request with a permanent error code is healthy from the circuit's point of
view.

Breakers are confined to the event loop of their owner, so no locking is
done. Each ConnectionManager owns one CircuitBreakerRegistry keyed by node.

Usage:
    registry = CircuitBreakerRegistry(BROKER_CIRCUIT_CONFIG)
    breaker = registry.get("broker-1")
    response = await breaker.call_async(lambda: connection.send(request))
"""

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from core.errors.exceptions import CircuitOpenError, ErrorCategory, classify_exception
from core.logging.utilities import log_exception, log_with_context

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateHook = Callable[["CircuitState", "CircuitState"], None]


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker.

    Attributes:
        failure_threshold: Consecutive counted failures that open the circuit
        timeout_seconds: Cool-down spent OPEN before a trial call is allowed
    """

    failure_threshold: int = 5
    timeout_seconds: float = 30.0


# Reconnect attempts already absorb short blips; five failures in a row
# means the node is gone. Leaders move quickly, so try again after 10s.
BROKER_CIRCUIT_CONFIG = CircuitBreakerConfig(failure_threshold=5, timeout_seconds=10.0)

_COUNTED_CATEGORIES = (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)


@dataclass
class CircuitStats:
    calls: int = 0
    failures: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """Circuit for a single broker node."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[StateHook] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._on_state_change = on_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self.stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reads as HALF_OPEN."""
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.config.timeout_seconds
        ):
            self._set_state(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    def allow_request(self) -> bool:
        """Whether a call would currently be admitted; does not reserve the trial slot."""
        state = self.state
        if state is CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return state is CircuitState.CLOSED

    def before_call(self) -> None:
        """
        Admit one call.

        In HALF_OPEN only the first caller is admitted as the trial call.

        Raises:
            CircuitOpenError: The node is cooling down or a trial call is running
        """
        self.stats.calls += 1
        state = self.state
        if state is CircuitState.CLOSED:
            return
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return
        self.stats.rejected_calls += 1
        retry_after = max(0.0, self._opened_at + self.config.timeout_seconds - self._clock())
        raise CircuitOpenError(self.name, retry_after)

    def release_trial(self) -> None:
        """Give back an admitted call that ended without an outcome (cancelled)."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._set_state(CircuitState.CLOSED)

    def record_failure(self, exc: BaseException) -> None:
        self.stats.failures += 1
        if classify_exception(exc) not in _COUNTED_CATEGORIES:
            self._trial_in_flight = False
            return

        if self.state is CircuitState.HALF_OPEN:
            self._open()
            return

        self._consecutive_failures += 1
        log_with_context(
            logger,
            logging.DEBUG,
            "Circuit failure recorded",
            circuit_name=self.name,
            error_type=type(exc).__name__,
            failure_count=self._consecutive_failures,
        )
        if self._consecutive_failures >= self.config.failure_threshold:
            self._open()

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func()`` through the circuit, recording its outcome.

        Raises:
            CircuitOpenError: Rejected without calling ``func``
        """
        self.before_call()
        try:
            result = await func()
        except Exception as e:
            self.record_failure(e)
            raise
        except BaseException:
            self.release_trial()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        self._set_state(CircuitState.CLOSED)

    def get_diagnostics(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._consecutive_failures,
            "stats": asdict(self.stats),
        }

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._set_state(CircuitState.OPEN)

    def _set_state(self, new: CircuitState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        self.stats.state_changes += 1
        if new is CircuitState.CLOSED:
            self._consecutive_failures = 0

        log_with_context(
            logger,
            logging.WARNING if new is CircuitState.OPEN else logging.INFO,
            f"Circuit {new.value}",
            circuit_name=self.name,
            circuit_state=new.value,
        )
        if self._on_state_change is not None:
            try:
                self._on_state_change(old, new)
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Circuit state hook failed",
                    level=logging.WARNING,
                    include_traceback=False,
                    circuit_name=self.name,
                )


class CircuitBreakerRegistry:
    """
    Breakers by name, owned by one client.

    A new registry starts with every circuit closed; nothing is shared
    between registries.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            hook: Optional[StateHook] = None
            if self._on_state_change is not None:
                owner_hook = self._on_state_change

                def hook(old: CircuitState, new: CircuitState) -> None:
                    owner_hook(name, old, new)

            breaker = CircuitBreaker(name, self.config, on_state_change=hook)
            self._breakers[name] = breaker
        return breaker

    def diagnostics(self) -> Dict[str, dict]:
        return {name: b.get_diagnostics() for name, b in self._breakers.items()}

    def clear(self) -> None:
        self._breakers.clear()
