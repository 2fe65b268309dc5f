"""
Circuit Breaker Pattern Implementation

One breaker per service name. Trips after sustained transport failures so
a degraded registry is not hammered by every caller's retries, then lets a
single probe through after a cooldown to detect recovery.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple, Type
import structlog

from discovery_client.exceptions import CircuitOpenError
from discovery_client.resilience.retry import TRANSIENT_ERRORS
from discovery_client.utils.clock import Clock

logger = structlog.get_logger("circuit-breaker")

# (name, old_status, new_status) - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]


class CircuitStatus(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitState:
    """Breaker bookkeeping for one service name"""
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    next_probe_at: Optional[float] = None


class CircuitBreaker:
    """
    Circuit breaker guarding calls for one service name.

    Usage:
        breaker = CircuitBreaker("orders", failure_threshold=5, cooldown=30)

        async with breaker:
            result = await risky_operation()

    Only ``expected_exception`` failures count against the circuit. Any
    other outcome means the registry answered and counts as a success.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        max_cooldown: float = 300.0,
        clock: Optional[Clock] = None,
        expected_exception: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
        on_state_change: Optional[StateChangeCallback] = None
    ):
        """
        Args:
            name: Service name this breaker protects
            failure_threshold: Consecutive failures before opening circuit
            cooldown: Seconds to stay OPEN before the first probe
            max_cooldown: Upper bound for the cooldown after failed probes
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown
        self.max_cooldown = max(max_cooldown, cooldown)
        self.expected_exception = expected_exception
        self.clock = clock or Clock()
        self.on_state_change = on_state_change

        self.state = CircuitState()
        self._cooldown = cooldown
        self._probe_in_flight = False
        self._lock = Lock()

    @property
    def status(self) -> CircuitStatus:
        return self.state.status

    @property
    def current_cooldown(self) -> float:
        return self._cooldown

    async def __aenter__(self):
        self.before_call()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.record_success()
        elif issubclass(exc_type, self.expected_exception):
            self.record_failure()
        elif issubclass(exc_type, asyncio.CancelledError):
            # Caller gave up; no verdict on the registry
            self._release_probe()
        else:
            self.record_success()

        # Don't suppress exceptions
        return False

    def before_call(self) -> None:
        """Admit or reject one call. Raises CircuitOpenError when rejecting."""
        with self._lock:
            now = self.clock.now()

            if self.state.status == CircuitStatus.OPEN:
                if now < self.state.next_probe_at:
                    raise CircuitOpenError(self.name, self.state.next_probe_at - now)
                self._transition(CircuitStatus.HALF_OPEN)

            if self.state.status == CircuitStatus.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self.state.consecutive_failures = 0

            if self.state.status == CircuitStatus.HALF_OPEN:
                self._probe_in_flight = False
                self._cooldown = self.base_cooldown
                self.state.opened_at = None
                self.state.next_probe_at = None
                self._transition(CircuitStatus.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self.state.consecutive_failures += 1

            if self.state.status == CircuitStatus.HALF_OPEN:
                self._probe_in_flight = False
                self._cooldown = min(self.max_cooldown, self._cooldown * 2)
                self._open("probe failed")

            elif (
                self.state.status == CircuitStatus.CLOSED
                and self.state.consecutive_failures >= self.failure_threshold
            ):
                self._open("threshold reached")

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def _open(self, reason: str) -> None:
        """Must be called while holding self._lock."""
        now = self.clock.now()
        self.state.opened_at = now
        self.state.next_probe_at = now + self._cooldown
        self._transition(CircuitStatus.OPEN, reason=reason)

    def _transition(self, new_status: CircuitStatus, reason: Optional[str] = None) -> None:
        """Must be called while holding self._lock."""
        old_status = self.state.status
        if old_status == new_status:
            return
        self.state.status = new_status

        log = logger.warning if new_status == CircuitStatus.OPEN else logger.info
        log(
            "Circuit state change",
            service=self.name,
            old=old_status.value,
            new=new_status.value,
            reason=reason,
            failures=self.state.consecutive_failures,
            cooldown=self._cooldown
        )

        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_status.value, new_status.value)
            except Exception as e:
                logger.error("Circuit state change callback failed", service=self.name, error=str(e))

    def time_until_probe(self) -> float:
        if self.state.status != CircuitStatus.OPEN or self.state.next_probe_at is None:
            return 0.0
        return max(0.0, self.state.next_probe_at - self.clock.now())

    def get_state(self) -> dict:
        """Get current circuit breaker state"""
        return {
            "state": self.state.status.value,
            "consecutive_failures": self.state.consecutive_failures,
            "opened_at": self.state.opened_at,
            "next_probe_at": self.state.next_probe_at,
            "cooldown": self._cooldown,
            "time_until_probe": self.time_until_probe() if self.state.status == CircuitStatus.OPEN else None
        }


class CircuitBreakerRegistry:
    """One breaker per service name, scoped to a single client instance"""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        max_cooldown: float = 300.0,
        clock: Optional[Clock] = None,
        on_state_change: Optional[StateChangeCallback] = None
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.max_cooldown = max_cooldown
        self.clock = clock or Clock()
        self.on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None, on_state_change=None) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.REGISTRY_BREAKER_THRESHOLD,
            cooldown=settings.REGISTRY_BREAKER_COOLDOWN,
            max_cooldown=settings.REGISTRY_BREAKER_MAX_COOLDOWN,
            clock=clock,
            on_state_change=on_state_change,
        )

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=name,
                    failure_threshold=self.failure_threshold,
                    cooldown=self.cooldown,
                    max_cooldown=self.max_cooldown,
                    clock=self.clock,
                    on_state_change=self.on_state_change,
                )
                self._breakers[name] = breaker
            return breaker

    def get_all_states(self) -> Dict[str, str]:
        with self._lock:
            return {name: cb.status.value for name, cb in self._breakers.items()}
