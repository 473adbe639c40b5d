"""Circuit Breaker registry, one breaker per logical operation name.

Implements the circuit breaker pattern per operation:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many failures inside the monitoring window, requests are rejected
  - HALF_OPEN: recovery timeout elapsed, exactly one trial request is let through

Transitions:
  CLOSED    --(failures >= threshold within window)--> OPEN
  OPEN      --(recovery_timeout elapsed)-------------> HALF_OPEN
  HALF_OPEN --(success)------------------------------> CLOSED
  HALF_OPEN --(failure)------------------------------> OPEN

A breaker is shared by every tenant and user calling the operation.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from psyche.core.metrics import LLM_CIRCUIT_STATE
from psyche.gateway.types import BreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


_STATE_GAUGE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class _CircuitStats:
    """Failure tracking for a single operation's circuit."""

    config: BreakerConfig
    state: CircuitState = CircuitState.CLOSED
    failures: deque[float] = field(default_factory=deque)  # timestamps inside the window
    last_failure_at: float | None = None
    next_attempt_at: float | None = None  # set while OPEN
    trial_in_flight: bool = False  # HALF_OPEN trial call is running
    total_failures: int = 0
    total_successes: int = 0

    def prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window
        while self.failures and self.failures[0] < cutoff:
            self.failures.popleft()

    @property
    def failure_count(self) -> int:
        return len(self.failures)


class CircuitBreakerRegistry:
    """Per-operation circuit breakers.

    Usage:
        breakers = CircuitBreakerRegistry({"psychographic_analysis": BreakerConfig()})

        if not breakers.can_execute(op):
            # fail fast with CIRCUIT_OPEN
            ...
        try:
            result = await call()
        except TransientModelError:
            breakers.on_failure(op)
        else:
            breakers.on_success(op)

    A caller that was admitted but ends up not calling upstream at all must
    call release(op), otherwise a HALF_OPEN trial slot stays taken.
    """

    def __init__(
        self,
        configs: dict[str, BreakerConfig] | None = None,
        default: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._configs = configs or {}
        self._default = default or BreakerConfig()
        self._clock = clock
        self._circuits: dict[str, _CircuitStats] = {}
        self._lock = threading.Lock()

    def _get_circuit(self, operation: str) -> _CircuitStats:
        circuit = self._circuits.get(operation)
        if circuit is None:
            circuit = _CircuitStats(config=self._configs.get(operation, self._default))
            self._circuits[operation] = circuit
        return circuit

    def _transition(self, operation: str, circuit: _CircuitStats, state: CircuitState) -> None:
        circuit.state = state
        LLM_CIRCUIT_STATE.labels(operation=operation).set(_STATE_GAUGE_VALUE[state])

    def can_execute(self, operation: str) -> bool:
        """Check whether a call may proceed. Claims the trial slot in HALF_OPEN."""
        with self._lock:
            circuit = self._get_circuit(operation)
            now = self._clock()

            if circuit.state == CircuitState.CLOSED:
                return True

            if circuit.state == CircuitState.OPEN:
                if circuit.next_attempt_at is not None and now < circuit.next_attempt_at:
                    return False
                self._transition(operation, circuit, CircuitState.HALF_OPEN)
                circuit.trial_in_flight = True
                logger.info("Circuit for %s transitioning to HALF_OPEN", operation)
                return True

            # HALF_OPEN: only one trial at a time
            if circuit.trial_in_flight:
                return False
            circuit.trial_in_flight = True
            return True

    def on_success(self, operation: str) -> None:
        """Record a successful call: clears failures, HALF_OPEN -> CLOSED."""
        with self._lock:
            circuit = self._get_circuit(operation)
            circuit.failures.clear()
            circuit.total_successes += 1
            circuit.trial_in_flight = False
            circuit.next_attempt_at = None
            if circuit.state != CircuitState.CLOSED:
                self._transition(operation, circuit, CircuitState.CLOSED)
                logger.info("Circuit for %s CLOSED (recovered)", operation)

    def on_failure(self, operation: str) -> CircuitState:
        """Record a failed call and return the resulting state."""
        with self._lock:
            circuit = self._get_circuit(operation)
            now = self._clock()
            circuit.failures.append(now)
            circuit.prune(now)
            circuit.total_failures += 1
            circuit.last_failure_at = now

            if circuit.state == CircuitState.HALF_OPEN:
                self._open(operation, circuit, now)
                logger.warning("Circuit for %s trial failed, re-OPENED", operation)
            elif circuit.state == CircuitState.CLOSED and circuit.failure_count >= circuit.config.failure_threshold:
                self._open(operation, circuit, now)
                logger.warning(
                    "Circuit for %s OPENED after %d failures in %.0fs window",
                    operation,
                    circuit.failure_count,
                    circuit.config.monitoring_window,
                )
            return circuit.state

    def _open(self, operation: str, circuit: _CircuitStats, now: float) -> None:
        self._transition(operation, circuit, CircuitState.OPEN)
        circuit.trial_in_flight = False
        circuit.next_attempt_at = now + circuit.config.recovery_timeout

    def release(self, operation: str) -> None:
        """Give back an admitted slot without recording an outcome."""
        with self._lock:
            circuit = self._get_circuit(operation)
            circuit.trial_in_flight = False

    def state(self, operation: str) -> dict:
        """Current state of an operation's circuit."""
        with self._lock:
            circuit = self._get_circuit(operation)
            circuit.prune(self._clock())
            return {
                "operation": operation,
                "state": circuit.state.value,
                "failure_count": circuit.failure_count,
                "last_failure_at": circuit.last_failure_at,
                "next_attempt_at": circuit.next_attempt_at,
                "total_failures": circuit.total_failures,
                "total_successes": circuit.total_successes,
                "failure_threshold": circuit.config.failure_threshold,
            }

    def all_states(self) -> list[dict]:
        with self._lock:
            operations = list(self._circuits)
        return [self.state(op) for op in operations]

    def reset(self, operation: str) -> None:
        """Manually reset an operation's circuit to CLOSED."""
        with self._lock:
            circuit = self._get_circuit(operation)
            circuit.failures.clear()
            circuit.trial_in_flight = False
            circuit.next_attempt_at = None
            self._transition(operation, circuit, CircuitState.CLOSED)
        logger.info("Circuit for %s manually RESET", operation)
