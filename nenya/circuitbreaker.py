"""Per-key circuit breaker with closed, open and half-open states."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

StateChangeCallback = Callable[[str, "State", "State"], None]

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_SUCCESS_THRESHOLD = 1
DEFAULT_HALF_OPEN_MAX_REQUESTS = 1
DEFAULT_COOLDOWN = 60.0


class State(Enum):
    """State of a single circuit."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __str__(self) -> str:
        return self.value


@dataclass
class Counts:
    """Request counters of a circuit, reset on every state change."""

    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0


@dataclass
class _Circuit:
    state: State = State.CLOSED
    generation: int = 1
    counts: Counts = field(default_factory=Counts)
    expiry: Optional[float] = None
    half_open_inflight: int = 0
    last_change: float = 0.0

    def expired(self, now: float) -> bool:
        return self.expiry is None or now > self.expiry


class CircuitBreaker:
    """Tracks failures per key and stops traffic to keys that keep failing.

    Durations are in seconds; expiry times are on the ``time.monotonic`` clock.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
        half_open_max_requests: int = DEFAULT_HALF_OPEN_MAX_REQUESTS,
        cooldown: float = DEFAULT_COOLDOWN,
        on_state_change: Optional[StateChangeCallback] = None,
    ) -> None:
        self.failure_threshold = failure_threshold if failure_threshold > 0 else DEFAULT_FAILURE_THRESHOLD
        self.success_threshold = success_threshold if success_threshold > 0 else DEFAULT_SUCCESS_THRESHOLD
        self.half_open_max_requests = (
            half_open_max_requests if half_open_max_requests > 0 else DEFAULT_HALF_OPEN_MAX_REQUESTS
        )
        self.cooldown = cooldown if cooldown > 0 else DEFAULT_COOLDOWN
        self.on_state_change = on_state_change
        self._lock = threading.Lock()
        self._circuits: Dict[str, _Circuit] = {}

    def _get_or_create(self, key: str) -> _Circuit:
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = _Circuit()
            self._circuits[key] = circuit
        return circuit

    def _set_state(self, circuit: _Circuit, new_state: State, key: str) -> None:
        if circuit.state is new_state:
            return
        previous = circuit.state
        circuit.state = new_state
        circuit.generation += 1
        circuit.counts = Counts()
        circuit.half_open_inflight = 0
        now = time.monotonic()
        circuit.last_change = now
        circuit.expiry = now + self.cooldown if new_state is State.OPEN else None
        if self.on_state_change is not None:
            self.on_state_change(key, previous, new_state)

    def _cooldown_for(self, override: Optional[float]) -> float:
        if override is not None and override > 0:
            return override
        return self.cooldown

    def allow(self, key: str) -> bool:
        """Return whether a request to ``key`` may go ahead, counting it if so."""
        with self._lock:
            circuit = self._get_or_create(key)
            now = time.monotonic()
            if circuit.state is State.CLOSED:
                circuit.counts.requests += 1
                circuit.last_change = now
                return True
            if circuit.state is State.OPEN:
                if not circuit.expired(now):
                    return False
                self._set_state(circuit, State.HALF_OPEN, key)
                circuit.counts.requests += 1
                circuit.half_open_inflight += 1
                circuit.last_change = now
                return True
            if circuit.half_open_inflight >= self.half_open_max_requests:
                return False
            circuit.counts.requests += 1
            circuit.half_open_inflight += 1
            circuit.last_change = now
            return True

    def record_failure(self, key: str, cooldown_override: Optional[float] = None) -> None:
        """Record a failed request; ``cooldown_override`` replaces the open period."""
        with self._lock:
            circuit = self._get_or_create(key)
            now = time.monotonic()
            if circuit.state is State.CLOSED:
                counts = circuit.counts
                counts.requests += 1
                counts.total_failures += 1
                counts.consecutive_failures += 1
                counts.consecutive_successes = 0
                circuit.last_change = now
                if counts.consecutive_failures >= self.failure_threshold:
                    cooldown = self._cooldown_for(cooldown_override)
                    self._set_state(circuit, State.OPEN, key)
                    circuit.expiry = now + cooldown
            elif circuit.state is State.HALF_OPEN:
                cooldown = self._cooldown_for(cooldown_override)
                self._set_state(circuit, State.OPEN, key)
                circuit.expiry = now + cooldown
                circuit.last_change = now
            elif cooldown_override is not None and cooldown_override > 0:
                new_expiry = now + cooldown_override
                if circuit.expiry is None or new_expiry > circuit.expiry:
                    circuit.expiry = new_expiry

    def record_success(self, key: str) -> None:
        """Record a successful request."""
        with self._lock:
            circuit = self._get_or_create(key)
            now = time.monotonic()
            counts = circuit.counts
            if circuit.state is State.CLOSED:
                counts.requests += 1
                counts.total_successes += 1
                counts.consecutive_successes += 1
                counts.consecutive_failures = 0
                circuit.last_change = now
            elif circuit.state is State.HALF_OPEN:
                counts.requests += 1
                counts.total_successes += 1
                counts.consecutive_successes += 1
                counts.consecutive_failures = 0
                if circuit.half_open_inflight > 0:
                    circuit.half_open_inflight -= 1
                if counts.consecutive_successes >= self.success_threshold:
                    self._set_state(circuit, State.CLOSED, key)
                else:
                    circuit.last_change = now

    def force_open(self, key: str, cooldown: float) -> None:
        """Open the circuit for ``key`` for ``cooldown`` seconds."""
        if not key or cooldown <= 0:
            return
        with self._lock:
            circuit = self._get_or_create(key)
            now = time.monotonic()
            self._set_state(circuit, State.OPEN, key)
            circuit.expiry = now + cooldown

    def state(self, key: str) -> State:
        """Current state of ``key``; an expired open circuit reads as half-open."""
        with self._lock:
            circuit = self._circuits.get(key)
            if circuit is None:
                return State.CLOSED
            if circuit.state is State.OPEN and circuit.expired(time.monotonic()):
                return State.HALF_OPEN
            return circuit.state

    def counts(self, key: str) -> Counts:
        """A copy of the counters of ``key``."""
        with self._lock:
            circuit = self._circuits.get(key)
            return Counts() if circuit is None else dataclasses.replace(circuit.counts)

    def expiry(self, key: str) -> Optional[float]:
        """Monotonic time at which the open period of ``key`` ends, if any."""
        with self._lock:
            circuit = self._circuits.get(key)
            return None if circuit is None else circuit.expiry

    def active_count(self) -> int:
        """Number of circuits that are open and not yet expired."""
        with self._lock:
            now = time.monotonic()
            return sum(
                1
                for circuit in self._circuits.values()
                if circuit.state is State.OPEN and circuit.expiry is not None and now < circuit.expiry
            )

    def snapshot(self) -> Dict[str, str]:
        """Map every known key to the name of its state."""
        with self._lock:
            now = time.monotonic()
            result = {}
            for key, circuit in self._circuits.items():
                state = circuit.state
                if state is State.OPEN and circuit.expired(now):
                    state = State.HALF_OPEN
                result[key] = str(state)
            return result