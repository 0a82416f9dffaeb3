"""Process-local circuit breaker guarding outbound settlement calls.

A target trips OPEN after ``failure_threshold`` consecutive failures, refuses
calls for ``open_cooldown_seconds``, then lets a limited number of probe calls
through (HALF_OPEN). One probe success closes it again; one probe failure
re-opens it with a fresh cooldown.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from settlement.config import CIRCUIT_BREAKER
from settlement.utils.time import utc_now


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerState:
    consecutive_failures: int = 0
    state: CircuitState = CircuitState.CLOSED
    opened_at: datetime | None = None
    probes_in_flight: int = 0


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        probe_limit: Optional[int] = None,
    ):
        self.failure_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown = timedelta(seconds=float(cooldown_seconds or CIRCUIT_BREAKER["open_cooldown_seconds"]))
        self.probe_limit = int(probe_limit or CIRCUIT_BREAKER["half_open_probe_count"])
        self._states: Dict[str, BreakerState] = {}
        self._lock = threading.Lock()

    def _state_for(self, target: str) -> BreakerState:
        return self._states.setdefault(target, BreakerState())

    def _trip(self, st: BreakerState, now: datetime) -> None:
        st.state = CircuitState.OPEN
        st.opened_at = now
        st.probes_in_flight = 0

    def allow_call(self, target: str, *, now: datetime | None = None) -> tuple[bool, str | None]:
        """Return ``(allowed, reason)``; reason is set only when refused."""
        now = now or utc_now()
        with self._lock:
            st = self._state_for(target)
            if st.state is CircuitState.OPEN:
                if st.opened_at is None or now - st.opened_at < self.cooldown:
                    return False, "circuit_open"
                st.state = CircuitState.HALF_OPEN
                st.probes_in_flight = 0
            if st.state is CircuitState.HALF_OPEN:
                if st.probes_in_flight >= self.probe_limit:
                    return False, "half_open_probe_exhausted"
                st.probes_in_flight += 1
            return True, None

    def record_success(self, target: str) -> None:
        with self._lock:
            self._states[target] = BreakerState()

    def record_failure(self, target: str, *, now: datetime | None = None) -> None:
        now = now or utc_now()
        with self._lock:
            st = self._state_for(target)
            st.consecutive_failures += 1
            if st.state is CircuitState.HALF_OPEN:
                self._trip(st, now)
            elif st.state is CircuitState.CLOSED and st.consecutive_failures >= self.failure_threshold:
                self._trip(st, now)

    def is_open(self, target: str) -> bool:
        with self._lock:
            return self._state_for(target).state is CircuitState.OPEN

    def reset(self, target: str | None = None) -> None:
        with self._lock:
            if target is None:
                self._states.clear()
            else:
                self._states.pop(target, None)

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                target: {
                    "state": st.state.value,
                    "consecutive_failures": st.consecutive_failures,
                    "opened_at": st.opened_at.isoformat() if st.opened_at else None,
                    "probes_in_flight": st.probes_in_flight,
                }
                for target, st in self._states.items()
            }


GLOBAL_CIRCUIT_BREAKER = CircuitBreaker()

__all__ = ["CircuitBreaker", "CircuitState", "BreakerState", "GLOBAL_CIRCUIT_BREAKER"]
