# pagesmith/services/circuit_breaker.py
"""
Per-service circuit breaker for outbound AI calls.

    closed --(failure_threshold failures)--> open
    open   --(open_seconds elapsed, next is_available())--> half_open
    half_open --(success_threshold successes)--> closed
    half_open --(any failure)--> open

Every guarded call also runs under a hard timeout; a timeout is a failure.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pagesmith.errors import ProviderError
from pagesmith.settings.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.closed
    failures: int = 0
    successes: int = 0
    opened_at: float = 0.0
    last_failure_at: Optional[float] = None


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        success_threshold: Optional[int] = None,
        open_seconds: Optional[float] = None,
        call_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold or settings.CIRCUIT_FAILURE_THRESHOLD
        self.success_threshold = success_threshold or settings.CIRCUIT_SUCCESS_THRESHOLD
        self.open_seconds = settings.CIRCUIT_OPEN_SECONDS if open_seconds is None else open_seconds
        self.call_timeout = call_timeout or settings.CIRCUIT_CALL_TIMEOUT_SEC
        self._clock = clock
        self._circuits: Dict[str, _Circuit] = {}

    def _get(self, service: str) -> _Circuit:
        circuit = self._circuits.get(service)
        if circuit is None:
            circuit = self._circuits[service] = _Circuit()
        return circuit

    def is_available(self, service: str) -> bool:
        circuit = self._get(service)
        if circuit.state == CircuitState.closed:
            return True
        if circuit.state == CircuitState.open:
            if self._clock() - circuit.opened_at >= self.open_seconds:
                circuit.state = CircuitState.half_open
                circuit.successes = 0
                logger.info("Circuit %s half-open, allowing a trial call", service)
                return True
            return False
        return True  # half_open

    def record_success(self, service: str) -> None:
        circuit = self._get(service)
        if circuit.state == CircuitState.half_open:
            circuit.successes += 1
            if circuit.successes >= self.success_threshold:
                circuit.state = CircuitState.closed
                circuit.failures = 0
                circuit.successes = 0
                logger.info("Circuit %s closed", service)
        else:
            circuit.failures = 0

    def record_failure(self, service: str) -> None:
        circuit = self._get(service)
        circuit.failures += 1
        circuit.last_failure_at = self._clock()
        if circuit.state == CircuitState.half_open:
            self._open(service, circuit)
        elif circuit.state == CircuitState.closed and circuit.failures >= self.failure_threshold:
            self._open(service, circuit)

    def _open(self, service: str, circuit: _Circuit) -> None:
        circuit.state = CircuitState.open
        circuit.opened_at = self._clock()
        circuit.successes = 0
        logger.warning("Circuit %s opened after %d failure(s)", service, circuit.failures)

    async def execute(self, service: str, operation: Callable[[], Awaitable[T]],
                      timeout: Optional[float] = None) -> T:
        """Run ``operation`` through the breaker for ``service``.

        Raises ``ProviderError`` (AI_SERVICE_UNAVAILABLE) without calling the
        operation while the circuit is open, and ``ProviderError``
        (AI_GENERATION_TIMEOUT) when the call exceeds the timeout.
        """
        if not self.is_available(service):
            raise ProviderError.unavailable(service, "circuit open")

        limit = timeout or self.call_timeout
        try:
            result = await asyncio.wait_for(operation(), timeout=limit)
        except asyncio.TimeoutError as e:
            self.record_failure(service)
            raise ProviderError.timeout(service, limit) from e
        except Exception:
            self.record_failure(service)
            raise
        self.record_success(service)
        return result

    def get_status(self, service: Optional[str] = None) -> Dict[str, Any]:
        def _one(name: str, c: _Circuit) -> Dict[str, Any]:
            return {
                "service": name,
                "state": c.state.value,
                "failures": c.failures,
                "successes": c.successes,
            }

        if service is not None:
            return _one(service, self._get(service))
        return {name: _one(name, c) for name, c in self._circuits.items()}

    def reset(self, service: Optional[str] = None) -> None:
        if service is None:
            self._circuits.clear()
            logger.info("All circuits reset")
        else:
            self._circuits[service] = _Circuit()
            logger.info("Circuit %s reset", service)


__all__ = ["CircuitBreaker", "CircuitState"]
