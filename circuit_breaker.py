"""
circuit_breaker.py - Circuit breaker for OPC UA reconnect attempts
"""
from typing import Callable, Optional, Type
from enum import Enum
import threading
import time

from logger import get_logger
from metrics import circuit_breaker_state

logger = get_logger(__name__)

class CircuitState(Enum):
    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2

class CircuitBreakerError(Exception):
    """Raised when circuit is open"""
    pass

class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 30,
        expected_exception: Type[Exception] = Exception,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        circuit_breaker_state.labels(self.name).set(self._state.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    def _set_state(self, state: CircuitState):
        self._state = state
        circuit_breaker_state.labels(self.name).set(state.value)

    def call(self, func: Callable, *args, **kwargs):
        """Execute function with circuit breaker"""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._set_state(CircuitState.HALF_OPEN)
                else:
                    raise CircuitBreakerError(f"Circuit breaker is OPEN for {self.name}")

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if we should try to reset the circuit"""
        if self.last_failure_time is None:
            return False
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _on_success(self):
        with self._lock:
            self.failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.CLOSED)
                logger.info(f"Circuit breaker {self.name} closed after successful recovery")

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
                logger.warning(f"Circuit breaker {self.name} reopened after failure in half-open state")
            elif self.failure_count >= self.failure_threshold and self._state != CircuitState.OPEN:
                self._set_state(CircuitState.OPEN)
                logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")
