"""Circuit breaker guarding calls to external settlement services."""
import threading
import time
from typing import Any, Callable, Optional

import structlog

from payrail.core.exceptions import ExternalServiceError

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for settlement adapter calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.

    States:
        closed → open (after failure_threshold consecutive failures)
        open → half_open (after timeout seconds)
        half_open → closed (after success_threshold successes) | open (on failure)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60,
        success_threshold: int = 2,
        rail: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[Exception], bool] = lambda error: True,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Service the breaker protects (used in errors and logs)
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            rail: Rail reported on the error raised while open
            clock: Monotonic time source
            is_failure: Whether an exception counts against the service; errors it
                rejects are re-raised without touching the breaker state
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.rail = rail
        self._clock = clock
        self._is_failure = is_failure
        self._lock = threading.Lock()
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            ExternalServiceError: If circuit is open
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time is not None
                    and self._clock() - self.last_failure_time >= self.timeout
                ):
                    self.state = "half_open"
                    self.success_count = 0
                    logger.info("circuit_breaker_half_open", service=self.name)
                else:
                    raise ExternalServiceError(
                        f"Circuit breaker is open for {self.name}",
                        rail=self.rail,
                        service=self.name,
                        error_type="circuit_open",
                    )

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if self._is_failure(e):
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = "closed"
                    logger.info("circuit_breaker_closed", service=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state == "half_open" or self.failure_count >= self.failure_threshold:
                self.state = "open"
                logger.warning(
                    "circuit_breaker_opened",
                    service=self.name,
                    failure_count=self.failure_count,
                )
