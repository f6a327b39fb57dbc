"""
Circuit Breaker

Guards calls to the routing provider. After repeated failures the breaker
opens and callers get CircuitBreakerOpenError immediately, which the distance
layer turns into a straight-line estimate instead of waiting on timeouts.

States:
- CLOSED: calls pass through, consecutive failures are counted
- OPEN: calls are refused until ``timeout_seconds`` pass
- HALF_OPEN: a limited number of probe calls decide whether to close again
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, ParamSpec, TypeVar

from app.core.exceptions import CircuitBreakerOpenError, NoRouteFoundError
from app.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5          # כשלונות רצופים עד פתיחה
    success_threshold: int = 2          # הצלחות ב-half-open עד סגירה
    timeout_seconds: float = 30.0       # זמן במצב open לפני ניסיון
    half_open_max_calls: int = 3
    # חריגות שהן תשובה תקינה של השירות (למשל "אין מסלול") - לא נספרות ככשלון
    ignored_exceptions: tuple[type[BaseException], ...] = ()


class CircuitBreaker:
    """Per-service breaker; one shared instance per service name"""

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._probes = 0
        self._opened_at = 0.0
        # threading.Lock ולא asyncio.Lock - worker של Celery מריץ כל משימה ב-loop אחר
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Forget every breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._successes = 0
        self._probes = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.CLOSED:
            self._failures = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a probe through"""
        if self._state != CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._opened_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._probes >= self.config.half_open_max_calls:
                    return False
                self._probes += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """
        Await ``func(*args, **kwargs)`` under the breaker.

        Raises:
            CircuitBreakerOpenError: the breaker refused the call
        """
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())

        try:
            result = await func(*args, **kwargs)
        except self.config.ignored_exceptions:
            # השירות ענה - הוא חי
            self.record_success()
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result


def get_distance_circuit_breaker() -> CircuitBreaker:
    """Routing breaker - trips fast so quotes fall back to the straight-line estimate"""
    return CircuitBreaker.get_instance(
        "distance_provider",
        CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=1,
            timeout_seconds=60.0,
            ignored_exceptions=(NoRouteFoundError,),
        ),
    )
