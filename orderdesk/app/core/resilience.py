"""
Resilience for outbound calls.

Circuit breaking for model calls and bounded timeouts for the model,
embedding and messaging calls. The extractor bounds its own requests
through the httpx client timeout.
"""

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

import httpx

from orderdesk.app.core.exceptions import TransientError
from orderdesk.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitBreakerOpenException(TransientError):
    """Calls are blocked while the circuit is open; the job is redelivered later."""


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker around one outbound dependency.

    CLOSED passes calls through and counts consecutive failures.
    OPEN fails fast until `recovery_timeout` has passed.
    HALF-OPEN lets exactly one probe through; its outcome closes or reopens
    the circuit, and concurrent callers fail fast meanwhile.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30, name: str = "llm"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name

        self.failure_count = 0
        self.opened_at = 0.0
        self.state = "CLOSED"
        self._probing = False

    def _admit(self) -> bool:
        if self.state == "CLOSED":
            return False
        if self.state == "OPEN" and time.monotonic() - self.opened_at >= self.recovery_timeout:
            self.state = "HALF-OPEN"
            logger.info(f"Circuit {self.name} is HALF-OPEN; probing")
        if self.state == "HALF-OPEN" and not self._probing:
            self._probing = True
            return True
        raise CircuitBreakerOpenException(
            f"Circuit {self.name} is {self.state} after {self.failure_count} consecutive failures"
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        probe = self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.failure_count += 1
            logger.error(f"Circuit {self.name} failure {self.failure_count}/{self.failure_threshold}: {e}")
            if probe or self.failure_count >= self.failure_threshold:
                if self.state != "OPEN":
                    logger.warning(f"Circuit {self.name} OPEN for {self.recovery_timeout}s")
                self.state = "OPEN"
                self.opened_at = time.monotonic()
            raise
        finally:
            if probe:
                self._probing = False

        if self.state != "CLOSED":
            logger.info(f"Circuit {self.name} CLOSED again")
        self.state = "CLOSED"
        self.failure_count = 0
        return result


async def with_timeout(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """
    Await an outbound call under a hard deadline.

    Timeouts and transport failures surface as TransientError so the caller's
    job is redelivered instead of corrupting state.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientError(f"{what} timed out after {timeout}s") from e
    except httpx.TransportError as e:
        raise TransientError(f"{what} transport error: {e}") from e


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (TransientError, asyncio.TimeoutError, httpx.TransportError))

