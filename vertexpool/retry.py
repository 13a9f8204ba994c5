"""
Retry/Backoff Executor for remote provider calls.

Every call to the control plane goes through RetryExecutor, which provides:
- Bounded attempts with a per-attempt timeout
- Banded linear backoff with random jitter between attempts
- Immediate failure for validation, permanent and conflict errors
- A typed RetryResult instead of an exception when the budget runs out
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from .errors import (
    ConflictError,
    PermanentProviderError,
    RetryExhaustedError,
    TransientProviderError,
    ValidationError,
    VertexPoolError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that never benefit from another attempt
NON_RETRYABLE = (ValidationError, PermanentProviderError, ConflictError)


@dataclass
class Backoff:
    """
    Linear backoff with jitter: ``attempt * step + uniform(0, jitter)``.

    Each attempt's delay falls in ``[attempt * step, attempt * step + jitter]``.
    With ``jitter <= step`` those bands never overlap, so delays are
    non-decreasing in the attempt number while still being randomized.
    """

    step: float = 10.0
    jitter: float = 5.0

    def __post_init__(self):
        if self.step < 0:
            raise ValidationError("backoff step cannot be negative")
        if not 0 <= self.jitter <= self.step:
            raise ValidationError("backoff jitter must be between 0 and step")

    def __call__(self, attempt: int) -> float:
        return attempt * self.step + random.uniform(0, self.jitter)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation."""

    name: str
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Optional[T]:
        """Return the value or raise RetryExhaustedError carrying the last error."""
        if self.error is not None:
            raise RetryExhaustedError(self.name, self.attempts, self.error) from self.error
        return self.value


class RetryExecutor:
    """Runs one external call with bounded, jittered retries."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff: Callable[[int], float] | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the executor.

        Args:
            max_attempts: Default number of attempts per call
            backoff: Delay function of the failed attempt number (default Backoff())
            timeout: Default per-attempt timeout in seconds (None disables it)
            sleep: Awaitable sleep, replaceable in tests
        """
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff or Backoff()
        self.timeout = timeout
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "operation",
        max_attempts: int | None = None,
        backoff: Callable[[int], float] | None = None,
        timeout: float | None = None,
        accept: tuple[type[BaseException], ...] = (),
    ) -> RetryResult[T]:
        """
        Execute ``operation`` with retries.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            name: Label used in logs and failures
            max_attempts: Overrides the executor default
            backoff: Overrides the executor default
            timeout: Overrides the executor default per-attempt timeout
            accept: Error types meaning "already satisfied"; they end the call
                successfully with value None

        Returns:
            RetryResult with either a value or the last error and attempt count
        """
        max_attempts = max_attempts or self.max_attempts
        backoff = backoff or self.backoff
        timeout = timeout if timeout is not None else self.timeout

        delays: list[float] = []
        previous_delay = 0.0
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                value = await self._attempt(operation, timeout)
                if attempt > 1:
                    logger.info(f"{name} succeeded on attempt {attempt}/{max_attempts}")
                return RetryResult(name=name, value=value, attempts=attempt, delays=delays)
            except accept as e:
                logger.debug(f"{name}: already satisfied ({e})")
                return RetryResult(name=name, attempts=attempt, delays=delays)
            except NON_RETRYABLE as e:
                logger.error(f"{name} failed without retry: {e}")
                return RetryResult(name=name, error=e, attempts=attempt, delays=delays)
            except TransientProviderError as e:
                last_error = e
            except VertexPoolError as e:
                logger.error(f"{name} failed without retry: {e}")
                return RetryResult(name=name, error=e, attempts=attempt, delays=delays)

            if attempt == max_attempts:
                break

            # Clamp so recorded delays never decrease, whatever backoff returns
            delay = max(previous_delay, backoff(attempt))
            previous_delay = delay
            delays.append(delay)
            logger.warning(
                f"Retry {attempt}/{max_attempts}: {name} ({last_error}), waiting {delay:.1f}s"
            )
            await self._sleep(delay)

        logger.error(f"{name} failed after {max_attempts} attempt(s): {last_error}")
        return RetryResult(name=name, error=last_error, attempts=max_attempts, delays=delays)

    async def execute_once(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "operation",
        timeout: float | None = None,
    ) -> RetryResult[T]:
        """Single best-effort attempt; failures are returned, not retried."""
        timeout = timeout if timeout is not None else self.timeout
        try:
            value = await self._attempt(operation, timeout)
            return RetryResult(name=name, value=value, attempts=1)
        except VertexPoolError as e:
            logger.warning(f"{name} failed (best effort, not retried): {e}")
            return RetryResult(name=name, error=e, attempts=1)

    async def _attempt(self, operation: Callable[[], Awaitable[T]], timeout: float | None) -> T:
        """Run one attempt, mapping timeouts and OS errors to transient failures.

        Any other non-vertexpool exception (malformed output, a provider bug)
        becomes a PermanentProviderError so callers only ever see typed errors.
        """
        try:
            if timeout:
                return await asyncio.wait_for(operation(), timeout=timeout)
            return await operation()
        except VertexPoolError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"timed out after {timeout}s") from e
        except OSError as e:
            raise TransientProviderError(str(e)) from e
        except Exception as e:
            raise PermanentProviderError(f"unexpected {type(e).__name__}: {e}") from e
