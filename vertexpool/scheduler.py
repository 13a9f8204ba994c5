"""
Bounded Concurrency Scheduler - fan out independent project tasks, fan back in.

A fixed-capacity semaphore caps how many tasks run at once; every submitted
task produces a TaskResult, failures are captured per task, and run_all only
returns once the whole batch has finished.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from .errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TaskResult(Generic[T]):
    """Result of one scheduled task, in submission order."""

    index: int
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BoundedScheduler:
    """Runs independent tasks with at most ``limit`` active at any instant."""

    def __init__(self, limit: int = 4, start_jitter: float = 0.0):
        """
        Initialize the scheduler.

        Args:
            limit: Default concurrency cap
            start_jitter: Upper bound (seconds) of a random delay applied before
                each task waits for a slot, to spread bursts against the provider
        """
        if limit < 1:
            raise ValidationError("concurrency limit must be at least 1")
        self.limit = limit
        self.start_jitter = start_jitter

    async def run_all(
        self,
        tasks: Sequence[Callable[[], Awaitable[T]]],
        limit: int | None = None,
        *,
        on_complete: Callable[[TaskResult[T]], Any] | None = None,
    ) -> list[TaskResult[T]]:
        """
        Run every task and wait for all of them.

        Args:
            tasks: Zero-argument coroutine factories
            limit: Overrides the default concurrency cap for this batch
            on_complete: Called with each TaskResult as soon as its task finishes

        Returns:
            One TaskResult per task, in submission order
        """
        limit = self.limit if limit is None else limit
        if limit < 1:
            raise ValidationError("concurrency limit must be at least 1")
        if not tasks:
            return []

        semaphore = asyncio.Semaphore(limit)
        logger.debug(f"Scheduling {len(tasks)} task(s) with concurrency {limit}")

        async def run_one(index: int, task: Callable[[], Awaitable[T]]) -> TaskResult[T]:
            if self.start_jitter > 0:
                await asyncio.sleep(random.uniform(0, self.start_jitter))
            async with semaphore:
                try:
                    result = TaskResult(index=index, value=await task())
                except Exception as e:
                    logger.debug(f"Task {index} failed: {e}")
                    result = TaskResult(index=index, error=e)
            if on_complete is not None:
                on_complete(result)
            return result

        # Hook errors must not break the barrier; re-raise once everything is done
        results = await asyncio.gather(
            *(run_one(index, task) for index, task in enumerate(tasks)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        failed = sum(1 for result in results if not result.ok)
        logger.info(f"Batch finished: {len(results) - failed} succeeded, {failed} failed")
        return list(results)
