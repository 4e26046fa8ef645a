"""In-process sync job queue with a worker pool, rate limiting and retries."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from calmesh.config import Settings, get_settings
from calmesh.database import log_sync
from calmesh.errors import AuthenticationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SyncHandler = Callable[[str], Awaitable[object]]

# Retrying cannot fix these
PERMANENT_ERRORS = (NotFoundError, ValidationError, AuthenticationError)


class TokenBucket:
    """Token bucket limiting how many jobs may start per second."""

    def __init__(self, rate: float, capacity: Optional[float] = None):
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(rate, 1.0)
        self.tokens = self.capacity
        self.last_refill = time.monotonic()

    def refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now

    def time_until_available(self) -> float:
        """Seconds until one token is available."""
        self.refill()
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.rate

    async def acquire(self) -> None:
        """Wait for a token and take it."""
        while True:
            delay = self.time_until_available()
            if delay <= 0:
                self.tokens -= 1
                return
            await asyncio.sleep(delay)


class SyncJobQueue:
    """
    At-least-once queue of calendar sync jobs.

    A fixed pool of workers pulls calendar ids. Job starts are capped by a
    token bucket, and a calendar started again within the minimum interval
    is delayed rather than dropped. Failed jobs are retried with
    exponential backoff up to a bounded number of attempts.
    """

    def __init__(
        self,
        handler: SyncHandler,
        concurrency: Optional[int] = None,
        rate_per_second: Optional[float] = None,
        min_interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.handler = handler
        self.concurrency = concurrency or settings.queue_concurrency
        self.min_interval = (
            min_interval_seconds
            if min_interval_seconds is not None
            else settings.per_calendar_min_interval_seconds
        )
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.queue_backoff_seconds
        )
        self.limiter = TokenBucket(rate_per_second or settings.queue_rate_per_second)

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: set[str] = set()
        self._next_start: dict[str, float] = {}
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start the worker pool."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"sync-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info(f"Sync job queue started with {self.concurrency} workers")

    async def stop(self) -> None:
        """Cancel the workers; queued jobs are dropped."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Sync job queue stopped")

    def enqueue(self, calendar_id: str) -> bool:
        """
        Queue a sync for a calendar.

        Returns False when a job for the calendar is already waiting; that
        job will pick up the same changes.
        """
        if calendar_id in self._pending:
            return False
        self._pending.add(calendar_id)
        self._queue.put_nowait(calendar_id)
        logger.debug(f"Queued sync for calendar {calendar_id}")
        return True

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _wait_for_calendar_slot(self, calendar_id: str) -> None:
        now = time.monotonic()
        start_at = max(now, self._next_start.get(calendar_id, now))
        self._next_start[calendar_id] = start_at + self.min_interval
        if start_at > now:
            await asyncio.sleep(start_at - now)

    async def _worker(self, n: int) -> None:
        while True:
            calendar_id = await self._queue.get()
            try:
                self._pending.discard(calendar_id)
                await self._wait_for_calendar_slot(calendar_id)
                await self.limiter.acquire()
                await self.run_job(calendar_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Sync worker {n} failed on calendar {calendar_id}: {e}")
            finally:
                self._queue.task_done()

    async def run_job(self, calendar_id: str) -> None:
        """Run one job with retries; the final failure is logged, not raised."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_seconds * 8),
            retry=retry_if_not_exception_type(PERMANENT_ERRORS),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying sync for calendar {calendar_id} "
                            f"(attempt {attempt.retry_state.attempt_number}/{self.max_attempts})"
                        )
                    await self.handler(calendar_id)
        except Exception as e:
            logger.error(f"Sync job for calendar {calendar_id} failed: {e}")
            await log_sync(
                operation="sync_job",
                result="error",
                error=str(e),
                metadata={"calendar_id": calendar_id},
            )


# Global queue instance (set during application startup)
_job_queue: Optional[SyncJobQueue] = None


def set_job_queue(queue: Optional[SyncJobQueue]) -> None:
    global _job_queue
    _job_queue = queue


def get_job_queue() -> SyncJobQueue:
    """Get the running job queue."""
    if _job_queue is None:
        raise RuntimeError("Sync job queue is not initialized")
    return _job_queue
