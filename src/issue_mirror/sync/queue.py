"""Background sync queue consumed by a pool of asyncio workers.

enqueue() never blocks and never waits for the sync: the read path calls it
and returns immediately. A repository already waiting in the queue is not
queued twice; once a worker picks it up, a new enqueue is accepted again.
A failing job is retried by the same worker with exponential backoff before
it is given up on.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..metrics import sync_job_retries_total, sync_jobs_enqueued_total, sync_queue_depth
from ..schemas import Repository

logger = logging.getLogger("issue_mirror.sync.queue")

__all__ = ["InProcessSyncQueue", "SyncQueue"]

SyncJob = Callable[[Repository], Awaitable[Any]]

MAX_RETRY_BACKOFF_SECONDS = 300.0


class SyncQueue(Protocol):
    """Fire-and-forget sync trigger."""

    def enqueue(self, repository: Repository) -> bool: ...


class InProcessSyncQueue:
    """asyncio.Queue plus N worker tasks, each running one job at a time.

    Attributes:
        job: Coroutine function run per repository (SyncOrchestrator.run)
        workers: Number of worker tasks
        maxsize: Queue capacity; enqueue is rejected when full
        max_retries: Extra attempts after a job raises (0 disables retrying)
        retry_backoff_seconds: Delay before the first retry, doubled for each
            further retry and capped at MAX_RETRY_BACKOFF_SECONDS
    """

    def __init__(
        self,
        job: SyncJob,
        workers: int = 2,
        maxsize: int = 1000,
        max_retries: int = 3,
        retry_backoff_seconds: float = 5.0,
    ) -> None:
        self.job = job
        self.workers = workers
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._queue: asyncio.Queue[Repository] = asyncio.Queue(maxsize=maxsize)
        self._pending: set[Repository] = set()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def qsize(self) -> int:
        return self._queue.qsize()

    def enqueue(self, repository: Repository) -> bool:
        """Queue a sync for the repository.

        Returns:
            True if queued or already pending, False if the queue is full
        """
        if repository in self._pending:
            sync_jobs_enqueued_total.labels(status="coalesced").inc()
            logger.debug("sync_job_coalesced", extra={"repository": repository.full_name})
            return True

        try:
            self._queue.put_nowait(repository)
        except asyncio.QueueFull:
            sync_jobs_enqueued_total.labels(status="rejected").inc()
            logger.warning(
                "sync_queue_full",
                extra={"repository": repository.full_name, "depth": self._queue.qsize()},
            )
            return False

        self._pending.add(repository)
        sync_jobs_enqueued_total.labels(status="queued").inc()
        sync_queue_depth.set(self._queue.qsize())
        logger.info("sync_job_enqueued", extra={"repository": repository.full_name})
        return True

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"sync-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("sync_workers_started", extra={"workers": self.workers})

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the workers; jobs still waiting are dropped."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            "sync_workers_stopped",
            extra={"workers": len(tasks), "dropped": self._queue.qsize()},
        )

    async def _worker(self, worker_id: int) -> None:
        while True:
            repository = await self._queue.get()
            self._pending.discard(repository)
            sync_queue_depth.set(self._queue.qsize())
            try:
                await self._run_with_retries(worker_id, repository)
            finally:
                self._queue.task_done()

    def _retry_delay(self, retry: int) -> float:
        return min(MAX_RETRY_BACKOFF_SECONDS, self.retry_backoff_seconds * 2 ** (retry - 1))

    async def _run_with_retries(self, worker_id: int, repository: Repository) -> None:
        for attempt in range(self.max_retries + 1):
            try:
                await self.job(repository)
                return
            except Exception as e:
                error = {
                    "worker": worker_id,
                    "repository": repository.full_name,
                    "attempt": attempt + 1,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
                if attempt >= self.max_retries:
                    logger.error("sync_job_failed", extra=error)
                    return

            delay = self._retry_delay(attempt + 1)
            sync_job_retries_total.inc()
            logger.warning("sync_job_retry_scheduled", extra={**error, "delay_seconds": delay})
            await asyncio.sleep(delay)

    async def __aenter__(self) -> "InProcessSyncQueue":
        self.start()
        return self

    async def __aexit__(self, exc_type: Optional[type], exc: Any, tb: Any) -> None:
        await self.stop()
