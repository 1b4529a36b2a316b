"""Sync orchestrator: drives one repository sync from first page to bookkeeping.

States:
    INIT -> FETCHING_PAGE -> ACCUMULATING -> (BATCH_FLUSH)* -> PAGINATING
         -> FINALIZING -> DONE, with FAILED reachable from fetch/write states.

Finalization (aggregate recount + read-cache invalidation) runs after every
run, successful or not, and its own failures are logged and swallowed so they
never mask the run's outcome.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..cache import CachePort, issue_page_prefix
from ..config import MirrorConfig
from ..connectors import IssueSource
from ..db import session_scope
from ..exceptions import FinalizationError
from ..metrics import (
    finalization_failures_total,
    sync_duration_seconds,
    sync_pages_fetched,
    sync_runs_total,
)
from ..schemas import RemoteIssue, Repository
from ..stats import RepositoryStatService
from .policy import SyncPlan, build_sync_plan, can_stop_early
from .writer import IssuePersister

logger = logging.getLogger("issue_mirror.sync.orchestrator")

__all__ = ["SyncOrchestrator", "SyncResult", "SyncState"]


class SyncState(str, Enum):
    INIT = "init"
    FETCHING_PAGE = "fetching_page"
    ACCUMULATING = "accumulating"
    BATCH_FLUSH = "batch_flush"
    PAGINATING = "paginating"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Outcome of one sync run.

    Tracks pages, fetched/written counts, the stop reason and timing.
    """

    repository: str
    mode: Optional[str] = None
    state: SyncState = SyncState.INIT
    pages_fetched: int = 0
    issues_fetched: int = 0
    issues_changed: int = 0
    issues_written: int = 0
    batches_flushed: int = 0
    stopped_early: bool = False
    finalization_errors: list[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is SyncState.DONE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging and CLI output."""
        return {
            "repository": self.repository,
            "mode": self.mode,
            "state": self.state.value,
            "pages_fetched": self.pages_fetched,
            "issues_fetched": self.issues_fetched,
            "issues_changed": self.issues_changed,
            "issues_written": self.issues_written,
            "batches_flushed": self.batches_flushed,
            "stopped_early": self.stopped_early,
            "finalization_errors": list(self.finalization_errors),
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class SyncOrchestrator:
    """Runs the pagination loop for a repository and keeps derived state consistent.

    One orchestrator can serve many runs; each run gets a fresh source from
    source_factory because the source's pagination state is per run.

    Attributes:
        session_factory: Async session factory for the local store
        source_factory: Builds the remote issue source for a run
        cache: Read cache invalidated after every run
        stat_service: Repository aggregate recompute
        batch_size: Accumulated issues that trigger a flush
        since_buffer: Subtracted from the cursor for incremental queries
        page_size: Remote page size
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source_factory: Callable[[], IssueSource],
        cache: CachePort,
        stat_service: RepositoryStatService,
        batch_size: int = 5000,
        since_buffer: timedelta = timedelta(minutes=1),
        page_size: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.source_factory = source_factory
        self.cache = cache
        self.stat_service = stat_service
        self.batch_size = batch_size
        self.since_buffer = since_buffer
        self.page_size = page_size

    @classmethod
    def from_config(
        cls,
        config: MirrorConfig,
        session_factory: async_sessionmaker[AsyncSession],
        source_factory: Callable[[], IssueSource],
        cache: CachePort,
    ) -> "SyncOrchestrator":
        return cls(
            session_factory=session_factory,
            source_factory=source_factory,
            cache=cache,
            stat_service=RepositoryStatService(cache, ttl_seconds=config.stat_cache_ttl_seconds),
            batch_size=config.sync_batch_size,
            since_buffer=timedelta(seconds=config.sync_since_buffer_seconds),
            page_size=config.sync_page_size,
        )

    async def run(self, repository: Repository) -> SyncResult:
        """Sync one repository.

        Returns:
            SyncResult in state DONE

        Raises:
            GitHubClientError: When fetching fails unrecoverably (timeouts)
            PersistenceError: When a batch write fails
        """
        start = time.monotonic()
        result = SyncResult(repository=repository.full_name)
        logger.info("sync_started", extra={"repository": repository.full_name})

        try:
            await self._run_pages(repository, result)
            result.state = SyncState.FINALIZING
        except Exception as e:
            result.state = SyncState.FAILED
            result.error = str(e)
            logger.error(
                "sync_failed",
                extra={
                    "repository": repository.full_name,
                    "mode": result.mode,
                    "pages_fetched": result.pages_fetched,
                    "error": str(e),
                },
            )
            raise
        finally:
            await self._finalize(repository, result)
            result.duration_seconds = time.monotonic() - start
            self._record_metrics(result)

        result.state = SyncState.DONE
        logger.info("sync_completed", extra=result.to_dict())
        return result

    async def _run_pages(self, repository: Repository, result: SyncResult) -> None:
        async with self.session_factory() as session:
            plan = await build_sync_plan(
                session,
                repository,
                since_buffer=self.since_buffer,
                page_size=self.page_size,
            )
        result.mode = plan.mode.value

        persister = IssuePersister(self.session_factory, repository, self.batch_size)
        accumulated: list[RemoteIssue] = []

        source = self.source_factory()
        try:
            result.state = SyncState.FETCHING_PAGE
            issues = await source.fetch_issues(repository, plan.options)

            while True:
                result.pages_fetched += 1
                if not issues:
                    logger.info(
                        "sync_empty_page",
                        extra={"repository": repository.full_name, "page": result.pages_fetched},
                    )
                    break

                result.state = SyncState.ACCUMULATING
                result.issues_fetched += len(issues)
                if can_stop_early(issues, plan):
                    result.stopped_early = True
                    logger.info(
                        "sync_stopped_early",
                        extra={"repository": repository.full_name, "page": result.pages_fetched},
                    )
                    break

                accumulated.extend(issues)
                logger.debug(
                    "sync_page_accumulated",
                    extra={
                        "repository": repository.full_name,
                        "page": result.pages_fetched,
                        "page_size": len(issues),
                        "accumulated": len(accumulated),
                    },
                )

                if len(accumulated) >= self.batch_size:
                    result.state = SyncState.BATCH_FLUSH
                    await self._flush(persister, accumulated, result, plan)
                    accumulated = []

                result.state = SyncState.PAGINATING
                handle = source.next_page_handle() if source.has_next_page() else None
                if not handle:
                    break

                result.state = SyncState.FETCHING_PAGE
                issues = await source.fetch_page(handle)
        finally:
            await source.close()

        # Remaining partial batch
        if accumulated:
            result.state = SyncState.BATCH_FLUSH
            await self._flush(persister, accumulated, result, plan)

    async def _flush(
        self,
        persister: IssuePersister,
        issues: list[RemoteIssue],
        result: SyncResult,
        plan: SyncPlan,
    ) -> None:
        persisted = await persister.persist(issues)
        result.batches_flushed += 1
        result.issues_changed += persisted.changed
        result.issues_written += persisted.written
        logger.info(
            "sync_batch_flushed",
            extra={
                "repository": persister.repository.full_name,
                "mode": plan.mode.value,
                "received": persisted.received,
                "changed": persisted.changed,
                "written": persisted.written,
            },
        )

    async def _finalize(self, repository: Repository, result: SyncResult) -> None:
        """Recount the aggregate and drop cached reads; never raises."""
        for step, action in (
            ("recount", self._recount),
            ("invalidate", self._invalidate_caches),
        ):
            try:
                await action(repository)
            except FinalizationError as e:
                result.finalization_errors.append(str(e))
                finalization_failures_total.labels(step=step).inc()
                logger.error(
                    "sync_finalization_failed",
                    extra={"repository": repository.full_name, "step": step, "error": str(e)},
                )

    async def _recount(self, repository: Repository) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                await self.stat_service.recompute(session, repository)
        except Exception as e:
            raise FinalizationError(f"Aggregate recount failed: {e}") from e

    async def _invalidate_caches(self, repository: Repository) -> None:
        try:
            await self.stat_service.invalidate(repository)
            deleted = await self.cache.delete_prefix(issue_page_prefix(repository))
        except Exception as e:
            raise FinalizationError(f"Cache invalidation failed: {e}") from e
        logger.debug(
            "read_cache_invalidated",
            extra={"repository": repository.full_name, "entries": deleted},
        )

    @staticmethod
    def _record_metrics(result: SyncResult) -> None:
        mode = result.mode or "unknown"
        status = "failed" if result.state is SyncState.FAILED else "success"
        sync_runs_total.labels(mode=mode, status=status).inc()
        sync_duration_seconds.labels(mode=mode).observe(result.duration_seconds)
        sync_pages_fetched.labels(mode=mode).observe(result.pages_fetched)
