"""Read path: paginated issue listing served from the local mirror.

Page results are cached under a key that embeds the repository's freshness
fingerprint (MAX(issue_updated_at) of its rows). Any newer remote update
changes the fingerprint, so a stale page is never served under the new key.
Entries are also dropped wholesale after every sync run.

Staleness is judged separately, on the local write time of the newest row;
a stale repository gets a background sync enqueued and the read proceeds
against whatever is stored now.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .cache import CachePort, issue_page_prefix
from .config import MirrorConfig
from .connectors import IssueSource
from .exceptions import ValidationError
from .metrics import read_cache_requests_total
from .models import Issue, utcnow
from .schemas import FetchOptions, IssueState, Repository, parse_timestamp
from .serializers import serialize_issues
from .stats import RepositoryStatService
from .sync.queue import SyncQueue

logger = logging.getLogger("issue_mirror.reader")

__all__ = ["IssuePage", "IssueQuery", "ReadPath", "RequestContext"]

STATE_ALL = "all"
READ_STATES = (IssueState.OPEN.value, IssueState.CLOSED.value, STATE_ALL)

_UNSET: Any = object()


@dataclass(frozen=True)
class IssueQuery:
    """Filter and pagination of one listing request.

    state None means the caller did not ask for a state: items are limited
    to open issues (the remote source's default) while the total reported is
    the repository aggregate. "all" lists every issue.
    """

    state: Optional[str] = None
    page: int = 1
    per_page: int = 25

    @classmethod
    def from_params(
        cls,
        state: Optional[str],
        page: Optional[int],
        per_page: Optional[int],
        default_per_page: int = 25,
        max_per_page: int = 100,
    ) -> "IssueQuery":
        """Validate raw request parameters.

        Raises:
            ValidationError: On an unknown state or out-of-range page values
        """
        if state is not None:
            state = state.strip().lower() or None
        if state is not None and state not in READ_STATES:
            raise ValidationError(f"state must be one of {', '.join(READ_STATES)}")
        page = 1 if page is None else page
        if page < 1:
            raise ValidationError("page must be >= 1")
        per_page = default_per_page if per_page is None else per_page
        if not 1 <= per_page <= max_per_page:
            raise ValidationError(f"per_page must be between 1 and {max_per_page}")
        return cls(state=state, page=page, per_page=per_page)

    @property
    def state_filter(self) -> Optional[str]:
        """State to filter rows by, None for no filter."""
        if self.state is None:
            return IssueState.OPEN.value
        if self.state == STATE_ALL:
            return None
        return self.state

    @property
    def uses_aggregate(self) -> bool:
        """Whether the total comes from the repository aggregate."""
        return self.state is None or self.state == STATE_ALL

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    @property
    def cache_token(self) -> str:
        return f"{self.state or 'default'}:{self.page}:{self.per_page}"


class RequestContext:
    """Per-request collaborators and memoized lookups.

    Each lookup hits the database at most once per request.
    """

    def __init__(self, session: AsyncSession, repository: Repository) -> None:
        self.session = session
        self.repository = repository
        self._fingerprint: Optional[datetime] = _UNSET
        self._last_write: Optional[datetime] = _UNSET

    def repository_filter(self) -> tuple:
        return (
            Issue.owner_name == self.repository.owner,
            Issue.repository_name == self.repository.name,
        )

    async def fingerprint(self) -> Optional[datetime]:
        """MAX(issue_updated_at) of the repository's rows, None when empty."""
        if self._fingerprint is _UNSET:
            result = await self.session.execute(
                select(func.max(Issue.issue_updated_at)).where(*self.repository_filter())
            )
            self._fingerprint = result.scalar_one_or_none()
        return self._fingerprint

    async def last_write(self) -> Optional[datetime]:
        """MAX(updated_at), the most recent local write, None when empty."""
        if self._last_write is _UNSET:
            result = await self.session.execute(
                select(func.max(Issue.updated_at)).where(*self.repository_filter())
            )
            self._last_write = result.scalar_one_or_none()
        return self._last_write

    async def has_rows(self) -> bool:
        return await self.fingerprint() is not None


def fingerprint_token(fingerprint: Optional[datetime]) -> int:
    """Fingerprint as integer microseconds since the epoch (0 when empty)."""
    if fingerprint is None:
        return 0
    return int(fingerprint.timestamp() * 1_000_000)


@dataclass
class IssuePage:
    """One page of serialized issues plus the metadata for response headers.

    Attributes:
        items: Serialized issues
        total_count: Total matching issues (aggregate or exact, see IssueQuery)
        fingerprint: Repository freshness fingerprint (None for remote reads)
        stat_updated_at: When the aggregate was last recomputed
        source: "cache", "local" or "remote"
    """

    items: list[dict[str, Any]]
    total_count: int
    fingerprint: Optional[datetime] = None
    stat_updated_at: Optional[datetime] = None
    source: str = "local"

    @property
    def cacheable(self) -> bool:
        """Remote reads are transient; only local pages carry validators."""
        return self.source != "remote"

    def etag(self, repository: Repository) -> str:
        """Weak validator from (repository, fingerprint, aggregate recompute time)."""
        stat_token = (
            int(self.stat_updated_at.timestamp() * 1_000_000) if self.stat_updated_at else 0
        )
        raw = (
            f"{repository.provider}:{repository.full_name}:"
            f"{fingerprint_token(self.fingerprint)}:{stat_token}"
        )
        return f'W/"{hashlib.sha1(raw.encode()).hexdigest()}"'

    @property
    def last_modified(self) -> Optional[datetime]:
        candidates = [ts for ts in (self.fingerprint, self.stat_updated_at) if ts is not None]
        return max(candidates) if candidates else None

    def to_cache(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total_count": self.total_count,
            "stat_updated_at": self.stat_updated_at.isoformat() if self.stat_updated_at else None,
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any], fingerprint: Optional[datetime]) -> "IssuePage":
        stat_updated_at = data.get("stat_updated_at")
        return cls(
            items=data["items"],
            total_count=int(data["total_count"]),
            fingerprint=fingerprint,
            stat_updated_at=parse_timestamp(stat_updated_at) if stat_updated_at else None,
            source="cache",
        )


class ReadPath:
    """Serves listings and triggers background syncs for stale repositories.

    Attributes:
        cache: Page cache (shared with post-sync invalidation)
        stat_service: Aggregate count lookups
        sync_queue: Background sync trigger
        source_factory: Remote source for repositories with no local rows
        staleness_window: Local data older than this triggers a sync
    """

    def __init__(
        self,
        cache: CachePort,
        stat_service: RepositoryStatService,
        sync_queue: SyncQueue,
        source_factory: Callable[[], IssueSource],
        staleness_window: timedelta = timedelta(minutes=10),
    ) -> None:
        self.cache = cache
        self.stat_service = stat_service
        self.sync_queue = sync_queue
        self.source_factory = source_factory
        self.staleness_window = staleness_window

    @classmethod
    def from_config(
        cls,
        config: MirrorConfig,
        cache: CachePort,
        sync_queue: SyncQueue,
        source_factory: Callable[[], IssueSource],
    ) -> "ReadPath":
        return cls(
            cache=cache,
            stat_service=RepositoryStatService(cache, ttl_seconds=config.stat_cache_ttl_seconds),
            sync_queue=sync_queue,
            source_factory=source_factory,
            staleness_window=timedelta(seconds=config.staleness_window_seconds),
        )

    async def trigger_sync_if_stale(self, ctx: RequestContext) -> bool:
        """Enqueue a sync when local data is absent or older than the window.

        Never raises on enqueue failure: a read must not surface sync problems.

        Returns:
            True if a sync was requested
        """
        last_write = await ctx.last_write()
        if last_write is not None and last_write >= utcnow() - self.staleness_window:
            return False

        try:
            accepted = self.sync_queue.enqueue(ctx.repository)
        except Exception as e:
            logger.error(
                "sync_enqueue_failed",
                extra={"repository": ctx.repository.full_name, "error": str(e)},
            )
            return False

        logger.info(
            "stale_repository_sync_requested",
            extra={
                "repository": ctx.repository.full_name,
                "last_write": last_write.isoformat() if last_write else None,
                "accepted": accepted,
            },
        )
        return accepted

    async def fetch_for_read(self, ctx: RequestContext, query: IssueQuery) -> IssuePage:
        """Return one page of issues and the total count."""
        if not await ctx.has_rows():
            return await self._fetch_remote(ctx.repository, query)

        fingerprint = await ctx.fingerprint()
        key = self.page_cache_key(ctx.repository, query, fingerprint)

        cached = await self._cache_get(key)
        if cached is not None:
            read_cache_requests_total.labels(result="hit").inc()
            return IssuePage.from_cache(cached, fingerprint)
        read_cache_requests_total.labels(result="miss").inc()

        page = await self._fetch_local(ctx, query)
        await self._cache_set(key, page.to_cache())
        return page

    @staticmethod
    def page_cache_key(
        repository: Repository, query: IssueQuery, fingerprint: Optional[datetime]
    ) -> str:
        return f"{issue_page_prefix(repository)}{query.cache_token}:{fingerprint_token(fingerprint)}"

    async def _fetch_local(self, ctx: RequestContext, query: IssueQuery) -> IssuePage:
        conditions = list(ctx.repository_filter())
        if query.state_filter is not None:
            conditions.append(Issue.state == query.state_filter)

        result = await ctx.session.execute(
            select(Issue)
            .where(*conditions)
            .order_by(Issue.issue_updated_at.desc(), Issue.issue_number.desc())
            .offset(query.offset)
            .limit(query.per_page)
        )
        issues = result.scalars().all()

        stat = await self.stat_service.fetch_cached(ctx.session, ctx.repository)
        if query.uses_aggregate and stat is not None:
            total_count = stat.total_issues_count
        else:
            total_count = await self._exact_count(ctx.session, conditions)

        return IssuePage(
            items=serialize_issues(issues),
            total_count=total_count,
            fingerprint=await ctx.fingerprint(),
            stat_updated_at=stat.updated_at if stat else None,
            source="local",
        )

    @staticmethod
    async def _exact_count(session: AsyncSession, conditions: list) -> int:
        result = await session.execute(select(func.count()).select_from(Issue).where(*conditions))
        return result.scalar_one()

    async def _fetch_remote(self, repository: Repository, query: IssueQuery) -> IssuePage:
        """Serve a repository with no local rows straight from the source.

        Nothing is persisted here; the background sync fills the mirror.
        """
        options = FetchOptions(
            state=query.state or IssueState.OPEN.value,
            per_page=query.per_page,
            page=query.page,
        )
        source = self.source_factory()
        try:
            issues = await source.fetch_issues(repository, options)
        finally:
            await source.close()

        logger.info(
            "remote_read_served",
            extra={"repository": repository.full_name, "count": len(issues), "page": query.page},
        )
        return IssuePage(items=serialize_issues(issues), total_count=len(issues), source="remote")

    async def _cache_get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            read_cache_requests_total.labels(result="error").inc()
            logger.warning("read_cache_get_failed", extra={"key": key, "error": str(e)})
            return None

    async def _cache_set(self, key: str, value: dict[str, Any]) -> None:
        try:
            await self.cache.set(key, value)
        except Exception as e:
            read_cache_requests_total.labels(result="error").inc()
            logger.warning("read_cache_set_failed", extra={"key": key, "error": str(e)})
