"""Per-repository aggregate (total issue count) and its short-lived cache.

The count is never maintained incrementally: every recompute replaces it with
an exact COUNT(*) taken inside a single INSERT ... ON CONFLICT statement, so
concurrent recomputes for the same repository cannot lose updates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .cache import CachePort, repo_stat_key
from .db import insert_for
from .models import Issue, RepositoryStat, utcnow
from .schemas import Repository, parse_timestamp

logger = logging.getLogger("issue_mirror.stats")

__all__ = ["RepositoryStatService", "StatSnapshot"]


@dataclass(frozen=True)
class StatSnapshot:
    """Cached view of a RepositoryStat row."""

    total_issues_count: int
    updated_at: datetime

    def to_cache(self) -> dict:
        return {
            "total_issues_count": self.total_issues_count,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: dict) -> "StatSnapshot":
        return cls(
            total_issues_count=int(data["total_issues_count"]),
            updated_at=parse_timestamp(data["updated_at"]),
        )


class RepositoryStatService:
    """Recomputes and serves the per-repository issue count.

    Attributes:
        cache: Cache port shared with the read path
        ttl_seconds: Lifetime of a cached snapshot (default 5 minutes)
    """

    def __init__(self, cache: CachePort, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def recompute(self, session: AsyncSession, repository: Repository) -> StatSnapshot:
        """Replace the stored count with an exact COUNT(*) of local rows.

        Creates the stat row on first use. Caller owns the transaction; the
        cached snapshot is dropped by invalidate() after commit.
        """
        count_subquery = (
            select(func.count())
            .select_from(Issue)
            .where(
                Issue.owner_name == repository.owner,
                Issue.repository_name == repository.name,
            )
            .scalar_subquery()
        )
        now = utcnow()
        stmt = insert_for(session, RepositoryStat).values(
            provider=repository.provider,
            owner_name=repository.owner,
            repository_name=repository.name,
            total_issues_count=func.coalesce(count_subquery, 0),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "owner_name", "repository_name"],
            set_={
                "total_issues_count": stmt.excluded.total_issues_count,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(RepositoryStat.total_issues_count, RepositoryStat.updated_at)

        row = (await session.execute(stmt)).one()
        snapshot = StatSnapshot(total_issues_count=row[0], updated_at=row[1])
        logger.info(
            "repository_stat_recomputed",
            extra={
                "repository": repository.full_name,
                "total_issues_count": snapshot.total_issues_count,
            },
        )
        return snapshot

    async def invalidate(self, repository: Repository) -> None:
        await self.cache.delete(repo_stat_key(repository))

    async def fetch_cached(
        self, session: AsyncSession, repository: Repository
    ) -> Optional[StatSnapshot]:
        """Return the aggregate through the cache; None when never computed.

        Cache read/write failures degrade to a direct database read.
        """
        key = repo_stat_key(repository)
        try:
            cached = await self.cache.get(key)
            if cached:
                return StatSnapshot.from_cache(cached)
        except Exception as e:
            logger.warning("repo_stat_cache_read_failed", extra={"error": str(e)})

        result = await session.execute(
            select(RepositoryStat.total_issues_count, RepositoryStat.updated_at).where(
                RepositoryStat.provider == repository.provider,
                RepositoryStat.owner_name == repository.owner,
                RepositoryStat.repository_name == repository.name,
            )
        )
        row = result.one_or_none()
        if row is None:
            return None

        snapshot = StatSnapshot(total_issues_count=row[0], updated_at=row[1])
        try:
            await self.cache.set(key, snapshot.to_cache(), ttl=self.ttl_seconds)
        except Exception as e:
            logger.warning("repo_stat_cache_write_failed", extra={"error": str(e)})
        return snapshot
