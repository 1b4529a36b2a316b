"""Tests for the repository aggregate (exact recount + short-lived cache)."""

from unittest.mock import AsyncMock

import pytest

from issue_mirror.cache import MemoryCache, repo_stat_key
from issue_mirror.db import session_scope
from issue_mirror.schemas import Repository
from issue_mirror.stats import RepositoryStatService
from issue_mirror.sync.writer import IssuePersister


@pytest.fixture
def stat_service(cache):
    return RepositoryStatService(cache, ttl_seconds=300)


async def _seed(session_factory, repository, issues):
    await IssuePersister(session_factory, repository).persist(issues)


class TestRecompute:
    @pytest.mark.asyncio
    async def test_creates_row_with_exact_count(
        self, session_factory, stat_service, repository, make_issue
    ):
        await _seed(session_factory, repository, [make_issue(n) for n in range(1, 6)])

        async with session_scope(session_factory) as session:
            snapshot = await stat_service.recompute(session, repository)

        assert snapshot.total_issues_count == 5
        assert snapshot.updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_zero_for_empty_repository(self, session_factory, stat_service, repository):
        async with session_scope(session_factory) as session:
            snapshot = await stat_service.recompute(session, repository)
        assert snapshot.total_issues_count == 0

    @pytest.mark.asyncio
    async def test_recount_replaces_previous_value(
        self, session_factory, stat_service, repository, make_issue
    ):
        await _seed(session_factory, repository, [make_issue(1)])
        async with session_scope(session_factory) as session:
            await stat_service.recompute(session, repository)

        await _seed(session_factory, repository, [make_issue(2), make_issue(3)])
        async with session_scope(session_factory) as session:
            snapshot = await stat_service.recompute(session, repository)

        assert snapshot.total_issues_count == 3

    @pytest.mark.asyncio
    async def test_scoped_per_repository(
        self, session_factory, stat_service, repository, make_issue
    ):
        other = Repository("octocat", "spoon-knife")
        await _seed(session_factory, repository, [make_issue(1), make_issue(2)])
        await _seed(session_factory, other, [make_issue(1)])

        async with session_scope(session_factory) as session:
            mine = await stat_service.recompute(session, repository)
            theirs = await stat_service.recompute(session, other)

        assert (mine.total_issues_count, theirs.total_issues_count) == (2, 1)


class TestFetchCached:
    @pytest.mark.asyncio
    async def test_none_before_first_recompute(self, session_factory, stat_service, repository):
        async with session_factory() as session:
            assert await stat_service.fetch_cached(session, repository) is None

    @pytest.mark.asyncio
    async def test_reads_through_cache(
        self, session_factory, stat_service, cache, repository, make_issue
    ):
        await _seed(session_factory, repository, [make_issue(1)])
        async with session_scope(session_factory) as session:
            await stat_service.recompute(session, repository)

        async with session_factory() as session:
            first = await stat_service.fetch_cached(session, repository)
        assert await cache.get(repo_stat_key(repository)) is not None

        # A later recount is invisible until invalidate()
        await _seed(session_factory, repository, [make_issue(2)])
        async with session_scope(session_factory) as session:
            await stat_service.recompute(session, repository)
        async with session_factory() as session:
            cached = await stat_service.fetch_cached(session, repository)
        assert cached.total_issues_count == first.total_issues_count == 1

        await stat_service.invalidate(repository)
        async with session_factory() as session:
            fresh = await stat_service.fetch_cached(session, repository)
        assert fresh.total_issues_count == 2

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_database(
        self, session_factory, repository, make_issue
    ):
        broken = MemoryCache()
        broken.get = AsyncMock(side_effect=ConnectionError("redis down"))
        broken.set = AsyncMock(side_effect=ConnectionError("redis down"))
        service = RepositoryStatService(broken)

        await _seed(session_factory, repository, [make_issue(1), make_issue(2)])
        async with session_scope(session_factory) as session:
            await service.recompute(session, repository)

        async with session_factory() as session:
            snapshot = await service.fetch_cached(session, repository)

        assert snapshot.total_issues_count == 2
