"""Shared pytest fixtures for issue_mirror tests.

Fixture Organization:
    - Config/logging isolation: fresh settings, issue_mirror loggers reset per test
    - Storage fixtures: in-memory SQLite (aiosqlite) engine with all tables created
    - Sample data fixtures: RemoteIssue factory with deterministic timestamps
    - Remote source double: FakeIssueSource replaying scripted pages

Plain helpers (at(), FakeIssueSource) live in mirror_test_helpers.
"""

import logging
from typing import Optional

import pytest
import pytest_asyncio

from issue_mirror.cache import MemoryCache
from issue_mirror.config import MirrorConfig, reset_config
from issue_mirror.db import create_engine, create_session_factory, init_db
from issue_mirror.schemas import RemoteAuthor, RemoteIssue, Repository
from mirror_test_helpers import FakeIssueSource, at


# =============================================================================
# Isolation
# =============================================================================


def _reset_issue_mirror_loggers() -> None:
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("issue_mirror"):
            child_logger = logging.getLogger(name)
            child_logger.handlers.clear()
            child_logger.propagate = True


@pytest.fixture(autouse=True)
def reset_logging():
    """Let caplog see issue_mirror records even after configure_logging() ran."""
    _reset_issue_mirror_loggers()
    yield
    _reset_issue_mirror_loggers()


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> MirrorConfig:
    """Settings for an in-memory database and in-process cache."""
    return MirrorConfig(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        redis_url="",
        github_token="ghp_test_token_123",
        github_min_delay_ms=0,
    )


# =============================================================================
# Storage
# =============================================================================


@pytest_asyncio.fixture
async def engine(config):
    engine = create_engine(config)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def repository() -> Repository:
    return Repository(owner="octocat", name="hello-world")


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def make_issue():
    """Factory for RemoteIssue values.

    Timestamps are hours after BASE_TIME; created_at defaults to
    min(updated, 0) so updated_at >= created_at.

    Example:
        def test_x(make_issue):
            issue = make_issue(3, updated=5, state="closed")
    """

    def _make(
        number: int,
        updated: float = 0,
        created: Optional[float] = None,
        state: str = "open",
        title: Optional[str] = None,
        body: Optional[str] = "Body",
        author_id: Optional[int] = 1,
        login: Optional[str] = None,
    ) -> RemoteIssue:
        created = min(updated, 0) if created is None else created
        author = None
        if author_id is not None:
            author = RemoteAuthor(
                id=author_id,
                login=login or f"user{author_id}",
                avatar_url=f"https://avatars.example.com/u/{author_id}",
                type="User",
                url=f"https://api.github.com/users/user{author_id}",
            )
        return RemoteIssue(
            number=number,
            title=title or f"Issue {number}",
            state=state,
            created_at=at(created),
            updated_at=at(updated),
            body=body,
            author=author,
        )

    return _make


# =============================================================================
# Remote source double
# =============================================================================


@pytest.fixture
def fake_source():
    """Build a FakeIssueSource: fake_source([[issue, ...], [...]], errors={1: exc})."""
    return FakeIssueSource
