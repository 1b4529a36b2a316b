"""Persist reconciled issues and their authors in bounded transactional batches."""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import insert_for, session_scope
from ..exceptions import PersistenceError
from ..metrics import issues_skipped_total, issues_upserted_total
from ..models import Issue, utcnow
from ..schemas import RemoteIssue, Repository
from .reconciler import select_changed_issues
from .users import UserResolver, sanitize_text

logger = logging.getLogger("issue_mirror.sync.writer")

__all__ = ["DEFAULT_BATCH_SIZE", "IssuePersister", "IssueUpsertWriter", "PersistResult"]

DEFAULT_BATCH_SIZE = 5000

NATURAL_KEY = ["owner_name", "repository_name", "issue_number"]

# Rows per INSERT statement; keeps bind parameters under driver limits
# (asyncpg and SQLite both cap a statement at 32766-32767 parameters)
STATEMENT_CHUNK_SIZE = 1000

# Local first-write time survives later upserts
_PRESERVED_ON_UPDATE = {"id", "created_at", *NATURAL_KEY}


class IssueUpsertWriter:
    """Builds issue rows and upserts them keyed by the natural key."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    def build_records(
        self, issues: Sequence[RemoteIssue], author_ids: dict[int, int]
    ) -> list[dict[str, Any]]:
        """Rows for issues whose author resolved; the rest are logged and dropped."""
        now = utcnow()
        records = []
        for issue in issues:
            record = self._build_single_record(issue, author_ids, now)
            if record is not None:
                records.append(record)
        return records

    def _build_single_record(
        self, issue: RemoteIssue, author_ids: dict[int, int], now
    ) -> Optional[dict[str, Any]]:
        local_author_id = author_ids.get(issue.author.id) if issue.author else None
        if local_author_id is None:
            logger.error(
                "Failed to resolve author for issue",
                extra={
                    "repository": self.repository.full_name,
                    "issue_number": issue.number,
                    "author_id": issue.author.id if issue.author else None,
                },
            )
            issues_skipped_total.labels(reason="unresolved_author").inc()
            return None

        return {
            "owner_name": self.repository.owner,
            "repository_name": self.repository.name,
            "issue_number": issue.number,
            "github_user_id": local_author_id,
            "state": issue.state,
            "title": sanitize_text(issue.title),
            "body": sanitize_text(issue.body),
            "issue_created_at": issue.created_at,
            "issue_updated_at": issue.updated_at,
            "created_at": now,
            "updated_at": now,
        }

    async def write(self, session: AsyncSession, records: Sequence[dict[str, Any]]) -> int:
        """Upsert rows within the caller's transaction.

        An existing row is only overwritten by a strictly newer remote update,
        so a stale page replayed by a concurrent run cannot regress it.
        """
        if not records:
            return 0

        for start in range(0, len(records), STATEMENT_CHUNK_SIZE):
            chunk = list(records[start : start + STATEMENT_CHUNK_SIZE])
            stmt = insert_for(session, Issue).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=NATURAL_KEY,
                set_={
                    column: stmt.excluded[column]
                    for column in chunk[0]
                    if column not in _PRESERVED_ON_UPDATE
                },
                where=Issue.issue_updated_at < stmt.excluded.issue_updated_at,
            )
            await session.execute(stmt)
        issues_upserted_total.inc(len(records))
        return len(records)


@dataclass
class PersistResult:
    """Counts for one persist() call."""

    received: int = 0
    changed: int = 0
    written: int = 0

    @property
    def skipped(self) -> int:
        return self.received - self.written


class IssuePersister:
    """Reconcile, resolve authors and upsert issues for one repository.

    Each slice of at most batch_size issues commits in its own transaction
    covering both the author and the issue upserts. Slices committed before a
    failure stay committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: Repository,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.session_factory = session_factory
        self.repository = repository
        self.batch_size = batch_size
        self.user_resolver = UserResolver()
        self.writer = IssueUpsertWriter(repository)

    async def persist(self, issues: Sequence[RemoteIssue]) -> PersistResult:
        """Write the new or changed issues of a batch.

        Raises:
            PersistenceError: When a database operation fails
        """
        result = PersistResult(received=len(issues))
        if not issues:
            return result

        try:
            async with self.session_factory() as session:
                changed = await select_changed_issues(session, self.repository, issues)
            result.changed = len(changed)

            for start in range(0, len(changed), self.batch_size):
                batch = changed[start : start + self.batch_size]
                async with session_scope(self.session_factory) as session:
                    author_ids = await self.user_resolver.resolve(session, batch)
                    records = self.writer.build_records(batch, author_ids)
                    result.written += await self.writer.write(session, records)
                logger.debug(
                    "batch_persisted",
                    extra={"repository": self.repository.full_name, "size": len(batch)},
                )
        except SQLAlchemyError as e:
            logger.error(
                "batch_persist_failed",
                extra={"repository": self.repository.full_name, "error": str(e)},
            )
            raise PersistenceError(
                f"Failed to persist issues for {self.repository.full_name}: {e}"
            ) from e

        return result
