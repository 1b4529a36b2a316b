"""Select the issues in a fetched batch that are new or changed locally."""

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..metrics import issues_skipped_total
from ..models import Issue
from ..schemas import RemoteIssue, Repository

logger = logging.getLogger("issue_mirror.sync.reconciler")

__all__ = ["fetch_existing_updated_at", "select_changed_issues"]

# Keeps the IN (...) list well under driver bind-parameter limits
LOOKUP_CHUNK_SIZE = 1000


async def fetch_existing_updated_at(
    session: AsyncSession, repository: Repository, numbers: Sequence[int]
) -> dict[int, datetime]:
    """Map issue_number -> stored issue_updated_at, restricted to the given numbers."""
    existing: dict[int, datetime] = {}
    unique_numbers = sorted(set(numbers))
    for start in range(0, len(unique_numbers), LOOKUP_CHUNK_SIZE):
        chunk = unique_numbers[start : start + LOOKUP_CHUNK_SIZE]
        result = await session.execute(
            select(Issue.issue_number, Issue.issue_updated_at).where(
                Issue.owner_name == repository.owner,
                Issue.repository_name == repository.name,
                Issue.issue_number.in_(chunk),
            )
        )
        existing.update({number: updated_at for number, updated_at in result.all()})
    return existing


def _latest_per_number(issues: Sequence[RemoteIssue]) -> list[RemoteIssue]:
    """Collapse repeats of an issue number to its newest copy.

    An issue edited while pagination is in progress can appear on two pages;
    a single upsert statement must not touch the same row twice.
    """
    latest: dict[int, RemoteIssue] = {}
    for issue in issues:
        current = latest.get(issue.number)
        if current is None or current.updated_at < issue.updated_at:
            latest[issue.number] = issue
    kept: list[RemoteIssue] = []
    for issue in issues:
        if latest.get(issue.number) is issue:
            kept.append(issue)
            del latest[issue.number]
    return kept


async def select_changed_issues(
    session: AsyncSession, repository: Repository, issues: Sequence[RemoteIssue]
) -> list[RemoteIssue]:
    """Keep issues that are unknown locally or strictly newer than the stored copy.

    Order of the input is preserved. Re-processing the same page yields an
    empty result, so replays never write.
    """
    if not issues:
        return []

    existing = await fetch_existing_updated_at(session, repository, [i.number for i in issues])
    changed = [
        issue
        for issue in _latest_per_number(issues)
        if (stored := existing.get(issue.number)) is None or stored < issue.updated_at
    ]

    unchanged = len(issues) - len(changed)
    if unchanged:
        issues_skipped_total.labels(reason="unchanged").inc(unchanged)
    logger.debug(
        "batch_reconciled",
        extra={
            "repository": repository.full_name,
            "received": len(issues),
            "changed": len(changed),
            "unchanged": unchanged,
        },
    )
    return changed
