"""Sync mode decision and early-stop policy.

The cursor is MAX(issue_updated_at) over a repository's local rows. No cursor
means a full backfill; otherwise the sync is incremental, newest first, with a
since filter one buffer earlier than the cursor so updates landing in the same
instant as the cursor are fetched again rather than missed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import GITHUB_MAX_PER_PAGE
from ..models import Issue
from ..schemas import FetchOptions, RemoteIssue, Repository

logger = logging.getLogger("issue_mirror.sync.policy")

__all__ = [
    "DEFAULT_SINCE_BUFFER",
    "SyncMode",
    "SyncPlan",
    "build_sync_plan",
    "can_stop_early",
    "find_sync_cursor",
]

DEFAULT_SINCE_BUFFER = timedelta(minutes=1)


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class SyncPlan:
    """Resolved sync mode plus the remote query for the first page.

    Attributes:
        mode: FULL when the repository has no local rows
        cursor: MAX(issue_updated_at) of local rows (None in FULL mode)
        options: Remote query for the first page
    """

    mode: SyncMode
    cursor: Optional[datetime]
    options: FetchOptions

    @property
    def is_incremental(self) -> bool:
        return self.mode is SyncMode.INCREMENTAL


async def find_sync_cursor(session: AsyncSession, repository: Repository) -> Optional[datetime]:
    """Most recent remote update time stored for the repository, or None."""
    result = await session.execute(
        select(func.max(Issue.issue_updated_at)).where(
            Issue.owner_name == repository.owner,
            Issue.repository_name == repository.name,
        )
    )
    return result.scalar_one_or_none()


async def build_sync_plan(
    session: AsyncSession,
    repository: Repository,
    since_buffer: timedelta = DEFAULT_SINCE_BUFFER,
    page_size: int = GITHUB_MAX_PER_PAGE,
) -> SyncPlan:
    """Decide between full and incremental sync and build the first-page query.

    Full sync sends no sort so the source's default pagination order is kept.
    """
    cursor = await find_sync_cursor(session, repository)

    if cursor is None:
        plan = SyncPlan(
            mode=SyncMode.FULL,
            cursor=None,
            options=FetchOptions(state="all", per_page=page_size),
        )
    else:
        plan = SyncPlan(
            mode=SyncMode.INCREMENTAL,
            cursor=cursor,
            options=FetchOptions(
                state="all",
                per_page=page_size,
                sort="updated",
                direction="desc",
                since=cursor - since_buffer,
            ),
        )

    logger.info(
        "sync_plan_resolved",
        extra={
            "repository": repository.full_name,
            "mode": plan.mode.value,
            "cursor": cursor.isoformat() if cursor else None,
        },
    )
    return plan


def can_stop_early(issues: Sequence[RemoteIssue], plan: SyncPlan) -> bool:
    """Whether pagination can stop after this page.

    Only incremental plans stop early, and only when every issue on the page
    is strictly older than the cursor. An issue updated exactly at the cursor
    keeps pagination going. Empty pages are handled by the caller.
    """
    if not plan.is_incremental or plan.cursor is None or not issues:
        return False
    return all(issue.updated_at < plan.cursor for issue in issues)
