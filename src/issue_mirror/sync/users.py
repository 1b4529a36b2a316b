"""Resolve the authors referenced by a batch of issues to local author ids."""

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import insert_for
from ..metrics import authors_upserted_total
from ..models import Author, utcnow
from ..schemas import RemoteAuthor, RemoteIssue

logger = logging.getLogger("issue_mirror.sync.users")

__all__ = ["UserResolver", "placeholder_username", "sanitize_text"]

# Rows per INSERT statement (driver bind-parameter limits)
STATEMENT_CHUNK_SIZE = 1000


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Strip NUL characters, which PostgreSQL text columns reject."""
    if not isinstance(value, str):
        return value
    return value.replace("\x00", "")


def placeholder_username(username: str, github_id: int) -> str:
    """Handle parked on a row whose login now belongs to another account.

    "~" never occurs in remote logins, so the result cannot collide with a real one.
    """
    return f"{username}~{github_id}"


class UserResolver:
    """Upserts the distinct authors of a batch and returns github_id -> local id.

    Issues without an author are logged and left out; the writer drops them.
    """

    def extract_unique_authors(self, issues: Sequence[RemoteIssue]) -> list[RemoteAuthor]:
        seen: dict[int, RemoteAuthor] = {}
        for issue in issues:
            if issue.author is None:
                logger.warning("issue_without_author", extra={"issue_number": issue.number})
                continue
            seen.setdefault(issue.author.id, issue.author)
        return list(seen.values())

    def build_author_records(self, authors: Sequence[RemoteAuthor]) -> list[dict[str, Any]]:
        now = utcnow()
        records = [
            {
                "github_id": author.id,
                "username": sanitize_text(author.login),
                "avatar_url": sanitize_text(author.avatar_url),
                "account_type": sanitize_text(author.type),
                "api_url": sanitize_text(author.url),
                "created_at": now,
                "updated_at": now,
            }
            for author in authors
        ]
        # A login renamed mid-pagination can show up under two accounts in one batch
        claimed: set[str] = set()
        for record in records:
            if record["username"] in claimed:
                record["username"] = placeholder_username(record["username"], record["github_id"])
            claimed.add(record["username"])
        return records

    async def release_reused_usernames(
        self, session: AsyncSession, records: Sequence[dict[str, Any]]
    ) -> int:
        """Park stored handles that the batch assigns to a different account.

        Logins can be renamed and later taken by someone else. The stale row
        keeps a placeholder handle until its own account is seen again, so
        the upsert never trips the unique username index.

        Returns:
            Number of rows renamed
        """
        claimed = {record["username"]: record["github_id"] for record in records}
        usernames = list(claimed)
        released = 0
        for start in range(0, len(usernames), STATEMENT_CHUNK_SIZE):
            result = await session.execute(
                select(Author.id, Author.github_id, Author.username).where(
                    Author.username.in_(usernames[start : start + STATEMENT_CHUNK_SIZE])
                )
            )
            for local_id, github_id, username in result.all():
                if claimed[username] == github_id:
                    continue
                await session.execute(
                    update(Author)
                    .where(Author.id == local_id)
                    .values(
                        username=placeholder_username(username, github_id),
                        updated_at=utcnow(),
                    )
                )
                released += 1
                logger.info(
                    "author_username_released",
                    extra={"username": username, "github_id": github_id},
                )
        return released

    async def resolve(
        self, session: AsyncSession, issues: Sequence[RemoteIssue]
    ) -> dict[int, int]:
        """Upsert all authors of the batch, then look up their local ids.

        Caller owns the transaction so the author and issue writes of a batch
        commit together.
        """
        authors = self.extract_unique_authors(issues)
        if not authors:
            return {}

        records = self.build_author_records(authors)
        await self.release_reused_usernames(session, records)
        for start in range(0, len(records), STATEMENT_CHUNK_SIZE):
            stmt = insert_for(session, Author).values(records[start : start + STATEMENT_CHUNK_SIZE])
            stmt = stmt.on_conflict_do_update(
                index_elements=["github_id"],
                set_={
                    "username": stmt.excluded.username,
                    "avatar_url": stmt.excluded.avatar_url,
                    "account_type": stmt.excluded.account_type,
                    "api_url": stmt.excluded.api_url,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
        authors_upserted_total.inc(len(records))

        result = await session.execute(
            select(Author.github_id, Author.id).where(
                Author.github_id.in_([a.id for a in authors])
            )
        )
        return {github_id: local_id for github_id, local_id in result.all()}
