"""Remote issue sources.

Every provider adapter implements IssueSource; the sync engine and the read
path's empty-repository fast path depend only on this contract.
"""

from typing import Optional, Protocol

from ..schemas import FetchOptions, RemoteIssue, Repository

__all__ = ["IssueSource"]


class IssueSource(Protocol):
    """Paginated access to a repository's issues (pull requests excluded)."""

    async def fetch_issues(
        self, repository: Repository, options: FetchOptions
    ) -> list[RemoteIssue]: ...

    def has_next_page(self) -> bool: ...

    def next_page_handle(self) -> Optional[str]: ...

    async def fetch_page(self, handle: str) -> list[RemoteIssue]: ...

    async def close(self) -> None: ...
