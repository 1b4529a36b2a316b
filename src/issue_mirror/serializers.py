"""JSON representation of issues returned by the API.

Both stored rows and issues fetched straight from the remote source render
to the same shape, so the empty-repository fast path is indistinguishable
from a local read.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union

from .models import Author, Issue
from .schemas import RemoteAuthor, RemoteIssue

__all__ = ["format_timestamp", "serialize_issue", "serialize_issues"]


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 in UTC with a Z suffix, e.g. 2024-01-02T03:04:05Z."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _serialize_author(author: Union[Author, RemoteAuthor, None]) -> Optional[dict[str, Any]]:
    if author is None:
        return None
    if isinstance(author, RemoteAuthor):
        return {
            "login": author.login,
            "avatar_url": author.avatar_url,
            "type": author.type,
            "url": author.url,
        }
    return {
        "login": author.username,
        "avatar_url": author.avatar_url,
        "type": author.account_type,
        "url": author.api_url,
    }


def serialize_issue(issue: Union[Issue, RemoteIssue]) -> dict[str, Any]:
    if isinstance(issue, RemoteIssue):
        number, created_at, updated_at = issue.number, issue.created_at, issue.updated_at
    else:
        number, created_at, updated_at = (
            issue.issue_number,
            issue.issue_created_at,
            issue.issue_updated_at,
        )
    return {
        "number": number,
        "state": issue.state,
        "title": issue.title,
        "body": issue.body,
        "created_at": format_timestamp(created_at),
        "updated_at": format_timestamp(updated_at),
        "user": _serialize_author(issue.author),
    }


def serialize_issues(issues: Sequence[Union[Issue, RemoteIssue]]) -> list[dict[str, Any]]:
    return [serialize_issue(issue) for issue in issues]
