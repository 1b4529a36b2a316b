"""Value types shared by the remote source, the sync engine and the read path.

RemoteIssue is the single representation of an issue as observed on the
remote source; every sync component consumes it instead of raw API dicts.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .config import GITHUB_MAX_PER_PAGE, SUPPORTED_PROVIDERS
from .exceptions import ReconciliationDataError, ValidationError

__all__ = [
    "FetchOptions",
    "IssueState",
    "RemoteAuthor",
    "RemoteIssue",
    "Repository",
    "parse_timestamp",
]


class IssueState(str, Enum):
    """Issue states stored locally.

    Note: Uses (str, Enum) so values compare equal to raw API strings.
    """

    OPEN = "open"
    CLOSED = "closed"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp (GitHub uses the 'Z' suffix) into aware UTC.

    Raises:
        ValueError: If value is not a datetime or ISO 8601 string
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Repository:
    """A repository on a provider, identified by owner and name."""

    owner: str
    name: str
    provider: str = "github"

    @classmethod
    def parse(cls, full_name: str, provider: str = "github") -> "Repository":
        """Build from "owner/name".

        Raises:
            ValidationError: If full_name is not in owner/name format
        """
        owner, sep, name = (full_name or "").strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValidationError(f"Repository must be in owner/repo format, got {full_name!r}")
        return cls(owner=owner, name=name, provider=provider)

    @classmethod
    def from_params(
        cls, provider: str | None, owner: str | None, name: str | None
    ) -> "Repository":
        """Build from route parameters, validating that all are present.

        Raises:
            ValidationError: On missing parameters or an unsupported provider
        """
        if not provider or not owner or not name:
            raise ValidationError("provider, owner and repo parameters are required")
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Unsupported provider: {provider}")
        return cls(owner=owner, name=name, provider=provider)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class RemoteAuthor:
    """Account that opened an issue."""

    id: int
    login: str
    avatar_url: str = ""
    type: str = "User"
    url: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteAuthor":
        return cls(
            id=int(data["id"]),
            login=data["login"],
            avatar_url=data.get("avatar_url") or "",
            type=data.get("type") or "User",
            url=data.get("url") or "",
        )


@dataclass(frozen=True)
class RemoteIssue:
    """An issue as returned by the remote source.

    Attributes:
        number: Issue number (unique per repository, > 0)
        title: Issue title
        body: Markdown body, may be None
        state: "open" or "closed"
        created_at: Remote creation time (aware UTC)
        updated_at: Remote last-update time (aware UTC), >= created_at
        author: Opening account, None when the API omits it (ghost users)
    """

    number: int
    title: str
    state: str
    created_at: datetime
    updated_at: datetime
    body: str | None = None
    author: RemoteAuthor | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteIssue":
        """Build from a GitHub REST issue payload.

        Raises:
            ReconciliationDataError: If required fields are missing or invalid
        """
        try:
            number = int(data["number"])
            title = data["title"]
            state = data["state"]
            created_at = parse_timestamp(data["created_at"])
            updated_at = parse_timestamp(data["updated_at"])
        except (KeyError, TypeError, ValueError) as e:
            raise ReconciliationDataError(
                f"Malformed issue record #{data.get('number', '?')}: {e}"
            ) from e

        if number <= 0:
            raise ReconciliationDataError(f"Invalid issue number: {number}")
        if not title:
            raise ReconciliationDataError(f"Issue #{number} has no title")
        if state not in (IssueState.OPEN.value, IssueState.CLOSED.value):
            raise ReconciliationDataError(f"Issue #{number} has unknown state {state!r}")
        if updated_at < created_at:
            raise ReconciliationDataError(
                f"Issue #{number} updated_at precedes created_at"
            )

        author = None
        user = data.get("user")
        if user:
            try:
                author = RemoteAuthor.from_api(user)
            except (KeyError, TypeError, ValueError) as e:
                raise ReconciliationDataError(
                    f"Issue #{number} has a malformed author: {e}"
                ) from e

        return cls(
            number=number,
            title=title,
            state=state,
            created_at=created_at,
            updated_at=updated_at,
            body=data.get("body"),
            author=author,
        )


@dataclass
class FetchOptions:
    """Query options for listing issues on the remote source.

    Attributes:
        state: open, closed or all
        per_page: Page size (capped at the source maximum of 100)
        sort: created, updated or comments; None keeps the source default
        direction: asc or desc (only sent together with sort)
        since: Only issues updated at or after this time
        page: Explicit page number (read fast path only; sync follows handles)
    """

    state: str = "all"
    per_page: int = GITHUB_MAX_PER_PAGE
    sort: str | None = None
    direction: str | None = None
    since: datetime | None = None
    page: int | None = None

    def to_params(self) -> dict[str, str]:
        """Render as GitHub query parameters."""
        params: dict[str, str] = {
            "state": self.state,
            "per_page": str(min(self.per_page, GITHUB_MAX_PER_PAGE)),
        }
        if self.sort:
            params["sort"] = self.sort
            if self.direction:
                params["direction"] = self.direction
        if self.since is not None:
            params["since"] = (
                self.since.astimezone(timezone.utc)
                .replace(microsecond=0)
                .isoformat()
                .replace("+00:00", "Z")
            )
        if self.page is not None:
            params["page"] = str(self.page)
        return params
