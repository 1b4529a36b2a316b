"""Unit tests for the API issue representation."""

from datetime import datetime, timedelta, timezone

from issue_mirror.models import Author, Issue
from issue_mirror.serializers import format_timestamp, serialize_issue


def test_format_timestamp_utc_z_suffix():
    value = datetime(2024, 3, 1, 12, 30, 15, 987654, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(value) == "2024-03-01T10:30:15Z"


def test_format_timestamp_naive_treated_as_utc():
    assert format_timestamp(datetime(2024, 3, 1, 8, 0)) == "2024-03-01T08:00:00Z"


def test_format_timestamp_none():
    assert format_timestamp(None) is None


def test_remote_and_stored_issue_render_identically(make_issue):
    remote = make_issue(12, updated=3, created=1, title="Flaky test", author_id=7, login="hubot")
    author = Author(
        github_id=7,
        username="hubot",
        avatar_url="https://avatars.example.com/u/7",
        account_type="User",
        api_url="https://api.github.com/users/user7",
    )
    stored = Issue(
        issue_number=12,
        state="open",
        title="Flaky test",
        body="Body",
        issue_created_at=remote.created_at,
        issue_updated_at=remote.updated_at,
        author=author,
    )

    assert serialize_issue(stored) == serialize_issue(remote)
    assert serialize_issue(remote)["user"]["login"] == "hubot"


def test_issue_without_author(make_issue):
    data = serialize_issue(make_issue(1, author_id=None, body=None))
    assert data["user"] is None
    assert data["body"] is None
