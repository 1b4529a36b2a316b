"""Unit tests for the GitHub issue source.

Tests GitHubClient with:
- Authentication and timeouts
- Issue listing query parameters
- Continuation handles from Link headers (foreign hosts rejected)
- Pull request and malformed record filtering
- Error handling (retries, rate limits, timeouts surfacing as SourceTimeoutError)
"""

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from issue_mirror.connectors.github.client import (
    GitHubClient,
    GitHubClientError,
    RateLimitExceeded,
    SourceTimeoutError,
)
from issue_mirror.schemas import FetchOptions, Repository

SLEEP = "issue_mirror.connectors.github.client.asyncio.sleep"
NEXT_URL = "https://api.github.com/repositories/1/issues?state=all&page=2"


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def github_client():
    """Create GitHubClient instance for testing with zero delays."""
    return GitHubClient(token="ghp_test_token_123", min_delay_ms=0)


@pytest.fixture
def repo():
    return Repository(owner="octocat", name="hello-world")


def _issue_payload(number: int, **overrides) -> dict:
    payload = {
        "number": number,
        "title": f"Issue {number}",
        "body": "Body",
        "state": "open",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-02T00:00:00Z",
        "user": {
            "id": 100 + number,
            "login": f"user{number}",
            "avatar_url": f"https://avatars.githubusercontent.com/u/{100 + number}",
            "type": "User",
            "url": f"https://api.github.com/users/user{number}",
        },
    }
    payload.update(overrides)
    return payload


def _mock_response(
    status_code: int = 200,
    json_data: dict | list | None = None,
    headers: dict | None = None,
    content: bytes = b"[]",
) -> Mock:
    """Create a mock httpx.Response with given attributes."""
    resp = Mock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data if json_data is not None else []
    resp.content = content
    resp.text = content.decode() if content else ""
    _headers = {
        "X-RateLimit-Remaining": "4999",
        "X-RateLimit-Reset": str(int(time.time()) + 3600),
    }
    if headers:
        _headers.update(headers)
    resp.headers = _headers
    return resp


# =============================================================================
# Configuration Tests
# =============================================================================


class TestClientConfiguration:
    """Test client initialization and configuration."""

    def test_bearer_token_in_headers(self, github_client):
        headers = github_client._client.headers
        assert headers["Authorization"] == "Bearer ghp_test_token_123"

    def test_anonymous_client_sends_no_authorization(self):
        client = GitHubClient(token="")
        assert "Authorization" not in client._client.headers

    def test_accept_and_version_headers(self, github_client):
        headers = github_client._client.headers
        assert headers["Accept"] == "application/vnd.github+json"
        assert headers["X-GitHub-Api-Version"] == "2022-11-28"

    def test_base_url_custom_strips_trailing_slash(self):
        client = GitHubClient(token="token", base_url="https://github.example.com/api/v3/")
        assert client.base_url == "https://github.example.com/api/v3"

    def test_default_timeouts_allow_slow_pages(self, github_client):
        """Bounded connect (30s) and read (300s) timeouts."""
        timeout = github_client._client.timeout
        assert timeout.connect == 30.0
        assert timeout.read == 300.0

    def test_from_config(self, config):
        client = GitHubClient.from_config(config)
        assert client.base_url == "https://api.github.com"
        assert client._client.headers["Authorization"] == "Bearer ghp_test_token_123"
        assert client._client.timeout.read == config.github_read_timeout

    @pytest.mark.asyncio
    async def test_close_called_on_exit(self):
        client = GitHubClient(token="token")
        with patch.object(client, "close", new=AsyncMock()) as mock_close:
            async with client:
                pass
        mock_close.assert_called_once()


# =============================================================================
# Issue Listing Tests
# =============================================================================


class TestFetchIssues:
    """First-page requests built from FetchOptions."""

    @pytest.mark.asyncio
    async def test_full_sync_params(self, github_client, repo):
        resp = _mock_response(json_data=[_issue_payload(1)])

        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=resp)
        ) as mock_request:
            issues = await github_client.fetch_issues(repo, FetchOptions(state="all", per_page=100))

        args, kwargs = mock_request.call_args
        assert args == ("GET", "/repos/octocat/hello-world/issues")
        assert kwargs["params"] == {"state": "all", "per_page": "100"}
        assert [i.number for i in issues] == [1]

    @pytest.mark.asyncio
    async def test_incremental_params(self, github_client, repo):
        resp = _mock_response(json_data=[])
        options = FetchOptions(
            state="all",
            per_page=100,
            sort="updated",
            direction="desc",
            since=datetime(2024, 3, 1, 11, 59, tzinfo=timezone.utc),
        )

        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=resp)
        ) as mock_request:
            await github_client.fetch_issues(repo, options)

        params = mock_request.call_args.kwargs["params"]
        assert params["sort"] == "updated"
        assert params["direction"] == "desc"
        assert params["since"] == "2024-03-01T11:59:00Z"

    @pytest.mark.asyncio
    async def test_pull_requests_excluded(self, github_client, repo):
        resp = _mock_response(
            json_data=[
                _issue_payload(1),
                _issue_payload(2, pull_request={"url": "https://api.github.com/pulls/2"}),
                _issue_payload(3),
            ]
        )

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert [i.number for i in issues] == [1, 3]

    @pytest.mark.asyncio
    async def test_malformed_records_skipped(self, github_client, repo):
        resp = _mock_response(
            json_data=[
                _issue_payload(1),
                _issue_payload(2, state="merged"),
                {"number": 3, "title": "No timestamps", "state": "open"},
            ]
        )

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert [i.number for i in issues] == [1]

    @pytest.mark.asyncio
    async def test_issue_fields_mapped(self, github_client, repo):
        resp = _mock_response(json_data=[_issue_payload(7, state="closed", body=None)])

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            (issue,) = await github_client.fetch_issues(repo, FetchOptions())

        assert issue.state == "closed"
        assert issue.body is None
        assert issue.updated_at == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert issue.author.id == 107
        assert issue.author.login == "user7"

    @pytest.mark.asyncio
    async def test_non_list_payload_returns_empty(self, github_client, repo):
        resp = _mock_response(json_data={"message": "unexpected"})

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert issues == []
        assert github_client.has_next_page() is False


# =============================================================================
# Pagination Tests
# =============================================================================


class TestParseLinkHeader:
    """Test Link header parsing."""

    def test_parse_next_link_present(self, github_client):
        header = f'<{NEXT_URL}>; rel="next", <https://api.github.com/repositories/1/issues?page=5>; rel="last"'
        assert github_client._parse_next_link(header) == NEXT_URL

    def test_parse_next_link_absent(self, github_client):
        header = '<https://api.github.com/repositories/1/issues?page=5>; rel="last"'
        assert github_client._parse_next_link(header) is None

    def test_parse_next_link_empty(self, github_client):
        assert github_client._parse_next_link("") is None

    def test_parse_next_link_foreign_host_rejected(self, github_client):
        header = '<https://evil.example.com/issues?page=2>; rel="next"'
        assert github_client._parse_next_link(header) is None


class TestContinuationHandles:
    """Stateful has_next_page / next_page_handle / fetch_page contract."""

    @pytest.mark.asyncio
    async def test_follow_handles_until_exhausted(self, github_client, repo):
        page1 = _mock_response(
            json_data=[_issue_payload(1), _issue_payload(2)],
            headers={"Link": f'<{NEXT_URL}>; rel="next"'},
        )
        page2 = _mock_response(json_data=[_issue_payload(3)])

        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=[page1, page2])
        ) as mock_request:
            first = await github_client.fetch_issues(repo, FetchOptions())
            assert github_client.has_next_page() is True
            handle = github_client.next_page_handle()
            assert handle == NEXT_URL

            second = await github_client.fetch_page(handle)

        assert [i.number for i in first + second] == [1, 2, 3]
        assert github_client.has_next_page() is False
        assert github_client.next_page_handle() is None
        # Handle is followed relative to base_url with its own query string
        assert mock_request.call_args_list[1].args == (
            "GET",
            "/repositories/1/issues?state=all&page=2",
        )

    @pytest.mark.asyncio
    async def test_new_listing_resets_pagination_state(self, github_client, repo):
        page1 = _mock_response(
            json_data=[_issue_payload(1)],
            headers={"Link": f'<{NEXT_URL}>; rel="next"'},
        )
        failing = _mock_response(status_code=404, json_data={"message": "Not Found"})

        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=[page1, failing])
        ):
            await github_client.fetch_issues(repo, FetchOptions())
            assert github_client.has_next_page() is True
            await github_client.fetch_issues(repo, FetchOptions())

        assert github_client.has_next_page() is False

    @pytest.mark.asyncio
    async def test_page_of_only_pull_requests_is_skipped(self, github_client, repo):
        page1 = _mock_response(
            json_data=[
                _issue_payload(n, pull_request={"url": f"https://api.github.com/pulls/{n}"})
                for n in (1, 2, 3)
            ],
            headers={"Link": f'<{NEXT_URL}>; rel="next"'},
        )
        page2 = _mock_response(json_data=[_issue_payload(10)])

        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=[page1, page2])
        ) as mock_request:
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert [i.number for i in issues] == [10]
        assert mock_request.await_count == 2
        assert mock_request.call_args_list[1].args == (
            "GET",
            "/repositories/1/issues?state=all&page=2",
        )
        assert mock_request.call_args_list[1].kwargs["params"] is None
        assert github_client.has_next_page() is False

    @pytest.mark.asyncio
    async def test_page_of_only_malformed_records_is_skipped(self, github_client):
        page_url = "https://api.github.com/repositories/1/issues?state=all&page=3"
        page2 = _mock_response(
            json_data=[_issue_payload(4, state="merged")],
            headers={"Link": f'<{page_url}>; rel="next"'},
        )
        page3 = _mock_response(json_data=[_issue_payload(5)])

        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=[page2, page3])
        ):
            issues = await github_client.fetch_page(NEXT_URL)

        assert [i.number for i in issues] == [5]

    @pytest.mark.asyncio
    async def test_filtered_last_page_ends_listing(self, github_client, repo):
        resp = _mock_response(
            json_data=[_issue_payload(1, pull_request={"url": "https://api.github.com/pulls/1"})]
        )

        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=resp)
        ) as mock_request:
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert issues == []
        assert mock_request.await_count == 1
        assert github_client.has_next_page() is False


# =============================================================================
# Error Handling Tests
# =============================================================================


class TestErrorHandling:
    """Transport failures: absorbed by page helpers except timeouts."""

    @pytest.mark.asyncio
    async def test_not_found_returns_empty_page(self, github_client, repo):
        resp = _mock_response(
            status_code=404,
            json_data={"message": "Not Found"},
            content=b'{"message": "Not Found"}',
        )

        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=resp)
        ) as mock_request:
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert issues == []
        assert mock_request.call_count == 1  # 404 is not retried

    @pytest.mark.asyncio
    async def test_raw_request_raises_on_401(self, github_client):
        resp = _mock_response(
            status_code=401,
            json_data={"message": "Bad credentials"},
            content=b'{"message": "Bad credentials"}',
        )

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            with pytest.raises(GitHubClientError, match="Bad credentials"):
                await github_client._raw_request("GET", "/repos/o/r/issues")

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self, github_client, repo):
        resp_500 = _mock_response(status_code=500, content=b"")
        resp_ok = _mock_response(json_data=[_issue_payload(1)])

        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=[resp_500, resp_ok]),
            ) as mock_request,
            patch(SLEEP, new=AsyncMock()),
        ):
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert mock_request.call_count == 2
        assert [i.number for i in issues] == [1]

    @pytest.mark.asyncio
    async def test_server_error_exhausted_returns_empty(self, github_client, repo):
        resp_502 = _mock_response(status_code=502, content=b"")

        with (
            patch.object(
                github_client._client, "request", new=AsyncMock(return_value=resp_502)
            ) as mock_request,
            patch(SLEEP, new=AsyncMock()),
        ):
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert issues == []
        assert mock_request.call_count == GitHubClient.MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_timeouts_propagate_from_fetch_issues(self, github_client, repo):
        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=httpx.ReadTimeout("timed out")),
            ),
            patch(SLEEP, new=AsyncMock()),
        ):
            with pytest.raises(SourceTimeoutError):
                await github_client.fetch_issues(repo, FetchOptions())

    @pytest.mark.asyncio
    async def test_timeouts_propagate_from_fetch_page(self, github_client):
        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=httpx.ConnectTimeout("timed out")),
            ),
            patch(SLEEP, new=AsyncMock()),
        ):
            with pytest.raises(SourceTimeoutError):
                await github_client.fetch_page(NEXT_URL)

    @pytest.mark.asyncio
    async def test_timeout_then_success(self, github_client, repo):
        resp_ok = _mock_response(json_data=[_issue_payload(1)])

        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=[httpx.ReadTimeout("slow"), resp_ok]),
            ),
            patch(SLEEP, new=AsyncMock()),
        ):
            issues = await github_client.fetch_issues(repo, FetchOptions())

        assert len(issues) == 1


# =============================================================================
# Rate Limiting Tests
# =============================================================================


class TestRateLimiting:
    """Test rate limit enforcement."""

    @pytest.mark.asyncio
    async def test_rate_limit_tracking(self, github_client):
        resp = _mock_response(
            headers={
                "X-RateLimit-Remaining": "4500",
                "X-RateLimit-Reset": str(int(time.time()) + 3600),
            },
        )

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            await github_client._raw_request("GET", "/repos/o/r/issues")

        assert github_client._rate_limit_remaining == 4500

    @pytest.mark.asyncio
    async def test_secondary_rate_limit_window_reset(self, github_client):
        github_client._secondary_points_used = 700
        github_client._secondary_window_start = time.monotonic() - 61.0

        await github_client._enforce_rate_limit(1)

        assert github_client._secondary_points_used == 0

    @pytest.mark.asyncio
    async def test_rate_limit_backoff_on_403(self, github_client):
        """403 with remaining=0 triggers wait-and-retry."""
        resp_403 = _mock_response(
            status_code=403,
            headers={
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(time.time()) + 5),
            },
        )
        resp_ok = _mock_response(json_data=[])

        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=[resp_403, resp_ok]),
            ),
            patch(SLEEP, new=AsyncMock()),
        ):
            response = await github_client._raw_request("GET", "/repos/o/r/issues")

        assert response is resp_ok

    @pytest.mark.asyncio
    async def test_secondary_rate_limit_429(self, github_client):
        """429 with Retry-After triggers appropriate wait."""
        resp_429 = _mock_response(status_code=429, headers={"Retry-After": "5"})
        resp_ok = _mock_response(json_data=[])

        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=[resp_429, resp_ok]),
            ),
            patch(SLEEP, new=AsyncMock()) as mock_sleep,
        ):
            await github_client._raw_request("GET", "/repos/o/r/issues")

        sleep_calls = [c for c in mock_sleep.call_args_list if c[0][0] == 5]
        assert len(sleep_calls) >= 1

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_raises(self, github_client):
        resp_429 = _mock_response(status_code=429, headers={"Retry-After": "1"})

        with (
            patch.object(github_client._client, "request", new=AsyncMock(return_value=resp_429)),
            patch(SLEEP, new=AsyncMock()),
        ):
            with pytest.raises(RateLimitExceeded):
                await github_client._raw_request("GET", "/repos/o/r/issues")

    def test_safety_margin(self):
        """Rate limiter reserves 20% of quota."""
        client = GitHubClient.__new__(GitHubClient)
        effective = int(client.SECONDARY_LIMIT_POINTS * (1 - client.SAFETY_MARGIN))
        assert effective == 720  # 900 * 0.80
