"""GitHub REST API issue source.

Async httpx-based client for the GitHub REST API v3 issues endpoint.
Implements Link header pagination through opaque continuation handles,
adaptive rate limiting (primary + secondary) and exponential backoff.

The pagination contract is stateful per client instance: has_next_page()
and next_page_handle() describe the most recent page response.

Reference: https://docs.github.com/en/rest/issues/issues#list-repository-issues
Rate limits: https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

import asyncio
import logging
import random
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from ...config import MirrorConfig
from ...exceptions import ReconciliationDataError
from ...metrics import issues_fetched_total, issues_skipped_total
from ...schemas import FetchOptions, RemoteIssue, Repository

logger = logging.getLogger("issue_mirror.github.client")


class GitHubClientError(Exception):
    """Raised when a GitHub API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    """

    pass


class RateLimitExceeded(GitHubClientError):
    """Raised when GitHub rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}")


class SourceTimeoutError(GitHubClientError):
    """Raised when requests keep timing out after all retries.

    Unlike other transport errors this is not absorbed by the page helpers:
    a sync run that cannot reach the source must fail.
    """

    pass


class GitHubClient:
    """GitHub issue source using httpx with optional Bearer token auth.

    Uses one long-lived httpx.AsyncClient with connection pooling.
    Adaptive rate limiting:
    - Primary: 5,000 requests/hour (PAT)
    - Secondary: 900 points/minute
    - Safety margin: 20% reserved

    Example:
        >>> async with GitHubClient.from_config(config) as client:
        ...     issues = await client.fetch_issues(repo, FetchOptions(state="all"))
        ...     while client.has_next_page():
        ...         issues = await client.fetch_page(client.next_page_handle())
    """

    BASE_URL = "https://api.github.com"

    # Rate limit constants
    PRIMARY_LIMIT = 5000  # requests/hour for PAT
    SECONDARY_LIMIT_POINTS = 900  # points/minute
    SAFETY_MARGIN = 0.20
    MIN_REQUEST_DELAY_MS = 100

    # Large repositories can take minutes to serve a page
    CONNECT_TIMEOUT = 30.0
    READ_TIMEOUT = 300.0
    WRITE_TIMEOUT = 30.0
    POOL_TIMEOUT = 30.0

    # Retry configuration
    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds, exponential: min(60, 2^attempt)
    MAX_BACKOFF = 60

    def __init__(
        self,
        token: str = "",
        base_url: str | None = None,
        min_delay_ms: int = MIN_REQUEST_DELAY_MS,
        connect_timeout: float = CONNECT_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            token: GitHub Personal Access Token; empty for anonymous access
            base_url: GitHub API base URL (default: https://api.github.com)
            min_delay_ms: Minimum delay between requests in milliseconds
            connect_timeout: Seconds to establish a connection
            read_timeout: Seconds to wait for response data
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self._min_delay_s = min_delay_ms / 1000.0

        # Rate limit tracking
        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: float | None = None
        self._secondary_points_used: int = 0
        self._secondary_window_start: float = time.monotonic()
        self._last_request_time: float = 0.0

        # Pagination state of the most recent page response
        self._next_url: str | None = None

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "issue-mirror/1.0",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=read_timeout,
                write=self.WRITE_TIMEOUT,
                pool=self.POOL_TIMEOUT,
            ),
        )

    @classmethod
    def from_config(cls, config: MirrorConfig) -> "GitHubClient":
        return cls(
            token=config.github_token.get_secret_value(),
            base_url=config.github_api_url,
            min_delay_ms=config.github_min_delay_ms,
            connect_timeout=config.github_connect_timeout,
            read_timeout=config.github_read_timeout,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    # --- Issue source contract ---

    async def fetch_issues(
        self, repository: Repository, options: FetchOptions
    ) -> list[RemoteIssue]:
        """Fetch the first page of a repository's issues.

        Pull requests (which the issues endpoint also returns) are excluded.

        Returns:
            Issues on the page; [] when the request fails for any reason other
            than a timeout

        Raises:
            SourceTimeoutError: When the source keeps timing out
        """
        return await self._read_page(
            f"/repos/{repository.full_name}/issues",
            options.to_params(),
            {"repository": repository.full_name},
        )

    def has_next_page(self) -> bool:
        """Whether the previous response advertised a rel="next" link."""
        return self._next_url is not None

    def next_page_handle(self) -> str | None:
        """Opaque continuation for the page after the previous response."""
        return self._next_url

    async def fetch_page(self, handle: str) -> list[RemoteIssue]:
        """Follow a continuation handle from next_page_handle().

        Returns:
            Issues on the page; [] when the request fails for any reason other
            than a timeout

        Raises:
            SourceTimeoutError: When the source keeps timing out
        """
        return await self._read_page(self._relative_path(handle), None, {"handle": handle})

    def _relative_path(self, url: str) -> str:
        # Continuations are absolute URLs under base_url (validated when parsed)
        return url[len(self.base_url):] if url.startswith(self.base_url) else url

    async def _read_page(
        self, path: str, params: dict[str, str] | None, context: dict[str, Any]
    ) -> list[RemoteIssue]:
        """Request a page, moving past pages that hold no issues.

        A page made only of pull requests or malformed records is not the end
        of the listing, so its rel="next" link is followed. [] is returned only
        for an empty payload, a filtered last page or a failed request.
        """
        while True:
            self._next_url = None
            try:
                response = await self._raw_request("GET", path, params=params)
            except SourceTimeoutError:
                raise
            except GitHubClientError as e:
                logger.error("fetch_page_failed", extra={**context, "error": str(e)})
                return []

            issues, raw_count = self._consume_page(response)
            if issues or raw_count == 0 or self._next_url is None:
                return issues

            logger.info(
                "page_without_issues_skipped",
                extra={**context, "records": raw_count, "next": self._next_url},
            )
            path, params = self._relative_path(self._next_url), None

    def _consume_page(self, response: httpx.Response) -> tuple[list[RemoteIssue], int]:
        """Record pagination state and convert the payload to RemoteIssues.

        Returns:
            (issues, number of records in the raw payload)
        """
        self._next_url = self._parse_next_link(response.headers.get("Link", ""))
        try:
            data = response.json()
        except ValueError as e:
            logger.error("malformed_page_payload", extra={"error": str(e)})
            self._next_url = None
            return [], 0
        if not isinstance(data, list):
            logger.error(
                "unexpected_page_payload", extra={"payload_type": type(data).__name__}
            )
            self._next_url = None
            return [], 0

        issues: list[RemoteIssue] = []
        pull_requests = 0
        for item in data:
            if item.get("pull_request"):
                pull_requests += 1
                continue
            try:
                issues.append(RemoteIssue.from_api(item))
            except ReconciliationDataError as e:
                logger.warning("malformed_issue_skipped", extra={"error": str(e)})
                issues_skipped_total.labels(reason="malformed").inc()
        if pull_requests:
            issues_skipped_total.labels(reason="pull_request").inc(pull_requests)
        issues_fetched_total.inc(len(issues))
        return issues, len(data)

    # --- Rate Limiting ---

    async def _enforce_rate_limit(self, point_cost: int) -> None:
        """Enforce both primary and secondary rate limits.

        1. Check secondary limit (cumulative point cost per minute)
        2. Check primary limit (X-RateLimit-Remaining)
        3. Enforce minimum delay between requests
        """
        now = time.monotonic()

        if now - self._secondary_window_start >= 60.0:
            self._secondary_points_used = 0
            self._secondary_window_start = now

        effective_secondary = int(self.SECONDARY_LIMIT_POINTS * (1 - self.SAFETY_MARGIN))
        if self._secondary_points_used + point_cost > effective_secondary:
            wait_time = 60.0 - (now - self._secondary_window_start)
            if wait_time > 0:
                logger.info(
                    "Secondary rate limit approaching (%d/%d points). Waiting %.1fs",
                    self._secondary_points_used,
                    effective_secondary,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
                self._secondary_points_used = 0
                self._secondary_window_start = time.monotonic()

        effective_primary_margin = int(self.PRIMARY_LIMIT * self.SAFETY_MARGIN)
        if (
            self._rate_limit_remaining is not None
            and self._rate_limit_remaining < effective_primary_margin
            and self._rate_limit_reset
        ):
            wait_time = max(0, self._rate_limit_reset - time.time())
            if wait_time > 0 and self._rate_limit_remaining < int(
                effective_primary_margin * 0.1
            ):
                logger.warning(
                    "Primary rate limit low (%d remaining). Waiting %.1fs for reset",
                    self._rate_limit_remaining,
                    wait_time,
                )
                await asyncio.sleep(min(wait_time, 60.0))

        elapsed = now - self._last_request_time
        if elapsed < self._min_delay_s:
            await asyncio.sleep(self._min_delay_s - elapsed)

    def _update_rate_limits(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                self._rate_limit_remaining = int(remaining)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Remaining header: %r", remaining)

        reset = response.headers.get("X-RateLimit-Reset")
        if reset is not None:
            try:
                self._rate_limit_reset = float(reset)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)

    # --- Core HTTP ---

    async def _raw_request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        point_cost: int = 1,
    ) -> httpx.Response:
        """Make an HTTP request with rate limiting, retries, and error handling.

        Retries 5xx, 429, rate-limit 403 and timeouts; returns the raw 2xx response.

        Raises:
            GitHubClientError: On non-retryable errors (auth, not found)
            RateLimitExceeded: When rate limit is exhausted after retries
            SourceTimeoutError: When every attempt timed out
        """
        for attempt in range(self.MAX_RETRIES + 1):
            await self._enforce_rate_limit(point_cost)

            try:
                self._last_request_time = time.monotonic()
                response = await self._client.request(method, path, params=params)

                self._update_rate_limits(response)
                # Only charge the secondary budget on the first attempt
                if attempt == 0:
                    self._secondary_points_used += point_cost

                if response.status_code == 403:
                    remaining = response.headers.get("X-RateLimit-Remaining", "")
                    if remaining == "0":
                        reset = float(response.headers.get("X-RateLimit-Reset", "0"))
                        reset_dt = datetime.fromtimestamp(reset, tz=timezone.utc)
                        if attempt < self.MAX_RETRIES:
                            wait = max(1, reset - time.time())
                            logger.warning(
                                "Rate limit hit. Waiting %.0fs (attempt %d/%d)",
                                wait,
                                attempt + 1,
                                self.MAX_RETRIES,
                            )
                            await asyncio.sleep(min(wait, self.MAX_BACKOFF))
                            continue
                        raise RateLimitExceeded(reset_dt)
                    raise GitHubClientError(
                        f"GitHub API error 403: {self._error_message(response)}"
                    )

                if response.status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", "60"))
                    if attempt < self.MAX_RETRIES:
                        logger.warning(
                            "Secondary rate limit. Retry-After: %ds (attempt %d/%d)",
                            retry_after,
                            attempt + 1,
                            self.MAX_RETRIES,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    raise RateLimitExceeded(
                        datetime.fromtimestamp(time.time() + retry_after, tz=timezone.utc),
                        "Secondary rate limit exceeded",
                    )

                if response.status_code in (401, 404, 410, 422):
                    raise GitHubClientError(
                        f"GitHub API error {response.status_code}: "
                        f"{self._error_message(response)}"
                    )

                if response.status_code >= 500:
                    if attempt < self.MAX_RETRIES:
                        backoff = min(
                            self.MAX_BACKOFF,
                            self.BASE_BACKOFF ** (attempt + 1),
                        ) + random.uniform(0, 1)
                        logger.warning(
                            "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                            response.status_code,
                            backoff,
                            attempt + 1,
                            self.MAX_RETRIES,
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise GitHubClientError(
                        f"GitHub API server error {response.status_code} after "
                        f"{self.MAX_RETRIES} retries"
                    )

                if response.status_code >= 400:
                    raise GitHubClientError(
                        f"GitHub API error {response.status_code}: "
                        f"{self._error_message(response)}"
                    )

                return response

            except httpx.TimeoutException as e:
                if attempt < self.MAX_RETRIES:
                    backoff = min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1))
                    logger.warning(
                        "Request timeout. Retrying in %.1fs (attempt %d/%d)",
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise SourceTimeoutError(
                    f"Request timeout after {self.MAX_RETRIES} retries: {e}"
                ) from e

            except httpx.HTTPError as e:
                raise GitHubClientError(f"HTTP error: {e}") from e

        raise GitHubClientError("Request failed after all retries")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error_body = response.json() if response.content else {}
        except (ValueError, UnicodeDecodeError):
            error_body = {}
        if isinstance(error_body, dict) and error_body.get("message"):
            return error_body["message"]
        return response.text

    def _parse_next_link(self, link_header: str) -> str | None:
        """Parse GitHub Link header to extract the 'next' URL.

        Format: <https://api.github.com/...?page=2>; rel="next", <...>; rel="last"

        Returns:
            Next page URL or None if no next page
        """
        if not link_header:
            return None

        for part in link_header.split(","):
            match = re.match(r'\s*<([^>]+)>;\s*rel="next"', part.strip())
            if match:
                url = match.group(1)
                # Reject pagination URLs outside our base URL (open redirect / SSRF)
                if not url.startswith(self.base_url + "/"):
                    logger.warning(
                        "Rejecting Link header URL not matching base_url: %.100s",
                        url,
                    )
                    return None
                return url
        return None
