"""GitHub issue source.

Provides the async REST client implementing the remote issue source contract
(first page by options, continuation handles, pull requests excluded).
"""

from .client import GitHubClient, GitHubClientError, RateLimitExceeded, SourceTimeoutError

__all__ = [
    "GitHubClient",
    "GitHubClientError",
    "RateLimitExceeded",
    "SourceTimeoutError",
]
