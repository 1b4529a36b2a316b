"""Issue listing endpoint."""

import logging
from email.utils import format_datetime
from typing import Optional

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from ..reader import IssuePage, IssueQuery, RequestContext
from ..schemas import Repository

logger = logging.getLogger("issue_mirror.api.issues")

router = APIRouter(tags=["Issues"])


def _etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """Weak comparison against an If-None-Match header (RFC 9110 13.1.2)."""
    if not if_none_match:
        return False
    if if_none_match.strip() == "*":
        return True
    opaque = etag.removeprefix("W/")
    return any(
        candidate.strip().removeprefix("W/") == opaque for candidate in if_none_match.split(",")
    )


def _page_headers(page: IssuePage, repository: Repository, max_age: int) -> dict[str, str]:
    headers = {"X-Total-Count": str(page.total_count)}
    if not page.cacheable:
        headers["Cache-Control"] = "no-store"
        return headers

    headers["ETag"] = page.etag(repository)
    headers["Cache-Control"] = f"public, max-age={max_age}"
    if page.last_modified is not None:
        headers["Last-Modified"] = format_datetime(page.last_modified, usegmt=True)
    return headers


@router.get("/api/v1/repos/{provider}/{owner}/{repo}/issues")
async def list_issues(
    request: Request,
    provider: str,
    owner: str,
    repo: str,
    state: Optional[str] = None,
    page: Optional[int] = None,
    per_page: Optional[int] = None,
) -> Response:
    """List a repository's issues, newest update first.

    Triggers a background sync when the local copy is stale; the response
    never waits for it.
    """
    services = request.app.state.services
    config = services.config

    repository = Repository.from_params(provider, owner, repo)
    query = IssueQuery.from_params(
        state,
        page,
        per_page,
        default_per_page=config.default_per_page,
        max_per_page=config.max_per_page,
    )

    async with services.session_factory() as session:
        ctx = RequestContext(session, repository)
        await services.read_path.trigger_sync_if_stale(ctx)
        result = await services.read_path.fetch_for_read(ctx, query)

    headers = _page_headers(result, repository, config.http_cache_max_age)
    if result.cacheable and _etag_matches(request.headers.get("If-None-Match"), headers["ETag"]):
        headers.pop("X-Total-Count")
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)

    logger.debug(
        "issues_listed",
        extra={
            "repository": repository.full_name,
            "state": query.state,
            "page": query.page,
            "per_page": query.per_page,
            "count": len(result.items),
            "source": result.source,
        },
    )
    return JSONResponse(content=result.items, headers=headers)
