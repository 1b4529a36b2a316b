"""Domain exceptions for the sync engine and read path.

Transport failures live next to the client that raises them
(issue_mirror.connectors.github.client.GitHubClientError).
"""


class ReconciliationDataError(Exception):
    """Raised when a remote record cannot be turned into a RemoteIssue.

    This is a recoverable error - the record is skipped with a warning
    and the rest of the page is processed.

    Examples:
    - Missing issue number or title
    - Unparseable created_at / updated_at
    - State outside open/closed
    """

    pass


class PersistenceError(Exception):
    """Raised when a batch cannot be written to the local store.

    This is a non-recoverable error - the sync run fails. Batches committed
    before the failure stay committed.

    Examples:
    - Constraint violation (e.g. author handle collision)
    - Database connection lost mid-transaction
    """

    pass


class FinalizationError(Exception):
    """Raised when post-sync bookkeeping fails (aggregate recount, cache invalidation).

    Always caught and logged by the orchestrator, never propagated to the caller.
    """

    pass


class ValidationError(Exception):
    """Raised when a read request is missing or has malformed identifying parameters.

    Mapped to HTTP 400 by the API layer.
    """

    pass
