"""Issue Mirror - local relational mirror of GitHub issues.

Keeps a database copy of a repository's issues fresh through background
synchronization and serves cache-aware paginated reads from it:
- Sync engine (full backfill, incremental sync with early stop, batched upserts)
- Read path (fingerprint-keyed page cache, aggregate issue counts)
- FastAPI HTTP layer and an argparse CLI

Python Version: 3.10+ required
"""

from .__version__ import __version__
from .config import MirrorConfig, get_config, reset_config
from .exceptions import (
    FinalizationError,
    PersistenceError,
    ReconciliationDataError,
    ValidationError,
)
from .logging_config import StructuredFormatter, configure_logging
from .schemas import FetchOptions, IssueState, RemoteAuthor, RemoteIssue, Repository

__all__ = [
    "FetchOptions",
    "FinalizationError",
    "IssueState",
    "MirrorConfig",
    "PersistenceError",
    "ReconciliationDataError",
    "RemoteAuthor",
    "RemoteIssue",
    "Repository",
    "StructuredFormatter",
    "ValidationError",
    "__version__",
    "configure_logging",
    "get_config",
    "reset_config",
]
