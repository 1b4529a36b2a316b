"""Version information for issue-mirror.

Single source of truth for version number.
"""

__version__ = "1.2.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 1.2.0 - Continuation-handle pagination, early stop for incremental sync
# 1.1.0 - Repository stats aggregate, fingerprint-keyed read cache
# 1.0.0 - Initial release (full sync + paginated reads)
