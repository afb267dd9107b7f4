"""Centralized constants for cache key namespaces and statuses.

Single source of truth for every KV key prefix the cache core reads or writes,
so maintenance scans and request-path lookups can never drift apart.
"""

from typing import FrozenSet

# =============================================================================
# KEY NAMESPACES
# =============================================================================

CACHE_KEY_PREFIX = 'helprr:cache'

CACHE_GENERATION_KEY = f'{CACHE_KEY_PREFIX}:generation'
CACHE_PURGE_STATUS_KEY = f'{CACHE_KEY_PREFIX}:purge:status'
CACHE_LAST_PURGED_AT_KEY = f'{CACHE_KEY_PREFIX}:lastPurgedAt'

IMAGE_META_NAMESPACE = f'{CACHE_KEY_PREFIX}:image'
API_ENTRY_NAMESPACE = f'{CACHE_KEY_PREFIX}:tmdb'
LOCK_NAMESPACE = f'{CACHE_KEY_PREFIX}:lock'

# =============================================================================
# LOCK SCOPES
# =============================================================================

IMAGE_LOCK_SCOPE = 'image'
API_LOCK_SCOPE = 'tmdb'

# =============================================================================
# UPSTREAM / STORAGE
# =============================================================================

# Statuses where a stale copy may stand in for a failed upstream response
RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset([429])

# Status reported when the upstream could not be reached at all
UPSTREAM_NETWORK_ERROR_STATUS = 502

DEFAULT_IMAGE_CONTENT_TYPE = 'image/jpeg'

BLOB_FILE_SUFFIX = '.bin'

# Batch sizes for KV maintenance commands
SCAN_COUNT = 200
STRLEN_BATCH_SIZE = 100
DELETE_BATCH_SIZE = 500


def is_retryable_status(status: int) -> bool:
    """Rate limiting and server errors are worth serving stale content for."""
    return status in RETRYABLE_STATUS_CODES or status >= 500
