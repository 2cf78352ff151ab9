"""State persistence: the state document, local file store and cache mirror."""

from capbot.storage.cache import (
    CacheEntry,
    CacheService,
    DirectoryCacheService,
    HttpCacheService,
    MirroredStateStore,
    build_state_store,
    generate_cache_key,
    get_dynamic_ttl_hours,
    is_expired,
)
from capbot.storage.file_store import FileStateStore
from capbot.storage.state import (
    FailureRecord,
    LimitRecord,
    RotationLogEntry,
    State,
    StateRecord,
    StateStore,
)

__all__ = [
    # Document
    "State",
    "StateRecord",
    "FailureRecord",
    "LimitRecord",
    "RotationLogEntry",
    # Stores
    "StateStore",
    "FileStateStore",
    "MirroredStateStore",
    "build_state_store",
    # Cache
    "CacheEntry",
    "CacheService",
    "DirectoryCacheService",
    "HttpCacheService",
    "generate_cache_key",
    "get_dynamic_ttl_hours",
    "is_expired",
]
