"""External cache mirror for the state document.

On ephemeral CI runners (GitHub Actions) the local state file does not
survive between invocations.  :class:`MirroredStateStore` keeps the local
file as the primary copy and mirrors it through a :class:`CacheService`:

* **restore**: once per process, before any attempt starts, and only when
  the local file is missing: today's key, then yesterday's, ignoring
  expired entries.
* **load / save**: always the local file; the cache write is deferred to
  :meth:`MirroredStateStore.flush` so that a slow cache service cannot eat
  the execution budget while attempts are still running.

Any cache error is logged at WARNING and otherwise ignored: the run degrades
to "no memory of previous runs" instead of failing.

Cache keys
~~~~~~~~~~
``{prefix}-{sha256(namespace)[:8]}-{version}-{YYYY-MM-DD}`` (UTC date).  The
date component gives a natural daily rollover; the version component
invalidates every entry when the schema changes.

TTL
~~~
:func:`get_dynamic_ttl_hours` returns the baseline TTL, multiplied by
``high_contention_multiplier`` (minimum 1 h) for namespaces known to have
high contention, where a stale "limit reached" flag is costlier to trust.

Typical usage::

    cache = DirectoryCacheService(Path(".cache/oci-cache"))
    store = MirroredStateStore(FileStateStore(path), cache, settings.to_cache_config())
    await store.restore()
    state = store.load()
    ...
    await store.flush()
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any, Final

import httpx
from pydantic import BaseModel, Field, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from capbot.core import events
from capbot.core.config import CacheConfig
from capbot.core.exceptions import CacheServiceError, StateCorruptError, StorageError
from capbot.core.settings import Settings
from capbot.storage.file_store import DIR_MODE, FILE_MODE, FileStateStore
from capbot.storage.state import State, StateStore, parse_state

__all__ = [
    "generate_cache_key",
    "restore_keys",
    "get_dynamic_ttl_hours",
    "is_expired",
    "CacheEntry",
    "CacheService",
    "DirectoryCacheService",
    "HttpCacheService",
    "MirroredStateStore",
    "build_state_store",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Floor applied to the reduced TTL of high-contention namespaces.
_MIN_TTL_HOURS: Final[int] = 1

_DEFAULT_HTTP_TIMEOUT: Final[float] = 3.0
_DEFAULT_HTTP_ATTEMPTS: Final[int] = 2
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})


# ---------------------------------------------------------------------------
# Keys and TTL
# ---------------------------------------------------------------------------


def _namespace_hash(namespace: str) -> str:
    return hashlib.sha256(namespace.encode("utf-8")).hexdigest()[:8]


def generate_cache_key(config: CacheConfig, day: date | None = None) -> str:
    """Return the cache key for *config* on *day* (default: today, UTC).

    Deterministic: the same namespace, version and date always give the same
    key.
    """
    day = day or datetime.now(tz=UTC).date()
    return (
        f"{config.key_prefix}-{_namespace_hash(config.namespace)}"
        f"-{config.version}-{day.isoformat()}"
    )


def restore_keys(config: CacheConfig, day: date | None = None) -> list[str]:
    """Keys tried on restore, newest first: today, then yesterday."""
    day = day or datetime.now(tz=UTC).date()
    return [generate_cache_key(config, day), generate_cache_key(config, day - timedelta(days=1))]


def get_dynamic_ttl_hours(config: CacheConfig) -> int:
    """Return the TTL in hours for the configured namespace."""
    if config.namespace.lower() in config.high_contention_namespaces:
        reduced = int(config.base_ttl_hours * config.high_contention_multiplier)
        return max(reduced, _MIN_TTL_HOURS)
    return config.base_ttl_hours


def is_expired(written_at: float, ttl_hours: float, *, now: float | None = None) -> bool:
    """``True`` if something written at *written_at* (epoch) outlived *ttl_hours*."""
    current = time.time() if now is None else now
    return current - written_at > ttl_hours * 3600


class CacheEntry(BaseModel):
    """Envelope stored in the cache service around a state document."""

    key: str
    written_at: int = Field(..., ge=0, description="Epoch seconds.")
    ttl_hours: int = Field(..., ge=1)
    payload: dict[str, Any]

    def expired(self, now: float | None = None) -> bool:
        return is_expired(self.written_at, self.ttl_hours, now=now)


# ---------------------------------------------------------------------------
# Cache service port and adapters
# ---------------------------------------------------------------------------


class CacheService(ABC):
    """Minimal async key/value cache: ``get(key) -> bytes?`` and ``put(key, bytes, ttl)``."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the bytes stored under *key*, or ``None`` when absent.

        Raises:
            CacheServiceError: On any backend failure.
        """

    @abstractmethod
    async def put(self, key: str, data: bytes, ttl_hours: int) -> None:
        """Store *data* under *key*.

        Raises:
            CacheServiceError: On any backend failure.
        """

    async def close(self) -> None:  # noqa: B027
        """Release resources.  No-op by default."""


class DirectoryCacheService(CacheService):
    """Cache entries as files in a directory persisted by the CI cache step.

    The TTL is carried in the :class:`CacheEntry` envelope and enforced on
    read by :class:`MirroredStateStore`; this adapter does not evict.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _entry_path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    async def get(self, key: str) -> bytes | None:
        path = self._entry_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheServiceError("get", f"{path}: {exc}") from exc

    async def put(self, key: str, data: bytes, ttl_hours: int) -> None:
        path = self._entry_path(key)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            self._root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except OSError as exc:
            raise CacheServiceError("put", f"{path}: {exc}") from exc
        logger.debug("Cached %d bytes under %s (ttl=%dh).", len(data), key, ttl_hours)


class _RetryableCacheError(CacheServiceError):
    """Internal sentinel raised on 5xx so tenacity retries; never escapes."""


class HttpCacheService(CacheService):
    """Cache service reached over HTTP.

    ``GET {base_url}/{key}`` returns the stored bytes (404 when absent);
    ``PUT {base_url}/{key}`` stores the request body, with the TTL in the
    ``X-Cache-TTL-Hours`` header.  Transport errors and 5xx responses are
    retried with exponential back-off via :mod:`tenacity`.

    Args:
        base_url: Service root URL.
        token: Optional bearer token.
        timeout: Per-request timeout in seconds.
        max_attempts: Total tries per operation (>= 1).
        transport: Optional :class:`httpx.AsyncBaseTransport` (tests pass
            :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = _DEFAULT_HTTP_TIMEOUT,
        max_attempts: int = _DEFAULT_HTTP_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("HttpCacheService requires a non-empty base_url.")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}.")
        headers = {"User-Agent": "capbot/0.1"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._max_attempts = max_attempts
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def get(self, key: str) -> bytes | None:
        response = await self._with_retry("get", lambda: self._http.get(f"/{key}"))
        if response.status_code == 404:
            return None
        return response.content

    async def put(self, key: str, data: bytes, ttl_hours: int) -> None:
        await self._with_retry(
            "put",
            lambda: self._http.put(
                f"/{key}",
                content=data,
                headers={
                    "Content-Type": "application/json",
                    "X-Cache-TTL-Hours": str(ttl_hours),
                },
            ),
        )

    async def _with_retry(
        self, operation: str, call: Callable[[], Awaitable[httpx.Response]]
    ) -> httpx.Response:
        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Cache %s attempt %d/%d failed (%s); retrying.",
                operation,
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
            )

        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=0.5, max=2.0),
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((httpx.TransportError, _RetryableCacheError)),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    response = await call()
                    if response.status_code in _RETRYABLE_STATUS:
                        raise _RetryableCacheError(operation, f"HTTP {response.status_code}")
        except httpx.HTTPError as exc:
            raise CacheServiceError(operation, str(exc) or type(exc).__name__) from exc
        except _RetryableCacheError as exc:
            raise CacheServiceError(operation, "server error persisted after retries") from exc

        if response.status_code >= 400 and not (operation == "get" and response.status_code == 404):
            raise CacheServiceError(operation, f"HTTP {response.status_code}")
        return response


# ---------------------------------------------------------------------------
# Mirrored store
# ---------------------------------------------------------------------------


class MirroredStateStore(StateStore):
    """Local file store mirrored to an external :class:`CacheService`.

    :meth:`load` and :meth:`save` only ever touch the local file, so the
    attempts never wait on the network.  :meth:`restore` and :meth:`flush`
    are the only cache round-trips; each is bounded by
    ``config.io_budget_s``.

    Args:
        primary: The local file store (authoritative within a run).
        cache: Cache service adapter.
        config: Key / TTL / mirroring parameters.
        clock: Epoch-seconds callable; override in tests.
    """

    def __init__(
        self,
        primary: FileStateStore,
        cache: CacheService,
        config: CacheConfig,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._primary = primary
        self._cache = cache
        self._config = config
        self._clock = clock or time.time
        self._dirty = False
        self._restored = False

    async def close(self) -> None:
        await self._cache.close()

    @property
    def primary(self) -> FileStateStore:
        return self._primary

    @property
    def ttl_hours(self) -> int:
        return get_dynamic_ttl_hours(self._config)

    def load(self) -> State:
        return self._primary.load()

    def save(self, state: State) -> None:
        self._primary.save(state)
        self._dirty = True

    async def restore(self) -> None:
        """Seed the local file from the cache when it is missing.

        Runs at most once per store, whatever the outcome; a miss, an error
        or the budget running out all leave the local state empty.
        """
        if self._restored:
            return
        self._restored = True
        if not self._config.mirror_enabled or self._primary.exists():
            return
        try:
            restored = await asyncio.wait_for(self._fetch(), timeout=self._config.io_budget_s)
        except TimeoutError:
            logger.warning(
                "Cache restore exceeded %.1fs; continuing without cached state.",
                self._config.io_budget_s,
                extra={"event": events.CACHE_ERROR},
            )
            return
        if restored is None:
            return
        try:
            self._primary.save(restored)
        except StorageError:
            logger.warning("Could not seed local state from cache.", exc_info=True)

    async def flush(self) -> None:
        """Mirror the current local state to the cache service (best-effort)."""
        if not self._config.mirror_enabled or not self._dirty:
            return
        state = self._primary.load()
        now = int(self._clock())
        key = generate_cache_key(self._config, datetime.fromtimestamp(now, tz=UTC).date())
        entry = CacheEntry(
            key=key,
            written_at=now,
            ttl_hours=self.ttl_hours,
            payload=state.model_dump(mode="json"),
        )
        try:
            await asyncio.wait_for(
                self._cache.put(key, entry.model_dump_json().encode("utf-8"), entry.ttl_hours),
                timeout=self._config.io_budget_s,
            )
        except TimeoutError:
            logger.warning(
                "Cache write exceeded %.1fs; state not mirrored this run.",
                self._config.io_budget_s,
                extra={"event": events.CACHE_ERROR},
            )
            return
        except CacheServiceError as exc:
            logger.warning(
                "%s; state not mirrored this run.", exc, extra={"event": events.CACHE_ERROR}
            )
            return
        self._dirty = False
        logger.info("State mirrored to cache key %s (ttl=%dh).", key, entry.ttl_hours)

    async def _fetch(self) -> State | None:
        now = self._clock()
        today = datetime.fromtimestamp(now, tz=UTC).date()
        for key in restore_keys(self._config, today):
            try:
                raw = await self._cache.get(key)
            except CacheServiceError as exc:
                logger.warning(
                    "%s; continuing without cached state.",
                    exc,
                    extra={"event": events.CACHE_ERROR},
                )
                return None
            if raw is None:
                continue
            try:
                entry = CacheEntry.model_validate_json(raw)
                if entry.expired(now):
                    logger.info("Cache entry %s expired (ttl=%dh); ignoring.", key, entry.ttl_hours)
                    continue
                state = parse_state(json.dumps(entry.payload), key)
            except (ValidationError, StateCorruptError) as exc:
                logger.warning(
                    "Cache entry %s unusable (%s); ignoring.",
                    key,
                    exc,
                    extra={"event": events.STATE_CORRUPT},
                )
                continue
            logger.info(
                "Restored state from cache key %s.", key, extra={"event": events.CACHE_RESTORED}
            )
            return state
        return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_state_store(settings: Settings) -> StateStore:
    """Return the state store for *settings*.

    A plain :class:`FileStateStore` unless mirroring is active
    (``CACHE_ENABLED`` on a ``GITHUB_ACTIONS`` runner); then the file is
    mirrored to the HTTP cache service, or to a cache directory when no
    service URL is configured.
    """
    primary = FileStateStore(settings.state_path)
    cache_config = settings.to_cache_config()
    if not cache_config.mirror_enabled:
        return primary

    cache: CacheService
    if settings.cache_service_url:
        cache = HttpCacheService(settings.cache_service_url, settings.cache_service_token)
    else:
        cache = DirectoryCacheService(Path(settings.cache_dir))
    logger.debug("State mirroring enabled via %s.", type(cache).__name__)
    return MirroredStateStore(primary, cache, cache_config)
