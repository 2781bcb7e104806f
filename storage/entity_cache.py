"""
Durable entity cache.

Entries are keyed by (kind, id, language) and hold a LazyValue plus the
time it was last written. Nothing expires on its own; callers refresh or
invalidate explicitly. A fetch failure never touches the stored entry.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

from portal.errors import AuthFatal, CacheCorrupt, FetchError
from portal.fetcher import Credentials, Fetcher, RetryPolicy, call_with_retry, with_timeout
from portal.lazy import LazyValue
from portal.models import CompletenessLevel, EntityKey, RawEntityData
from portal.session import SessionStore
from utilities.logger import PortalLogger
from .files import atomic_write_json, read_json

CACHE_SCHEMA_VERSION = 1


class CacheEntry(BaseModel):
    """One persisted cache record."""
    schema_version: int = Field(default=CACHE_SCHEMA_VERSION)
    key: EntityKey
    value: LazyValue
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CacheStore(Protocol):
    def read(self, key: EntityKey) -> Optional[CacheEntry]:
        ...

    def write(self, entry: CacheEntry) -> None:
        ...

    def delete(self, key: EntityKey) -> None:
        ...

    def keys(self) -> List[EntityKey]:
        ...


def _entry_from_payload(data, key: EntityKey, path=None) -> CacheEntry:
    version = data.get("schema_version") if isinstance(data, dict) else None
    if version != CACHE_SCHEMA_VERSION:
        raise CacheCorrupt(path, f"schema version {version!r}, expected {CACHE_SCHEMA_VERSION}")
    try:
        entry = CacheEntry.model_validate(data)
    except ValidationError as e:
        raise CacheCorrupt(path, f"invalid cache entry: {e.error_count()} validation errors") from e
    if entry.key != key or entry.value.key != key:
        raise CacheCorrupt(path, f"entry belongs to {entry.key}, not {key}")
    return entry


class FileCacheStore:
    """One JSON file per key below `directory/<kind>/`."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: EntityKey) -> Path:
        return self.directory / key.kind.value / f"{key.storage_name()}.json"

    def read(self, key: EntityKey) -> Optional[CacheEntry]:
        """
        Load the entry for `key`.

        Raises:
            CacheCorrupt: unreadable file, invalid payload or foreign schema version
        """
        path = self._path(key)
        try:
            data = read_json(path)
        except FileNotFoundError:
            return None
        return _entry_from_payload(data, key, path)

    def write(self, entry: CacheEntry) -> None:
        atomic_write_json(self._path(entry.key), entry.model_dump(mode="json"))

    def delete(self, key: EntityKey) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> List[EntityKey]:
        keys = []
        for path in sorted(self.directory.glob("*/*.json")):
            try:
                data = read_json(path)
                keys.append(EntityKey.model_validate(data["key"]))
            except (CacheCorrupt, KeyError, TypeError, ValidationError):
                continue
        return keys


class MemoryCacheStore:
    """In-process store with the same serialization behaviour as FileCacheStore."""

    def __init__(self):
        self._entries: Dict[EntityKey, dict] = {}

    def read(self, key: EntityKey) -> Optional[CacheEntry]:
        data = self._entries.get(key)
        if data is None:
            return None
        return _entry_from_payload(data, key)

    def write(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry.model_dump(mode="json")

    def delete(self, key: EntityKey) -> None:
        self._entries.pop(key, None)

    def keys(self) -> List[EntityKey]:
        return list(self._entries)


@dataclass
class CacheLookup:
    """Result of a cache lookup; `stale` marks a fallback after a failed fetch."""
    value: LazyValue
    stale: bool = False
    warning: Optional[str] = None


class EntityCache:
    """
    Cache of portal entities in front of a Fetcher.

    Lookups that the cache cannot satisfy fetch exactly the requested level
    and merge the result into the stored value. Each key has its own lock so
    concurrent lookups of one key inside an invocation fetch only once.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        sessions: SessionStore,
        credentials: Credentials,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: Optional[float] = None
    ):
        self.store = store
        self.fetcher = fetcher
        self.sessions = sessions
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.portal_logger = PortalLogger("entity_cache")
        self.logger = structlog.get_logger(__name__).bind(component="entity_cache")
        self._locks: Dict[EntityKey, asyncio.Lock] = {}

    @staticmethod
    def merge(existing: Optional[LazyValue], incoming: LazyValue) -> LazyValue:
        """Field-wise union; fields in `incoming` win."""
        if existing is None:
            return incoming
        return existing.merge(incoming)

    def peek(self, key: EntityKey) -> Optional[LazyValue]:
        """Cached value without any network access."""
        entry = self._read(key)
        return entry.value if entry else None

    def keys(self) -> List[EntityKey]:
        return self.store.keys()

    async def get(self, key: EntityKey, min_level: CompletenessLevel) -> LazyValue:
        """
        Return `key` at `min_level` or better.

        Raises:
            FetchError: if a fetch is needed, fails and nothing is cached
            AuthFatal: if the portal session cannot be re-established
        """
        result = await self.lookup(key, min_level)
        return result.value

    async def lookup(self, key: EntityKey, min_level: CompletenessLevel) -> CacheLookup:
        """Like get() but reports whether a stale cached value was served."""
        async with self._lock_for(key):
            cached = self.peek(key)
            if cached is not None and cached.level >= min_level:
                self.portal_logger.log_cache_hit(key, cached.level)
                return CacheLookup(value=cached)

            self.portal_logger.log_cache_miss(
                key, cached.level if cached else CompletenessLevel.UNLOADED, min_level
            )
            base = cached or LazyValue.unloaded(key)
            return await self._load(key, base, min_level, fallback=cached)

    async def refresh(self, key: EntityKey, level: CompletenessLevel) -> CacheLookup:
        """
        Refetch `key` at `level` from scratch and replace the stored entry.

        The old entry stays in place (and is served as stale) if the fetch fails.
        """
        async with self._lock_for(key):
            cached = self.peek(key)
            self.logger.info("Refreshing entity", key=str(key), level=level.name)
            return await self._load(key, LazyValue.unloaded(key), level, fallback=cached)

    def invalidate(self, key: EntityKey) -> None:
        """Drop the entry for `key`; the next lookup starts from UNLOADED."""
        self.store.delete(key)
        self.logger.info("Cache entry invalidated", key=str(key))

    async def put(self, value: LazyValue) -> LazyValue:
        """Merge a value fetched elsewhere (e.g. from a listing page) into the cache."""
        async with self._lock_for(value.key):
            merged = self.merge(self.peek(value.key), value)
            self._write(merged)
            return merged

    def _lock_for(self, key: EntityKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _read(self, key: EntityKey) -> Optional[CacheEntry]:
        try:
            return self.store.read(key)
        except CacheCorrupt as e:
            self.logger.warning("Dropping corrupt cache entry", key=str(key), path=e.path, reason=e.reason)
            self.store.delete(key)
            return None

    def _write(self, value: LazyValue) -> None:
        self.store.write(CacheEntry(key=value.key, value=value))

    async def _load(
        self,
        key: EntityKey,
        base: LazyValue,
        target: CompletenessLevel,
        fallback: Optional[LazyValue]
    ) -> CacheLookup:
        async def fetch_fn(level, fields):
            return await self._fetch(key, level, fields)

        try:
            value = await base.escalate(target, fetch_fn, partial=self.fetcher.supports_partial)
        except AuthFatal:
            raise
        except FetchError as e:
            if fallback is None or fallback.level == CompletenessLevel.UNLOADED:
                self.portal_logger.log_error(str(e), key=key)
                raise
            self.portal_logger.log_stale_fallback(key, fallback.level, target, str(e))
            warning = (
                f"{key}: serving cached {fallback.level.name} value, "
                f"fetching {target.name} failed: {e}"
            )
            return CacheLookup(value=fallback, stale=True, warning=warning)

        self._write(value)
        return CacheLookup(value=value)

    async def _fetch(self, key: EntityKey, level: CompletenessLevel, fields) -> RawEntityData:
        self.portal_logger.log_fetch(key, level, fields)

        async def attempt(session):
            return await call_with_retry(
                lambda: with_timeout(
                    self.fetcher.fetch(key, level, session, fields=fields),
                    self.request_timeout
                ),
                self.retry_policy,
                description=f"fetch {key}",
                portal_logger=self.portal_logger,
            )

        return await self.sessions.run_authenticated(attempt, self.credentials)
