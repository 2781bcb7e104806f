"""
Command surface over the cache, the session and change detection.

`PortalContext` holds every collaborator explicitly; there is no global
state, so tests can build a context around in-memory stores and a fake
Fetcher. Every command runs under the configured invocation timeout.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Dict, List, Optional, TypeVar

import structlog

from portal.errors import AuthFatal, FetchError, InvocationTimeout
from portal.fetcher import Credentials, Fetcher, RetryPolicy, call_with_retry, with_timeout
from portal.lazy import LazyValue
from portal.models import CompletenessLevel, EntityKey, EntityKind, Language, Session
from portal.session import SessionStore
from storage.entity_cache import CacheStore, EntityCache, FileCacheStore
from utilities.config import PortalConfig
from utilities.logger import PortalLogger
from .alerting import AlertManager, Notifier, summarize_counts
from .change_detector import ChangeDetector
from .models import AlertConfig, ChangeEvent, DetectionResult
from .periods import PeriodWatcher
from .snapshots import SnapshotStore

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class CollectionLoader:
    """Fetches whole collections for change detection and merges them into the cache."""

    def __init__(
        self,
        fetcher: Fetcher,
        sessions: SessionStore,
        cache: EntityCache,
        credentials: Credentials,
        retry_policy: RetryPolicy,
        request_timeout: Optional[float] = None
    ):
        self.fetcher = fetcher
        self.sessions = sessions
        self.cache = cache
        self.credentials = credentials
        self.retry_policy = retry_policy
        self.request_timeout = request_timeout
        self.portal_logger = PortalLogger("collection_loader")

    async def __call__(
        self,
        kind: EntityKind,
        language: Language,
        level: CompletenessLevel
    ) -> List[LazyValue]:
        async def attempt(session):
            return await call_with_retry(
                lambda: with_timeout(
                    self.fetcher.fetch_collection(kind, language, level, session),
                    self.request_timeout
                ),
                self.retry_policy,
                description=f"fetch {kind.value} collection",
                portal_logger=self.portal_logger,
            )

        raws = await self.sessions.run_authenticated(attempt, self.credentials)
        values = [LazyValue.from_raw(raw) for raw in raws]

        for value in values:
            await self.cache.put(value)

        return values


@dataclass
class PortalContext:
    """Everything a command needs, passed explicitly."""
    config: PortalConfig
    credentials: Credentials
    fetcher: Fetcher
    sessions: SessionStore
    cache: EntityCache
    snapshots: SnapshotStore
    detector: ChangeDetector
    alerts: AlertManager
    periods: PeriodWatcher

    @classmethod
    def build(
        cls,
        config: PortalConfig,
        fetcher: Fetcher,
        cache_store: Optional[CacheStore] = None,
        notifier: Optional[Notifier] = None
    ) -> "PortalContext":
        """
        Wire up the collaborators from `config`.

        Raises:
            ConfigError: if credentials are not configured
        """
        credentials = config.credentials()
        retry_policy = RetryPolicy.from_config(config)

        sessions = SessionStore(config.session_file, fetcher, idle_minutes=config.session_idle_minutes)
        cache = EntityCache(
            cache_store or FileCacheStore(config.cache_dir),
            fetcher,
            sessions,
            credentials,
            retry_policy=retry_policy,
            request_timeout=config.request_timeout,
        )
        snapshots = SnapshotStore(config.snapshot_dir)
        loader = CollectionLoader(
            fetcher, sessions, cache, credentials, retry_policy, request_timeout=config.request_timeout
        )

        return cls(
            config=config,
            credentials=credentials,
            fetcher=fetcher,
            sessions=sessions,
            cache=cache,
            snapshots=snapshots,
            detector=ChangeDetector(snapshots, loader),
            alerts=AlertManager(
                AlertConfig.from_config(config),
                notifier=notifier,
                history_file=config.alert_history_file,
            ),
            periods=PeriodWatcher(config.periods_file),
        )


class PortalService:
    """The commands a CLI layer calls into."""

    def __init__(self, context: PortalContext):
        self.context = context
        self.logger = logger.bind(component="portal_service")

    async def get_entity(
        self,
        kind: EntityKind,
        entity_id: str,
        language: Optional[Language] = None,
        level: CompletenessLevel = CompletenessLevel.SUMMARY
    ) -> LazyValue:
        """
        Return one entity at `level` or better, from the cache where possible.

        Raises:
            FetchError: if the entity is not cached and cannot be fetched
            AuthFatal: if no session can be established
            InvocationTimeout: if the command runs out of time
        """
        key = EntityKey(kind=kind, entity_id=entity_id, language=language or self.context.config.language)
        return await self._bounded(self.context.cache.get(key, level), "get_entity")

    async def refresh_session(self) -> Session:
        """Drop the current session and log in again."""
        return await self._bounded(
            self.context.sessions.refresh(self.context.credentials),
            "refresh_session"
        )

    async def detect_changes(
        self,
        kind: EntityKind,
        language: Optional[Language] = None
    ) -> List[ChangeEvent]:
        """Diff the current collection of `kind` against its baseline."""
        result = await self._bounded(self._detect(kind, language), "detect_changes")
        return result.events

    async def run_cycle(
        self,
        kinds: Optional[List[EntityKind]] = None
    ) -> Dict[EntityKind, DetectionResult]:
        """
        One notifier run: detect changes for every tracked kind, announce
        started registration periods and alert on the combined events.

        A kind whose fetch fails is reported as unsuccessful and the cycle
        continues with the next kind. AuthFatal ends the cycle.

        New baselines and announced periods are only stored after the
        alert was handed off; if that fails NotificationError is raised and
        the next cycle reports the same changes again.
        """
        return await self._bounded(self._cycle(kinds), "run_cycle")

    async def _cycle(self, kinds: Optional[List[EntityKind]]) -> Dict[EntityKind, DetectionResult]:
        config = self.context.config
        results: Dict[EntityKind, DetectionResult] = {}
        events: List[ChangeEvent] = []
        started: List[ChangeEvent] = []

        for kind in kinds or config.tracked_kinds:
            try:
                result = await self._detect(kind, config.language, commit=False)
            except AuthFatal:
                raise
            except FetchError as e:
                self.logger.error("Change detection failed", kind=kind.value, error=str(e))
                results[kind] = DetectionResult(
                    detection_id="",
                    kind=kind,
                    language=config.language,
                    success=False,
                    errors=[f"{type(e).__name__}: {e}"],
                )
                continue

            if kind == EntityKind.REGISTRATION_PERIOD:
                started = self.context.periods.check(result.snapshot.entities, remember=False)
                result = result.with_events(started)

            results[kind] = result
            events.extend(result.events)

        self.logger.info(
            "Notify cycle completed",
            kinds=[k.value for k in results],
            changes=summarize_counts(events),
            failed=[k.value for k, r in results.items() if not r.success]
        )

        # Baselines only move on once the changes have been handed off
        await self.context.alerts.process_changes(events)

        for result in results.values():
            self.context.detector.commit(result)
        self.context.periods.remember_events(started)
        return results

    async def _detect(
        self,
        kind: EntityKind,
        language: Optional[Language],
        commit: bool = True
    ) -> DetectionResult:
        config = self.context.config
        return await self.context.detector.detect_changes(
            kind,
            language or config.language,
            config.snapshot_level,
            commit=commit,
        )

    async def _bounded(self, awaitable: Awaitable[T], command: str) -> T:
        timeout = self.context.config.invocation_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            self.logger.error("Command timed out", command=command, timeout_seconds=timeout)
            raise InvocationTimeout(f"{command} did not finish within {timeout}s") from e
