"""
Pytest configuration and shared fixtures.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
from pydantic import SecretStr

from portal.errors import AuthExpired, NotFound
from portal.fetcher import Credentials, RetryPolicy
from portal.lazy import LazyValue
from portal.models import (
    CompletenessLevel,
    EntityKey,
    EntityKind,
    Language,
    RawEntityData,
    Session,
    fields_for,
)
from portal.session import SessionStore
from storage.entity_cache import EntityCache, MemoryCacheStore
from utilities.config import PortalConfig


class FakeFetcher:
    """
    Scripted in-memory Fetcher.

    Entities are registered with all their fields; fetch() returns the
    fields of the requested level (or only the requested fields when
    partial retrieval is enabled).
    """

    def __init__(self, supports_partial: bool = False):
        self.supports_partial = supports_partial
        self.entities: Dict[EntityKey, Dict[str, Any]] = {}
        self.collections: Dict[Tuple[EntityKind, Language], List[Tuple[str, Dict[str, Any]]]] = {}

        self.fetch_calls: List[Tuple[EntityKey, CompletenessLevel, Optional[frozenset]]] = []
        self.collection_calls: List[Tuple[EntityKind, Language, CompletenessLevel]] = []
        self.login_calls = 0

        self.fail_with: List[Exception] = []
        self.login_errors: List[Exception] = []
        self.reject_remaining = 0
        self.delay = 0.0
        self.drop_fields: List[str] = []

        self.valid_tokens = set()
        self._counter = 0

    def add(self, kind: EntityKind, entity_id: str, language: Language = Language.GERMAN, **fields) -> EntityKey:
        key = EntityKey(kind=kind, entity_id=entity_id, language=language)
        self.entities[key] = fields
        return key

    def set_collection(
        self,
        kind: EntityKind,
        items: List[Tuple[str, Dict[str, Any]]],
        language: Language = Language.GERMAN
    ) -> None:
        self.collections[(kind, language)] = items

    def issue_session(self, username: str = "student") -> Session:
        self._counter += 1
        token = str(100000000000000 + self._counter)
        self.valid_tokens.add(token)
        return Session(token=token, cookie=f"cookie-{token}", username=username)

    def expire_sessions(self) -> None:
        self.valid_tokens.clear()

    async def login(self, credentials: Credentials) -> Session:
        self.login_calls += 1
        if self.login_errors:
            raise self.login_errors.pop(0)
        return self.issue_session(credentials.username)

    def _check(self, session: Session) -> None:
        if self.reject_remaining > 0:
            self.reject_remaining -= 1
            raise AuthExpired("Timeout")
        if session.token not in self.valid_tokens:
            raise AuthExpired("Zugang verweigert")
        if self.fail_with:
            raise self.fail_with.pop(0)

    async def fetch(self, key, level, session, fields=None) -> RawEntityData:
        self.fetch_calls.append((key, level, fields))
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check(session)

        data = self.entities.get(key)
        if data is None:
            raise NotFound(str(key))

        if fields is not None and self.supports_partial:
            wanted = fields
        else:
            wanted = fields_for(key.kind, level)
        payload = {name: data[name] for name in wanted if name in data and name not in self.drop_fields}
        return RawEntityData(key=key, level=level, fields=payload)

    async def fetch_collection(self, kind, language, level, session) -> List[RawEntityData]:
        self.collection_calls.append((kind, language, level))
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check(session)

        names = fields_for(kind, level)
        return [
            RawEntityData(
                key=EntityKey(kind=kind, entity_id=entity_id, language=language),
                level=level,
                fields={k: v for k, v in data.items() if k in names},
            )
            for entity_id, data in self.collections.get((kind, language), [])
        ]


def make_value(
    kind: EntityKind,
    entity_id: str,
    level: CompletenessLevel = CompletenessLevel.SUMMARY,
    language: Language = Language.GERMAN,
    **fields
) -> LazyValue:
    """Build a LazyValue without going through a fetch."""
    return LazyValue(
        key=EntityKey(kind=kind, entity_id=entity_id, language=language),
        level=level,
        fields=fields,
    )


@pytest.fixture
def value_factory():
    return make_value


@pytest.fixture
def fake_fetcher():
    """Create a scripted fetcher for testing."""
    return FakeFetcher()


@pytest.fixture
def partial_fetcher():
    """Create a scripted fetcher that honours partial field requests."""
    return FakeFetcher(supports_partial=True)


@pytest.fixture
def credentials():
    return Credentials(username="student", password=SecretStr("secret"))


@pytest.fixture
def session_store(tmp_path, fake_fetcher):
    """Create a session store backed by a temporary file."""
    return SessionStore(tmp_path / "session.json", fake_fetcher, idle_minutes=30)


@pytest.fixture
def retry_policy():
    return RetryPolicy(attempts=2, delay=0, backoff=1)


@pytest.fixture
def entity_cache(fake_fetcher, session_store, credentials, retry_policy):
    """Create an entity cache over an in-memory store."""
    return EntityCache(
        MemoryCacheStore(),
        fake_fetcher,
        session_store,
        credentials,
        retry_policy=retry_policy,
        request_timeout=5,
    )


@pytest.fixture
def portal_config(tmp_path):
    """Create a configuration rooted in a temporary state directory."""
    return PortalConfig(
        state_dir=tmp_path / "state",
        username="student",
        password="secret",
        retry_attempts=1,
        retry_delay=0,
        rate_limit_per_second=10,
    )


@pytest.fixture
def exam_key():
    return EntityKey(kind=EntityKind.EXAM_RESULT, entity_id="64-010", language=Language.GERMAN)


@pytest.fixture
def sample_exam_fields():
    """Every field of one exam result."""
    return {
        "number": "64-010",
        "name": "Mathematik I",
        "status": "bestanden",
        "grade": "2,3",
        "credits": 9,
        "semester": "WiSe 23/24",
        "grade_stats": {"1,0": 3, "2,3": 12, "5,0": 4},
    }
