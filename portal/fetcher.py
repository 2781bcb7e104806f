"""
Fetcher protocol and the retry/timeout policy wrapped around it.

The Fetcher is the only component that talks to the portal. Everything in
this module is transport-agnostic; see http_fetcher for the httpx adapter.
"""

import asyncio
from typing import Awaitable, Callable, FrozenSet, List, Optional, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, Field, SecretStr

from utilities.logger import PortalLogger
from .errors import FetchTimeout, NetworkError
from .models import CompletenessLevel, EntityKey, EntityKind, Language, RawEntityData, Session

T = TypeVar("T")

RETRYABLE_ERRORS = (NetworkError, FetchTimeout)


class Credentials(BaseModel):
    """Portal login credentials."""
    username: str = Field(..., min_length=1)
    password: SecretStr


@runtime_checkable
class Fetcher(Protocol):
    """Network access to the portal."""

    # True when fetch() honours the `fields` argument
    supports_partial: bool

    async def login(self, credentials: Credentials) -> Session:
        ...

    async def fetch(
        self,
        key: EntityKey,
        level: CompletenessLevel,
        session: Session,
        fields: Optional[FrozenSet[str]] = None
    ) -> RawEntityData:
        ...

    async def fetch_collection(
        self,
        kind: EntityKind,
        language: Language,
        level: CompletenessLevel,
        session: Session
    ) -> List[RawEntityData]:
        ...


class RetryPolicy(BaseModel):
    """Bounded retries with exponential backoff."""
    attempts: int = Field(default=2, ge=0, description="Retries after the first try")
    delay: float = Field(default=1.0, ge=0)
    backoff: float = Field(default=2.0, ge=1)

    def delay_for(self, attempt: int) -> float:
        return self.delay * (self.backoff ** attempt)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(attempts=config.retry_attempts, delay=config.retry_delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "request",
    portal_logger: Optional[PortalLogger] = None
) -> T:
    """
    Run `operation` and retry it on transient failures.

    Only NetworkError and FetchTimeout are retried; every other exception
    (including authentication failures) propagates on the first occurrence.
    """
    portal_logger = portal_logger or PortalLogger("fetcher")
    last_exception = None

    for attempt in range(policy.attempts + 1):
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            last_exception = e

            if attempt < policy.attempts:
                delay = policy.delay_for(attempt)
                portal_logger.log_retry(description, attempt + 1, policy.attempts, delay, str(e))
                await asyncio.sleep(delay)
            else:
                portal_logger.log_error(
                    f"{description} failed after {policy.attempts} retries: {e}",
                    retry_count=policy.attempts
                )

    raise last_exception


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float]) -> T:
    """Await with a per-request timeout, raising FetchTimeout when it expires."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise FetchTimeout(f"request exceeded {seconds}s") from e
