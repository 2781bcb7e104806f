"""
Persistent portal session handling.

A session survives between cron invocations in a small JSON file so that
most runs skip the login round trip. Sessions idle for longer than the
portal keeps them alive are treated as absent.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar, Union

import structlog
from pydantic import ValidationError

from storage.files import atomic_write_json, read_json
from .errors import AuthError, AuthExpired, AuthFatal, CacheCorrupt
from .fetcher import Credentials, Fetcher
from .models import Session

T = TypeVar("T")

SESSION_FILE_MODE = 0o600


class SessionStore:
    """
    Loads, saves and refreshes the portal session.

    Refreshing is serialized: while one coroutine logs in again, every other
    coroutine asking for a session waits for the outcome instead of
    starting its own login.
    """

    def __init__(self, path: Union[str, Path], fetcher: Fetcher, idle_minutes: int = 30):
        self.path = Path(path)
        self.fetcher = fetcher
        self.idle_timeout = timedelta(minutes=idle_minutes)
        self.logger = structlog.get_logger(__name__).bind(component="session_store")
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[Session]:
        return self._session

    def load(self) -> Optional[Session]:
        """Read the persisted session; None if absent, malformed or idle too long."""
        try:
            data = read_json(self.path)
        except FileNotFoundError:
            return None
        except CacheCorrupt as e:
            self.logger.warning("Ignoring unreadable session file", path=str(self.path), error=e.reason)
            return None

        try:
            session = Session.model_validate(data)
        except ValidationError as e:
            self.logger.warning("Ignoring malformed session file", path=str(self.path), error=str(e))
            return None

        if not session.valid:
            return None

        last_used = session.last_used or session.issued_at
        if datetime.now(timezone.utc) - last_used > self.idle_timeout:
            self.logger.info(
                "Persisted session expired",
                last_used=last_used.isoformat(),
                idle_minutes=self.idle_timeout.total_seconds() / 60
            )
            return None

        return session

    def save(self, session: Session) -> None:
        """Persist `session` atomically, readable by the owner only."""
        atomic_write_json(self.path, session.model_dump(mode="json"), mode=SESSION_FILE_MODE)
        self._session = session

    def invalidate(self) -> None:
        """Forget the current session in memory and on disk."""
        self._session = None
        self.path.unlink(missing_ok=True)
        self.logger.info("Session invalidated")

    def touch(self, session: Session) -> None:
        """Record that `session` was just used successfully."""
        if self._session is None or self._session.token != session.token:
            # Replaced or invalidated meanwhile
            return
        self.save(session.model_copy(update={"last_used": datetime.now(timezone.utc)}))

    async def ensure_valid(self, credentials: Credentials) -> Session:
        """
        Return a usable session, logging in only when none is available.

        Raises:
            AuthFatal: if a login is needed and the portal refuses it
        """
        if self._session is not None:
            return self._session

        async with self._lock:
            if self._session is not None:
                return self._session

            session = self.load()
            if session is not None and session.username == credentials.username:
                self._session = session
                self.logger.info("Reusing persisted session", username=session.username)
                return session

            return await self._login(credentials)

    async def refresh(self, credentials: Credentials, rejected: Optional[Session] = None) -> Session:
        """
        Replace a rejected session with a fresh login.

        If `rejected` has already been replaced by a concurrent refresh the
        replacement is returned without logging in again.
        """
        async with self._lock:
            current = self._session
            if rejected is not None and current is not None and current.token != rejected.token:
                return current

            self.invalidate()
            return await self._login(credentials)

    async def run_authenticated(
        self,
        operation: Callable[[Session], Awaitable[T]],
        credentials: Credentials
    ) -> T:
        """
        Run `operation` with a valid session.

        A rejected session gets exactly one re-login and one more attempt;
        a second rejection raises AuthFatal.
        """
        session = await self.ensure_valid(credentials)
        try:
            result = await operation(session)
        except AuthExpired:
            self.logger.warning("Session rejected by portal, logging in again", username=credentials.username)
            session = await self.refresh(credentials, rejected=session)
            try:
                result = await operation(session)
            except AuthExpired as e:
                self.invalidate()
                raise AuthFatal("Portal rejected a freshly issued session") from e

        self.touch(session)
        return result

    async def _login(self, credentials: Credentials) -> Session:
        try:
            session = await self.fetcher.login(credentials)
        except AuthFatal:
            raise
        except AuthError as e:
            self.logger.error("Login failed", username=credentials.username, error=str(e))
            raise AuthFatal(str(e)) from e

        self.save(session)
        self.logger.info("Logged in", username=session.username)
        return session
