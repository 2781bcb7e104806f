"""
httpx-based Fetcher for the STINE portal.

Every portal page is served by one dispatcher script and selected by a
program name (PRGNAME) plus comma-separated arguments, the first of which
is always the session number. Turning pages into fields is the job of an
injected PageParser; this module only handles transport, login, language
switching and the portal's error pages.
"""

import importlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Sequence, Tuple

import httpx
import structlog
from asyncio_throttle import Throttler
from bs4 import BeautifulSoup

from utilities.config import PortalConfig
from utilities.logger import PortalLogger
from .errors import (
    AccessDenied,
    AuthExpired,
    ConfigError,
    FetchError,
    FetchTimeout,
    NetworkError,
    NotFound,
    ParseError,
    TemporarilyLocked,
    WrongCredentials,
)
from .fetcher import Credentials
from .models import CompletenessLevel, EntityKey, EntityKind, Language, RawEntityData, Session

logger = structlog.get_logger(__name__)

SESSION_NUMBER_RE = re.compile(r"-N(\d+)")
BLOCKED_MINUTES_RE = re.compile(r"(\d+) minutes")

LANGUAGE_ARGUMENTS = {
    Language.GERMAN: "-N001",
    Language.ENGLISH: "-N002",
}

LOGIN_FORM = {
    "APPNAME": "CampusNet",
    "PRGNAME": "LOGINCHECK",
    "ARGUMENTS": "clino,usrname,pass,menuno,menu_type,browser,platform",
    "clino": "000000000000001",
    "menuno": "000000",
    "menu_type": "classic",
    "browser": "",
    "platform": "",
}


@dataclass(frozen=True)
class PageRequest:
    """A dispatcher call without the leading session argument."""
    prgname: str
    args: Sequence[str] = field(default_factory=tuple)


class PageParser(Protocol):
    """Turns portal pages into entity fields."""

    def request_for(
        self,
        key: EntityKey,
        level: CompletenessLevel,
        fields: Optional[FrozenSet[str]]
    ) -> PageRequest:
        ...

    def parse_entity(
        self,
        key: EntityKey,
        level: CompletenessLevel,
        html: str,
        fields: Optional[FrozenSet[str]]
    ) -> Dict[str, Any]:
        ...

    def request_for_collection(self, kind: EntityKind, level: CompletenessLevel) -> PageRequest:
        ...

    def parse_collection(
        self,
        kind: EntityKind,
        language: Language,
        level: CompletenessLevel,
        html: str
    ) -> List[Tuple[str, Dict[str, Any]]]:
        ...


def detect_auth_error(html: str, during_login: bool = False) -> None:
    """
    Raise if `html` is one of the portal's authentication error pages.

    During login the specific AuthError is raised; for any other request a
    rejection means the session is no longer accepted (AuthExpired).
    """
    soup = BeautifulSoup(html, "html.parser")

    for h1 in soup.find_all("h1"):
        heading = h1.get_text(" ", strip=True)

        if heading.startswith("Kennung oder Kennwort falsch"):
            if not during_login:
                raise AuthExpired(heading)
            if "Zugang verweigert" in heading:
                match = BLOCKED_MINUTES_RE.search(soup.get_text(" "))
                if match:
                    raise AccessDenied(int(match.group(1)))
            raise WrongCredentials()

        if heading == "Zugang verweigert":
            if during_login:
                raise AccessDenied()
            raise AuthExpired("Access denied for current session")

        if heading == "Anmeldung zur Zeit nicht möglich":
            if during_login:
                raise TemporarilyLocked()
            raise AuthExpired(heading)

        if heading.rstrip("!") == "Timeout":
            raise AuthExpired("Session timed out on the portal")


def resolve_parser(path: Optional[str]) -> PageParser:
    """
    Import a PageParser from a `module:attribute` path.

    Classes are instantiated without arguments; any other object is
    returned as is.

    Raises:
        ConfigError: if the path is missing or cannot be imported
    """
    if not path:
        raise ConfigError("no page parser configured (STINE_PARSER=module:attribute)")
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigError(f"parser must look like module:attribute, got {path!r}")
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"cannot load parser {path!r}: {e}") from e
    return target() if isinstance(target, type) else target


class HttpPortalFetcher:
    """
    Fetcher talking to the portal over HTTP.

    Requests are throttled to the configured rate and share one AsyncClient;
    `transport` can be replaced (e.g. httpx.MockTransport) in tests.
    """

    def __init__(
        self,
        config: PortalConfig,
        parser: PageParser,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config
        self.parser = parser
        self.supports_partial = bool(getattr(parser, "supports_partial", False))
        self.portal_logger = PortalLogger("http_fetcher")

        rate = config.rate_limit_per_second
        burst = max(1, int(rate))
        self.throttler = Throttler(rate_limit=burst, period=burst / rate)

        # HTTP client configuration
        self.client_config = {
            "timeout": config.request_timeout,
            "headers": config.get_headers(),
            "follow_redirects": True,
            "limits": httpx.Limits(max_keepalive_connections=5, max_connections=10),
        }
        if transport is not None:
            self.client_config["transport"] = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._languages: Dict[str, Language] = {}

    async def __aenter__(self) -> "HttpPortalFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(**self.client_config)
        return self._client

    async def login(self, credentials: Credentials) -> Session:
        """
        Post the LOGINCHECK form and build a Session from the response.

        Raises:
            AuthError: wrong credentials, blocked or locked account
            ParseError: the portal answered without a session
        """
        form = dict(LOGIN_FORM)
        form["usrname"] = credentials.username
        form["pass"] = credentials.password.get_secret_value()

        response = await self._post(form)

        match = SESSION_NUMBER_RE.search(response.headers.get("refresh", ""))
        cookie = response.cookies.get("cnsc") or _cookie_from_header(response.headers.get("set-cookie", ""))

        if match is None or not cookie:
            detect_auth_error(response.text, during_login=True)
            raise ParseError("login response carried no session number or cnsc cookie")

        logger.info("Portal login succeeded", username=credentials.username)
        return Session(token=match.group(1), cookie=cookie, username=credentials.username)

    async def fetch(
        self,
        key: EntityKey,
        level: CompletenessLevel,
        session: Session,
        fields: Optional[FrozenSet[str]] = None
    ) -> RawEntityData:
        if not self.supports_partial:
            fields = None

        await self._ensure_language(session, key.language)
        html = await self._call(self.parser.request_for(key, level, fields), session)

        try:
            parsed = self.parser.parse_entity(key, level, html, fields)
            return RawEntityData(key=key, level=level, fields=parsed)
        except FetchError:
            raise
        except Exception as e:
            raise ParseError(f"could not parse {key} at {level.name}: {e}") from e

    async def fetch_collection(
        self,
        kind: EntityKind,
        language: Language,
        level: CompletenessLevel,
        session: Session
    ) -> List[RawEntityData]:
        await self._ensure_language(session, language)
        html = await self._call(self.parser.request_for_collection(kind, level), session)

        try:
            return [
                RawEntityData(
                    key=EntityKey(kind=kind, entity_id=entity_id, language=language),
                    level=level,
                    fields=parsed,
                )
                for entity_id, parsed in self.parser.parse_collection(kind, language, level, html)
            ]
        except FetchError:
            raise
        except Exception as e:
            raise ParseError(f"could not parse {kind.value} collection: {e}") from e

    async def _ensure_language(self, session: Session, language: Language) -> None:
        """Switch the session's display language if it differs from `language`."""
        if self._languages.get(session.token) == language:
            return
        await self._call(PageRequest("CHANGELANGUAGE", (LANGUAGE_ARGUMENTS[language],)), session)
        self._languages[session.token] = language
        logger.debug("Switched portal language", language=language.value)

    async def _call(self, request: PageRequest, session: Session) -> str:
        arguments = ",".join([f"-N{session.token}", *request.args])
        form = {
            "APPNAME": "CampusNet",
            "PRGNAME": request.prgname,
            "ARGUMENTS": arguments,
        }
        logger.debug("Posting to portal", prgname=request.prgname, arguments=arguments)

        response = await self._post(form, cookie=session.cookie)
        detect_auth_error(response.text)
        return response.text

    async def _post(self, form: Dict[str, str], cookie: Optional[str] = None) -> httpx.Response:
        headers = {"Cookie": f"cnsc={cookie}"} if cookie else None
        try:
            async with self.throttler:
                response = await self._get_client().post(self.config.api_url(), data=form, headers=headers)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"{form.get('PRGNAME')} timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFound(f"{form.get('PRGNAME')} returned 404") from e
            raise NetworkError(f"{form.get('PRGNAME')} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{form.get('PRGNAME')} failed: {e}") from e


def _cookie_from_header(header: str) -> Optional[str]:
    """Extract the cnsc value from a raw Set-Cookie header."""
    match = re.search(r"cnsc\s*=\s*([^;,\s]+)", header)
    return match.group(1) if match else None
