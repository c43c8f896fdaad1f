"""Authenticated replay sessions.

A session performs requests against one application instance on behalf of
one user class. It signs in lazily on first use, keeps its cookie jar for
the lifetime of the session, and tracks the CSRF token found in the most
recent HTML response.

- InternalUserSession drives an in-process ASGI application
- ExternalUserSession talks to a remote host over the network

Example:
    user = SessionUser("admin", {"email": "admin@example.com", "password": "secret"})
    async with ExternalUserSession(AppInstance("https://www.example.com/"), user) as session:
        await session.send_request("GET", "/articles/1")
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from types import TracebackType
from typing import Any, Mapping

import httpx
from bs4 import BeautifulSoup

from fragcache.config import Settings, settings as default_settings
from fragcache.errors import DuplicateRegistrationError, FragcacheError, SignInError, TransportError

logger = logging.getLogger(__name__)

Credentials = Mapping[str, Any] | Callable[[], Mapping[str, Any]]

XHR_HEADERS = {
    "X-Requested-With": "XMLHttpRequest",
    "Accept": "text/javascript, text/html, application/xml, text/xml, */*",
}

# Methods whose parameters travel in the query string
_QUERY_METHODS = frozenset({"GET", "HEAD"})


def extract_csrf_token(markup: str, param: str = "authenticity_token") -> str | None:
    """Find a CSRF token in HTML markup.

    Looks for a ``csrf-token`` meta tag first, then a hidden form input
    named ``param``.
    """
    soup = BeautifulSoup(markup, "html.parser")
    meta = soup.find("meta", attrs={"name": "csrf-token"})
    if meta is not None and meta.get("content"):
        return str(meta["content"])

    field = soup.find("input", attrs={"name": param})
    if field is not None and field.get("value") is not None:
        return str(field["value"])
    return None


def is_redirect(response: httpx.Response) -> bool:
    """A redirect is any 3xx response carrying a location header."""
    return 300 <= response.status_code < 400 and "location" in response.headers


class SessionUser:
    """Sign-in credentials for one user class.

    Credentials are either a static mapping or a zero-argument callable
    evaluated each time the session signs in.
    """

    def __init__(self, user_type: str, credentials: Credentials | None = None):
        self.user_type = user_type
        self._credentials = credentials

    @property
    def credentials(self) -> dict[str, Any]:
        value = self._credentials() if callable(self._credentials) else self._credentials
        return dict(value or {})

    def same_as(self, credentials: Credentials | None) -> bool:
        return self._credentials == credentials

    def __repr__(self) -> str:
        return f"SessionUser({self.user_type!r})"


class SessionUserRegistry:
    """Catalog of session users by user class."""

    def __init__(self) -> None:
        self._users: dict[str, SessionUser] = {}

    def register(self, user_type: str, credentials: Credentials | None = None) -> SessionUser:
        """Register credentials for a user class.

        Registering identical credentials again returns the existing entry;
        different credentials raise DuplicateRegistrationError.
        """
        existing = self._users.get(user_type)
        if existing is not None:
            if not existing.same_as(credentials):
                raise DuplicateRegistrationError(user_type)
            return existing

        user = SessionUser(user_type, credentials)
        self._users[user_type] = user
        logger.info(f"Registered session user: {user_type}")
        return user

    def fetch(self, user_type: str) -> SessionUser | None:
        return self._users.get(user_type)

    def all(self) -> dict[str, SessionUser]:
        return dict(self._users)

    def user_types(self) -> list[str]:
        return list(self._users)

    def clear(self) -> None:
        self._users.clear()


class AppInstance:
    """An application instance addressed by its root URL."""

    def __init__(self, url: str):
        self.url = httpx.URL(url)

    @property
    def host(self) -> str:
        return self.url.host

    @property
    def port(self) -> int | None:
        return self.url.port

    @property
    def path(self) -> str:
        return self.url.path

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def queue_name(self) -> str:
        """The URL without its scheme, used to name job queues."""
        return re.sub(r"^https?://", "", str(self.url))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AppInstance) and str(self.url) == str(other.url)

    def __hash__(self) -> int:
        return hash(str(self.url))

    def __str__(self) -> str:
        return str(self.url)

    def __repr__(self) -> str:
        return f"AppInstance({str(self.url)!r})"


class UserSession:
    """A signed-in client session against one application instance."""

    def __init__(
        self,
        target: AppInstance,
        user: SessionUser | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ):
        self.target = target
        self.user = user
        self.settings = settings or default_settings
        self.client = httpx.AsyncClient(
            base_url=str(target.url),
            transport=transport,
            follow_redirects=False,
        )
        self.csrf_token: str | None = None
        self.last_response: httpx.Response | None = None
        self._signed_in = False

    @property
    def user_type(self) -> str | None:
        return self.user.user_type if self.user else None

    @property
    def signed_in(self) -> bool:
        return self._signed_in

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        if "html" in content_type:
            token = extract_csrf_token(response.text, self.settings.csrf_param)
            if token:
                self.csrf_token = token
        self.last_response = response
        return response

    async def follow_redirect(self, response: httpx.Response) -> httpx.Response:
        return await self._request("GET", response.headers["location"])

    async def sign_in(self) -> None:
        """Run the sign-in handshake and follow the redirect after login."""
        if self.user is None:
            return

        await self._request("GET", self.settings.sign_in_path)  # picks up the csrf token

        scope = self.settings.sign_in_scope
        data: dict[str, Any] = {
            f"{scope}[{name}]" if scope else name: value
            for name, value in self.user.credentials.items()
        }
        if self.csrf_token:
            data[self.settings.csrf_param] = self.csrf_token

        response = await self._request("POST", self.settings.sign_in_path, data=data)
        if not is_redirect(response):
            raise SignInError(self.user.user_type, response.status_code)

        await self.follow_redirect(response)
        self._signed_in = True
        logger.info(f"Signed in as {self.user.user_type} on {self.target}")

    async def sign_out(self) -> None:
        if not self._signed_in:
            return
        data: dict[str, Any] = {"_method": "delete"}
        if self.csrf_token:
            data[self.settings.csrf_param] = self.csrf_token
        await self._request("POST", self.settings.sign_out_path, data=data)
        self._signed_in = False

    async def ensure_signed_in(self) -> None:
        if self.user is not None and not self._signed_in:
            await self.sign_in()

    async def send_request(
        self,
        method: str,
        path: str,
        parameters: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        """Perform one request as this session's user.

        With ``options={"xhr": True}`` the request is flagged as an
        asynchronous content request. ``options["headers"]`` adds headers.
        """
        await self.ensure_signed_in()

        method = method.upper()
        options = options or {}
        headers: dict[str, str] = dict(options.get("headers") or {})
        if options.get("xhr"):
            headers.update(XHR_HEADERS)

        kwargs: dict[str, Any] = {"headers": headers}
        if method in _QUERY_METHODS:
            if parameters:
                kwargs["params"] = dict(parameters)
        else:
            data = dict(parameters or {})
            if self.csrf_token:
                data.setdefault(self.settings.csrf_param, self.csrf_token)
                headers.setdefault("X-CSRF-Token", self.csrf_token)
            kwargs["data"] = data

        return await self._request(method, path, **kwargs)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "UserSession":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()


class InternalUserSession(UserSession):
    """Session that drives the application in-process through ASGI."""

    def __init__(
        self,
        app: Any,
        target: AppInstance,
        user: SessionUser | None = None,
        settings: Settings | None = None,
    ):
        if app is None:
            raise FragcacheError("No in-process application configured for internal sessions")
        super().__init__(
            target,
            user,
            transport=httpx.ASGITransport(app=app),
            settings=settings,
        )


class ExternalUserSession(UserSession):
    """Session that talks to a remote application instance over HTTP."""

    def __init__(
        self,
        target: AppInstance,
        user: SessionUser | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(target, user, transport=transport, settings=settings)
