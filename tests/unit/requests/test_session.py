"""Tests for authenticated replay sessions."""

import httpx
import pytest

from fragcache.config import Settings
from fragcache.errors import DuplicateRegistrationError, FragcacheError, SignInError, TransportError
from fragcache.requests.session import (
    AppInstance,
    ExternalUserSession,
    InternalUserSession,
    SessionUser,
    SessionUserRegistry,
    extract_csrf_token,
    is_redirect,
)
from tests.support import CSRF_TOKEN, build_app

TARGET = AppInstance("http://testserver/")


class TestHelpers:
    """Token extraction and redirect detection."""

    def test_meta_token(self) -> None:
        markup = '<meta name="csrf-token" content="abc">'
        assert extract_csrf_token(markup) == "abc"

    def test_meta_token_reversed_attributes(self) -> None:
        markup = "<meta content='xyz' name='csrf-token' />"
        assert extract_csrf_token(markup) == "xyz"

    def test_hidden_input(self) -> None:
        markup = '<form><input type="hidden" name="authenticity_token" value="tok"></form>'
        assert extract_csrf_token(markup) == "tok"
        assert extract_csrf_token(markup, param="_csrf") is None

    def test_entities_are_decoded(self) -> None:
        markup = '<meta name="csrf-token" content="ab&#43;cd&#x3D;">'
        assert extract_csrf_token(markup) == "ab+cd="

    def test_value_with_other_quote_kind(self) -> None:
        markup = """<input type="hidden" name="authenticity_token" value="it's">"""
        assert extract_csrf_token(markup) == "it's"

    def test_meta_wins_over_input(self) -> None:
        markup = (
            '<head><meta name="csrf-token" content="meta"></head>'
            '<form><input name="authenticity_token" value="form"></form>'
        )
        assert extract_csrf_token(markup) == "meta"

    def test_no_token(self) -> None:
        assert extract_csrf_token("<p>nothing</p>") is None

    def test_is_redirect(self) -> None:
        assert is_redirect(httpx.Response(302, headers={"location": "/"}))
        assert is_redirect(httpx.Response(399, headers={"location": "/"}))
        assert not is_redirect(httpx.Response(302))
        assert not is_redirect(httpx.Response(200, headers={"location": "/"}))


class TestAppInstance:
    """Application instances addressed by root URL."""

    def test_parts(self) -> None:
        instance = AppInstance("https://www.example.com:8443/app/")

        assert instance.scheme == "https"
        assert instance.host == "www.example.com"
        assert instance.port == 8443
        assert instance.path == "/app/"

    def test_queue_name_drops_scheme(self) -> None:
        assert AppInstance("http://localhost:3000/").queue_name == "localhost:3000/"

    def test_equality(self) -> None:
        assert AppInstance("http://a.test/") == AppInstance("http://a.test/")
        assert len({AppInstance("http://a.test/"), AppInstance("http://a.test/")}) == 1


class TestSessionUsers:
    """The session user catalog."""

    def test_register_and_fetch(self) -> None:
        users = SessionUserRegistry()
        admin = users.register("admin", {"email": "admin", "password": "secret"})

        assert users.fetch("admin") is admin
        assert users.fetch("other") is None
        assert users.user_types() == ["admin"]

    def test_same_credentials_are_accepted(self) -> None:
        users = SessionUserRegistry()
        first = users.register("admin", {"email": "admin"})

        assert users.register("admin", {"email": "admin"}) is first

    def test_different_credentials_are_rejected(self) -> None:
        users = SessionUserRegistry()
        users.register("admin", {"email": "admin"})

        with pytest.raises(DuplicateRegistrationError):
            users.register("admin", {"email": "root"})

    def test_callable_credentials(self) -> None:
        calls = []

        def credentials() -> dict[str, str]:
            calls.append(1)
            return {"email": "lazy"}

        user = SessionUser("admin", credentials)

        assert user.credentials == {"email": "lazy"}
        assert user.credentials == {"email": "lazy"}
        assert len(calls) == 2


class TestInternalUserSession:
    """Sessions against the in-process application."""

    @pytest.fixture
    def settings(self) -> Settings:
        return Settings(application_root_url="http://testserver/")

    async def test_anonymous_request(self, settings: Settings) -> None:
        app = build_app()
        async with InternalUserSession(app, TARGET, None, settings=settings) as session:
            response = await session.send_request("GET", "/articles/1", {"page": "2"})

        assert response.status_code == 200
        assert app.state.hits == [
            {
                "method": "GET",
                "path": "/articles/1",
                "user": None,
                "xhr": False,
                "parameters": {"page": "2"},
            }
        ]

    async def test_signs_in_once(self, settings: Settings) -> None:
        app = build_app()
        user = SessionUser("admin", {"email": "admin", "password": "secret"})

        async with InternalUserSession(app, TARGET, user, settings=settings) as session:
            await session.send_request("GET", "/a")
            await session.send_request("GET", "/b", options={"xhr": True})

            assert session.signed_in
            assert session.csrf_token == CSRF_TOKEN

        assert [(hit["path"], hit["user"], hit["xhr"]) for hit in app.state.hits] == [
            ("/a", "admin", False),
            ("/b", "admin", True),
        ]

    async def test_post_carries_csrf_token(self, settings: Settings) -> None:
        app = build_app()
        user = SessionUser("admin", {"email": "admin", "password": "secret"})

        async with InternalUserSession(app, TARGET, user, settings=settings) as session:
            await session.send_request("POST", "/comments", {"body": "hi"})

        assert app.state.hits[0]["parameters"] == {
            "body": "hi",
            "authenticity_token": CSRF_TOKEN,
        }

    async def test_failed_sign_in(self, settings: Settings) -> None:
        app = build_app()
        user = SessionUser("admin", {"email": "admin", "password": "wrong"})

        async with InternalUserSession(app, TARGET, user, settings=settings) as session:
            with pytest.raises(SignInError) as exc_info:
                await session.send_request("GET", "/a")

        assert exc_info.value.status_code == 401
        assert app.state.hits == []

    def test_requires_app(self, settings: Settings) -> None:
        with pytest.raises(FragcacheError):
            InternalUserSession(None, TARGET, settings=settings)


class TestExternalUserSession:
    """Sessions against a remote host."""

    async def test_uses_given_transport(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, text="ok")

        target = AppInstance("https://remote.example.com/")
        async with ExternalUserSession(target, transport=httpx.MockTransport(handler)) as session:
            response = await session.send_request("GET", "/articles/1")

        assert response.status_code == 200
        assert seen == ["https://remote.example.com/articles/1"]

    async def test_transport_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        target = AppInstance("https://remote.example.com/")
        async with ExternalUserSession(target, transport=httpx.MockTransport(handler)) as session:
            with pytest.raises(TransportError):
                await session.send_request("GET", "/articles/1")
