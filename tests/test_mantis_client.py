from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fake_mantis import BASE_URL, FakeMantis, no_sleep

from mantis_backend.infrastructure import (
    AuthenticationError,
    ExportError,
    MantisError,
    MantisSession,
    authenticate,
    export_csv,
)
from mantis_backend.infrastructure.mantis import parse_login_form


def _session(transport: httpx.AsyncBaseTransport, **kwargs) -> MantisSession:
    kwargs.setdefault("sleep", no_sleep)
    return MantisSession(BASE_URL, "test-rid", transport=transport, **kwargs)


def test_request_retries_with_backoff_then_raises():
    calls: list[str] = []
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        raise httpx.ConnectError("connection reset", request=request)

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    async def scenario() -> None:
        async with _session(httpx.MockTransport(handler), sleep=record_sleep) as session:
            await session.request("GET", "/view.php?id=1")

    with pytest.raises(httpx.ConnectError):
        asyncio.run(scenario())
    assert len(calls) == 3
    assert delays == [0.5, 1.5]


def test_request_retries_http_errors_and_recovers():
    statuses = iter([503, 500, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), text="ok")

    async def scenario() -> str:
        async with _session(httpx.MockTransport(handler)) as session:
            response = await session.request("GET", "/view.php?id=1")
            return response.text

    assert asyncio.run(scenario()) == "ok"


def test_request_reraises_last_status_error_after_final_attempt():
    statuses = iter([500, 502, 504])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), text="down")

    async def scenario() -> None:
        async with _session(httpx.MockTransport(handler)) as session:
            await session.request("GET", "/view.php?id=1")

    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.response.status_code == 504


def test_parse_login_form_carries_hidden_fields():
    html = """
    <form action="login_password_page.php">
      <input type="hidden" name="login_token" value="abc" />
      <input type="checkbox" name="remember" />
      <input type="submit" />
    </form>
    """
    action, fields = parse_login_form(html, "fallback.php")
    assert action == "login_password_page.php"
    assert fields == {"login_token": "abc", "remember": ""}


def test_parse_login_form_without_form_uses_default_action():
    action, fields = parse_login_form("<html><body>maintenance</body></html>", "login.php")
    assert action == "login.php"
    assert fields == {}


def test_authenticate_posts_username_then_password_and_keeps_cookies():
    fake = FakeMantis()

    async def scenario() -> httpx.Cookies:
        async with _session(fake.transport()) as session:
            await authenticate(session, "alice", "secret")
            return session.cookies

    cookies = asyncio.run(scenario())
    assert cookies.get("MANTIS_STRING_COOKIE") == "abc"

    posts = [req for req in fake.requests if req.method == "POST"]
    assert [req.url.path for req in posts] == ["/login_password_page.php", "/login.php"]
    first = dict(httpx.QueryParams(posts[0].content.decode()))
    assert first == {"return": "index.php", "login_token": "tok-1", "username": "alice"}
    second = dict(httpx.QueryParams(posts[1].content.decode()))
    assert second["password"] == "secret"
    assert second["secure_session"] == "1"


def test_authenticate_rejects_redirect_back_to_login():
    fake = FakeMantis(reject_login=True)

    async def scenario() -> None:
        async with _session(fake.transport()) as session:
            await authenticate(session, "alice", "secret")

    with pytest.raises(AuthenticationError, match="Auth failed"):
        asyncio.run(scenario())
    # semantic failures are not retried
    assert sum(1 for req in fake.requests if req.url.path == "/login.php") == 1


def test_export_returns_csv_after_login():
    fake = FakeMantis()

    async def scenario() -> str:
        async with _session(fake.transport()) as session:
            await authenticate(session, "alice", "secret")
            return await export_csv(session, "42")

    payload = asyncio.run(scenario())
    assert payload.startswith("Identifiant,")
    filter_request = next(req for req in fake.requests if req.url.path == "/view_all_set.php")
    assert filter_request.url.params["source_query_id"] == "42"
    assert filter_request.url.params["type"] == "3"
    assert filter_request.url.params["t"].isdigit()


def test_export_html_payload_is_distinct_from_network_errors():
    fake = FakeMantis()

    async def scenario() -> str:
        async with _session(fake.transport()) as session:
            return await export_csv(session, "1291")

    with pytest.raises(ExportError, match="Export returned HTML") as excinfo:
        asyncio.run(scenario())
    assert isinstance(excinfo.value, MantisError)
    assert not isinstance(excinfo.value, httpx.HTTPError)
