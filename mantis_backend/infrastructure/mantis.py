"""Cookie-based session emulation against the Mantis web UI.

Mantis exposes no API for the data we need, so the client replays what a
browser does: it walks the two-step login form, keeps the session cookies in
one jar for the lifetime of the client, and downloads the CSV export of a
saved filter.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

import httpx
from bs4 import BeautifulSoup

from mantis_backend.core.logging_setup import request_logger


USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
REQUEST_TIMEOUT = 15.0
MAX_ATTEMPTS = 3
RETRY_DELAYS = (0.5, 1.5, 3.0)
MAX_REDIRECTS = 5

LOGIN_PAGE = "login_page.php"
FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class MantisError(RuntimeError):
    """Base class for semantic failures reported by the remote tracker."""


class AuthenticationError(MantisError):
    """Raised when the login sequence ends back on the login page."""


class ExportError(MantisError):
    """Raised when the CSV export returns an HTML page instead of CSV."""


Sleep = Callable[[float], Awaitable[Any]]


class MantisSession:
    """Retrying HTTP client sharing one cookie jar across calls."""

    def __init__(
        self,
        base_url: str,
        request_id: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.request_id = request_id
        self.log = request_logger(__name__, request_id)
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def request(
        self,
        method: str,
        url: str,
        data: dict[str, str] | None = None,
        **options: Any,
    ) -> httpx.Response:
        self.log.info("%s %s", method, url)
        attempt = 1
        while True:
            try:
                response = await self._client.request(method, url, data=data, **options)
                response.raise_for_status()
                return response
            except httpx.HTTPError as exc:
                if attempt >= MAX_ATTEMPTS:
                    raise
                delay = RETRY_DELAYS[attempt - 1]
                self.log.warning(
                    "Attempt %s failed: %s. Retrying in %sms...", attempt, exc, int(delay * 1000)
                )
                await self._sleep(delay)
                attempt += 1

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MantisSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def parse_login_form(html: str, default_action: str) -> tuple[str, dict[str, str]]:
    """Return the first form's action and all of its named input values."""

    soup = BeautifulSoup(html, "html.parser")
    form = soup.find("form")
    if form is None:
        return default_action, {}
    action = str(form.get("action") or default_action)
    fields: dict[str, str] = {}
    for element in form.find_all("input"):
        name = element.get("name")
        if name:
            fields[str(name)] = str(element.get("value") or "")
    return action, fields


def _form_url(response: httpx.Response, action: str) -> str:
    return str(response.url.join(action))


async def authenticate(session: MantisSession, username: str, password: str) -> None:
    """Run the username then password login steps on ``session``."""

    session.log.info("Auth step 1: login page")
    response = await session.request("GET", "/" + LOGIN_PAGE)
    action, fields = parse_login_form(response.text, "login_password_page.php")

    session.log.info("Auth step 2: post username")
    fields["username"] = username
    response = await session.request(
        "POST", _form_url(response, action), data=fields, headers=FORM_HEADERS
    )

    session.log.info("Auth step 3: post password")
    action, fields = parse_login_form(response.text, "login.php")
    fields["password"] = password
    response = await session.request(
        "POST", _form_url(response, action), data=fields, headers=FORM_HEADERS
    )

    if LOGIN_PAGE in response.url.path:
        raise AuthenticationError("Auth failed - redirected back to login")
    session.log.info("Auth success")


def looks_like_html(payload: str) -> bool:
    lowered = payload.lstrip().lower()
    return lowered.startswith("<!doctype html") or "<html" in lowered


async def export_csv(session: MantisSession, query_id: str) -> str:
    """Load the saved filter ``query_id`` and return its CSV export."""

    session.log.info("Loading saved filter %s", query_id)
    await session.request(
        "GET",
        "/view_all_set.php",
        params={"type": "3", "source_query_id": query_id, "t": str(int(time.time() * 1000))},
    )

    session.log.info("Exporting CSV")
    response = await session.request("GET", "/csv_export.php")
    payload = response.text
    if looks_like_html(payload):
        raise ExportError("Export returned HTML")
    return payload
