"""
SAPNote — Session Token Deriver

Turns the long-lived portal cookie session into the short-lived bearer token
the hosted search API accepts. The portal only hands that token to its own
front-end code, so we drive the pooled browser to the knowledge search
surface and read the token off the first outbound search request.

Fallbacks, in order:
    1. intercepted ``Authorization: Bearer`` on a request to the search host
    2. a JWT-looking value in localStorage / sessionStorage
    3. the portal's token endpoint called directly with the session cookies
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from sapnote.browser_pool import BrowserPool, parse_cookie_string
from sapnote.config import ServerConfig
from sapnote.errors import SessionExpiredError, TokenExtractionError
from sapnote.models import SessionCookie
from sapnote.vendor import (
    HTTP_TIMEOUT_S,
    NAV_TIMEOUT_S,
    PORTAL_HOME,
    TOKEN_APP_URL,
    TOKEN_URL,
    TOKEN_WAIT_S,
    browser_headers,
    cookie_header,
    is_login_url,
    knowledge_search_url,
)

logger = logging.getLogger("sapnote.token")

_STORAGE_SCRIPT = """() => {
    const jwt = /^eyJ[\\w-]+\\.[\\w-]+\\.[\\w-]+$/;
    const pick = (value) => {
        if (!value) return null;
        if (jwt.test(value)) return value;
        try {
            const parsed = JSON.parse(value);
            for (const key of ['token', 'accessToken', 'access_token']) {
                if (parsed && typeof parsed[key] === 'string' && jwt.test(parsed[key])) return parsed[key];
            }
        } catch (e) {}
        return null;
    };
    for (const store of [window.localStorage, window.sessionStorage]) {
        for (let i = 0; i < store.length; i++) {
            const found = pick(store.getItem(store.key(i)));
            if (found) return found;
        }
    }
    return null;
}"""


class SessionTokenDeriver:
    """Mints search bearer tokens from the portal session."""

    def __init__(
        self,
        config: ServerConfig,
        pool: BrowserPool,
        http_client: httpx.AsyncClient | None = None,
        token_wait_s: float = TOKEN_WAIT_S,
    ):
        self._config = config
        self._pool = pool
        self._client = http_client
        self._owns_client = http_client is None
        self._token_wait_s = token_wait_s
        self._lock: asyncio.Lock | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_S)
        return self._client

    async def close(self):
        """Close the HTTP client if this deriver created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_bearer_token(self, session_material: str, cookies: list[SessionCookie] | None = None) -> str:
        """Derive a bearer token for the search API.

        Raises:
            SessionExpiredError: the portal rejected the session (pool is torn down)
            TokenExtractionError: every capture method came up empty, or the
                browser itself failed
        """
        cookies = cookies or parse_cookie_string(session_material)
        async with self._get_lock():
            self._pool.hold()
            try:
                return await self._derive(session_material, cookies)
            except SessionExpiredError:
                await self._pool.teardown()
                raise
            except PlaywrightError as e:
                raise TokenExtractionError(f"Browser failed while deriving a search token: {e}", e)
            finally:
                self._pool.release()

    async def _derive(self, session_material: str, cookies: list[SessionCookie]) -> str:
        context = await self._pool.acquire(cookies, session_material)
        page = await context.new_page()
        try:
            try:
                token = await self._capture_from_page(page)
            except PlaywrightError as e:
                logger.warning(f"Token page navigation failed: {e}")
                token = None
            if token:
                return token
            token = await self._read_storage(page)
            if token:
                logger.info("Bearer token read from browser storage", extra={"strategy": "storage"})
                return token
        finally:
            try:
                await page.close()
            except PlaywrightError as e:
                logger.debug(f"Ignoring error while closing token page: {e}")

        token = await self._fetch_direct(cookies)
        if token:
            logger.info("Bearer token fetched from portal endpoint", extra={"strategy": "direct"})
            return token
        raise TokenExtractionError("Could not obtain a search token from the portal session")

    def _is_search_host(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        target = self._config.coveo_host.lower()
        return host == target or host.endswith("." + target)

    async def _capture_from_page(self, page: Any) -> str | None:
        loop = asyncio.get_running_loop()
        captured: asyncio.Future = loop.create_future()

        def on_request(request):
            if captured.done() or not self._is_search_host(request.url):
                return
            auth = request.headers.get("authorization", "")
            if auth.lower().startswith("bearer ") and auth[7:].strip():
                captured.set_result(auth[7:].strip())

        page.on("request", on_request)

        try:
            await page.goto(PORTAL_HOME, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_S * 1000)
        except PlaywrightTimeout:
            logger.warning("Portal home did not load in time")
        if is_login_url(page.url):
            raise SessionExpiredError("Portal redirected to login; the session is no longer valid")

        try:
            await page.goto(knowledge_search_url(), wait_until="domcontentloaded", timeout=NAV_TIMEOUT_S * 1000)
        except PlaywrightTimeout:
            logger.warning("Knowledge search surface did not load in time")
        if is_login_url(page.url):
            raise SessionExpiredError("Portal redirected to login; the session is no longer valid")

        try:
            token = await asyncio.wait_for(captured, timeout=self._token_wait_s)
        except asyncio.TimeoutError:
            logger.info(f"No search request intercepted within {self._token_wait_s:g}s")
            return None
        logger.info("Bearer token intercepted", extra={"strategy": "intercept"})
        return token

    async def _read_storage(self, page: Any) -> str | None:
        try:
            value = await page.evaluate(_STORAGE_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"Storage lookup failed: {e}")
            return None
        return value if isinstance(value, str) and value else None

    async def _fetch_direct(self, cookies: list[SessionCookie]) -> str | None:
        client = await self._get_client()
        headers = browser_headers(cookie_header(cookies), accept="application/json")
        try:
            # The app descriptor call primes the portal's token issuance
            await client.get(TOKEN_APP_URL, headers=headers)
            response = await client.get(TOKEN_URL, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Token endpoint unreachable: {e}")
            return None

        if response.status_code in (401, 403):
            raise SessionExpiredError(f"Token endpoint rejected the session (HTTP {response.status_code})")
        if response.status_code != 200:
            logger.warning("Token endpoint failed", extra={"status": response.status_code})
            return None
        try:
            token = response.json().get("token")
        except (ValueError, AttributeError):
            logger.warning("Token endpoint returned a non-JSON body")
            return None
        return token if isinstance(token, str) and token else None
