"""
SAPNote — Browser Pool (Playwright)

One long-lived browser + context reused for token derivation, torn down
after an idle period, on session expiry, or on shutdown. Detail retrieval
borrows the same browser process for short-lived contexts.

Only cookie state ever lives in the pooled browser. The certificate login
runs in its own browser (see auth.py) that is closed right after it.

Performance:
- First call: ~2-3s (driver start + browser launch + context creation)
- Subsequent calls while warm: page creation only
- Idle TTL: BROWSER_IDLE_TIMEOUT_S (default 5 minutes)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from playwright.async_api import async_playwright, Error as PlaywrightError

from sapnote.config import ServerConfig, SUPPORTED_BROWSERS
from sapnote.errors import BrowserUnavailableError
from sapnote.models import SessionCookie
from sapnote.vendor import COOKIE_DOMAIN, USER_AGENT

logger = logging.getLogger("sapnote.browser")

_CHROMIUM_ARGS = ["--disable-dev-shm-usage", "--no-sandbox"]

# Cookie attribute names that can leak into a "name=value; ..." string
_COOKIE_ATTRIBUTES = frozenset({"path", "domain", "secure", "httponly", "samesite", "max-age", "expires"})


# ═══════════════════════════════════════════════════════════════════════════
# Helpers shared with the authenticator
# ═══════════════════════════════════════════════════════════════════════════


def resolve_browser_type(playwright: Any, name: str):
    """Return the Playwright BrowserType for ``name`` or raise BrowserUnavailableError."""
    if name not in SUPPORTED_BROWSERS:
        raise BrowserUnavailableError(name, "unknown browser engine")
    browser_type = getattr(playwright, name, None)
    if browser_type is None:
        raise BrowserUnavailableError(name, "engine not provided by Playwright")
    try:
        executable = browser_type.executable_path
    except PlaywrightError as e:
        raise BrowserUnavailableError(name, "executable not resolvable", e)
    if not executable or not Path(executable).exists():
        raise BrowserUnavailableError(name, f"executable missing at {executable or '<unknown>'}")
    return browser_type


async def launch_browser(browser_type: Any, headless: bool):
    """Launch a browser, mapping a missing executable to BrowserUnavailableError."""
    kwargs: dict[str, Any] = {"headless": headless}
    if browser_type.name == "chromium":
        kwargs["args"] = _CHROMIUM_ARGS
    try:
        return await browser_type.launch(**kwargs)
    except PlaywrightError as e:
        if "Executable doesn't exist" in str(e):
            raise BrowserUnavailableError(browser_type.name, "executable missing", e)
        raise


def parse_cookie_string(session_material: str) -> list[SessionCookie]:
    """Turn ``"a=1; b=2"`` back into cookies scoped to the vendor domain."""
    cookies: list[SessionCookie] = []
    for pair in session_material.split(";"):
        name, sep, value = pair.strip().partition("=")
        name, value = name.strip(), value.strip()
        if not sep or not name or not value:
            continue
        if name.lower() in _COOKIE_ATTRIBUTES:
            continue
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        cookies.append(SessionCookie(name=name, value=value, domain=COOKIE_DOMAIN, path="/"))
    return cookies


def session_fingerprint(session_material: str) -> str:
    return hashlib.sha256(session_material.encode("utf-8")).hexdigest()[:16]


# ═══════════════════════════════════════════════════════════════════════════
# Pool
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class PooledBrowserSession:
    """Browser resources owned by the pool."""

    playwright: Any
    browser: Any
    context: Any
    session_key: str
    last_used_at: float

    def is_connected(self) -> bool:
        try:
            return bool(self.browser.is_connected())
        except Exception:
            return False


class BrowserPool:
    """
    Single pooled browser/context with idle eviction.

    Not a general-purpose pool: it holds at most one browser for the one
    vendor identity this process serves.
    """

    def __init__(
        self,
        config: ServerConfig,
        playwright_factory: Callable[[], Any] = async_playwright,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._playwright_factory = playwright_factory
        self._clock = clock
        self._idle_timeout = config.browser_idle_timeout_s
        self._session: PooledBrowserSession | None = None
        self._lock: asyncio.Lock | None = None  # Lazily initialised
        self._in_use = 0
        self.launch_count = 0

    def _get_lock(self) -> asyncio.Lock:
        """Lazy init for the lock (avoids binding to wrong event loop)."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def is_active(self) -> bool:
        return self._session is not None

    def _is_reusable(self, session: PooledBrowserSession) -> bool:
        idle = self._clock() - session.last_used_at
        return idle < self._idle_timeout and session.is_connected()

    async def acquire(self, cookies: list[SessionCookie], session_material: str):
        """Return the pooled context, seeded with the given session's cookies.

        Reuses the pooled context while it is connected and not idle past the
        timeout; otherwise a fresh browser is built. When the session material
        differs from the one the context was seeded with, cookies are replaced.
        """
        key = session_fingerprint(session_material)
        async with self._get_lock():
            session = self._session
            if session is not None and not self._is_reusable(session):
                logger.info("Pooled browser idle or disconnected, rebuilding")
                await self._close_session(session)
                session = self._session = None

            if session is None:
                session = self._session = await self._create_session(cookies, key)
            elif session.session_key != key:
                logger.info("Session changed, reseeding pooled browser cookies")
                await session.context.clear_cookies()
                await session.context.add_cookies([c.to_playwright() for c in cookies])
                session.session_key = key

            session.last_used_at = self._clock()
            return session.context

    async def new_transient_context(self, cookies: list[SessionCookie]):
        """Short-lived context on the pooled browser; the caller must close it."""
        async with self._get_lock():
            session = self._session
            if session is not None and not self._is_reusable(session):
                await self._close_session(session)
                session = self._session = None
            if session is None:
                session = self._session = await self._create_session([], "")
            session.last_used_at = self._clock()
            browser = session.browser

        context = await browser.new_context(user_agent=USER_AGENT, ignore_https_errors=True, locale="en-US")
        if cookies:
            await context.add_cookies([c.to_playwright() for c in cookies])
        return context

    def touch(self) -> None:
        if self._session is not None:
            self._session.last_used_at = self._clock()

    def hold(self) -> None:
        self._in_use += 1

    def release(self) -> None:
        self._in_use = max(0, self._in_use - 1)
        self.touch()

    async def reap_idle(self) -> bool:
        """Tear down the pooled browser if it sat idle past the timeout."""
        async with self._get_lock():
            session = self._session
            if session is None or self._in_use:
                return False
            if self._clock() - session.last_used_at < self._idle_timeout:
                return False
            logger.info("Evicting idle pooled browser")
            self._session = None
            await self._close_session(session)
            return True

    async def teardown(self) -> None:
        """Close everything the pool holds. Safe to call repeatedly."""
        async with self._get_lock():
            session, self._session = self._session, None
            if session is not None:
                await self._close_session(session)

    async def _create_session(self, cookies: list[SessionCookie], key: str) -> PooledBrowserSession:
        playwright = await self._playwright_factory().start()
        try:
            browser_type = resolve_browser_type(playwright, self._config.browser_type)
            browser = await launch_browser(browser_type, headless=not self._config.headful)
            context = await browser.new_context(user_agent=USER_AGENT, ignore_https_errors=True, locale="en-US")
            if cookies:
                await context.add_cookies([c.to_playwright() for c in cookies])
        except BaseException:
            await playwright.stop()
            raise
        self.launch_count += 1
        logger.info(
            "Pooled browser launched",
            extra={"browser_type": self._config.browser_type, "cookie_count": len(cookies)},
        )
        return PooledBrowserSession(
            playwright=playwright,
            browser=browser,
            context=context,
            session_key=key,
            last_used_at=self._clock(),
        )

    async def _close_session(self, session: PooledBrowserSession) -> None:
        """Close context, browser and driver; errors during shutdown are logged only."""
        for label, closer in (
            ("context", session.context.close),
            ("browser", session.browser.close),
            ("driver", session.playwright.stop),
        ):
            try:
                await closer()
            except Exception as e:
                logger.debug(f"Ignoring error while closing pooled {label}: {e}")
