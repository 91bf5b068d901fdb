"""
SAPNote — Authenticator

Certificate-based login to the vendor portal, single-flight:

    Idle ──ensure_authenticated()──► Authenticating ──► Authenticated
      ▲                                   │                  │
      └────────── (failure) ◄─────────────┘     (stale) ─────┘

Any number of concurrent callers share one login task and observe the same
result. A fresh cached session (in memory, or re-read from the credential
store) short-circuits with no browser activity at all.

The login browser carries the client certificate. It is never pooled and is
always closed when the login finishes, successfully or not.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from playwright.async_api import async_playwright, TimeoutError as PlaywrightTimeout

from sapnote.browser_pool import launch_browser, resolve_browser_type
from sapnote.config import ServerConfig
from sapnote.credential_store import CredentialStore
from sapnote.errors import (
    AuthenticationFailedError,
    AuthTimeoutError,
    CertificateError,
    SapNoteError,
)
from sapnote.models import SESSION_BUFFER_MS, SessionCookie, SessionRecord
from sapnote.vendor import (
    IDENTITY_ORIGIN,
    NAV_TIMEOUT_S,
    NETWORK_IDLE_TIMEOUT_S,
    PORTAL_HOME,
    USER_AGENT,
    is_login_url,
)

logger = logging.getLogger("sapnote.auth")

_LOGIN_TITLE_MARKERS = ("login", "log on", "sign in")


class Authenticator:
    """Owns the vendor session for this process."""

    def __init__(
        self,
        config: ServerConfig,
        store: CredentialStore | None = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        clock: Callable[[], float] = time.time,
        settle_s: float = 3.0,
    ):
        self._config = config
        self._store = store or CredentialStore(config.token_cache_file)
        self._playwright_factory = playwright_factory
        self._clock = clock
        self._settle_s = settle_s

        self._record: SessionRecord | None = None
        self._pending: asyncio.Task | None = None
        self._lock: asyncio.Lock | None = None
        self._login_browser: Any = None
        self.login_count = 0

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def session_record(self) -> SessionRecord | None:
        return self._record

    @property
    def is_authenticating(self) -> bool:
        return self._pending is not None

    # ─────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────

    async def ensure_authenticated(self) -> str:
        """Return valid session material, logging in only when necessary.

        Raises:
            CertificateError, BrowserUnavailableError, AuthTimeoutError,
            AuthenticationFailedError
        """
        async with self._get_lock():
            task = self._pending
            if task is None:
                record = self._fresh_record()
                if record is not None:
                    return record.session_material
                task = asyncio.create_task(self._authenticate())
                task.add_done_callback(_consume_task_exception)
                self._pending = task
        # Shielded so one cancelled caller does not abort everyone's login
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        """Forget the current session, in memory and on disk."""
        logger.info("Invalidating cached session")
        self._record = None
        self._store.clear()

    async def shutdown(self) -> None:
        """Cancel an in-flight login and wait for its browser to close. Idempotent."""
        task, self._pending = self._pending, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except SapNoteError as e:
                logger.debug(f"Login finished with an error during shutdown: {e}")
        browser, self._login_browser = self._login_browser, None
        if browser is not None:
            await _close_quietly(browser.close, "login browser")
        self._record = None

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _fresh_record(self) -> SessionRecord | None:
        now_ms = self._now_ms()
        if self._record is not None and self._record.is_fresh(now_ms, SESSION_BUFFER_MS):
            return self._record

        cached = self._store.load()
        if cached is not None and cached.is_fresh(now_ms, SESSION_BUFFER_MS):
            logger.info("Using cached session", extra={"cookie_count": len(cached.cookies)})
            self._record = cached
            return cached
        return None

    async def _authenticate(self) -> str:
        started = time.monotonic()
        try:
            record = await self._login()
        except SapNoteError:
            self._record = None
            self._pending = None
            raise
        except Exception as e:
            self._record = None
            self._pending = None
            raise AuthenticationFailedError(f"Authentication failed: {e}", e)

        self._record = record
        try:
            self._store.save(record)
        except OSError as e:
            logger.warning(f"Could not persist session to {self._store.path}: {e}")
        self._pending = None

        logger.info(
            "Authentication completed",
            extra={"cookie_count": len(record.cookies), "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return record.session_material

    def _load_certificate(self) -> bytes:
        path = self._config.pfx_path
        if not path.exists():
            raise CertificateError(str(path), "file not found")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise CertificateError(str(path), "file not readable", e)
        if not data:
            raise CertificateError(str(path), "file is empty")
        return data

    async def _login(self) -> SessionRecord:
        pfx = self._load_certificate()
        self.login_count += 1
        logger.info(
            "Starting certificate login",
            extra={"browser_type": self._config.browser_type, "headless": not self._config.headful},
        )

        playwright = await self._playwright_factory().start()
        browser = None
        try:
            browser_type = resolve_browser_type(playwright, self._config.browser_type)
            browser = await launch_browser(browser_type, headless=not self._config.headful)
            self._login_browser = browser

            context = await browser.new_context(
                client_certificates=[
                    {"origin": IDENTITY_ORIGIN, "pfx": pfx, "passphrase": self._config.pfx_passphrase}
                ],
                ignore_https_errors=True,
                user_agent=USER_AGENT,
                locale="en-US",
            )
            page = await context.new_page()

            try:
                await page.goto(PORTAL_HOME, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_S * 1000)
            except PlaywrightTimeout as e:
                raise AuthTimeoutError("navigating to portal", NAV_TIMEOUT_S, e)

            try:
                await page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_S * 1000)
            except PlaywrightTimeout:
                logger.debug("Network did not go idle, continuing")

            if await _on_login_page(page):
                logger.info("Waiting for identity provider redirect", extra={"url": page.url})
                try:
                    await page.wait_for_url(lambda url: not is_login_url(url), timeout=NAV_TIMEOUT_S * 1000)
                except PlaywrightTimeout:
                    logger.warning("Still on a login page after redirect wait, continuing")

            if self._settle_s:
                await asyncio.sleep(self._settle_s)

            raw_cookies = await context.cookies()
        finally:
            self._login_browser = None
            if browser is not None:
                await _close_quietly(browser.close, "login browser")
            await _close_quietly(playwright.stop, "playwright driver")

        cookies = [SessionCookie.model_validate(c) for c in raw_cookies]
        if not cookies:
            raise AuthenticationFailedError("Login finished without any session cookies")

        max_age_ms = int(self._config.max_session_age_h * 3600 * 1000)
        return SessionRecord(
            session_material="; ".join(f"{c.name}={c.value}" for c in cookies),
            cookies=cookies,
            expires_at=self._now_ms() + max_age_ms,
        )


async def _on_login_page(page: Any) -> bool:
    if is_login_url(page.url):
        return True
    title = (await page.title() or "").lower()
    return any(marker in title for marker in _LOGIN_TITLE_MARKERS)


async def _close_quietly(closer: Callable[[], Any], label: str) -> None:
    try:
        await closer()
    except Exception as e:
        logger.debug(f"Ignoring error while closing {label}: {e}")


def _consume_task_exception(task: asyncio.Task) -> None:
    """Mark a failed login as retrieved; the callers already received it."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(f"Login failed: {exc}")
