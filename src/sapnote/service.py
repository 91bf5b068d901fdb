"""
SAPNote — Note Service

The one object the tool layer talks to. Wires the authenticator, browser
pool, token deriver and retrieval pipeline together and owns their
lifetimes:

    NoteService.search(q)
        → Authenticator.ensure_authenticated()
        → SessionTokenDeriver.get_bearer_token()
        → RetrievalPipeline.search()

Input is validated before any login or browser work. A SessionExpiredError
anywhere below invalidates the cached session and is re-raised; retrying is
the caller's decision.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx
from playwright.async_api import async_playwright

from sapnote.auth import Authenticator
from sapnote.browser_pool import BrowserPool
from sapnote.config import ServerConfig
from sapnote.credential_store import CredentialStore
from sapnote.errors import SessionExpiredError
from sapnote.models import CanonicalNote, SearchResponse
from sapnote.retrieval import RetrievalPipeline, validate_language, validate_note_id, validate_query
from sapnote.token_deriver import SessionTokenDeriver
from sapnote.vendor import HTTP_TIMEOUT_S

logger = logging.getLogger("sapnote.service")

REAPER_INTERVAL_S = 60.0


class NoteService:
    """Session-aware facade over search and detail retrieval."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        authenticator: Authenticator | None = None,
        pool: BrowserPool | None = None,
        deriver: SessionTokenDeriver | None = None,
        pipeline: RetrievalPipeline | None = None,
        http_client: httpx.AsyncClient | None = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        reaper_interval_s: float = REAPER_INTERVAL_S,
    ):
        self.config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_S)
        self.authenticator = authenticator or Authenticator(
            config, CredentialStore(config.token_cache_file), playwright_factory=playwright_factory
        )
        self.pool = pool or BrowserPool(config, playwright_factory=playwright_factory)
        self.deriver = deriver or SessionTokenDeriver(config, self.pool, http_client=self._http)
        self.pipeline = pipeline or RetrievalPipeline(config, self.pool, http_client=self._http)
        self._reaper_interval_s = reaper_interval_s
        self._reaper: asyncio.Task | None = None
        self._closed = False

    # ─────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────

    async def ensure_authenticated(self) -> str:
        self._start_reaper()
        return await self.authenticator.ensure_authenticated()

    async def search(self, query: str, language: str = "EN", max_results: int = 10) -> SearchResponse:
        query = validate_query(query)
        language = validate_language(language)
        session_material = await self.ensure_authenticated()
        record = self.authenticator.session_record
        cookies = record.cookies if record is not None else None
        try:
            token = await self.deriver.get_bearer_token(session_material, cookies)
            return await self.pipeline.search(query, token, max_results=max_results, language=language)
        except SessionExpiredError:
            await self._on_session_expired()
            raise

    async def get_detail(self, note_id: str, language: str = "EN") -> CanonicalNote | None:
        note_id = validate_note_id(note_id)
        language = validate_language(language)
        session_material = await self.ensure_authenticated()
        record = self.authenticator.session_record
        cookies = record.cookies if record is not None else None
        try:
            return await self.pipeline.get_detail(note_id, session_material, cookies, language=language)
        except SessionExpiredError:
            await self._on_session_expired()
            raise

    async def shutdown(self) -> None:
        """Release every browser and client. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        reaper, self._reaper = self._reaper, None
        if reaper is not None:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass
        await self.pool.teardown()
        await self.authenticator.shutdown()
        if self._owns_client:
            await self._http.aclose()
        logger.info("Note service shut down")

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    async def _on_session_expired(self) -> None:
        logger.warning("Vendor session expired, invalidating cached session")
        self.authenticator.invalidate()
        await self.pool.teardown()

    def _start_reaper(self) -> None:
        if self._reaper is None and not self._closed:
            self._reaper = asyncio.create_task(self._reap_loop())

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reaper_interval_s)
            try:
                await self.pool.reap_idle()
            except Exception as e:
                logger.warning(f"Idle browser reaper failed: {e}")
