"""
SAPNote — Retrieval Pipeline

Search goes to the hosted search API with a derived bearer token. There is
one authoritative search strategy; it either works or raises.

Detail lookups run an ordered strategy chain (browser → raw-http → legacy).
Each strategy returns a CanonicalNote or None; an exception from one is
logged and the next is tried. None from every strategy means "not found".
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from sapnote.browser_pool import BrowserPool, parse_cookie_string
from sapnote.config import ServerConfig
from sapnote.errors import InvalidInputError, SearchFailedError, UpstreamTimeoutError
from sapnote.models import CanonicalNote, SearchResponse, SessionCookie
from sapnote.normalize import parse_detail, parse_search_response
from sapnote.vendor import (
    DOCUMENT_TYPE,
    HTTP_TIMEOUT_S,
    NAV_TIMEOUT_S,
    browser_headers,
    cookie_header,
    legacy_detail_urls,
    raw_detail_url,
    search_api_url,
)

logger = logging.getLogger("sapnote.retrieval")

MIN_QUERY_LENGTH = 2
MAX_RESULTS_LIMIT = 100
SUPPORTED_LANGUAGES = ("EN", "DE")

_NOTE_ID_RE = re.compile(r"^\d{1,10}$")
_SEARCH_LOCALES = {"EN": "en", "DE": "de"}


# ═══════════════════════════════════════════════════════════════════════════
# Input validation
# ═══════════════════════════════════════════════════════════════════════════


def validate_query(query: str) -> str:
    query = (query or "").strip()
    if len(query) < MIN_QUERY_LENGTH:
        raise InvalidInputError(f"Search query must be at least {MIN_QUERY_LENGTH} characters")
    return query


def validate_note_id(note_id: str) -> str:
    note_id = (note_id or "").strip()
    if not _NOTE_ID_RE.match(note_id):
        raise InvalidInputError(f"Invalid SAP Note ID {note_id!r}: expected digits only")
    return note_id


def validate_language(language: str) -> str:
    language = (language or "EN").strip().upper()
    if language not in SUPPORTED_LANGUAGES:
        raise InvalidInputError(f"Unsupported language {language!r}: use one of {', '.join(SUPPORTED_LANGUAGES)}")
    return language


# ═══════════════════════════════════════════════════════════════════════════
# Strategy combinator
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class DetailRequest:
    note_id: str
    language: str
    cookies: list[SessionCookie]


DetailStrategy = Callable[[DetailRequest], Awaitable["CanonicalNote | None"]]


async def first_success(
    strategies: list[tuple[str, DetailStrategy]],
    request: DetailRequest,
) -> CanonicalNote | None:
    """Run strategies in order; the first non-None result wins."""
    for name, strategy in strategies:
        started = time.monotonic()
        try:
            note = await strategy(request)
        except Exception as e:
            logger.warning(
                f"Detail strategy {name} failed: {e}",
                extra={"strategy": name, "note_id": request.note_id},
            )
            continue
        duration_ms = int((time.monotonic() - started) * 1000)
        if note is not None:
            logger.info(
                "Detail retrieved",
                extra={"strategy": name, "note_id": request.note_id, "duration_ms": duration_ms},
            )
            return note
        logger.debug(f"Detail strategy {name} found nothing", extra={"strategy": name, "note_id": request.note_id})
    return None


# ═══════════════════════════════════════════════════════════════════════════
# Pipeline
# ═══════════════════════════════════════════════════════════════════════════


class RetrievalPipeline:
    """Search and detail retrieval against the vendor's endpoints."""

    def __init__(
        self,
        config: ServerConfig,
        pool: BrowserPool,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._pool = pool
        self._client = http_client
        self._owns_client = http_client is None
        self.detail_strategies: list[tuple[str, DetailStrategy]] = [
            ("browser", self._detail_via_browser),
            ("raw-http", self._detail_via_http),
            ("legacy", self._detail_via_legacy),
        ]

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_S)
        return self._client

    async def close(self):
        """Close the HTTP client if this pipeline created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ─────────────────────────────────────────────────────────────────────
    # Search
    # ─────────────────────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        bearer_token: str,
        max_results: int = 10,
        language: str = "EN",
    ) -> SearchResponse:
        """Query the structured search API.

        Raises:
            InvalidInputError: query too short (before any network call)
            SearchFailedError: non-2xx response or transport failure
            UpstreamTimeoutError: the request exceeded its deadline
        """
        query = validate_query(query)
        language = validate_language(language)
        max_results = max(1, min(int(max_results), MAX_RESULTS_LIMIT))

        body = {
            "q": query,
            "numberOfResults": max_results,
            "aq": f'@documenttype=="{DOCUMENT_TYPE}"',
            "locale": _SEARCH_LOCALES[language],
        }
        headers = {
            "Authorization": f"Bearer {bearer_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        url = search_api_url(self._config.coveo_host, self._config.coveo_org)

        client = await self._get_client()
        started = time.monotonic()
        try:
            response = await client.post(url, json=body, headers=headers, timeout=HTTP_TIMEOUT_S)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Search request timed out after {HTTP_TIMEOUT_S:g}s", e)
        except httpx.HTTPError as e:
            raise SearchFailedError(f"Search request failed: {e}", cause=e)

        if not response.is_success:
            raise SearchFailedError(
                f"Search API returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise SearchFailedError("Search API returned a non-JSON body", cause=e)

        result = parse_search_response(payload, query)
        logger.info(
            f"Search returned {len(result.results)} result(s)",
            extra={"query": query, "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Detail
    # ─────────────────────────────────────────────────────────────────────

    async def get_detail(
        self,
        note_id: str,
        session_material: str,
        cookies: list[SessionCookie] | None = None,
        language: str = "EN",
    ) -> CanonicalNote | None:
        """Fetch one note through the strategy chain; None when not found."""
        note_id = validate_note_id(note_id)
        language = validate_language(language)
        request = DetailRequest(
            note_id=note_id,
            language=language,
            cookies=cookies or parse_cookie_string(session_material),
        )
        return await first_success(self.detail_strategies, request)

    async def _detail_via_browser(self, request: DetailRequest) -> CanonicalNote | None:
        self._pool.hold()
        context = None
        try:
            context = await self._pool.new_transient_context(request.cookies)
            page = await context.new_page()
            try:
                await page.goto(
                    raw_detail_url(request.note_id, request.language),
                    wait_until="domcontentloaded",
                    timeout=NAV_TIMEOUT_S * 1000,
                )
            except PlaywrightTimeout as e:
                raise UpstreamTimeoutError(f"Detail page timed out after {NAV_TIMEOUT_S:g}s", e)

            body_text = await page.inner_text("body")
            note = parse_detail(body_text, request.note_id)
            if note is None:
                note = parse_detail(await page.content(), request.note_id)
            return note
        finally:
            if context is not None:
                try:
                    await context.close()
                except PlaywrightError as e:
                    logger.debug(f"Ignoring error while closing detail context: {e}")
            self._pool.release()

    async def _fetch_text(self, url: str, cookies: list[SessionCookie]) -> str | None:
        """GET with the session cookies; None on 404, error on other failures."""
        client = await self._get_client()
        try:
            response = await client.get(
                url,
                headers=browser_headers(cookie_header(cookies)),
                follow_redirects=True,
                timeout=HTTP_TIMEOUT_S,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Request to {url} timed out after {HTTP_TIMEOUT_S:g}s", e)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.text

    async def _detail_via_http(self, request: DetailRequest) -> CanonicalNote | None:
        text = await self._fetch_text(raw_detail_url(request.note_id, request.language), request.cookies)
        if text is None:
            return None
        return parse_detail(text, request.note_id)

    async def _detail_via_legacy(self, request: DetailRequest) -> CanonicalNote | None:
        for url in legacy_detail_urls(request.note_id):
            try:
                text = await self._fetch_text(url, request.cookies)
            except httpx.HTTPError as e:
                logger.debug(f"Legacy endpoint failed: {e}", extra={"url": url})
                continue
            if text is None:
                continue
            note = parse_detail(text, request.note_id)
            if note is not None:
                return note
        return None
