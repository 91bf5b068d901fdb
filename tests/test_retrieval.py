"""
Tests for the retrieval pipeline — search request shape and error mapping,
input validation, and the detail strategy chain.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from sapnote.browser_pool import BrowserPool
from sapnote.errors import InvalidInputError, SearchFailedError, UpstreamTimeoutError
from sapnote.models import CanonicalNote, SessionCookie
from sapnote.retrieval import DetailRequest, RetrievalPipeline, first_success, validate_note_id
from sapnote.vendor import legacy_detail_urls, raw_detail_url

from conftest import SESSION_MATERIAL, FakePage, mock_client, sap_note_document, search_payload


def _pipeline(server_config, handler, pool=None):
    return RetrievalPipeline(server_config, pool or MagicMock(), http_client=mock_client(handler))


def _note(note_id="1"):
    return CanonicalNote(id=note_id, title=f"Note {note_id}")


# ═══════════════════════════════════════════════════════════════════════════
# Search
# ═══════════════════════════════════════════════════════════════════════════


class TestSearch:
    @pytest.mark.asyncio
    async def test_request_shape(self, server_config):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=search_payload())

        pipeline = _pipeline(server_config, handler)
        response = await pipeline.search("  odata 500 ", "bearer-123", max_results=5, language="DE")

        assert captured["url"] == (
            "https://platform.cloud.coveo.com/rest/search/v2?organizationId=sapamericaproductiontyfzmfz0"
        )
        assert captured["auth"] == "Bearer bearer-123"
        assert captured["body"] == {
            "q": "odata 500",
            "numberOfResults": 5,
            "aq": '@documenttype=="SAP Note"',
            "locale": "de",
        }
        assert response.results[0].id == "2744792"
        assert response.results[0].release_date == "2019-03-15"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", " ", "a", " b "])
    async def test_short_query_rejected_before_network(self, server_config, query):
        handler = MagicMock(return_value=httpx.Response(200, json={}))
        pipeline = _pipeline(server_config, handler)

        with pytest.raises(InvalidInputError):
            await pipeline.search(query, "token")
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsupported_language_rejected(self, server_config):
        handler = MagicMock(return_value=httpx.Response(200, json={}))
        with pytest.raises(InvalidInputError):
            await _pipeline(server_config, handler).search("query", "token", language="FR")
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_zero_results_is_not_an_error(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(200, json={"results": []}))
        response = await pipeline.search("nothing matches", "token")
        assert response.results == []

    @pytest.mark.asyncio
    async def test_non_2xx_is_search_failure(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(419, text="token expired"))

        with pytest.raises(SearchFailedError) as exc_info:
            await pipeline.search("query", "token")
        assert exc_info.value.status_code == 419
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout(self, server_config):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(UpstreamTimeoutError):
            await _pipeline(server_config, handler).search("query", "token")

    @pytest.mark.asyncio
    async def test_transport_failure(self, server_config):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SearchFailedError):
            await _pipeline(server_config, handler).search("query", "token")

    @pytest.mark.asyncio
    async def test_non_json_body(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(SearchFailedError):
            await pipeline.search("query", "token")


# ═══════════════════════════════════════════════════════════════════════════
# Detail chain
# ═══════════════════════════════════════════════════════════════════════════


class TestNoteIdValidation:
    @pytest.mark.parametrize("note_id", ["", "abc", "12a4", "12345678901", "1 2"])
    def test_invalid(self, note_id):
        with pytest.raises(InvalidInputError):
            validate_note_id(note_id)

    def test_kept_verbatim(self):
        assert validate_note_id(" 0002744792 ") == "0002744792"

    @pytest.mark.asyncio
    async def test_invalid_id_never_reaches_strategies(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(500))
        strategy = AsyncMock(return_value=_note())
        pipeline.detail_strategies = [("only", strategy)]

        with pytest.raises(InvalidInputError):
            await pipeline.get_detail("not-a-number", SESSION_MATERIAL)
        strategy.assert_not_awaited()


class TestFirstSuccess:
    @pytest.mark.asyncio
    async def test_first_success_short_circuits(self):
        first = AsyncMock(return_value=_note("1"))
        second = AsyncMock(return_value=_note("2"))
        third = AsyncMock(return_value=_note("3"))
        request = DetailRequest(note_id="1", language="EN", cookies=[])

        note = await first_success([("a", first), ("b", second), ("c", third)], request)

        assert note.id == "1"
        second.assert_not_awaited()
        third.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failures_fall_through(self):
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        empty = AsyncMock(return_value=None)
        winner = AsyncMock(return_value=_note("9"))
        request = DetailRequest(note_id="9", language="EN", cookies=[])

        note = await first_success([("a", failing), ("b", empty), ("c", winner)], request)

        assert note.id == "9"
        failing.assert_awaited_once()
        empty.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_all_fail_returns_none(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(500))
        pipeline.detail_strategies = [
            ("a", AsyncMock(side_effect=RuntimeError("boom"))),
            ("b", AsyncMock(return_value=None)),
            ("c", AsyncMock(side_effect=UpstreamTimeoutError("slow"))),
        ]
        assert await pipeline.get_detail("2744792", SESSION_MATERIAL) is None

    @pytest.mark.asyncio
    async def test_cookies_parsed_when_not_given(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(500))
        strategy = AsyncMock(return_value=_note())
        pipeline.detail_strategies = [("only", strategy)]

        await pipeline.get_detail("1", SESSION_MATERIAL, language="de")

        request = strategy.await_args.args[0]
        assert request.language == "DE"
        assert [c.name for c in request.cookies] == ["JSESSIONID", "MYSAPSSO2"]


class TestStrategies:
    @pytest.mark.asyncio
    async def test_raw_http(self, server_config):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            assert request.headers["cookie"] == "JSESSIONID=abc; MYSAPSSO2=xyz"
            return httpx.Response(200, text=sap_note_document())

        pipeline = _pipeline(server_config, handler)
        request = DetailRequest(note_id="2744792", language="EN", cookies=[
            SessionCookie(name="JSESSIONID", value="abc"),
            SessionCookie(name="MYSAPSSO2", value="xyz"),
        ])

        note = await pipeline._detail_via_http(request)

        assert note.title == "OData service returns HTTP 500"
        assert seen == [raw_detail_url("2744792", "EN")]

    @pytest.mark.asyncio
    async def test_raw_http_not_found(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(404))
        request = DetailRequest(note_id="1", language="EN", cookies=[])
        assert await pipeline._detail_via_http(request) is None

    @pytest.mark.asyncio
    async def test_raw_http_server_error_raises(self, server_config):
        pipeline = _pipeline(server_config, lambda r: httpx.Response(503))
        request = DetailRequest(note_id="1", language="EN", cookies=[])
        with pytest.raises(httpx.HTTPStatusError):
            await pipeline._detail_via_http(request)

    @pytest.mark.asyncio
    async def test_legacy_walks_endpoints_in_order(self, server_config):
        urls = legacy_detail_urls("123456")
        seen = []

        def handler(request):
            seen.append(request.url)
            if len(seen) == 1:
                return httpx.Response(404)
            return httpx.Response(200, json={"d": {"results": [{"SapNote": "123456", "Title": "Legacy note"}]}})

        pipeline = _pipeline(server_config, handler)
        note = await pipeline._detail_via_legacy(DetailRequest(note_id="123456", language="EN", cookies=[]))

        assert note.title == "Legacy note"
        assert len(seen) == 2
        assert seen[0] == httpx.URL(urls[0])

    @pytest.mark.asyncio
    async def test_browser_strategy(self, server_config, fake_playwright):
        pages = []

        def factory():
            page = FakePage(body=sap_note_document())
            pages.append(page)
            return page

        fake_playwright.page_factory = factory
        pool = BrowserPool(server_config, playwright_factory=fake_playwright)
        pipeline = _pipeline(server_config, lambda r: httpx.Response(500), pool=pool)

        request = DetailRequest(note_id="2744792", language="EN", cookies=[SessionCookie(name="A", value="1")])
        note = await pipeline._detail_via_browser(request)

        assert note.id == "2744792"
        assert pages[0].visited == [raw_detail_url("2744792", "EN")]
        transient = fake_playwright.browsers[0].contexts[-1]
        assert transient.closed
        # The pooled browser stays up for later calls
        assert pool.is_active
