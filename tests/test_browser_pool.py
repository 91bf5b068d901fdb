"""
Tests for the browser pool — reuse, idle eviction, reseeding and teardown.
"""

import pytest

from sapnote.browser_pool import BrowserPool, parse_cookie_string, resolve_browser_type
from sapnote.errors import BrowserUnavailableError
from sapnote.models import SessionCookie


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _cookies(value="abc"):
    return [SessionCookie(name="JSESSIONID", value=value)]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def pool(server_config, fake_playwright, fake_clock):
    return BrowserPool(server_config, playwright_factory=fake_playwright, clock=fake_clock)


# ═══════════════════════════════════════════════════════════════════════════
# Reuse + eviction
# ═══════════════════════════════════════════════════════════════════════════


class TestAcquire:
    @pytest.mark.asyncio
    async def test_reuses_context_while_warm(self, pool, fake_clock):
        first = await pool.acquire(_cookies(), "JSESSIONID=abc")
        fake_clock.now += 60
        second = await pool.acquire(_cookies(), "JSESSIONID=abc")

        assert first is second
        assert pool.launch_count == 1

    @pytest.mark.asyncio
    async def test_seeds_cookies_on_creation(self, pool):
        context = await pool.acquire(_cookies(), "JSESSIONID=abc")
        cookies = await context.cookies()
        assert cookies == [{"name": "JSESSIONID", "value": "abc", "domain": ".sap.com", "path": "/"}]

    @pytest.mark.asyncio
    async def test_rebuilds_after_idle_timeout(self, pool, fake_clock, fake_playwright):
        first = await pool.acquire(_cookies(), "JSESSIONID=abc")
        fake_clock.now += 301
        second = await pool.acquire(_cookies(), "JSESSIONID=abc")

        assert first is not second
        assert first.closed
        assert fake_playwright.browsers[0].closed
        assert pool.launch_count == 2

    @pytest.mark.asyncio
    async def test_rebuilds_when_browser_disconnected(self, pool, fake_playwright):
        await pool.acquire(_cookies(), "JSESSIONID=abc")
        fake_playwright.browsers[0].connected = False
        await pool.acquire(_cookies(), "JSESSIONID=abc")
        assert pool.launch_count == 2

    @pytest.mark.asyncio
    async def test_reseeds_cookies_when_session_changes(self, pool):
        context = await pool.acquire(_cookies("old"), "JSESSIONID=old")
        same = await pool.acquire(_cookies("new"), "JSESSIONID=new")

        assert same is context
        assert pool.launch_count == 1
        assert [c["value"] for c in await context.cookies()] == ["new"]

    @pytest.mark.asyncio
    async def test_chromium_launch_args(self, pool, fake_playwright):
        await pool.acquire(_cookies(), "JSESSIONID=abc")
        launch = fake_playwright.instances[0].chromium.launches[0]
        assert launch["headless"] is True
        assert "--disable-dev-shm-usage" in launch["args"]


class TestTransientContext:
    @pytest.mark.asyncio
    async def test_transient_context_shares_browser(self, pool, fake_playwright):
        pooled = await pool.acquire(_cookies(), "JSESSIONID=abc")
        transient = await pool.new_transient_context(_cookies("t"))

        assert transient is not pooled
        assert pool.launch_count == 1
        assert [c["value"] for c in await transient.cookies()] == ["t"]

    @pytest.mark.asyncio
    async def test_transient_context_launches_browser_if_needed(self, pool):
        await pool.new_transient_context(_cookies())
        assert pool.is_active
        assert pool.launch_count == 1


# ═══════════════════════════════════════════════════════════════════════════
# Reaper + teardown
# ═══════════════════════════════════════════════════════════════════════════


class TestEviction:
    @pytest.mark.asyncio
    async def test_reap_idle_evicts_after_timeout(self, pool, fake_clock, fake_playwright):
        await pool.acquire(_cookies(), "JSESSIONID=abc")
        assert await pool.reap_idle() is False

        fake_clock.now += 400
        assert await pool.reap_idle() is True
        assert not pool.is_active
        assert fake_playwright.instances[0].stopped

    @pytest.mark.asyncio
    async def test_reap_idle_skips_while_in_use(self, pool, fake_clock):
        await pool.acquire(_cookies(), "JSESSIONID=abc")
        pool.hold()
        fake_clock.now += 400

        assert await pool.reap_idle() is False
        assert pool.is_active

    @pytest.mark.asyncio
    async def test_teardown_twice_is_safe(self, pool, fake_playwright):
        await pool.acquire(_cookies(), "JSESSIONID=abc")
        await pool.teardown()
        await pool.teardown()

        assert not pool.is_active
        assert fake_playwright.browsers[0].closed

    @pytest.mark.asyncio
    async def test_next_acquire_after_teardown_builds_fresh(self, pool):
        first = await pool.acquire(_cookies(), "JSESSIONID=abc")
        await pool.teardown()
        second = await pool.acquire(_cookies(), "JSESSIONID=abc")

        assert second is not first
        assert pool.launch_count == 2


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════


class TestParseCookieString:
    def test_pairs_scoped_to_vendor_domain(self):
        cookies = parse_cookie_string("JSESSIONID=abc; MYSAPSSO2=xyz")
        assert [(c.name, c.value, c.domain, c.path) for c in cookies] == [
            ("JSESSIONID", "abc", ".sap.com", "/"),
            ("MYSAPSSO2", "xyz", ".sap.com", "/"),
        ]

    def test_quotes_stripped(self):
        assert parse_cookie_string('token="quoted value"')[0].value == "quoted value"

    def test_attribute_names_skipped(self):
        cookies = parse_cookie_string("a=1; Path=/; Domain=.sap.com; Expires=Wed, 21 Oct 2015 07:28:00 GMT")
        assert [c.name for c in cookies] == ["a"]

    def test_value_may_contain_equals(self):
        assert parse_cookie_string("sig=abc==")[0].value == "abc=="

    def test_malformed_pairs_ignored(self):
        assert parse_cookie_string("novalue; =x; ;") == []


class TestResolveBrowserType:
    def test_unknown_engine(self, fake_playwright):
        with pytest.raises(BrowserUnavailableError):
            resolve_browser_type(object(), "opera")

    @pytest.mark.asyncio
    async def test_known_engine(self, fake_playwright):
        driver = await fake_playwright.start()
        assert resolve_browser_type(driver, "firefox").name == "firefox"
