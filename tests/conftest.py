"""
SAPNote - Test Configuration

Shared fixtures for all tests. Nothing here touches the network or starts a
real browser: Playwright is replaced by small fakes that record what the
code under test asked of them.
"""

import asyncio
import json

import httpx
import pytest

from sapnote.config import ServerConfig
from sapnote.credential_store import CredentialStore
from sapnote.models import SessionCookie, SessionRecord

FIXED_NOW = 1_700_000_000.0
FIXED_NOW_MS = int(FIXED_NOW * 1000)

LOGIN_COOKIES = [
    {"name": "JSESSIONID", "value": "abc", "domain": ".sap.com", "path": "/"},
    {"name": "MYSAPSSO2", "value": "xyz", "domain": ".sap.com", "path": "/", "httpOnly": True, "secure": True},
]
SESSION_MATERIAL = "JSESSIONID=abc; MYSAPSSO2=xyz"


# ═══════════════════════════════════════════════════════════════════════════
# Playwright fakes
# ═══════════════════════════════════════════════════════════════════════════


class FakeRequest:
    def __init__(self, url, headers=None):
        self.url = url
        self.headers = headers or {}


class FakePage:
    """Page whose navigation outcome is scripted up front."""

    def __init__(
        self,
        *,
        redirects=None,
        title="SAP for Me",
        requests=None,
        storage=None,
        body="",
        html="",
        goto_error=None,
        post_login_url=None,
    ):
        self.url = "about:blank"
        self.redirects = redirects or {}
        self._title = title
        self.requests = requests or []
        self.storage = storage
        self.body = body
        self.html = html or body
        self.goto_error = goto_error
        self.post_login_url = post_login_url
        self.handlers = {}
        self.visited = []
        self.closed = False

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = self.redirects.get(url, url)
        for request in self.requests:
            for handler in self.handlers.get("request", []):
                handler(request)

    async def wait_for_load_state(self, state, timeout=None):
        return None

    async def wait_for_url(self, predicate, timeout=None):
        if self.post_login_url:
            self.url = self.post_login_url

    async def title(self):
        return self._title

    async def evaluate(self, script):
        return self.storage

    async def inner_text(self, selector):
        return self.body

    async def content(self):
        return self.html

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page_factory, cookies=None):
        self.page_factory = page_factory
        self._cookies = list(cookies or [])
        self.pages = []
        self.closed = False

    async def new_page(self):
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def add_cookies(self, cookies):
        self._cookies.extend(cookies)

    async def clear_cookies(self):
        self._cookies = []

    async def cookies(self):
        return list(self._cookies)

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, owner):
        self.owner = owner
        self.contexts = []
        self.context_kwargs = []
        self.closed = False
        self.connected = True

    def is_connected(self):
        return self.connected and not self.closed

    async def new_context(self, **kwargs):
        self.context_kwargs.append(kwargs)
        cookies = self.owner.login_cookies if "client_certificates" in kwargs else []
        context = FakeContext(self.owner.page_factory, cookies)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeBrowserType:
    def __init__(self, owner, name, executable_path):
        self.owner = owner
        self.name = name
        self.executable_path = executable_path
        self.launches = []

    async def launch(self, **kwargs):
        if self.owner.launch_error is not None:
            raise self.owner.launch_error
        await asyncio.sleep(0.01)
        self.launches.append(kwargs)
        browser = FakeBrowser(self.owner)
        self.owner.browsers.append(browser)
        return browser


class FakePlaywright:
    def __init__(self, owner, executable_path):
        self.chromium = FakeBrowserType(owner, "chromium", executable_path)
        self.firefox = FakeBrowserType(owner, "firefox", executable_path)
        self.webkit = FakeBrowserType(owner, "webkit", executable_path)
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakePlaywrightFactory:
    """Stands in for ``async_playwright``: ``factory().start()`` yields a driver."""

    def __init__(self, executable_path, page_factory=None, login_cookies=None):
        self.executable_path = str(executable_path)
        self.page_factory = page_factory or FakePage
        self.login_cookies = LOGIN_COOKIES if login_cookies is None else login_cookies
        self.launch_error = None
        self.instances = []
        self.browsers = []

    def __call__(self):
        return self

    async def start(self):
        driver = FakePlaywright(self, self.executable_path)
        self.instances.append(driver)
        return driver


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def browser_executable(tmp_path):
    path = tmp_path / "chrome"
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def pfx_file(tmp_path):
    path = tmp_path / "sap.pfx"
    path.write_bytes(b"\x30\x82fake-pfx-bytes")
    return path


@pytest.fixture
def server_config(tmp_path, pfx_file):
    return ServerConfig(
        pfx_path=pfx_file,
        pfx_passphrase="secret",
        token_cache_file=tmp_path / "token-cache.json",
    )


@pytest.fixture
def store(server_config):
    return CredentialStore(server_config.token_cache_file)


@pytest.fixture
def fake_playwright(browser_executable):
    return FakePlaywrightFactory(browser_executable)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


def make_record(expires_in_ms, material=SESSION_MATERIAL):
    return SessionRecord(
        session_material=material,
        cookies=[SessionCookie.model_validate(c) for c in LOGIN_COOKIES],
        expires_at=FIXED_NOW_MS + expires_in_ms,
    )


def sap_note_document(note_id="2744792"):
    """Raw detail body as the portal returns it."""
    return json.dumps({
        "Response": {
            "SAPNote": {
                "Header": {
                    "Number": {"value": note_id},
                    "Type": {"value": "SAP Knowledge Base Article"},
                    "Language": {"value": "E"},
                    "ReleasedOn": {"value": "20190315"},
                    "SAPComponentKey": {"value": "BC-SRV-NWS"},
                    "SAPComponentKeyText": {"value": "BC-SRV-NWS Gateway"},
                    "Priority": {"value": "Normal"},
                    "Category": {"value": "Problem"},
                },
                "Title": {"value": "OData service returns HTTP 500"},
                "LongText": {"value": "<p>Symptom: the service fails.</p>"},
            }
        }
    })


def search_payload():
    return {
        "totalCount": 1,
        "results": [
            {
                "title": "OData service returns HTTP 500",
                "excerpt": "Calling the gateway service fails with HTTP 500.",
                "raw": {
                    "mh_id": "2744792",
                    "mh_app_component": ["BC-SRV-NWS", "BC-SRV"],
                    "mh_language": ["EN"],
                    "date": 1552608000000,
                },
            }
        ],
    }


def mock_client(handler):
    """httpx client routed to an in-process handler."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
