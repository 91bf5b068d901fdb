"""
SAPNote — Vendor Endpoints

URLs and URL helpers for the SAP for Me portal, the legacy launchpad and the
hosted search platform. Kept in one place so the authenticator, token
deriver and retrieval strategies agree on them.
"""

from __future__ import annotations

import json
from urllib.parse import quote, urlparse

IDENTITY_ORIGIN = "https://accounts.sap.com"
PORTAL_ORIGIN = "https://me.sap.com"
PORTAL_HOME = f"{PORTAL_ORIGIN}/home"
LAUNCHPAD_ORIGIN = "https://launchpad.support.sap.com"

RAW_DETAIL_URL = f"{PORTAL_ORIGIN}/backend/raw/sapnotes/Detail"
TOKEN_APP_URL = f"{PORTAL_ORIGIN}/backend/raw/core/Applications/coveo"
TOKEN_URL = f"{PORTAL_ORIGIN}/backend/raw/coveo/CoveoToken"

COOKIE_DOMAIN = ".sap.com"
DOCUMENT_TYPE = "SAP Note"

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

# The portal uses single-letter language keys in raw endpoints
_LANGUAGE_KEYS = {"EN": "E", "DE": "D"}

_LOGIN_MARKERS = ("login", "/auth", "saml2", "oauth", "accounts.sap.com")


def language_key(language: str) -> str:
    return _LANGUAGE_KEYS.get(language.upper(), "E")


def note_url(note_id: str) -> str:
    """Canonical, user-facing URL of a note."""
    return f"{PORTAL_ORIGIN}/notes/{note_id}"


def raw_detail_url(note_id: str, language: str = "EN") -> str:
    return f"{RAW_DETAIL_URL}?q={note_id}&t={language_key(language)}&isVTEnabled=false"


def legacy_detail_urls(note_id: str) -> list[str]:
    """Query-style endpoints of the legacy launchpad, in fallback order."""
    base = f"{LAUNCHPAD_ORIGIN}/services/odata/svt/snogwscorr"
    return [
        f"{base}/Notes('{note_id}')?$format=json",
        f"{base}/KnowledgeBaseEntries?$filter=SapNote eq '{note_id}'&$format=json",
        f"{LAUNCHPAD_ORIGIN}/support/notes/{note_id}",
    ]


def knowledge_search_url(query: str = "test") -> str:
    """Search surface whose client code requests a search bearer token."""
    params = json.dumps(
        {"q": query, "tab": "All", "f": {"documenttype": [DOCUMENT_TYPE]}},
        separators=(",", ":"),
    )
    return f"{PORTAL_ORIGIN}/knowledge/search/{quote(params, safe='')}"


def search_api_url(host: str, organization_id: str) -> str:
    return f"https://{host}/rest/search/v2?organizationId={organization_id}"


def is_login_url(url: str) -> bool:
    """True when a URL points at a login / identity-provider page."""
    if not url:
        return False
    parsed = urlparse(url)
    location = f"{parsed.netloc}{parsed.path}".lower()
    return any(marker in location for marker in _LOGIN_MARKERS)


# ═══════════════════════════════════════════════════════════════════════════
# Bounds (seconds)
# ═══════════════════════════════════════════════════════════════════════════

NAV_TIMEOUT_S = 30.0
NETWORK_IDLE_TIMEOUT_S = 10.0
TOKEN_WAIT_S = 15.0
HTTP_TIMEOUT_S = 20.0


def cookie_header(cookies) -> str:
    """``Cookie`` header value for a list of SessionCookie."""
    return "; ".join(f"{c.name}={c.value}" for c in cookies)


def browser_headers(cookie: str = "", accept: str = "application/json, text/html;q=0.9, */*;q=0.8") -> dict[str, str]:
    """Headers that make a plain HTTP request look like the portal's own traffic."""
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": accept,
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": PORTAL_HOME,
    }
    if cookie:
        headers["Cookie"] = cookie
    return headers
