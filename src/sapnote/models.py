"""
SAPNote — Data Models

Pydantic models for the persisted session and the canonical note shapes.

Canonical models never omit a field: anything the upstream response did not
supply is set to ``UNSPECIFIED`` instead of being guessed.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

UNSPECIFIED = "Not specified"

# Five minutes: a cached session this close to expiry counts as stale
SESSION_BUFFER_MS = 5 * 60 * 1000


# ═══════════════════════════════════════════════════════════════════════════
# Session
# ═══════════════════════════════════════════════════════════════════════════


class SessionCookie(BaseModel):
    """One browser cookie, in the shape Playwright reads and writes."""

    name: str
    value: str
    domain: str = ".sap.com"
    path: str = "/"
    expires: float | None = None
    http_only: bool | None = Field(default=None, alias="httpOnly")
    secure: bool | None = None
    same_site: str | None = Field(default=None, alias="sameSite")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    def to_playwright(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionRecord(BaseModel):
    """Last successful vendor session, persisted as one whole record.

    ``expires_at`` is epoch milliseconds computed by the authenticator from
    the configured maximum age; vendor cookie expiry is never consulted.
    """

    session_material: str = Field(alias="access_token")
    cookies: list[SessionCookie] = Field(default_factory=list)
    expires_at: int = Field(alias="expiresAt")

    model_config = {"populate_by_name": True}

    def is_fresh(self, now_ms: int, buffer_ms: int = SESSION_BUFFER_MS) -> bool:
        return bool(self.session_material) and now_ms < self.expires_at - buffer_ms

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.session_material,
            "cookies": [c.to_playwright() for c in self.cookies],
            "expiresAt": self.expires_at,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Canonical results
# ═══════════════════════════════════════════════════════════════════════════


class CanonicalSearchResult(BaseModel):
    """One search hit, independent of which upstream produced it."""

    id: str
    title: str = UNSPECIFIED
    summary: str = UNSPECIFIED
    component: str = UNSPECIFIED
    language: str = UNSPECIFIED
    release_date: str = UNSPECIFIED
    url: str = UNSPECIFIED

    @field_validator("*", mode="before")
    @classmethod
    def _mark_unspecified(cls, v: Any) -> Any:
        if v is None:
            return UNSPECIFIED
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if isinstance(v, str):
            v = v.strip()
            return v or UNSPECIFIED
        return v


class CanonicalNote(CanonicalSearchResult):
    """Full note detail."""

    priority: str = UNSPECIFIED
    category: str = UNSPECIFIED
    content: str = UNSPECIFIED


class SearchResponse(BaseModel):
    query: str
    results: list[CanonicalSearchResult] = Field(default_factory=list)
    total_results: int = 0
