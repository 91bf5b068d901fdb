"""
SAPNote — MCP Tool Implementations

Thin wrappers that connect MCP tool calls to the NoteService.

    sap_note_search  → run_note_search  → NoteService.search
    sap_note_get     → run_note_get     → NoteService.get_detail

All outputs are Markdown, including errors, which are rendered as
``**Error (<kind>):** <message>`` so the host model can tell a bad input
from an expired session from an outage.

A SessionExpiredError is retried exactly once, after re-authenticating.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from sapnote.errors import SessionExpiredError, error_kind
from sapnote.models import UNSPECIFIED, CanonicalNote, SearchResponse

logger = logging.getLogger("sapnote.mcp.tools")

CONTENT_PREVIEW_CHARS = 20000


# ═══════════════════════════════════════════════════════════════════════════
# Output Formatting
# ═══════════════════════════════════════════════════════════════════════════


def format_error(exc: BaseException) -> str:
    return f"**Error ({error_kind(exc)}):** {exc}"


def format_search_markdown(response: SearchResponse) -> str:
    """Markdown list of search hits."""
    if not response.results:
        return (
            f"No SAP Notes found for query: \"{response.query}\"\n\n"
            "Try different keywords, an error message, a transaction code or a component."
        )

    lines = [f"Found {len(response.results)} SAP Note(s) for query: \"{response.query}\"\n"]
    for result in response.results:
        lines.append(f"## SAP Note {result.id}: {result.title}")
        lines.append(f"**Summary:** {result.summary}")
        lines.append(f"**Component:** {result.component}")
        lines.append(f"**Release Date:** {result.release_date}")
        lines.append(f"**Language:** {result.language}")
        lines.append(f"**Link:** {result.url}")
        lines.append("")
    if response.total_results > len(response.results):
        lines.append(f"*Showing {len(response.results)} of {response.total_results} matches.*")
    return "\n".join(lines).rstrip() + "\n"


def format_note_markdown(note: CanonicalNote) -> str:
    """Markdown rendering of one note."""
    content = note.content
    if content != UNSPECIFIED and len(content) > CONTENT_PREVIEW_CHARS:
        content = content[:CONTENT_PREVIEW_CHARS] + "\n\n*[content truncated]*"

    return (
        f"# SAP Note {note.id}: {note.title}\n\n"
        f"| | |\n|---|---|\n"
        f"| **Component** | {note.component} |\n"
        f"| **Priority** | {note.priority} |\n"
        f"| **Category** | {note.category} |\n"
        f"| **Release Date** | {note.release_date} |\n"
        f"| **Language** | {note.language} |\n"
        f"| **Link** | {note.url} |\n\n"
        f"## Summary\n\n{note.summary}\n\n"
        f"## Content\n\n{content}\n"
    )


def format_not_found(note_id: str) -> str:
    return (
        f"SAP Note {note_id} was not found, or it is not accessible with the "
        "current credentials."
    )


# ═══════════════════════════════════════════════════════════════════════════
# Tool runners
# ═══════════════════════════════════════════════════════════════════════════


async def _with_session_retry(service: Any, call: Callable[[], Awaitable[Any]]) -> Any:
    """Run ``call``; on session expiry re-authenticate and run it once more."""
    try:
        return await call()
    except SessionExpiredError:
        logger.info("Session expired during tool call, re-authenticating once")
        await service.ensure_authenticated()
        return await call()


async def run_note_search(service: Any, q: str, lang: str = "EN") -> str:
    started = time.monotonic()
    try:
        response = await _with_session_retry(service, lambda: service.search(q, language=lang))
    except Exception as e:
        logger.error(f"sap_note_search failed: {e}", extra={"tool_name": "sap_note_search", "query": q})
        return format_error(e)

    logger.info(
        "sap_note_search completed",
        extra={
            "tool_name": "sap_note_search",
            "query": q,
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return format_search_markdown(response)


async def run_note_get(service: Any, id: str, lang: str = "EN") -> str:
    started = time.monotonic()
    try:
        note = await _with_session_retry(service, lambda: service.get_detail(id, language=lang))
    except Exception as e:
        logger.error(f"sap_note_get failed: {e}", extra={"tool_name": "sap_note_get", "note_id": id})
        return format_error(e)

    logger.info(
        "sap_note_get completed",
        extra={
            "tool_name": "sap_note_get",
            "note_id": id,
            "status": "found" if note is not None else "not_found",
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    if note is None:
        return format_not_found(id.strip())
    return format_note_markdown(note)
