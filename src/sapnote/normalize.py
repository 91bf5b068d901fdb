"""
SAPNote — Response Normalisation

Pure functions turning upstream payloads into canonical models.

Every upstream shape has its own mapping table: canonical field → ordered
source paths. The first path that yields a non-empty value wins; a field no
path can fill becomes ``UNSPECIFIED``. Detail parsers are tried in the order
of ``DETAIL_PARSERS`` and each returns ``None`` when the text is not its
shape, so adding a shape means adding a parser, not editing the others.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from bs4 import BeautifulSoup

from sapnote.models import UNSPECIFIED, CanonicalNote, CanonicalSearchResult, SearchResponse
from sapnote.vendor import is_login_url, note_url

logger = logging.getLogger("sapnote.normalize")

FieldTable = dict[str, tuple[str, ...]]

# ═══════════════════════════════════════════════════════════════════════════
# Mapping tables
# ═══════════════════════════════════════════════════════════════════════════

SEARCH_HIT_FIELDS: FieldTable = {
    "id": ("raw.mh_id",),
    "title": ("title",),
    "summary": ("excerpt",),
    "component": ("raw.mh_app_component",),
    "language": ("raw.mh_language",),
    "release_date": ("raw.date",),
}

# Response.SAPNote of the portal's raw detail endpoint
SAP_NOTE_DOCUMENT_FIELDS: FieldTable = {
    "id": ("Header.Number.value",),
    "title": ("Title.value",),
    "summary": ("Header.Type.value",),
    "content": ("LongText.value",),
    "language": ("Header.Language.value",),
    "release_date": ("Header.ReleasedOn.value",),
    "component": ("Header.SAPComponentKeyText.value", "Header.SAPComponentKey.value"),
    "priority": ("Header.Priority.value",),
    "category": ("Header.Category.value",),
}

# OData "d" entity of the legacy launchpad
ODATA_FIELDS: FieldTable = {
    "id": ("SapNote", "Id", "id"),
    "title": ("Title", "title"),
    "summary": ("Summary", "summary", "Description"),
    "content": ("Content", "content", "Text"),
    "language": ("Language", "language"),
    "release_date": ("ReleaseDate", "releaseDate", "CreationDate"),
    "component": ("Component", "component"),
    "priority": ("Priority", "priority"),
    "category": ("Category", "category"),
}

# Flat JSON objects keyed directly by note attributes
FLAT_FIELDS: FieldTable = {
    "id": ("SapNote", "id", "noteId"),
    "title": ("Title", "title", "ShortText"),
    "summary": ("Summary", "summary", "Abstract", "Description"),
    "content": ("Content", "content", "Text", "LongText", "Html"),
    "language": ("Language", "language"),
    "release_date": ("ReleaseDate", "releaseDate", "CreationDate"),
    "component": ("Component", "component"),
    "priority": ("Priority", "priority"),
    "category": ("Category", "category"),
}

_MARKUP_TITLE = "h1, h2, .note-title, .title"
_MARKUP_CONTENT = ".note-content, .content, .description, .text"
_MARKUP_SUMMARY = ".summary, .abstract"
_LOGIN_TITLE_MARKERS = ("login", "log on", "sign in")

_ODATA_DATE_RE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════


def _first(value: Any) -> Any:
    """First non-empty element of a list, or the value itself."""
    if isinstance(value, list):
        for item in value:
            if item not in (None, ""):
                return item
        return None
    return value


def _lookup(obj: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(obj, dict):
            return None
        obj = obj.get(part)
    return _first(obj)


def apply_table(obj: dict[str, Any], table: FieldTable) -> dict[str, Any]:
    """Resolve each canonical field from its ordered source paths."""
    out: dict[str, Any] = {}
    for field, paths in table.items():
        for path in paths:
            value = _lookup(obj, path)
            if isinstance(value, (dict, list)):
                continue
            if value not in (None, ""):
                out[field] = value
                break
    return out


def _epoch_ms_to_date(ms: float, raw: str) -> str:
    """Epoch milliseconds as a UTC date; out-of-range values come back as ``raw``."""
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
    except (ValueError, OverflowError, OSError):
        return raw


def format_release_date(value: Any) -> str | None:
    """Normalise upstream date encodings to ``YYYY-MM-DD``.

    Handles epoch milliseconds, ``/Date(ms)/``, ``YYYYMMDD`` and ISO
    datetimes. Anything else is returned verbatim.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _epoch_ms_to_date(value, str(value))

    text = str(value).strip()
    if not text:
        return None

    match = _ODATA_DATE_RE.match(text)
    if match:
        return _epoch_ms_to_date(int(match.group(1)), text)

    if text.isdigit():
        if len(text) == 8:
            try:
                return datetime.strptime(text, "%Y%m%d").strftime("%Y-%m-%d")
            except ValueError:
                return text
        if len(text) >= 10:
            return _epoch_ms_to_date(int(text), text)
        return text

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).strftime("%Y-%m-%d")
    except ValueError:
        return text


def _build_note(fields: dict[str, Any], note_id: str) -> CanonicalNote:
    fields = dict(fields)
    fields["id"] = str(fields.get("id") or note_id).strip()
    fields["release_date"] = format_release_date(fields.get("release_date"))
    fields["url"] = note_url(fields["id"])
    return CanonicalNote(**fields)


# ═══════════════════════════════════════════════════════════════════════════
# Search
# ═══════════════════════════════════════════════════════════════════════════


def normalize_search_hit(hit: dict[str, Any]) -> CanonicalSearchResult | None:
    """Map one search API hit; hits without a note number are dropped."""
    if not isinstance(hit, dict):
        return None
    fields = apply_table(hit, SEARCH_HIT_FIELDS)
    if "id" not in fields:
        return None
    fields["id"] = str(fields["id"]).strip()
    fields["release_date"] = format_release_date(fields.get("release_date"))
    fields["url"] = note_url(fields["id"])
    return CanonicalSearchResult(**fields)


def parse_search_response(payload: Any, query: str) -> SearchResponse:
    """Normalise a search API body. A missing or malformed hit list is empty."""
    hits = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(hits, list):
        return SearchResponse(query=query)

    results = []
    for hit in hits:
        result = normalize_search_hit(hit)
        if result is None:
            logger.debug("Skipping search hit without a note number")
            continue
        results.append(result)

    total = payload.get("totalCount")
    if not isinstance(total, int) or isinstance(total, bool):
        total = len(results)
    return SearchResponse(query=query, results=results, total_results=total)


# ═══════════════════════════════════════════════════════════════════════════
# Detail
# ═══════════════════════════════════════════════════════════════════════════


def extract_json(text: str) -> Any:
    """Parse JSON that may arrive bare or wrapped in ``<pre>``/``<body>``."""
    if not text:
        return None
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return None
    if not stripped.startswith("<"):
        return None

    soup = BeautifulSoup(stripped, "html.parser")
    node = soup.find("pre") or soup.body
    if node is None:
        return None
    inner = node.get_text().strip()
    if not inner.startswith(("{", "[")):
        return None
    try:
        return json.loads(inner)
    except json.JSONDecodeError:
        return None


def parse_sap_note_document(text: str, note_id: str) -> CanonicalNote | None:
    data = extract_json(text)
    if not isinstance(data, dict):
        return None
    document = (data.get("Response") or {}).get("SAPNote") if isinstance(data.get("Response"), dict) else None
    if not isinstance(document, dict):
        return None
    return _build_note(apply_table(document, SAP_NOTE_DOCUMENT_FIELDS), note_id)


def parse_odata_document(text: str, note_id: str) -> CanonicalNote | None:
    data = extract_json(text)
    if not isinstance(data, dict) or not isinstance(data.get("d"), dict):
        return None
    entity = data["d"]
    if "results" in entity:
        results = entity["results"]
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return None
        entity = results[0]
    fields = apply_table(entity, ODATA_FIELDS)
    if "id" not in fields and "title" not in fields:
        return None
    return _build_note(fields, note_id)


def parse_flat_document(text: str, note_id: str) -> CanonicalNote | None:
    data = extract_json(text)
    if not isinstance(data, dict):
        return None
    if not any(data.get(key) for key in ("SapNote", "id", "noteId")):
        return None
    return _build_note(apply_table(data, FLAT_FIELDS), note_id)


def _is_login_markup(soup: BeautifulSoup) -> bool:
    title = soup.title.get_text(strip=True).lower() if soup.title else ""
    if any(marker in title for marker in _LOGIN_TITLE_MARKERS):
        return True
    if soup.find("input", attrs={"type": "password"}) is not None:
        return True
    refresh = soup.find("meta", attrs={"http-equiv": re.compile("^refresh$", re.I)})
    if refresh is not None:
        match = re.search(r"url=(.+)", str(refresh.get("content", "")), re.I)
        if match and is_login_url(match.group(1).strip("'\" ")):
            return True
    form = soup.find("form", action=True)
    return form is not None and is_login_url(str(form["action"]))


def _select_text(soup: BeautifulSoup, selector: str) -> str | None:
    node = soup.select_one(selector)
    if node is None:
        return None
    return node.get_text(" ", strip=True) or None


def parse_note_markup(text: str, note_id: str) -> CanonicalNote | None:
    """Scrape a rendered note page. Login and redirect pages yield None."""
    if not text or not text.lstrip().startswith("<"):
        return None
    soup = BeautifulSoup(text, "html.parser")
    if _is_login_markup(soup):
        return None

    title = _select_text(soup, _MARKUP_TITLE)
    content = _select_text(soup, _MARKUP_CONTENT)
    summary = _select_text(soup, _MARKUP_SUMMARY)
    if not (title or content or summary):
        return None

    if not title and soup.title:
        title = re.sub(r"^SAP\s*-?\s*", "", soup.title.get_text(strip=True), flags=re.I) or None

    return _build_note({"title": title, "content": content, "summary": summary}, note_id)


DetailParser = Callable[[str, str], "CanonicalNote | None"]

DETAIL_PARSERS: tuple[DetailParser, ...] = (
    parse_sap_note_document,
    parse_odata_document,
    parse_flat_document,
    parse_note_markup,
)


def parse_detail(text: str, note_id: str) -> CanonicalNote | None:
    """First parser that recognises the text wins."""
    for parser in DETAIL_PARSERS:
        note = parser(text, note_id)
        if note is not None:
            logger.debug(f"Detail parsed by {parser.__name__}", extra={"note_id": note_id})
            return note
    return None


__all__ = [
    "UNSPECIFIED",
    "DETAIL_PARSERS",
    "apply_table",
    "extract_json",
    "format_release_date",
    "normalize_search_hit",
    "parse_detail",
    "parse_flat_document",
    "parse_note_markup",
    "parse_odata_document",
    "parse_sap_note_document",
    "parse_search_response",
]
