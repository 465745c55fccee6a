"""Minimal template rendering for dispatch entries."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from feed_relay.models import ContentItem

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_.]+)\s*\}\}")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def build_context(item: ContentItem) -> dict[str, Any]:
    """Return the placeholder values available for one content item."""
    payload = item.payload or {}
    categories = payload.get("categories") or []
    return {
        "title": item.title,
        "url": item.url or "",
        "link": item.url or "",
        "description": payload.get("description") or "",
        "body": payload.get("body") or "",
        "author": payload.get("author") or "",
        "image_url": payload.get("image_url") or "",
        "categories": ", ".join(str(category) for category in categories),
        "published_at": item.published_at.isoformat() if item.published_at else "",
        "source": item.source.name if item.source is not None else "",
    }


def render_template(body: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{ key }}`` placeholders; unknown keys render empty.

    Runs of blank lines left by empty fields collapse to one blank line and
    surrounding whitespace is stripped, so an all-empty render yields ``""``.
    """

    def _replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        return "" if value is None else str(value)

    rendered = _PLACEHOLDER_RE.sub(_replace, body or "")
    return _BLANK_LINES_RE.sub("\n\n", rendered).strip()
