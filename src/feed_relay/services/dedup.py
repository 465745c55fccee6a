"""Stable identity for fetched content items.

Re-fetching the same story must never create a second row, so every item is
reduced to two keys: a normalized URL and a hash over the normalized title
and URL. Both are unique per source in the content store.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit

TRACKING_PARAMS = frozenset(
    {
        "gclid",
        "dclid",
        "fbclid",
        "msclkid",
        "yclid",
        "igshid",
        "mc_cid",
        "mc_eid",
    }
)
TRACKING_PREFIXES = ("utm_",)
DEFAULT_PORTS = {80, 443}

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_QUOTES_RE = re.compile(r"[\"'`‘’“”]")
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")


@dataclass(frozen=True)
class DedupKey:
    """Pair of per-source unique keys for a content item."""

    normalized_url: str
    content_hash: str


def is_tracking_param(name: str) -> bool:
    """Return True when a query parameter only carries campaign tracking."""
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def normalize_text(value: str | None) -> str:
    """Lower-case text and drop punctuation, quotes and whitespace runs."""
    if not value:
        return ""
    text = _WHITESPACE_RE.sub(" ", value.lower())
    text = _QUOTES_RE.sub("", text)
    text = _NON_WORD_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _fallback_normalize(raw: str) -> str:
    text = _SCHEME_RE.sub("", raw.strip().lower())
    if text.startswith("www."):
        text = text[4:]
    return text.rstrip("/")


def normalize_url(raw: str | None) -> str:
    """Reduce a URL to a scheme-less canonical form.

    The host is lower-cased and loses a leading ``www.``, the path loses its
    trailing slash, tracking and empty query parameters are dropped and the
    rest are sorted. http and https variants of a link normalize identically.

    Args:
        raw: URL as published by the feed

    Returns:
        Canonical ``host/path?query`` string, or ``""`` for empty input
    """
    if not raw or not raw.strip():
        return ""

    candidate = raw.strip()
    if not _SCHEME_RE.match(candidate):
        candidate = f"https://{candidate}"

    try:
        parts = urlsplit(candidate)
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return _fallback_normalize(raw)

    if not host:
        return _fallback_normalize(raw)
    if host.startswith("www."):
        host = host[4:]
    if port is not None and port not in DEFAULT_PORTS:
        host = f"{host}:{port}"

    path = parts.path.lower().rstrip("/")

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if value and not is_tracking_param(key)
    ]
    params.sort()
    query = urlencode(params)

    normalized = f"{host}{path}"
    if query:
        normalized = f"{normalized}?{query}"
    return normalized


def content_hash(title: str | None, url: str | None) -> str:
    """Return the SHA-256 hex digest of the normalized title and URL."""
    material = f"{normalize_text(title)}|{normalize_url(url)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def dedup_key(title: str | None, url: str | None, guid: str | None = None) -> DedupKey:
    """Compute both dedup keys for an item.

    Items without a link fall back to their guid, then to their hash, so two
    link-less items never collide on an empty URL key.
    """
    digest = content_hash(title, url)
    normalized = normalize_url(url)
    if not normalized:
        normalized = f"guid:{guid.strip()}" if guid and guid.strip() else f"hash:{digest}"
    return DedupKey(normalized_url=normalized, content_hash=digest)
