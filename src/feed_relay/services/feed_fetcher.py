"""Feed fetching with outbound URL safety checks.

This module provides the FeedFetcher boundary used by the feed poller and an
httpx-backed implementation that understands RSS 2.0, Atom and JSON Feed.
Every URL, including each redirect hop, is validated before a request is
made so a feed cannot point the service at internal addresses.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import socket
import xml.etree.ElementTree as ET
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol
from urllib.parse import urljoin, urlsplit

import httpx

from feed_relay.core.errors import FeedFetchError, UnsafeURLError
from feed_relay.core.settings import settings

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304
HTTP_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

ATOM_NS = "{http://www.w3.org/2005/Atom}"
CONTENT_NS = "{http://purl.org/rss/1.0/modules/content/}"
DC_NS = "{http://purl.org/dc/elements/1.1/}"
MEDIA_NS = "{http://search.yahoo.com/mrss/}"

FORBIDDEN_HOST_SUFFIXES = (".localhost", ".local", ".lan")

Resolver = Callable[[str], Sequence[str]]


@dataclass(frozen=True)
class RawItem:
    """One entry as published by a feed, before normalization."""

    title: str
    url: str | None
    guid: str | None = None
    published_at: datetime | None = None
    description: str | None = None
    body: str | None = None
    author: str | None = None
    image_url: str | None = None
    categories: tuple[str, ...] = ()

    def payload(self) -> dict[str, Any]:
        """Return the JSON payload stored on the content item."""
        return {
            "description": self.description,
            "body": self.body,
            "author": self.author,
            "image_url": self.image_url,
            "categories": list(self.categories),
        }


@dataclass(frozen=True)
class FetchResult:
    """Items returned by one fetch plus the cache validators to reuse."""

    items: list[RawItem] = field(default_factory=list)
    etag: str | None = None
    last_modified: str | None = None
    not_modified: bool = False


class FeedFetcher(Protocol):
    """Boundary for retrieving raw items from a feed URL."""

    async def fetch(
        self,
        url: str,
        *,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResult:
        """Fetch and parse ``url``; raise FeedFetchError on failure."""
        ...


def is_forbidden_hostname(hostname: str | None) -> bool:
    """Return True for hostnames that only make sense on a private network."""
    host = (hostname or "").strip().lower().rstrip(".")
    if not host:
        return True
    return host == "localhost" or host.endswith(FORBIDDEN_HOST_SUFFIXES)


def is_private_or_reserved_ip(address: str) -> bool:
    """Return True for loopback, private, link-local, CGNAT, multicast or reserved IPs.

    Unparseable input is treated as unsafe.
    """
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not ip.is_global or ip.is_multicast or ip.is_reserved


def _system_resolver(hostname: str) -> list[str]:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return [str(info[4][0]) for info in infos]


def assert_safe_outbound_url(
    url: str,
    *,
    allow_private: bool | None = None,
    resolver: Resolver | None = None,
) -> str:
    """Validate that ``url`` may be fetched from this service.

    Args:
        url: Absolute URL to check
        allow_private: Skip host and address checks; defaults to the
            ``ALLOW_PRIVATE_URLS`` setting
        resolver: Hostname to addresses lookup, injectable for tests

    Returns:
        The URL unchanged when it is safe

    Raises:
        UnsafeURLError: If the scheme, credentials, host or any resolved
            address is not allowed
    """
    if allow_private is None:
        allow_private = settings.allow_private_urls

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as exc:
        raise UnsafeURLError(f"Invalid URL: {url}") from exc

    if parts.scheme not in ("http", "https"):
        raise UnsafeURLError("URL must be http(s)")
    if parts.username or parts.password:
        raise UnsafeURLError("URL must not include credentials")
    if allow_private:
        return url
    if is_forbidden_hostname(hostname):
        raise UnsafeURLError("URL hostname is not allowed")

    assert hostname is not None
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        pass
    else:
        if is_private_or_reserved_ip(hostname):
            raise UnsafeURLError("URL resolves to a private or reserved IP address")
        return url

    lookup = resolver or _system_resolver
    try:
        addresses = lookup(hostname)
    except OSError as exc:
        raise FeedFetchError(f"Could not resolve {hostname}: {exc}") from exc
    if not addresses:
        raise FeedFetchError(f"Could not resolve {hostname}")
    for address in addresses:
        if is_private_or_reserved_ip(address):
            raise UnsafeURLError("URL resolves to a private or reserved IP address")
    return url


def _text(element: ET.Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    value = element.text.strip()
    return value or None


def _parse_date(value: object) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _rss_image(item: ET.Element) -> str | None:
    enclosure = item.find("enclosure")
    if enclosure is not None and (enclosure.get("type") or "").startswith("image/"):
        return enclosure.get("url")
    for tag in (f"{MEDIA_NS}content", f"{MEDIA_NS}thumbnail"):
        media = item.find(tag)
        if media is not None and media.get("url"):
            return media.get("url")
    return None


def _parse_rss(channel: ET.Element) -> list[RawItem]:
    items: list[RawItem] = []
    for item in channel.findall("item"):
        link = _text(item.find("link"))
        guid = _text(item.find("guid"))
        if not link and guid and guid.startswith(("http://", "https://")):
            link = guid
        items.append(
            RawItem(
                title=_text(item.find("title")) or "",
                url=link,
                guid=guid,
                published_at=_parse_date(
                    _text(item.find("pubDate")) or _text(item.find(f"{DC_NS}date"))
                ),
                description=_text(item.find("description")),
                body=_text(item.find(f"{CONTENT_NS}encoded")),
                author=_text(item.find("author")) or _text(item.find(f"{DC_NS}creator")),
                image_url=_rss_image(item),
                categories=tuple(
                    value for value in (_text(c) for c in item.findall("category")) if value
                ),
            )
        )
    return items


def _atom_link(entry: ET.Element) -> str | None:
    fallback = None
    for link in entry.findall(f"{ATOM_NS}link"):
        rel = link.get("rel", "alternate")
        if rel == "alternate" and link.get("href"):
            return link.get("href")
        fallback = fallback or link.get("href")
    return fallback


def _parse_atom(root: ET.Element) -> list[RawItem]:
    items: list[RawItem] = []
    for entry in root.findall(f"{ATOM_NS}entry"):
        author = entry.find(f"{ATOM_NS}author")
        items.append(
            RawItem(
                title=_text(entry.find(f"{ATOM_NS}title")) or "",
                url=_atom_link(entry),
                guid=_text(entry.find(f"{ATOM_NS}id")),
                published_at=_parse_date(
                    _text(entry.find(f"{ATOM_NS}published"))
                    or _text(entry.find(f"{ATOM_NS}updated"))
                ),
                description=_text(entry.find(f"{ATOM_NS}summary")),
                body=_text(entry.find(f"{ATOM_NS}content")),
                author=_text(author.find(f"{ATOM_NS}name")) if author is not None else None,
                categories=tuple(
                    term
                    for term in (c.get("term") for c in entry.findall(f"{ATOM_NS}category"))
                    if term
                ),
            )
        )
    return items


def _parse_json_feed(document: dict[str, Any]) -> list[RawItem]:
    items: list[RawItem] = []
    for entry in document.get("items") or []:
        if not isinstance(entry, dict):
            continue
        author = entry.get("author") or {}
        items.append(
            RawItem(
                title=str(entry.get("title") or ""),
                url=entry.get("url") or entry.get("external_url"),
                guid=str(entry["id"]) if entry.get("id") is not None else None,
                published_at=_parse_date(entry.get("date_published")),
                description=entry.get("summary"),
                body=entry.get("content_text") or entry.get("content_html"),
                author=author.get("name") if isinstance(author, dict) else None,
                image_url=entry.get("image") or entry.get("banner_image"),
                categories=tuple(str(tag) for tag in entry.get("tags") or []),
            )
        )
    return items


def parse_feed(content: bytes, content_type: str | None = None) -> list[RawItem]:
    """Parse an RSS 2.0, Atom or JSON Feed document.

    Args:
        content: Raw response body
        content_type: Response content type used to spot JSON feeds

    Returns:
        Items in document order

    Raises:
        FeedFetchError: If the document is not a recognized feed format
    """
    stripped = content.lstrip()
    if (content_type and "json" in content_type) or stripped.startswith(b"{"):
        try:
            document = json.loads(content)
        except ValueError as exc:
            raise FeedFetchError(f"Invalid JSON feed: {exc}") from exc
        if not isinstance(document, dict):
            raise FeedFetchError("JSON feed must be an object")
        return _parse_json_feed(document)

    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise FeedFetchError(f"Invalid XML feed: {exc}") from exc

    if root.tag == f"{ATOM_NS}feed":
        return _parse_atom(root)
    channel = root.find("channel")
    if channel is not None:
        return _parse_rss(channel)
    raise FeedFetchError(f"Unrecognized feed document root: {root.tag}")


class HttpFeedFetcher:
    """Fetch feeds over HTTP(S) with conditional requests and manual redirects."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: float | None = None,
        max_redirects: int | None = None,
        allow_private: bool | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            client: Optional shared HTTP client. If None, a client is created.
            timeout_seconds: Request timeout; defaults to settings
            max_redirects: Maximum redirect hops to follow; defaults to settings
            allow_private: Permit private addresses; defaults to settings
            resolver: Optional DNS resolver used for address checks
        """
        timeout = timeout_seconds or settings.feed_fetch_timeout_seconds
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            headers={"User-Agent": settings.feed_user_agent},
        )
        self._max_redirects = (
            settings.feed_max_redirects if max_redirects is None else max_redirects
        )
        self._allow_private = allow_private
        self._resolver = resolver

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _check(self, url: str) -> None:
        await asyncio.to_thread(
            assert_safe_outbound_url,
            url,
            allow_private=self._allow_private,
            resolver=self._resolver,
        )

    async def fetch(
        self,
        url: str,
        *,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> FetchResult:
        """Fetch ``url`` and parse it into raw items.

        Args:
            url: Feed URL
            etag: Validator from the previous successful fetch
            last_modified: Validator from the previous successful fetch

        Returns:
            Parsed items and fresh cache validators; ``not_modified`` is set
            when the server answered 304

        Raises:
            UnsafeURLError: If the URL or a redirect target is not allowed
            FeedFetchError: On network errors, bad statuses or unparseable bodies
        """
        headers: dict[str, str] = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        current = url
        for _ in range(self._max_redirects + 1):
            await self._check(current)
            try:
                response = await self._client.get(current, headers=headers)
            except httpx.HTTPError as exc:
                raise FeedFetchError(f"Request to {current} failed: {exc}") from exc

            if response.status_code in HTTP_REDIRECT_STATUSES:
                location = response.headers.get("location")
                if not location:
                    raise FeedFetchError(f"Redirect from {current} without Location header")
                current = urljoin(current, location)
                continue

            if response.status_code == HTTP_NOT_MODIFIED:
                return FetchResult(etag=etag, last_modified=last_modified, not_modified=True)
            if response.status_code != HTTP_OK:
                raise FeedFetchError(f"Feed returned HTTP {response.status_code}")

            items = parse_feed(response.content, response.headers.get("content-type"))
            logger.debug("Fetched %d items from %s", len(items), current)
            return FetchResult(
                items=items,
                etag=response.headers.get("etag"),
                last_modified=response.headers.get("last-modified"),
            )

        raise FeedFetchError(f"Too many redirects fetching {url}")
