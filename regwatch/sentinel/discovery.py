"""Discovery scanner: turn endpoint pages into candidate URLs.

Each ``ListingStrategy`` maps to one handler in ``STRATEGY_HANDLERS``. Handlers
share one signature and return ``list[DiscoveredUrl]``; persistence and
dedup are strategy independent.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup
from sqlalchemy import select

from regwatch.sentinel.fetcher import FetchClient, FetchSuccess
from regwatch.sentinel.velocity import classify_url_risk
from regwatch.storage.database.base import SessionFactory
from regwatch.storage.database.models import (
    DiscoveredItem,
    DiscoveredItemStatus,
    DiscoveryEndpoint,
    ListingStrategy,
)
from regwatch.storage.session import session_scope
from regwatch.utils.config import SentinelConfig
from regwatch.utils.datetime import utc_now
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

DATE_DMY = re.compile(r"\b(\d{1,2})\.\s?(\d{1,2})\.\s?(\d{4})\b")
DATE_ISO = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
YEAR_IN_URL = re.compile(r"(?<!\d)(19\d{2}|20\d{2})(?!\d)")


@dataclass(frozen=True)
class DiscoveredUrl:
    url: str
    title: str | None = None
    date: datetime | None = None


@dataclass
class DiscoveryOutcome:
    """Result of scanning one endpoint."""

    urls: list[DiscoveredUrl]
    page_html: str = ""
    duplicates_removed: int = 0


# Parsing helpers


def _local(tag: str) -> str:
    """Strip an XML namespace: ``{ns}loc`` -> ``loc``."""
    return tag.rsplit("}", 1)[-1]


def parse_date(text: str | None) -> datetime | None:
    """Parse ``DD.MM.YYYY`` or ISO dates found in free text."""
    if not text:
        return None
    text = text.strip()

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except ValueError:
        pass

    for pattern, order in ((DATE_ISO, "ymd"), (DATE_DMY, "dmy")):
        match = pattern.search(text)
        if match:
            a, b, c = (int(g) for g in match.groups())
            year, month, day = (a, b, c) if order == "ymd" else (c, b, a)
            try:
                return datetime(year, month, day, tzinfo=UTC)
            except ValueError:
                return None

    try:
        from email.utils import parsedate_to_datetime

        parsed = parsedate_to_datetime(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except (TypeError, ValueError):
        return None


def normalize_url(url: str) -> str:
    """Canonical form used for cycle dedup."""
    url, _ = urldefrag(url.strip())
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or "/"
    normalized = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}"
    if parsed.query:
        normalized += f"?{parsed.query}"
    return normalized


def dedupe(urls: Iterable[DiscoveredUrl]) -> tuple[list[DiscoveredUrl], int]:
    """Drop repeated URLs, keeping first occurrence. Returns (unique, removed)."""
    seen: set[str] = set()
    unique: list[DiscoveredUrl] = []
    removed = 0
    for item in urls:
        key = normalize_url(item.url)
        if key in seen:
            removed += 1
            continue
        seen.add(key)
        unique.append(item)
    return unique, removed


@dataclass
class SitemapDocument:
    urls: list[DiscoveredUrl]
    child_sitemaps: list[str]


def parse_sitemap(xml: str) -> SitemapDocument:
    """Parse a ``<urlset>`` or ``<sitemapindex>`` document."""
    try:
        root = ET.fromstring(xml.strip().encode("utf-8"))
    except ET.ParseError as e:
        logger.warning("sitemap_parse_failed", error=str(e))
        return SitemapDocument(urls=[], child_sitemaps=[])

    urls: list[DiscoveredUrl] = []
    children: list[str] = []

    kind = _local(root.tag)
    for entry in root:
        fields = {_local(child.tag): (child.text or "").strip() for child in entry}
        loc = fields.get("loc")
        if not loc:
            continue
        if kind == "sitemapindex":
            children.append(loc)
        else:
            urls.append(DiscoveredUrl(url=loc, date=parse_date(fields.get("lastmod"))))

    return SitemapDocument(urls=urls, child_sitemaps=children)


def parse_rss(xml: str) -> list[DiscoveredUrl]:
    """Parse RSS 2.0 items and Atom entries."""
    try:
        root = ET.fromstring(xml.strip().encode("utf-8"))
    except ET.ParseError as e:
        logger.warning("rss_parse_failed", error=str(e))
        return []

    results: list[DiscoveredUrl] = []
    for element in root.iter():
        name = _local(element.tag)
        if name not in ("item", "entry"):
            continue

        link: str | None = None
        title: str | None = None
        date: datetime | None = None
        for child in element:
            child_name = _local(child.tag)
            if child_name == "link":
                # Atom uses href attribute, RSS uses text
                link = child.get("href") or (child.text or "").strip() or link
            elif child_name == "title":
                title = (child.text or "").strip() or None
            elif child_name in ("pubDate", "published", "updated", "date") and date is None:
                date = parse_date(child.text)

        if link:
            results.append(DiscoveredUrl(url=link, title=title, date=date))

    return results


def extract_links(
    html: str,
    base_url: str,
    selector: str | None = None,
    url_pattern: str | None = None,
) -> list[DiscoveredUrl]:
    """Collect anchors from an HTML listing page."""
    soup = BeautifulSoup(html or "", "html.parser")
    pattern = re.compile(url_pattern) if url_pattern else None

    if selector:
        anchors = []
        for node in soup.select(selector):
            anchors.extend([node] if node.name == "a" else node.find_all("a"))
    else:
        anchors = soup.find_all("a")

    results: list[DiscoveredUrl] = []
    for anchor in anchors:
        href = anchor.get("href")
        if not href or href.startswith(("javascript:", "mailto:", "tel:", "#")):
            continue

        url, _ = urldefrag(urljoin(base_url, href))
        if pattern and not pattern.search(url):
            continue

        title = anchor.get_text(" ", strip=True) or None
        date = None
        container = anchor.parent
        if container is not None:
            date = parse_date_nearby(container.get_text(" ", strip=True))

        results.append(DiscoveredUrl(url=url, title=title, date=date))

    return results


def parse_date_nearby(text: str) -> datetime | None:
    match = DATE_DMY.search(text) or DATE_ISO.search(text)
    return parse_date(match.group(0)) if match else None


def _in_date_range(item: DiscoveredUrl, meta: dict[str, Any]) -> bool:
    if item.date is None:
        return True
    date_from = parse_date(meta.get("date_from"))
    date_to = parse_date(meta.get("date_to"))
    if date_from and item.date < date_from:
        return False
    if date_to and item.date > date_to:
        return False
    return True


# Strategy handlers

FetchText = Callable[[str], Awaitable[str | None]]


@dataclass
class ScanContext:
    """What a strategy handler needs: where to start and how to fetch."""

    endpoint: DiscoveryEndpoint
    fetch_text: FetchText
    config: SentinelConfig
    first_page: str | None = None

    @property
    def meta(self) -> dict[str, Any]:
        return self.endpoint.meta or {}


async def _page(ctx: ScanContext) -> str | None:
    if ctx.first_page is None:
        ctx.first_page = await ctx.fetch_text(ctx.endpoint.full_url)
    return ctx.first_page


def _sitemap_child_allowed(url: str, meta: dict[str, Any]) -> bool:
    type_pattern = meta.get("type_pattern")
    sitemap_types = meta.get("sitemap_types")
    if type_pattern and sitemap_types:
        allowed = [re.compile(type_pattern.replace("{type}", str(t))) for t in sitemap_types]
        if not any(p.search(url) for p in allowed):
            return False

    min_year = meta.get("min_year")
    if min_year:
        years = [int(y) for y in YEAR_IN_URL.findall(url)]
        if years and max(years) < int(min_year):
            return False

    return True


async def scan_sitemap(ctx: ScanContext) -> list[DiscoveredUrl]:
    """Recursively walk a sitemap or sitemap index."""
    max_depth = int(ctx.meta.get("max_depth", ctx.config.sitemap_max_depth))
    results: list[DiscoveredUrl] = []
    visited: set[str] = set()

    async def walk(url: str, xml: str | None, depth: int) -> None:
        if url in visited or xml is None:
            return
        visited.add(url)
        document = parse_sitemap(xml)
        results.extend(document.urls)

        if depth >= max_depth:
            if document.child_sitemaps:
                logger.debug("sitemap_depth_limit", url=url, depth=depth)
            return

        for child in document.child_sitemaps:
            if not _sitemap_child_allowed(child, ctx.meta):
                continue
            await walk(child, await ctx.fetch_text(child), depth + 1)

    await walk(ctx.endpoint.full_url, await _page(ctx), 0)

    pattern = ctx.meta.get("url_pattern") or ctx.endpoint.url_pattern
    if pattern:
        compiled = re.compile(pattern)
        results = [r for r in results if compiled.search(r.url)]
    return [r for r in results if _in_date_range(r, ctx.meta)]


async def scan_rss(ctx: ScanContext) -> list[DiscoveredUrl]:
    xml = await _page(ctx)
    if xml is None:
        return []
    items = parse_rss(xml)
    pattern = ctx.meta.get("url_pattern") or ctx.endpoint.url_pattern
    if pattern:
        compiled = re.compile(pattern)
        items = [item for item in items if compiled.search(item.url)]
    return [item for item in items if _in_date_range(item, ctx.meta)]


async def scan_html_list(ctx: ScanContext) -> list[DiscoveredUrl]:
    html = await _page(ctx)
    if html is None:
        return []
    return extract_links(
        html,
        ctx.endpoint.full_url,
        selector=ctx.meta.get("item_selector"),
        url_pattern=ctx.endpoint.url_pattern,
    )


async def scan_pagination(ctx: ScanContext) -> list[DiscoveredUrl]:
    """Walk listing pages serially via a ``{page}`` pattern or a next-link selector."""
    max_pages = int(ctx.meta.get("max_pages", ctx.config.pagination_max_pages))
    next_selector = ctx.meta.get("next_selector")
    pattern = ctx.endpoint.pagination_pattern

    results: list[DiscoveredUrl] = []
    url: str | None = ctx.endpoint.full_url
    html = await _page(ctx)

    for page in range(1, max_pages + 1):
        if html is None or url is None:
            break

        found = extract_links(
            html,
            url,
            selector=ctx.meta.get("item_selector"),
            url_pattern=ctx.endpoint.url_pattern,
        )
        results.extend(found)

        if page == max_pages:
            break

        if pattern:
            url = urljoin(ctx.endpoint.full_url, pattern.replace("{page}", str(page + 1)))
        elif next_selector:
            soup = BeautifulSoup(html, "html.parser")
            link = soup.select_one(next_selector)
            href = link.get("href") if link is not None else None
            url = urljoin(url, href) if href else None
        else:
            break

        if url is None:
            break
        html = await ctx.fetch_text(url)
        if html is not None and not found:
            # An empty page ends the listing
            break

    return results


async def scan_crawl(ctx: ScanContext) -> list[DiscoveredUrl]:
    """Bounded breadth-first crawl restricted to the endpoint's domain."""
    max_depth = int(ctx.meta.get("max_depth", ctx.config.crawl_max_depth))
    max_urls = int(ctx.meta.get("max_urls", ctx.config.crawl_max_urls))
    include = [re.compile(p) for p in ctx.meta.get("include_patterns", [])]
    exclude = [re.compile(p) for p in ctx.meta.get("exclude_patterns", [])]

    start = ctx.endpoint.full_url
    start_domain = urlparse(start).hostname

    def allowed(url: str) -> bool:
        if urlparse(url).hostname != start_domain:
            return False
        if any(p.search(url) for p in exclude):
            return False
        return not include or any(p.search(url) for p in include)

    results: list[DiscoveredUrl] = []
    seen = {normalize_url(start)}
    queue: deque[tuple[str, int]] = deque([(start, 0)])
    first = True

    while queue and len(results) < max_urls:
        url, depth = queue.popleft()
        html = await _page(ctx) if first else await ctx.fetch_text(url)
        first = False
        if html is None:
            continue

        for link in extract_links(html, url):
            key = normalize_url(link.url)
            if key in seen or not allowed(link.url):
                continue
            seen.add(key)
            results.append(link)
            if len(results) >= max_urls:
                break
            if depth + 1 < max_depth:
                queue.append((link.url, depth + 1))

    return results


STRATEGY_HANDLERS: dict[ListingStrategy, Callable[[ScanContext], Awaitable[list[DiscoveredUrl]]]] = {
    ListingStrategy.SITEMAP_XML: scan_sitemap,
    ListingStrategy.SITEMAP_INDEX: scan_sitemap,
    ListingStrategy.RSS_FEED: scan_rss,
    ListingStrategy.HTML_LIST: scan_html_list,
    ListingStrategy.PAGINATION: scan_pagination,
    ListingStrategy.CRAWL: scan_crawl,
}


class DiscoveryScanner:
    """Runs the endpoint's listing strategy and persists what it finds."""

    def __init__(
        self,
        fetch_client: FetchClient,
        session_factory: SessionFactory,
        config: SentinelConfig | None = None,
    ) -> None:
        self.fetch_client = fetch_client
        self._session_factory = session_factory
        self.config = config or SentinelConfig()

    async def _fetch_text(self, url: str) -> str | None:
        result = await self.fetch_client.fetch(url)
        if isinstance(result, FetchSuccess):
            return result.text
        logger.warning("discovery_fetch_failed", url=url, error=str(result.error))
        return None

    async def scan(self, endpoint: DiscoveryEndpoint) -> DiscoveryOutcome:
        """Fetch the endpoint and list candidate URLs, deduplicated for this cycle.

        Raises:
            NetworkError: when the endpoint page itself cannot be fetched
        """
        first = await self.fetch_client.fetch(endpoint.full_url)
        if not isinstance(first, FetchSuccess):
            raise first.error

        ctx = ScanContext(
            endpoint=endpoint,
            fetch_text=self._fetch_text,
            config=self.config,
            first_page=first.text,
        )
        handler = STRATEGY_HANDLERS[endpoint.listing_strategy]
        found = await handler(ctx)
        unique, removed = dedupe(found)

        logger.info(
            "endpoint_scanned",
            endpoint_id=endpoint.id,
            strategy=endpoint.listing_strategy.value,
            found=len(found),
            unique=len(unique),
        )
        return DiscoveryOutcome(urls=unique, page_html=first.text, duplicates_removed=removed)

    def persist_discovered(self, endpoint: DiscoveryEndpoint, urls: list[DiscoveredUrl]) -> int:
        return persist_discovered(self._session_factory, endpoint, urls)


def persist_discovered(
    session_factory: SessionFactory,
    endpoint: DiscoveryEndpoint,
    urls: list[DiscoveredUrl],
) -> int:
    """Upsert discovered URLs for an endpoint. Returns the number of new items."""
    unique, _ = dedupe(urls)
    created = 0
    now = utc_now()

    with session_scope(session_factory) as db:
        existing = {
            normalize_url(item.url): item
            for item in db.scalars(
                select(DiscoveredItem).where(DiscoveredItem.endpoint_id == endpoint.id)
            )
        }

        for found in unique:
            item = existing.get(normalize_url(found.url))
            if item is None:
                db.add(
                    DiscoveredItem(
                        endpoint_id=endpoint.id,
                        url=found.url,
                        title=found.title,
                        publication_date=found.date,
                        status=DiscoveredItemStatus.PENDING,
                        freshness_risk=classify_url_risk(found.url, endpoint.priority),
                        next_scan_due=now,
                    )
                )
                created += 1
                continue

            if found.title:
                item.title = found.title
            if found.date:
                item.publication_date = found.date
            if item.status == DiscoveredItemStatus.PROCESSED:
                # Re-seen: rescan now, the content hash decides whether it changed
                item.status = DiscoveredItemStatus.PENDING
                item.next_scan_due = now

    logger.info("discovered_items_persisted", endpoint_id=endpoint.id, new=created, total=len(unique))
    return created
