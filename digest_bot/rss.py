"""RSS feed collection for RSS Digest Bot."""

import hashlib
import re
import threading
from collections.abc import Callable
from datetime import UTC, datetime

import feedparser
import requests
from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from .config import FeedSource
from .logging_config import create_execution_logger
from .models import Article
from .pacing import check_cancelled

MAX_ITEMS_PER_FEED = 100

# "&" that does not start a named or numeric entity
_STRAY_AMPERSAND = re.compile(rb"&(?!(?:[a-zA-Z][a-zA-Z0-9]*|#[0-9]+|#x[0-9a-fA-F]+);)")


def build_article_id(source_id: str, url: str, published: datetime) -> str:
    """Stable id for the same URL and publication time."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    return f"{source_id}-{digest}-{int(published.timestamp())}"


def repair_xml_entities(data: bytes) -> bytes:
    """Escape bare ampersands that would make the feed invalid XML."""
    return _STRAY_AMPERSAND.sub(b"&amp;", data)


class RSSCollector:
    """Fetches every configured feed and normalizes entries into Articles."""

    def __init__(
        self,
        sources: list[FeedSource],
        session: requests.Session | None = None,
        timeout: int = 15,
        clock: Callable[[], datetime] | None = None,
        execution_id: str | None = None,
    ):
        """Initialize the collector.

        Args:
            sources: Feeds to fetch
            session: Optional HTTP session (a new one is created otherwise)
            timeout: HTTP request timeout in seconds
            clock: Source of "now" for entries without a usable date
            execution_id: Execution ID for logging context
        """
        self.sources = sources
        self.timeout = timeout
        self.clock = clock or (lambda: datetime.now(UTC))
        self.logger = create_execution_logger("rss_collector", execution_id)
        self.session = session or requests.Session()
        self.session.headers.update(
            {"User-Agent": "Mozilla/5.0 (compatible; RSS-Digest-Bot/1.0)"}
        )
        self.failed_feeds: list[str] = []

    def collect(self, cancel: threading.Event | None = None) -> list[Article]:
        """Fetch all feeds. A failing feed is logged and skipped."""
        self.logger.log_execution_start(feed_count=len(self.sources))
        self.failed_feeds = []
        articles: list[Article] = []

        for source in self.sources:
            check_cancelled(cancel)
            try:
                items = self.fetch_feed(source)
            except Exception as e:
                self.failed_feeds.append(source.url)
                self.logger.error(
                    f"Failed to fetch feed {source.url}: {e}",
                    feed_url=source.url,
                    error=str(e),
                )
                continue
            articles.extend(items)
            self.logger.info(
                f"Processed feed: {len(items)} items found",
                feed_url=source.url,
                items_count=len(items),
            )

        self.logger.log_execution_end(
            success=True,
            total_items=len(articles),
            failed_feeds=len(self.failed_feeds),
        )
        return articles

    def fetch_feed(self, source: FeedSource) -> list[Article]:
        """Download and parse a single feed.

        Raises:
            requests.RequestException: If the download fails
            ValueError: If the body cannot be parsed as a feed
        """
        response = self.session.get(source.url, timeout=self.timeout)
        response.raise_for_status()

        feed = feedparser.parse(repair_xml_entities(response.content))
        if feed.bozo and not feed.entries:
            raise ValueError(f"Unparsable feed: {getattr(feed, 'bozo_exception', 'unknown error')}")
        if feed.bozo:
            self.logger.warning(
                f"Feed parsing warning for {source.url}: {feed.bozo_exception}",
                feed_url=source.url,
            )

        articles = []
        for rank, entry in enumerate(feed.entries[:MAX_ITEMS_PER_FEED]):
            article = self.normalize_entry(entry, source, rank)
            if article is not None:
                articles.append(article)
        return articles

    def normalize_entry(self, entry, source: FeedSource, rank: int) -> Article | None:
        """Turn a feedparser entry into an Article; None if it has no link or title."""
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or "").strip()
        if not title or not link:
            return None

        published = self.parse_published(entry)
        metadata = {"rss_rank": str(rank), "site_name": source.name or source.source_id}
        if source.category:
            metadata["rss_category"] = source.category

        return Article(
            id=build_article_id(source.source_id, link, published),
            source=source.source_id,
            title=title,
            url=link,
            published_at=published,
            language=entry.get("language") or "",
            content=self.clean_html_content(self.select_content(entry)) or title,
            metadata=metadata,
        )

    def parse_published(self, entry) -> datetime:
        for key in ("published", "updated", "created"):
            value = entry.get(key)
            if not value:
                continue
            try:
                published = date_parser.parse(value)
            except (ValueError, TypeError, OverflowError):
                continue
            if published.tzinfo is None:
                published = published.replace(tzinfo=UTC)
            return published

        fallback = self.clock()
        self.logger.warning(
            "Entry without usable date, using current time",
            item_title=entry.get("title", ""),
        )
        return fallback

    @staticmethod
    def select_content(entry) -> str:
        # content:encoded first, then summary/description
        content = entry.get("content")
        if isinstance(content, list) and content:
            value = content[0].get("value", "")
            if value:
                return value
        return entry.get("summary") or entry.get("description") or ""

    @staticmethod
    def clean_html_content(content: str) -> str:
        """Remove HTML tags from content and normalize whitespace."""
        if not content:
            return ""

        if "<" in content or ">" in content:
            soup = BeautifulSoup(content, "html.parser")
            for tag in soup(["script", "style"]):
                tag.decompose()
            content = soup.get_text(separator=" ")

        return " ".join(content.split())
