"""Property-based tests for the RSS collector."""

from datetime import UTC, datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from digest_bot.config import FeedSource
from digest_bot.models import Article
from digest_bot.rss import RSSCollector, build_article_id

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)
SOURCE = FeedSource(url="https://news.example.com/rss", source_id="example", name="Example")

plain_words = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789 \n\t", min_size=1, max_size=300).filter(
    lambda x: x.strip()
)


class TestRSSCollectorProperties:
    """Property-based tests for RSSCollector."""

    @given(
        st.text(min_size=1, max_size=100).filter(lambda x: x.strip()),
        st.text(alphabet="abcdefghijklmnopqrstuvwxyz/-", min_size=1, max_size=60),
        st.integers(min_value=0, max_value=99),
        st.datetimes(
            min_value=datetime(2000, 1, 1),
            max_value=datetime(2030, 1, 1),
            timezones=st.just(UTC),
        ),
    )
    def test_field_extraction_completeness(self, title, path, rank, published):
        """
        For any entry with a title and link, the normalized article carries
        every field and an id derived from source, URL and publication time.
        """
        collector = RSSCollector([SOURCE], clock=lambda: NOW)
        link = f"https://news.example.com/{path}"
        entry = {
            "title": title,
            "link": link,
            "summary": "Body text",
            "published": published.isoformat(),
        }

        article = collector.normalize_entry(entry, SOURCE, rank)

        assert isinstance(article, Article)
        assert article.title == title.strip()
        assert article.url == link
        assert article.published_at == published
        assert article.published_at.tzinfo is not None
        assert article.id == build_article_id("example", link, article.published_at)
        assert article.metadata["rss_rank"] == str(rank)
        assert article.content

    @given(plain_words)
    def test_html_cleaning(self, text):
        """
        For any text wrapped in markup, cleaning removes tags, scripts and
        styles and keeps the words with normalized whitespace.
        """
        html = f"<p>{text}</p><script>alert('x')</script><style>body{{color:red}}</style>"

        result = RSSCollector.clean_html_content(html)

        assert "<" not in result and ">" not in result
        assert result == " ".join(text.split())

    @given(
        st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=40),
        st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=40),
        st.integers(min_value=0, max_value=10**6),
    )
    def test_article_id_is_stable_per_url_and_time(self, path_a, path_b, offset):
        published = NOW - timedelta(seconds=offset)
        url_a = f"https://news.example.com/{path_a}"
        url_b = f"https://news.example.com/{path_b}"

        first = build_article_id("example", url_a, published)

        assert first == build_article_id("example", url_a, published)
        assert first.startswith("example-")
        if path_a != path_b:
            assert first != build_article_id("example", url_b, published)
