"""Article selection rules applied before any generation request."""

from collections import Counter
from datetime import UTC, datetime, timedelta

from .config import PipelineConfig
from .logging_config import create_execution_logger
from .models import Article, State


def canonical_key(article: Article) -> str:
    """Identity used to detect duplicates inside one collection batch.

    Lowercased, trimmed URL; the title is used only when the URL is empty.
    """
    key = article.url.strip().lower()
    if not key:
        key = article.title.strip().lower()
    return key


class ArticleFilter:
    """Drops stale, future-dated, short, duplicate and already sent articles."""

    def __init__(self, config: PipelineConfig, execution_id: str | None = None):
        self.config = config
        self.logger = create_execution_logger("filter", execution_id)

    def apply(
        self, articles: list[Article], state: State, now: datetime | None = None
    ) -> list[Article]:
        """Return the articles worth processing, in input order.

        Rules are checked in order and the first match drops the article:
        stale, future-dated, too short, duplicate within the batch, already sent.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(hours=self.config.recency_max_hours)
        sent_ids = state.sent_ids()

        seen: set[str] = set()
        dropped: Counter[str] = Counter()
        kept: list[Article] = []

        for article in articles:
            reason = self._drop_reason(article, now, cutoff, sent_ids, seen)
            if reason:
                dropped[reason] += 1
                continue
            seen.add(canonical_key(article))
            kept.append(article)

        self.logger.info(
            f"Filter kept {len(kept)} of {len(articles)} articles",
            stage="filter",
            kept=len(kept),
            dropped=dict(dropped),
        )
        return kept

    def _drop_reason(
        self,
        article: Article,
        now: datetime,
        cutoff: datetime,
        sent_ids: set[str],
        seen: set[str],
    ) -> str | None:
        if article.published_at < cutoff:
            return "stale"
        if article.published_at > now:
            return "future_dated"
        if len(article.content.strip()) < self.config.min_content_length:
            return "too_short"
        if canonical_key(article) in seen:
            return "duplicate"
        if article.id in sent_ids:
            return "already_sent"
        return None
