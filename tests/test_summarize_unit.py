"""Unit tests for the summarizer."""

import json
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from digest_bot.config import BedrockConfig
from digest_bot.errors import ErrorKind, MaxRetriesExceededError
from digest_bot.models import Article, CategorizedArticle, DigestEntry
from digest_bot.summarize import Summarizer

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def ranked(article_id, category="Economy", score=7.0):
    article = Article(
        id=article_id,
        source="bbc",
        title=f"Title {article_id}",
        url=f"https://news.example.com/{article_id}",
        published_at=NOW,
        content=f"Body of article {article_id}",
    )
    return CategorizedArticle(article=article, category=category, relevance_score=score)


def make_summarizer(responses, batch_size=10, language="English"):
    client = Mock()
    client.generate_text.side_effect = responses
    config = BedrockConfig(batch_size_summary=batch_size, summary_delay=0)
    return Summarizer(client, config, language=language), client


class TestSummarizerUnit:
    """Unit tests for summary generation and fallbacks."""

    def test_builds_entries_in_input_order(self):
        items = [ranked("a"), ranked("b", category="Travel")]
        response = json.dumps(
            [{"id": "b", "summary": "Summary B."}, {"id": "a", "summary": "Summary A."}]
        )
        summarizer, _ = make_summarizer([response])

        entries = summarizer.summarize(items)

        assert entries == [
            DigestEntry(
                id="a",
                category="Economy",
                title="Title a",
                url="https://news.example.com/a",
                summary="Summary A.",
                source="bbc",
                published_at=NOW,
            ),
            DigestEntry(
                id="b",
                category="Travel",
                title="Title b",
                url="https://news.example.com/b",
                summary="Summary B.",
                source="bbc",
                published_at=NOW,
            ),
        ]

    def test_missing_or_blank_summary_falls_back_to_title(self):
        items = [ranked("a"), ranked("b"), ranked("c")]
        response = json.dumps([{"id": "a", "summary": "  "}, {"id": "c", "summary": "Fine."}])
        summarizer, _ = make_summarizer([response])

        entries = summarizer.summarize(items)

        assert [e.summary for e in entries] == ["Title a", "Title b", "Fine."]

    def test_batches_are_sent_one_at_a_time(self):
        items = [ranked(str(i)) for i in range(5)]
        summarizer, client = make_summarizer(["[]", "[]", "[]"], batch_size=2)

        entries = summarizer.summarize(items)

        assert client.generate_text.call_count == 3
        assert len(entries) == 5

    def test_prompt_mentions_language(self):
        summarizer, client = make_summarizer(["[]"], language="Italian")

        summarizer.summarize([ranked("a")])

        assert "in Italian" in client.generate_text.call_args.args[0]

    def test_generation_failure_propagates(self):
        summarizer, _ = make_summarizer(
            [MaxRetriesExceededError("max retries exceeded", ErrorKind.TRANSIENT, 5)]
        )

        with pytest.raises(MaxRetriesExceededError):
            summarizer.summarize([ranked("a")])

    def test_empty_input(self):
        summarizer, client = make_summarizer([])

        assert summarizer.summarize([]) == []
        client.generate_text.assert_not_called()
