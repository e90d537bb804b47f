"""Relevance ranking and top-N selection per category."""

import json
import math
import threading
from dataclasses import replace

from .bedrock import BedrockClient
from .config import BedrockConfig, PipelineConfig
from .errors import QuotaExhaustedError, RunCancelledError
from .logging_config import create_execution_logger
from .llm_json import parse_records
from .models import CategorizedArticle
from .pacing import RequestPacer

FALLBACK_SCORE = 5.0

PROMPT_TEMPLATE = """You are an experienced news editor rating how relevant and important articles are.
You will receive a JSON list of articles from the category "{category}", each with a
unique "id", "title", "content", "published_at" and "source".
Rate every article from 0 to 10, where 10 is very important and timely and 0 is irrelevant.
Consider the significance of the event, public interest and how new the information is.
Return ONLY a JSON array without commentary. Format:
[{{"id": "<article id>", "relevance_score": <number from 0 to 10>}}, ...]

Articles:
{articles}"""


class Ranker:
    """Scores each category in one request, sorts it and keeps the top N."""

    def __init__(
        self,
        client: BedrockClient,
        config: BedrockConfig,
        pipeline_config: PipelineConfig,
        execution_id: str | None = None,
    ):
        self.client = client
        self.config = config
        self.max_per_category = pipeline_config.max_articles_per_category or 5
        self.min_relevance = pipeline_config.min_relevance
        self.default_category = pipeline_config.default_category
        self.logger = create_execution_logger("ranker", execution_id)

    def rank(
        self,
        categorized: list[CategorizedArticle],
        cancel: threading.Event | None = None,
    ) -> list[CategorizedArticle]:
        if not categorized:
            return []

        by_category: dict[str, list[CategorizedArticle]] = {}
        for item in categorized:
            by_category.setdefault(item.category or self.default_category, []).append(item)

        pacer = RequestPacer(self.config.ranking_delay)
        results: list[CategorizedArticle] = []
        distribution: dict[str, int] = {}

        for category, articles in by_category.items():
            pacer.wait(cancel)
            try:
                scored = self.rank_category(category, articles, cancel)
            except (QuotaExhaustedError, RunCancelledError):
                raise
            except Exception as e:
                # Fail open: keep the category unsorted and unscored
                self.logger.warning(
                    f"Ranking failed for category '{category}', keeping input order: {e}",
                    stage="rank",
                    category=category,
                    error=str(e),
                )
                selected = articles[: self.max_per_category]
            else:
                ordered = sorted(scored, key=lambda a: a.relevance_score, reverse=True)
                ordered = [a for a in ordered if a.relevance_score >= self.min_relevance]
                selected = ordered[: self.max_per_category]
            finally:
                pacer.mark()

            distribution[category] = len(selected)
            results.extend(selected)

        self.logger.info(
            f"Ranking selected {len(results)} of {len(categorized)} articles",
            stage="rank",
            distribution=distribution,
            requests=pacer.requests,
        )
        return results

    def rank_category(
        self,
        category: str,
        articles: list[CategorizedArticle],
        cancel: threading.Event | None = None,
    ) -> list[CategorizedArticle]:
        """Score every article of one category in a single request.

        The whole category goes out together so the scores are comparable.
        """
        prompt = self.build_prompt(category, articles)
        response = self.client.generate_text(prompt, cancel=cancel)
        records = parse_records(response)

        scores: dict[str, float] = {}
        for record in records:
            try:
                score = float(record.get("relevance_score"))
            except (TypeError, ValueError):
                continue
            if math.isnan(score):
                continue
            scores.setdefault(str(record["id"]), min(max(score, 0.0), 10.0))

        return [
            replace(item, relevance_score=scores.get(item.article.id, FALLBACK_SCORE))
            for item in articles
        ]

    def build_prompt(self, category: str, articles: list[CategorizedArticle]) -> str:
        payload = [
            {
                "id": item.article.id,
                "category": category,
                "title": item.article.title,
                "content": item.article.content,
                "published_at": item.article.published_at.isoformat(),
                "source": item.article.source,
            }
            for item in articles
        ]
        return PROMPT_TEMPLATE.format(
            category=category, articles=json.dumps(payload, ensure_ascii=False)
        )
