"""Categorization of collected articles with Bedrock."""

import json
import threading
from collections import Counter

from .bedrock import BedrockClient
from .config import BedrockConfig, PipelineConfig
from .logging_config import create_execution_logger
from .llm_json import parse_records
from .models import Article, CategorizedArticle
from .pacing import RequestPacer, split_batches

PROMPT_TEMPLATE = """You are a news editor who sorts articles into fixed categories.
You will receive a JSON list of articles, each with a unique "id", a "title" and its "content".

Tasks:
{dedupe_task}
2. Assign every article exactly one category from this list:
{categories}

Use "Top Stories" for events of global or regional importance that do not fit a
topical category. Use "{default_category}" for articles that fit no topical
category and are not important enough for "Top Stories".

Return ONLY a JSON array, no markdown, no commentary. Format:
[{{"id": "<article id>", "category": "<one category from the list>"{duplicate_field}}}, ...]

Articles:
{articles}"""

DEDUPE_TASK = """1. Find articles that report the same story. Keep the most complete one.
   For every dropped duplicate return a record with "duplicate_of" set to the id
   of the article you kept, and no category. Never silently leave an id out."""

NO_DEDUPE_TASK = "1. Return one record for every article id."


class Categorizer:
    """Assigns categories in batches and reconciles the model's answer."""

    def __init__(
        self,
        client: BedrockClient,
        config: BedrockConfig,
        pipeline_config: PipelineConfig,
        execution_id: str | None = None,
    ):
        self.client = client
        self.config = config
        self.categories = pipeline_config.categories
        self.default_category = pipeline_config.default_category
        self.batch_size = config.batch_size_categorization or 15
        self.dedupe = config.dedupe
        self.logger = create_execution_logger("categorizer", execution_id)
        self._by_lower = {c.strip().lower(): c for c in self.categories}

    def categorize(
        self, articles: list[Article], cancel: threading.Event | None = None
    ) -> list[CategorizedArticle]:
        """Categorize articles, in input order.

        Ids the model omits get the default category; ids the model marks as
        duplicates of another article are dropped.
        """
        if not articles:
            return []

        batches = split_batches(articles, self.batch_size)
        self.logger.info(
            f"Categorizing {len(articles)} articles in {len(batches)} batch(es)",
            stage="categorize",
            batch_size=self.batch_size,
        )

        pacer = RequestPacer(self.config.categorization_delay)
        results: list[CategorizedArticle] = []
        for index, batch in enumerate(batches, start=1):
            waited = pacer.wait(cancel)
            if waited:
                self.logger.info(
                    f"Waited {waited:.0f}s before categorization batch {index}",
                    stage="categorize",
                )
            results.extend(self._categorize_batch(batch, cancel))
            pacer.mark()

        distribution = Counter(item.category for item in results)
        self.logger.info(
            f"Categorized {len(results)} articles in {pacer.requests} request(s)",
            stage="categorize",
            distribution=dict(distribution),
            dropped_duplicates=len(articles) - len(results),
        )
        return results

    def _categorize_batch(
        self, batch: list[Article], cancel: threading.Event | None
    ) -> list[CategorizedArticle]:
        prompt = self.build_prompt(batch)
        response = self.client.generate_text(prompt, cancel=cancel)
        records = parse_records(response)

        batch_ids = {article.id for article in batch}
        categories: dict[str, str] = {}
        duplicates: dict[str, str] = {}
        for record in records:
            article_id = str(record["id"])
            if article_id not in batch_ids or article_id in categories or article_id in duplicates:
                continue
            duplicate_of = str(record.get("duplicate_of") or "").strip()
            if self.dedupe and duplicate_of and duplicate_of != article_id:
                duplicates[article_id] = duplicate_of
                continue
            categories[article_id] = self.normalize_category(record.get("category"))

        # A duplicate only counts if the article it points at survives
        dropped = {
            article_id
            for article_id, kept_id in duplicates.items()
            if kept_id in batch_ids and kept_id not in duplicates
        }

        results = []
        omitted = 0
        for article in batch:
            if article.id in dropped:
                continue
            category = categories.get(article.id)
            if category is None:
                omitted += 1
                category = self._fallback_category(article)
            results.append(CategorizedArticle(article=article, category=category))

        if omitted:
            self.logger.warning(
                f"Model omitted {omitted} article(s), using fallback category",
                stage="categorize",
                omitted=omitted,
            )
        return results

    def normalize_category(self, value) -> str:
        """Map a model answer onto a configured category."""
        if not isinstance(value, str):
            return self.default_category
        return self._by_lower.get(value.strip().lower(), self.default_category)

    def _fallback_category(self, article: Article) -> str:
        hint = article.metadata.get("rss_category", "")
        if hint:
            return self.normalize_category(hint)
        return self.default_category

    def build_prompt(self, articles: list[Article]) -> str:
        payload = [
            {"id": a.id, "title": a.title, "content": a.content} for a in articles
        ]
        return PROMPT_TEMPLATE.format(
            dedupe_task=DEDUPE_TASK if self.dedupe else NO_DEDUPE_TASK,
            categories="\n".join(f'- "{c}"' for c in self.categories),
            default_category=self.default_category,
            duplicate_field=', "duplicate_of": "<kept id, duplicates only>"'
            if self.dedupe
            else "",
            articles=json.dumps(payload, ensure_ascii=False),
        )
