"""Short summaries for the selected articles using Bedrock."""

import json
import threading

from .bedrock import BedrockClient
from .config import BedrockConfig
from .logging_config import create_execution_logger
from .llm_json import parse_records
from .models import CategorizedArticle, DigestEntry
from .pacing import RequestPacer, split_batches

PROMPT_TEMPLATE = """You are the editor of a news digest.
You will receive a JSON list of articles, each with a unique "id", a "title" and its "content".
Write a neutral, informative summary of 1-2 sentences in {language} for every article.
Do not add facts that are not in the text and avoid clickbait.
Return ONLY a JSON array without commentary. Format:
[{{"id": "<article id>", "summary": "<short summary>"}}, ...]

Articles:
{articles}"""


class Summarizer:
    """Summarizes ranked articles in batches, falling back to the title."""

    def __init__(
        self,
        client: BedrockClient,
        config: BedrockConfig,
        language: str = "English",
        execution_id: str | None = None,
    ):
        """Initialize the summarizer.

        Args:
            client: Rate-limited Bedrock wrapper
            config: Bedrock configuration (batch size, request spacing)
            language: Language the summaries are written in
            execution_id: Execution ID for logging context
        """
        self.client = client
        self.config = config
        self.language = language
        self.batch_size = config.batch_size_summary or 5
        self.logger = create_execution_logger("summarizer", execution_id)

    def summarize(
        self,
        ranked: list[CategorizedArticle],
        cancel: threading.Event | None = None,
    ) -> list[DigestEntry]:
        if not ranked:
            return []

        batches = split_batches(ranked, self.batch_size)
        self.logger.info(
            f"Summarizing {len(ranked)} articles in {len(batches)} batch(es)",
            stage="summarize",
            batch_size=self.batch_size,
        )

        pacer = RequestPacer(self.config.summary_delay)
        entries: list[DigestEntry] = []
        fallbacks = 0
        for batch in batches:
            pacer.wait(cancel)
            summaries = self._summarize_batch(batch, cancel)
            pacer.mark()
            for item in batch:
                summary = summaries.get(item.article.id)
                if not summary:
                    fallbacks += 1
                    summary = item.article.title
                entries.append(self._to_entry(item, summary))

        self.logger.info(
            f"Summarized {len(entries)} articles in {pacer.requests} request(s)",
            stage="summarize",
            title_fallbacks=fallbacks,
        )
        return entries

    def _summarize_batch(
        self, batch: list[CategorizedArticle], cancel: threading.Event | None
    ) -> dict[str, str]:
        payload = [
            {"id": item.article.id, "title": item.article.title, "content": item.article.content}
            for item in batch
        ]
        prompt = PROMPT_TEMPLATE.format(
            language=self.language, articles=json.dumps(payload, ensure_ascii=False)
        )
        response = self.client.generate_text(prompt, cancel=cancel)

        summaries: dict[str, str] = {}
        for record in parse_records(response):
            text = record.get("summary")
            if isinstance(text, str) and text.strip():
                summaries.setdefault(str(record["id"]), text.strip())
        return summaries

    @staticmethod
    def _to_entry(item: CategorizedArticle, summary: str) -> DigestEntry:
        article = item.article
        return DigestEntry(
            id=article.id,
            category=item.category,
            title=article.title,
            url=article.url,
            summary=summary,
            source=article.source,
            published_at=article.published_at,
        )
