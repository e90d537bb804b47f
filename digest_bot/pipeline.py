"""Run orchestration: collect, select, generate, format, deliver, persist."""

import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .bedrock import BedrockClient
from .categorize import Categorizer
from .config import Config, RunFlags
from .errors import (
    DeliveryFailedError,
    NoRecipientsError,
    PipelineNotConfiguredError,
    StageError,
)
from .filter import ArticleFilter
from .formatter import MessageFormatter
from .logging_config import create_execution_logger
from .models import Article, Digest, Recipient, State
from .pacing import check_cancelled, wait_or_cancel
from .rank import Ranker
from .rss import RSSCollector
from .state import StateStore, update_state
from .summarize import Summarizer
from .telegram import RecipientResolver, TelegramClient, TelegramSender

NO_NEWS_MESSAGE = "No relevant news today. The next digest will arrive as usual."
TEST_MESSAGE = "RSS Digest Bot test message: delivery to this chat works."


class RunMode(str, Enum):
    FULL = "full"
    BUILD = "build"
    SEND = "send"


class RunOutcome(str, Enum):
    DELIVERED = "delivered"
    DIGEST_BUILT = "digest_built"
    NO_NEWS = "no_news"
    DRY_RUN = "dry_run"
    TEST_MESSAGE = "test_message"
    EMPTY_DIGEST = "empty_digest"


@dataclass
class PipelineSettings:
    force_dispatch: bool = False
    skip_generation: bool = False
    send_test_message: bool = False
    max_articles_before_generation: int = 60
    stage_delay: float = 60.0


@dataclass
class GenerationStages:
    """The three stages that call the generation API. Absent as a whole or not at all."""

    categorizer: Categorizer
    ranker: Ranker
    summarizer: Summarizer


@dataclass
class PipelineDeps:
    collector: RSSCollector
    article_filter: ArticleFilter
    state_store: StateStore
    formatter: MessageFormatter
    sender: TelegramSender
    recipients: RecipientResolver | None = None
    generation: GenerationStages | None = None
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    clock: Callable[[], datetime] = lambda: datetime.now(UTC)
    sleeper: Callable[[threading.Event | None, float], None] = wait_or_cancel


@dataclass
class RunResult:
    """What a run did, step by step."""

    mode: RunMode
    outcome: RunOutcome | None = None
    send_fallback: bool = False
    recipients: int = 0
    collected: int = 0
    filtered: int = 0
    limited: int = 0
    categorized: int = 0
    ranked: int = 0
    summarized: int = 0
    messages: int = 0
    dispatched: int = 0
    article_ids: list[str] = field(default_factory=list)

    def to_metrics(self) -> dict[str, Any]:
        metrics = asdict(self)
        metrics["mode"] = self.mode.value
        metrics["outcome"] = self.outcome.value if self.outcome else None
        metrics["article_ids"] = len(self.article_ids)
        return metrics


class DigestPipeline:
    """Runs one digest cycle in full, build or send mode."""

    def __init__(self, deps: PipelineDeps, execution_id: str | None = None):
        self.deps = deps
        self.settings = deps.settings
        self.logger = create_execution_logger("pipeline", execution_id)
        self._cancel: threading.Event | None = None

    def run(
        self, mode: RunMode = RunMode.FULL, cancel: threading.Event | None = None
    ) -> RunResult:
        """Execute one run.

        State is written only when the run reaches a successful terminal step.

        Raises:
            PipelineNotConfiguredError: If generation stages are missing for a
                run that needs them
            NoRecipientsError: If nobody would receive the messages and forced
                dispatch is off
            StageError: If any step fails; the original error is the __cause__
        """
        mode = RunMode(mode)
        self._validate(mode)
        self._cancel = cancel
        result = RunResult(mode=mode)
        self.logger.log_execution_start(
            mode=mode.value,
            force_dispatch=self.settings.force_dispatch,
            skip_generation=self.settings.skip_generation,
        )

        try:
            result.outcome = self._run(mode, result)
        except StageError as e:
            if e.quota_exhausted:
                self.logger.error(
                    "Generation quota exhausted, run aborted until the quota resets",
                    stage=e.stage,
                    error=str(e.__cause__),
                )
            elif e.cancelled:
                self.logger.warning("Run cancelled", stage=e.stage)
            else:
                self.logger.error(
                    f"Run failed at stage '{e.stage}': {e.__cause__}",
                    stage=e.stage,
                    error_type=type(e.__cause__).__name__,
                )
            self.logger.log_execution_end(success=False, failed_stage=e.stage)
            raise
        except NoRecipientsError as e:
            self.logger.error(str(e), stage="recipients")
            self.logger.log_execution_end(success=False, failed_stage="recipients")
            raise
        finally:
            self._cancel = None

        self.logger.log_execution_end(success=True, **result.to_metrics())
        return result

    def _validate(self, mode: RunMode) -> None:
        if self.deps.generation is not None or self.settings.skip_generation:
            return
        if self.settings.send_test_message or mode is RunMode.SEND:
            # send mode only needs generation when it falls back to a full run
            return
        raise PipelineNotConfiguredError(
            f"generation stages are required for {mode.value} mode unless generation is skipped"
        )

    def _run(self, mode: RunMode, result: RunResult) -> RunOutcome:
        deps = self.deps
        loaded = self._stage("load_state", deps.state_store.load)
        state, recipients = loaded, list(loaded.recipients)
        if deps.recipients is not None:
            state, recipients = self._stage(
                "recipients", deps.recipients.resolve, loaded, self._cancel
            )
        recipients_changed = (
            state.recipients != loaded.recipients
            or state.external_cursor != loaded.external_cursor
        )
        result.recipients = len(recipients)

        needs_delivery = mode is not RunMode.BUILD and not self.settings.skip_generation
        if (needs_delivery or self.settings.send_test_message) and not recipients:
            if not self.settings.force_dispatch:
                raise NoRecipientsError(
                    "no recipients; a chat must message the bot first or forced dispatch must be enabled"
                )
            self.logger.warning("No recipients, delivery will be skipped", stage="recipients")

        if self.settings.send_test_message:
            self._dispatch(recipients, [TEST_MESSAGE], result)
            self._save_if_changed(state, recipients_changed)
            return RunOutcome.TEST_MESSAGE

        if mode is RunMode.SEND:
            digest = self._stage("load_digest", deps.state_store.load_digest)
            if digest is not None and self.settings.skip_generation:
                result.messages = len(digest.messages)
                result.article_ids = list(digest.article_ids)
                self.logger.info(
                    "Dry run: built digest left unsent",
                    stage="dry_run",
                    messages=len(digest.messages),
                    article_ids=len(digest.article_ids),
                )
                self._save_if_changed(state, recipients_changed)
                return RunOutcome.DRY_RUN
            if digest is not None:
                return self._send_digest(digest, state, recipients, recipients_changed, result)
            self.logger.warning(
                "No built digest found, running the full pipeline instead", stage="load_digest"
            )
            result.send_fallback = True
            mode = RunMode.FULL
            if deps.generation is None and not self.settings.skip_generation:
                raise PipelineNotConfiguredError(
                    "no digest to send and generation stages are not configured"
                )

        now = deps.clock()
        articles = self._stage("collect", deps.collector.collect, self._cancel)
        result.collected = len(articles)
        filtered = self._stage("filter", deps.article_filter.apply, articles, state, now)
        result.filtered = len(filtered)
        selected = self.limit_volume(filtered)
        result.limited = len(selected)
        self.log_selection_stats(articles, selected)

        if self.settings.skip_generation:
            self.logger.info(
                "Dry run: stopping before generation and delivery",
                stage="dry_run",
                selected=len(selected),
            )
            self._save_if_changed(state, recipients_changed)
            return RunOutcome.DRY_RUN

        generation = deps.generation
        categorized = self._stage(
            "categorize", generation.categorizer.categorize, selected, self._cancel
        )
        result.categorized = len(categorized)
        self._pause_before("rank")
        ranked = self._stage("rank", generation.ranker.rank, categorized, self._cancel)
        result.ranked = len(ranked)

        if not ranked:
            return self._no_news(mode, state, recipients, recipients_changed, result)

        self._pause_before("summarize")
        entries = self._stage(
            "summarize", generation.summarizer.summarize, ranked, self._cancel
        )
        result.summarized = len(entries)
        messages, article_ids = self._stage("format", deps.formatter.build_digest, entries)
        result.messages = len(messages)
        result.article_ids = article_ids

        if mode is RunMode.BUILD:
            digest = Digest(messages=messages, created_at=deps.clock(), article_ids=article_ids)
            self._stage("save_digest", deps.state_store.save_digest, digest)
            self._save_if_changed(state, recipients_changed)
            return RunOutcome.DIGEST_BUILT

        self._dispatch(recipients, messages, result)
        self._stage(
            "save_state", deps.state_store.save, update_state(state, article_ids, deps.clock())
        )
        return RunOutcome.DELIVERED

    def _send_digest(
        self,
        digest: Digest,
        state: State,
        recipients: list[Recipient],
        recipients_changed: bool,
        result: RunResult,
    ) -> RunOutcome:
        store = self.deps.state_store
        if not digest.messages:
            self.logger.warning("Built digest has no messages, discarding it", stage="send")
            self._stage("delete_digest", store.delete_digest)
            self._save_if_changed(state, recipients_changed)
            return RunOutcome.EMPTY_DIGEST

        result.messages = len(digest.messages)
        result.article_ids = list(digest.article_ids)
        self.logger.info(
            f"Sending digest built at {digest.created_at}",
            stage="send",
            messages=len(digest.messages),
            article_ids=len(digest.article_ids),
        )
        self._dispatch(recipients, digest.messages, result)
        self._stage(
            "save_state",
            store.save,
            update_state(state, digest.article_ids, self.deps.clock()),
        )
        try:
            store.delete_digest()
        except OSError as e:
            # Already delivered and recorded; a leftover digest only resends known ids
            self.logger.error(f"Failed to delete sent digest: {e}", stage="send", error=str(e))
        return RunOutcome.DELIVERED

    def _no_news(
        self,
        mode: RunMode,
        state: State,
        recipients: list[Recipient],
        recipients_changed: bool,
        result: RunResult,
    ) -> RunOutcome:
        self.logger.info("No relevant news after ranking", stage="rank")
        messages = [NO_NEWS_MESSAGE]
        result.messages = 1

        if mode is RunMode.BUILD:
            digest = Digest(messages=messages, created_at=self.deps.clock(), article_ids=[])
            self._stage("save_digest", self.deps.state_store.save_digest, digest)
            self._save_if_changed(state, recipients_changed)
        else:
            self._dispatch(recipients, messages, result)
            self._stage(
                "save_state", self.deps.state_store.save, update_state(state, [], self.deps.clock())
            )
        return RunOutcome.NO_NEWS

    def _dispatch(self, recipients: list[Recipient], messages: list[str], result: RunResult) -> None:
        if not recipients:
            # only reachable with forced dispatch
            self.logger.warning(
                f"Dispatch skipped: {len(messages)} message(s), no recipients",
                stage="dispatch",
            )
            return
        sent = self._stage("dispatch", self.deps.sender.send, recipients, messages, self._cancel)
        if not sent:
            error = DeliveryFailedError(
                f"none of {len(messages)} message(s) reached any of {len(recipients)} recipient(s)"
            )
            raise StageError("dispatch", error) from error
        result.dispatched += sent

    def _save_if_changed(self, state: State, changed: bool) -> None:
        if changed:
            self._stage("save_state", self.deps.state_store.save, state)

    def _pause_before(self, stage: str) -> None:
        delay = self.settings.stage_delay
        if delay <= 0:
            return
        self.logger.debug(f"Waiting {delay:.0f}s before {stage}", stage=stage)
        self._stage(stage, self.deps.sleeper, self._cancel, delay)

    def _stage(self, name: str, func: Callable[..., Any], *args) -> Any:
        try:
            check_cancelled(self._cancel)
            return func(*args)
        except (StageError, NoRecipientsError):
            raise
        except Exception as e:
            raise StageError(name, e) from e

    def limit_volume(self, articles: list[Article]) -> list[Article]:
        """Keep at most `max_articles_before_generation` articles, newest first."""
        ceiling = self.settings.max_articles_before_generation
        if ceiling <= 0 or len(articles) <= ceiling:
            return list(articles)
        newest = sorted(articles, key=lambda a: a.published_at, reverse=True)[:ceiling]
        self.logger.info(
            f"Volume limit: keeping {ceiling} newest of {len(articles)} articles",
            stage="limit_volume",
            dropped=len(articles) - ceiling,
        )
        return newest

    def log_selection_stats(self, collected: list[Article], selected: list[Article]) -> None:
        by_source = Counter(a.source for a in selected)
        by_hint = Counter(a.metadata.get("rss_category", "") or "none" for a in selected)
        self.logger.info(
            f"Selected {len(selected)} of {len(collected)} collected articles",
            stage="selection",
            by_source=dict(by_source),
            by_category_hint=dict(by_hint),
        )


def mode_from_flags(flags: RunFlags) -> RunMode:
    if flags.build_mode:
        return RunMode.BUILD
    if flags.send_mode:
        return RunMode.SEND
    return RunMode.FULL


def build_pipeline(
    config: Config,
    flags: RunFlags,
    bot_token: str,
    execution_id: str | None = None,
) -> DigestPipeline:
    """Wire the production components from configuration.

    Generation stages are left out for dry runs, and recipients are only
    resolved when a bot token is available.
    """
    pipeline_config = config.get_pipeline_config()
    bedrock_config = config.get_bedrock_config()
    telegram_config = config.get_telegram_config(bot_token)

    generation = None
    if not flags.skip_generation:
        bedrock = BedrockClient(bedrock_config, execution_id=execution_id)
        generation = GenerationStages(
            categorizer=Categorizer(bedrock, bedrock_config, pipeline_config, execution_id),
            ranker=Ranker(bedrock, bedrock_config, pipeline_config, execution_id),
            summarizer=Summarizer(
                bedrock, bedrock_config, pipeline_config.summary_language, execution_id
            ),
        )

    telegram = TelegramClient(telegram_config, execution_id=execution_id)
    resolver = None
    if telegram_config.bot_token:
        resolver = RecipientResolver(
            telegram, pipeline_config.auto_subscribe, execution_id=execution_id
        )

    deps = PipelineDeps(
        collector=RSSCollector(config.get_feed_sources(), execution_id=execution_id),
        article_filter=ArticleFilter(pipeline_config, execution_id),
        state_store=StateStore(config.state_dir, execution_id),
        formatter=MessageFormatter(
            pipeline_config.categories,
            pipeline_config.max_total_messages,
            execution_id=execution_id,
        ),
        sender=TelegramSender(
            telegram,
            telegram_config.retry_attempts,
            telegram_config.backoff_factor,
            execution_id=execution_id,
        ),
        recipients=resolver,
        generation=generation,
        settings=PipelineSettings(
            force_dispatch=flags.force_dispatch,
            skip_generation=flags.skip_generation,
            send_test_message=flags.send_test_message,
            max_articles_before_generation=pipeline_config.max_articles_before_generation,
            stage_delay=bedrock_config.stage_delay,
        ),
    )
    return DigestPipeline(deps, execution_id)
