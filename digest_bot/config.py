"""Configuration management for RSS Digest Bot."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from .models import DEFAULT_CATEGORIES, DEFAULT_CATEGORY


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FeedSource:
    """One RSS feed to collect from."""

    url: str
    source_id: str
    name: str = ""
    category: str = ""  # optional category hint passed to the categorizer


@dataclass
class PipelineConfig:
    """Selection and volume limits for a run."""

    recency_max_hours: int = 48
    min_content_length: int = 100
    max_articles_per_category: int = 5
    max_total_messages: int = 0  # 0 = no cap
    max_articles_before_generation: int = 60
    min_relevance: float = 0.0
    categories: list[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    default_category: str = DEFAULT_CATEGORY
    auto_subscribe: bool = True
    summary_language: str = "English"


@dataclass
class BedrockConfig:
    """Configuration for Amazon Bedrock."""

    model_id: str = "amazon.nova-micro-v1:0"
    region: str = "us-east-1"
    max_tokens: int = 4000
    temperature: float = 0.2
    max_attempts: int = 5
    rate_limit_wait: float = 60.0
    overloaded_wait: float = 300.0
    base_delay: float = 12.0
    max_delay: float = 60.0
    batch_size_categorization: int = 50
    batch_size_summary: int = 10
    categorization_delay: float = 30.0
    ranking_delay: float = 12.0
    summary_delay: float = 12.0
    stage_delay: float = 60.0
    dedupe: bool = True


@dataclass
class TelegramConfig:
    """Configuration for Telegram Bot API."""

    bot_token: str
    parse_mode: str = "HTML"
    retry_attempts: int = 3
    backoff_factor: float = 2.0
    timeout: int = 15


@dataclass
class RunFlags:
    """Mode switches for a single invocation."""

    force_dispatch: bool = False
    skip_generation: bool = False
    send_test_message: bool = False
    build_mode: bool = False
    send_mode: bool = False

    def __post_init__(self):
        if self.build_mode and self.send_mode:
            raise ValueError("BUILD_MODE and SEND_MODE cannot both be enabled")


class Config:
    """Main configuration manager."""

    # Default feeds file path
    FEEDS_FILE = "feeds.json"

    def __init__(self, feeds_file: str | None = None):
        """Initialize configuration from environment variables."""
        self.feeds_file = feeds_file or os.getenv("FEEDS_FILE", self.FEEDS_FILE)
        self.telegram_secret_name = os.getenv(
            "TELEGRAM_SECRET_NAME", "rss-digest-bot-token"
        )
        self.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.aws_region = os.getenv(
            "CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        )
        self.bedrock_model_id = os.getenv("BEDROCK_MODEL_ID", "amazon.nova-micro-v1:0")
        self.state_dir = os.getenv("STATE_DIR", "state")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

    def get_feed_sources(self) -> list[FeedSource]:
        """Get enabled feeds from the feeds file.

        Each entry is {"url": ..., "id"?: ..., "name"?: ..., "category"?: ...,
        "enabled"?: bool}.
        """
        feeds_file = Path(self.feeds_file)
        if not feeds_file.exists():
            # Try in Lambda root directory
            feeds_file = Path("/var/task") / self.feeds_file

        if not feeds_file.exists():
            raise FileNotFoundError(f"Feeds file not found: {self.feeds_file}")

        try:
            with open(feeds_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in feeds file: {e}") from e

        sources = []
        for feed in data.get("feeds", []):
            if not feed.get("enabled", True) or "url" not in feed:
                continue
            url = feed["url"].strip()
            source_id = feed.get("id") or _source_id_from_url(url)
            sources.append(
                FeedSource(
                    url=url,
                    source_id=source_id,
                    name=feed.get("name", source_id),
                    category=feed.get("category", ""),
                )
            )

        if not sources:
            raise ValueError("No enabled feeds found in feeds file")

        return sources

    def get_pipeline_config(self) -> PipelineConfig:
        """Get selection limits."""
        categories = [
            c.strip() for c in os.getenv("CATEGORIES", "").split(",") if c.strip()
        ]
        cfg = PipelineConfig(
            recency_max_hours=_env_int("RECENCY_MAX_HOURS", 48),
            min_content_length=_env_int("MIN_CONTENT_LENGTH", 100),
            max_articles_per_category=_env_int("MAX_ARTICLES_PER_CATEGORY", 5),
            max_total_messages=_env_int("MAX_TOTAL_MESSAGES", 0),
            max_articles_before_generation=_env_int(
                "MAX_ARTICLES_BEFORE_GENERATION", 60
            ),
            min_relevance=_env_float("MIN_RELEVANCE", 0.0),
            auto_subscribe=_env_flag("AUTO_SUBSCRIBE", True),
            summary_language=os.getenv("SUMMARY_LANGUAGE", "English"),
        )
        if categories:
            if DEFAULT_CATEGORY not in categories:
                categories.append(DEFAULT_CATEGORY)
            cfg.categories = categories
        return cfg

    def get_bedrock_config(self) -> BedrockConfig:
        """Get Bedrock configuration."""
        return BedrockConfig(
            model_id=self.bedrock_model_id,
            region=self.aws_region,
            batch_size_categorization=_env_int("BATCH_SIZE_CATEGORIZATION", 50),
            batch_size_summary=_env_int("BATCH_SIZE_SUMMARY", 10),
            categorization_delay=_env_float("CATEGORIZATION_DELAY_SECONDS", 30.0),
            ranking_delay=_env_float("RANKING_DELAY_SECONDS", 12.0),
            summary_delay=_env_float("SUMMARY_DELAY_SECONDS", 12.0),
            stage_delay=_env_float("STAGE_DELAY_SECONDS", 60.0),
            dedupe=_env_flag("CATEGORIZATION_DEDUPE", True),
        )

    def get_telegram_config(self, bot_token: str = "") -> TelegramConfig:
        """Get Telegram configuration."""
        # Token may be populated later from Secrets Manager
        return TelegramConfig(bot_token=bot_token or self.telegram_bot_token)

    def get_run_flags(self) -> RunFlags:
        """Get mode switches from the environment."""
        return RunFlags(
            force_dispatch=_env_flag("FORCE_DISPATCH"),
            skip_generation=_env_flag("SKIP_GENERATION"),
            send_test_message=_env_flag("SEND_TEST_MESSAGE"),
            build_mode=_env_flag("BUILD_MODE"),
            send_mode=_env_flag("SEND_MODE"),
        )


def _source_id_from_url(url: str) -> str:
    from urllib.parse import urlparse

    domain = urlparse(url).netloc.lower()
    for prefix in ("www.", "feeds."):
        if domain.startswith(prefix):
            domain = domain[len(prefix) :]
    return domain or "feed"
