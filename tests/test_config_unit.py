"""Unit tests for configuration management."""

import json
import os
from unittest.mock import patch

import pytest

from digest_bot.config import Config, RunFlags
from digest_bot.models import DEFAULT_CATEGORIES


def write_feeds(tmp_path, feeds):
    path = tmp_path / "feeds.json"
    path.write_text(json.dumps({"feeds": feeds}), encoding="utf-8")
    return str(path)


class TestConfigUnit:
    """Unit tests for Config class."""

    def test_feed_sources_from_file(self, tmp_path):
        feeds_file = write_feeds(
            tmp_path,
            [
                {"id": "bbc", "name": "BBC", "url": " https://feeds.bbci.co.uk/news/rss.xml ", "category": "Top Stories"},
                {"url": "https://www.example.com/feed"},
                {"url": "https://disabled.example.com/feed", "enabled": False},
                {"name": "no url"},
            ],
        )

        sources = Config(feeds_file=feeds_file).get_feed_sources()

        assert [(s.source_id, s.url, s.category) for s in sources] == [
            ("bbc", "https://feeds.bbci.co.uk/news/rss.xml", "Top Stories"),
            ("example.com", "https://www.example.com/feed", ""),
        ]
        assert sources[0].name == "BBC"
        assert sources[1].name == "example.com"

    def test_missing_feeds_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config(feeds_file=str(tmp_path / "absent.json")).get_feed_sources()

    def test_invalid_feeds_json_raises(self, tmp_path):
        path = tmp_path / "feeds.json"
        path.write_text("{broken", encoding="utf-8")

        with pytest.raises(ValueError):
            Config(feeds_file=str(path)).get_feed_sources()

    def test_no_enabled_feeds_raises(self, tmp_path):
        feeds_file = write_feeds(tmp_path, [{"url": "https://a.example.com", "enabled": False}])

        with pytest.raises(ValueError):
            Config(feeds_file=feeds_file).get_feed_sources()

    def test_pipeline_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = Config().get_pipeline_config()

        assert cfg.recency_max_hours == 48
        assert cfg.min_content_length == 100
        assert cfg.max_articles_per_category == 5
        assert cfg.max_articles_before_generation == 60
        assert cfg.categories == DEFAULT_CATEGORIES
        assert cfg.auto_subscribe is True

    def test_pipeline_overrides_from_env(self):
        env = {
            "RECENCY_MAX_HOURS": "24",
            "MAX_ARTICLES_PER_CATEGORY": "3",
            "MIN_RELEVANCE": "4.5",
            "CATEGORIES": "Economy, Sports",
            "AUTO_SUBSCRIBE": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = Config().get_pipeline_config()

        assert cfg.recency_max_hours == 24
        assert cfg.max_articles_per_category == 3
        assert cfg.min_relevance == 4.5
        assert cfg.categories == ["Economy", "Sports", "Other"]
        assert cfg.auto_subscribe is False

    def test_invalid_integer_raises(self):
        with patch.dict(os.environ, {"RECENCY_MAX_HOURS": "two days"}, clear=True):
            with pytest.raises(ValueError):
                Config().get_pipeline_config()

    def test_bedrock_config_from_env(self):
        env = {
            "BEDROCK_MODEL_ID": "mistral.mistral-large-2402-v1:0",
            "CURRENT_AWS_REGION": "eu-west-1",
            "BATCH_SIZE_SUMMARY": "4",
            "STAGE_DELAY_SECONDS": "0",
            "CATEGORIZATION_DEDUPE": "0",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = Config().get_bedrock_config()

        assert cfg.model_id == "mistral.mistral-large-2402-v1:0"
        assert cfg.region == "eu-west-1"
        assert cfg.batch_size_summary == 4
        assert cfg.stage_delay == 0.0
        assert cfg.dedupe is False
        assert cfg.max_attempts == 5

    def test_telegram_token_from_env_or_argument(self):
        with patch.dict(os.environ, {"TELEGRAM_BOT_TOKEN": "env-token"}, clear=True):
            config = Config()

        assert config.get_telegram_config().bot_token == "env-token"
        assert config.get_telegram_config("secret-token").bot_token == "secret-token"

    def test_run_flags(self):
        with patch.dict(os.environ, {"FORCE_DISPATCH": "true", "SKIP_GENERATION": "1"}, clear=True):
            flags = Config().get_run_flags()

        assert flags.force_dispatch and flags.skip_generation
        assert not flags.build_mode and not flags.send_mode

    def test_build_and_send_together_is_an_error(self):
        with patch.dict(os.environ, {"BUILD_MODE": "true", "SEND_MODE": "true"}, clear=True):
            with pytest.raises(ValueError):
                Config().get_run_flags()

        with pytest.raises(ValueError):
            RunFlags(build_mode=True, send_mode=True)
