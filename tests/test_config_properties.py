"""Property-based tests for configuration management."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

from hypothesis import given
from hypothesis import strategies as st

from digest_bot.config import Config
from digest_bot.models import DEFAULT_CATEGORY

feed_entries = st.lists(
    st.tuples(
        st.text(alphabet="abcdefghijklmnop", min_size=1, max_size=12),
        st.booleans(),
    ),
    min_size=1,
    max_size=10,
)

category_names = st.lists(
    st.text(alphabet="ABCDEFGHIJ abcdefghij&", min_size=1, max_size=20).filter(
        lambda x: x.strip()
    ),
    min_size=1,
    max_size=8,
    unique_by=lambda x: x.strip(),
)


class TestConfigProperties:
    """Property-based tests for Config class."""

    @given(feed_entries)
    def test_only_enabled_feeds_are_loaded(self, entries):
        """
        For any feeds file, exactly the enabled feeds are returned, in file order.
        """
        feeds = [
            {"id": f"{name}-{i}", "url": f"https://{name}.example.com/rss", "enabled": enabled}
            for i, (name, enabled) in enumerate(entries)
        ]
        expected = [f["id"] for f in feeds if f["enabled"]]

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feeds.json"
            path.write_text(json.dumps({"feeds": feeds}), encoding="utf-8")
            config = Config(feeds_file=str(path))

            if not expected:
                try:
                    config.get_feed_sources()
                    raise AssertionError("Expected ValueError when no feed is enabled")
                except ValueError:
                    return

            sources = config.get_feed_sources()

        assert [s.source_id for s in sources] == expected
        assert all(s.url.startswith("https://") for s in sources)

    @given(category_names)
    def test_configured_categories_keep_order_and_default(self, names):
        """
        For any CATEGORIES list, the configured order is kept and the default
        category is always available.
        """
        with patch.dict(os.environ, {"CATEGORIES": ",".join(names)}, clear=True):
            categories = Config().get_pipeline_config().categories

        stripped = [n.strip() for n in names]
        assert categories[: len(stripped)] == stripped
        assert DEFAULT_CATEGORY in categories
        assert categories.count(DEFAULT_CATEGORY) == 1

    @given(st.integers(min_value=0, max_value=10_000))
    def test_integer_settings_are_read_from_env(self, value):
        with patch.dict(os.environ, {"MAX_ARTICLES_BEFORE_GENERATION": str(value)}, clear=True):
            cfg = Config().get_pipeline_config()

        assert cfg.max_articles_before_generation == value
