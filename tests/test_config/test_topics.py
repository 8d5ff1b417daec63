"""Tests for topic and global configuration loading."""

import json

import pytest

from tests.factories import DISABLED_TOPIC, PYTHON_TOPIC, write_catalog
from topic_tracker.config.topics import (
    GlobalConfig,
    SourceKind,
    TopicCatalog,
    TopicConfig,
    TopicConfigError,
)


class TestTopicConfig:
    """Validation of a single topic file."""

    def test_camel_case_keys(self):
        topic = TopicConfig.model_validate(
            {**PYTHON_TOPIC, "lookbackDays": 3, "assistantId": "asst_123"}
        )

        assert topic.lookback_days == 3
        assert topic.assistant_id == "asst_123"
        assert topic.notifier_targets == ["#python-news"]
        assert [s.kind for s in topic.sources] == [SourceKind.CODE_HOST, SourceKind.FEED]

    def test_legacy_kind_and_type_keys(self):
        topic = TopicConfig.model_validate(
            {
                "slug": "legacy",
                "name": "Legacy",
                "sources": [
                    {"name": "a", "type": "rss", "url": "https://example.com/a.xml"},
                    {"name": "b", "kind": "github", "url": "https://github.com/o/r"},
                    {"name": "c", "kind": "discord", "url": "https://discord.com/channels/1/2"},
                    {"name": "d", "kind": "content_monitor", "url": "https://example.com"},
                ],
                "channels": {"slack": {"channels": ["#legacy"]}},
            }
        )

        assert [s.kind for s in topic.sources] == [
            SourceKind.FEED,
            SourceKind.CODE_HOST,
            SourceKind.CHAT_CHANNEL,
            SourceKind.CHANGE_DETECTOR,
        ]
        assert topic.notifier_targets == ["#legacy"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"slug": "Not A Slug"},
            {"schedule": {"cron": "every day at nine"}},
            {"lookbackDays": 0},
            {"sources": [{"name": "x", "kind": "carrier-pigeon", "url": "https://example.com"}]},
        ],
    )
    def test_invalid_topics_rejected(self, overrides):
        with pytest.raises(ValueError):
            TopicConfig.model_validate({**PYTHON_TOPIC, **overrides})

    def test_duplicate_source_names_rejected(self):
        source = {"name": "same", "kind": "feed", "url": "https://example.com/feed.xml"}
        with pytest.raises(ValueError, match="Duplicate source names"):
            TopicConfig.model_validate({**PYTHON_TOPIC, "sources": [source, source]})

    def test_enabled_sources(self):
        topic = TopicConfig.model_validate(
            {
                **PYTHON_TOPIC,
                "sources": [
                    {"name": "on", "kind": "feed", "url": "https://example.com/on.xml"},
                    {"name": "off", "kind": "feed", "url": "https://example.com/off.xml", "enabled": False},
                ],
            }
        )
        assert [s.name for s in topic.enabled_sources()] == ["on"]


class TestGlobalConfig:
    def test_defaults(self):
        config = GlobalConfig()

        assert config.lookback_days == 7
        assert config.summarizer.max_items_per_run == 60
        assert config.notifier.post_as_file_over == 4000
        assert config.deduplication.lookback_days == 30

    def test_legacy_sections(self):
        config = GlobalConfig.model_validate(
            {"openai": {"timeoutSeconds": 30}, "slack": {"defaultChannel": "#ops"}}
        )

        assert config.summarizer.timeout_seconds == 30
        assert config.notifier.default_channel == "#ops"


class TestTopicCatalog:
    """Tests for loading the catalog from disk."""

    def test_loads_topics_and_global(self, catalog):
        assert [t.slug for t in catalog.all()] == ["dormant", "python-releases"]
        assert [t.slug for t in catalog.enabled()] == ["python-releases"]
        assert catalog.get("missing") is None
        assert catalog.timezone == "Europe/Paris"

    def test_schedule_falls_back_to_global(self, tmp_path):
        catalog = write_catalog(
            tmp_path,
            [{**DISABLED_TOPIC, "enabled": True}],
            global_config={"defaultSchedule": {"cron": "30 6 * * 1-5"}, "timezone": "UTC"},
        )
        topic = catalog.get("dormant")

        schedule = catalog.schedule_for(topic)

        assert schedule.cron == "30 6 * * 1-5"
        assert schedule.timezone == "UTC"

    def test_topic_timezone_wins(self, tmp_path):
        topic = {**PYTHON_TOPIC, "schedule": {"cron": "0 9 * * *", "timezone": "Asia/Tokyo"}}
        catalog = write_catalog(tmp_path, [topic])

        assert catalog.schedule_for(catalog.get("python-releases")).timezone == "Asia/Tokyo"

    def test_no_schedule_anywhere(self, tmp_path):
        topic = {k: v for k, v in PYTHON_TOPIC.items() if k != "schedule"}
        catalog = write_catalog(tmp_path, [topic], global_config={})

        assert catalog.schedule_for(catalog.get("python-releases")) is None

    def test_lookback_days(self, tmp_path):
        catalog = write_catalog(tmp_path, [{**PYTHON_TOPIC, "lookbackDays": 2}, DISABLED_TOPIC])

        assert catalog.lookback_days_for(catalog.get("python-releases")) == 2
        assert catalog.lookback_days_for(catalog.get("dormant")) == 7

    def test_invalid_topic_file_raises(self, tmp_path):
        catalog = write_catalog(tmp_path, [PYTHON_TOPIC])
        (tmp_path / "topics" / "broken.json").write_text(json.dumps({"slug": "broken"}))

        with pytest.raises(TopicConfigError, match="broken.json"):
            catalog.reload()

    def test_duplicate_slug_raises(self, tmp_path):
        catalog = write_catalog(tmp_path, [PYTHON_TOPIC])
        (tmp_path / "topics" / "copy.json").write_text(json.dumps(PYTHON_TOPIC))

        with pytest.raises(TopicConfigError, match="Duplicate topic slug"):
            catalog.reload()

    def test_missing_files_give_empty_catalog(self, tmp_path):
        catalog = TopicCatalog(
            topics_dir=tmp_path / "nope",
            global_config_path=tmp_path / "nope.json",
        )

        assert catalog.all() == []
        assert catalog.global_config.lookback_days == 7

    def test_reload_picks_up_changes(self, tmp_path, catalog):
        topics_dir = tmp_path / "topics"
        (topics_dir / "dormant.json").write_text(json.dumps({**DISABLED_TOPIC, "enabled": True}))

        catalog.reload()

        assert {t.slug for t in catalog.enabled()} == {"python-releases", "dormant"}
