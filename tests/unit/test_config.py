"""Tests for configuration loading."""

import os
from pathlib import Path

import pytest
from crawlstream.config.config import (
    CheckpointPosition,
    Config,
    CrawlConfig,
    LazyConfig,
    MonitoringConfig,
    find_config_file,
    settings,
)
from pydantic import ValidationError


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run from an empty directory with no CRAWLSTREAM_ variables set."""
    for key in list(os.environ):
        if key.startswith("CRAWLSTREAM_") and key != "CRAWLSTREAM_TEST_MODE":
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    LazyConfig.reset()
    yield tmp_path
    LazyConfig.reset()


@pytest.mark.unit
class TestDefaults:
    def test_defaults(self, clean_env):
        config = Config()
        assert config.crawl.page_size == 100
        assert config.crawl.max_attempts == 3
        assert config.crawl.retry_delay_seconds == 1.0
        assert config.crawl.checkpoint_position is CheckpointPosition.CURRENT_PAGE
        assert config.crawl.preflight_auth is True
        assert config.source.name == "github"
        assert config.source.access_token is None
        assert config.monitoring.prometheus_port is None

    @pytest.mark.parametrize("field,value", [("page_size", 0), ("max_attempts", 0), ("retry_delay_seconds", -1)])
    def test_crawl_bounds(self, field, value):
        with pytest.raises(ValidationError):
            CrawlConfig(**{field: value})

    def test_log_level_is_validated(self):
        assert MonitoringConfig(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            MonitoringConfig(log_level="LOUD")

    def test_log_file_parent_is_created(self, tmp_path):
        config = MonitoringConfig(log_file=tmp_path / "logs" / "crawl.jsonl")
        assert Path(config.log_file).parent.is_dir()

    def test_source_name_is_normalized(self):
        config = Config(source={"name": " CSV "})
        assert config.source.name == "csv"


@pytest.mark.unit
class TestEnvironment:
    def test_nested_env_overrides(self, clean_env, monkeypatch):
        monkeypatch.setenv("CRAWLSTREAM_CRAWL__PAGE_SIZE", "25")
        monkeypatch.setenv("CRAWLSTREAM_CRAWL__CHECKPOINT_POSITION", "next_page")
        monkeypatch.setenv("CRAWLSTREAM_SOURCE__ACCESS_TOKEN", "s3cret")

        config = Config()

        assert config.crawl.page_size == 25
        assert config.crawl.checkpoint_position is CheckpointPosition.NEXT_PAGE
        assert config.source.access_token.get_secret_value() == "s3cret"
        assert "s3cret" not in repr(config.source)


@pytest.mark.unit
class TestYaml:
    def test_from_yaml(self, clean_env):
        path = clean_env / "crawlstream.yaml"
        path.write_text(
            "crawl:\n  page_size: 50\n  retry_delay_seconds: 0.5\nsource:\n  name: csv\n  datasource_url: parts.csv\n"
        )

        config = Config.from_yaml(path)

        assert config.crawl.page_size == 50
        assert config.crawl.retry_delay_seconds == 0.5
        assert config.source.name == "csv"
        assert config.source.datasource_url == "parts.csv"

    def test_empty_yaml_gives_defaults(self, clean_env):
        path = clean_env / "empty.yaml"
        path.write_text("")
        assert Config.from_yaml(path).crawl.page_size == 100

    def test_non_mapping_yaml_is_rejected(self, clean_env):
        path = clean_env / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            Config.from_yaml(path)

    def test_missing_file(self, clean_env):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(clean_env / "nope.yaml")

    def test_find_config_file(self, clean_env):
        assert find_config_file() is None
        (clean_env / "config.yml").write_text("crawl: {}\n")
        assert find_config_file() == clean_env / "config.yml"
        (clean_env / "crawlstream.yaml").write_text("crawl: {}\n")
        assert find_config_file() == clean_env / "crawlstream.yaml"


@pytest.mark.unit
class TestLazyConfig:
    def test_loads_file_on_first_access(self, clean_env):
        (clean_env / "crawlstream.yaml").write_text("crawl:\n  page_size: 7\n")
        assert settings.crawl.page_size == 7

    def test_invalid_file_falls_back_to_defaults(self, clean_env):
        (clean_env / "crawlstream.yaml").write_text("crawl:\n  page_size: 0\n")
        assert settings.crawl.page_size == 100

    def test_reset_reloads(self, clean_env):
        assert settings.crawl.page_size == 100
        (clean_env / "crawlstream.yaml").write_text("crawl:\n  page_size: 3\n")
        assert settings.crawl.page_size == 100
        LazyConfig.reset()
        assert settings.crawl.page_size == 3
