"""Tests for cachepipe configuration."""

import json
import logging
import os.path
from pathlib import Path

import pytest

from cachepipe.config import CachePipeConfig, HookConfig, get_config, import_object, set_config_instance
from cachepipe.pipeline import HookRegistry


class TestCachePipeConfig:
    """Test suite for CachePipeConfig."""

    def test_defaults(self) -> None:
        """Test default configuration values."""
        config = CachePipeConfig()
        assert config.debug is False
        assert config.cache_dir == Path("./cache")
        assert config.chunk_size == 64 * 1024
        assert config.max_buffered_chunks == 0
        assert config.hooks == []
        assert config.pipelines == {}

    def test_from_yaml(self, tmp_path: Path) -> None:
        """Test loading configuration from cachepipe.yaml."""
        yaml_path = tmp_path / "cachepipe.yaml"
        yaml_path.write_text(
            """
cachepipe:
  cache_dir: /var/cache/feeds
  chunk_size: 1024
  mime_types:
    .csv: text/csv
  hooks:
    - namespace: feeds
      name: normalize
      hook: json.dumps
  pipelines:
    feeds: myapp.pipelines:feed_pipeline
"""
        )

        config = CachePipeConfig.from_yaml(yaml_path)

        assert config.cache_dir == Path("/var/cache/feeds")
        assert config.chunk_size == 1024
        assert config.mime_types == {".csv": "text/csv"}
        assert config.hooks == [HookConfig(namespace="feeds", stage="post", name="normalize", hook="json.dumps")]
        assert config.pipelines == {"feeds": "myapp.pipelines:feed_pipeline"}
        assert config.config_path == yaml_path

    def test_from_yaml_relative_cache_dir(self, tmp_path: Path) -> None:
        """Test a relative cache_dir is resolved against the config file directory."""
        yaml_path = tmp_path / "cachepipe.yaml"
        yaml_path.write_text("cachepipe:\n  cache_dir: data\n")

        config = CachePipeConfig.from_yaml(yaml_path)
        assert config.cache_dir == tmp_path / "data"

    def test_from_yaml_missing_or_empty(self, tmp_path: Path) -> None:
        """Test a missing or empty file gives the defaults."""
        assert CachePipeConfig.from_yaml(tmp_path / "missing.yaml").chunk_size == 64 * 1024

        yaml_path = tmp_path / "cachepipe.yaml"
        yaml_path.write_text("")
        assert CachePipeConfig.from_yaml(yaml_path).hooks == []

    def test_from_yaml_kwargs_override(self, tmp_path: Path) -> None:
        """Test keyword arguments override file settings."""
        yaml_path = tmp_path / "cachepipe.yaml"
        yaml_path.write_text("cachepipe:\n  chunk_size: 1024\n")

        config = CachePipeConfig.from_yaml(yaml_path, chunk_size=16)
        assert config.chunk_size == 16

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test CACHEPIPE_* environment variables."""
        monkeypatch.setenv("CACHEPIPE_CHUNK_SIZE", "512")
        monkeypatch.setenv("CACHEPIPE_CACHE_DIR", "/tmp/cachepipe")

        config = CachePipeConfig()
        assert config.chunk_size == 512
        assert config.cache_dir == Path("/tmp/cachepipe")

    def test_debug_enables_debug_logging(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test debug: true raises the cachepipe logger to DEBUG."""
        cachepipe_logger = logging.getLogger("cachepipe")
        monkeypatch.setattr(cachepipe_logger, "level", logging.NOTSET)
        monkeypatch.setattr(cachepipe_logger, "handlers", [])

        yaml_path = tmp_path / "cachepipe.yaml"
        yaml_path.write_text("cachepipe:\n  debug: true\n")
        CachePipeConfig.from_yaml(yaml_path)

        assert cachepipe_logger.level == logging.DEBUG
        assert len(cachepipe_logger.handlers) == 1


class TestHooks:
    """Test suite for loading hooks from configuration."""

    def test_register_hooks(self) -> None:
        """Test configured hooks are imported and registered."""
        config = CachePipeConfig(
            hooks=[
                {"namespace": "feeds", "stage": "pre", "name": "parse", "hook": "json.loads"},
                {"namespace": "feeds", "name": "parse", "hook": "json:dumps"},
            ]
        )
        registry = HookRegistry()

        assert config.register_hooks(registry) == 2

        assert registry.hooks("feeds", "pre", "parse") == (json.loads,)
        assert registry.hooks("feeds", "post", "parse") == (json.dumps,)

    def test_register_hooks_skips_bad_entries(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test hooks that cannot be loaded are logged and skipped."""
        config = CachePipeConfig(
            hooks=[
                {"namespace": "feeds", "name": "a", "hook": "no_such_module_xyz.hook"},
                {"namespace": "feeds", "name": "b", "hook": "json.no_such_function"},
                {"namespace": "feeds", "stage": "during", "name": "c", "hook": "json.dumps"},
                {"namespace": "feeds", "name": "d", "hook": "json.dumps"},
            ]
        )
        registry = HookRegistry()

        with caplog.at_level(logging.ERROR, logger="cachepipe.config"):
            assert config.register_hooks(registry) == 1

        assert "no_such_module_xyz.hook" in caplog.text
        assert "json.no_such_function" in caplog.text
        assert "Invalid hook entry" in caplog.text
        assert len(registry) == 1

    def test_import_object(self) -> None:
        """Test both import path forms."""
        assert import_object("os.path:join") is import_object("os.path.join")
        with pytest.raises(ImportError):
            import_object("no_such_module_xyz:thing")
        with pytest.raises(AttributeError):
            import_object("os.no_such_attr")


class TestPipelines:
    """Test suite for named pipelines."""

    def test_unknown_pipeline(self) -> None:
        """Test loading an unconfigured pipeline name."""
        with pytest.raises(KeyError):
            CachePipeConfig().load_pipeline("feeds")

    def test_load_pipeline(self) -> None:
        """Test a configured pipeline is imported."""
        config = CachePipeConfig(pipelines={"join": "os.path:join"})
        assert config.load_pipeline("join") is os.path.join


class TestGetConfig:
    """Test suite for the global configuration instance."""

    def test_from_config_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test CACHEPIPE_CONFIG_DIR is used to find cachepipe.yaml."""
        (tmp_path / "cachepipe.yaml").write_text("cachepipe:\n  chunk_size: 2048\n")
        monkeypatch.setenv("CACHEPIPE_CONFIG_DIR", str(tmp_path))

        config = get_config()
        assert config.chunk_size == 2048
        assert config.config_path == tmp_path / "cachepipe.yaml"
        assert get_config() is config

    def test_defaults_without_config_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test defaults are used when no cachepipe.yaml exists."""
        monkeypatch.setenv("CACHEPIPE_CONFIG_DIR", str(tmp_path))
        config = get_config()
        assert config.config_path is None
        assert config.chunk_size == 64 * 1024

    def test_set_config_instance(self) -> None:
        """Test the global instance can be replaced."""
        config = CachePipeConfig(chunk_size=7)
        set_config_instance(config)
        assert get_config() is config
