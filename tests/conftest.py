"""Shared fixtures for cachepipe tests."""

from pathlib import Path

import pytest

from cachepipe.config import CachePipeConfig, clear_config_instance, set_config_instance


@pytest.fixture(autouse=True)
def cleanup(monkeypatch):
    """Isolate tests from user configuration and reset the global config."""
    monkeypatch.delenv("CACHEPIPE_CONFIG_DIR", raising=False)
    clear_config_instance()
    yield
    clear_config_instance()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def config(cache_dir: Path) -> CachePipeConfig:
    """Install a config whose cache_dir is a temporary directory."""
    config = CachePipeConfig(cache_dir=cache_dir, chunk_size=4)
    set_config_instance(config)
    return config
