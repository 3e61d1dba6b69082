"""Configuration management for cachepipe.

Configuration Discovery Precedence (Highest to Lowest Priority):
===============================================================

1. **CACHEPIPE_CONFIG_DIR Environment Variable** (Highest Priority)
   - Looks for: `${CACHEPIPE_CONFIG_DIR}/cachepipe.yaml`
   - Use case: Development, testing, custom deployments

2. **~/.cachepipe Directory** (Fallback)
   - Looks for: `~/.cachepipe/cachepipe.yaml`
   - Use case: Default user installations

If no `cachepipe.yaml` is found, default configuration is applied.
Individual settings can also be given as `CACHEPIPE_*` environment
variables (e.g. `CACHEPIPE_CACHE_DIR=/var/cache/feeds`).

Example cachepipe.yaml:
--------
cachepipe:
  debug: false
  cache_dir: /var/cache/cachepipe
  chunk_size: 65536
  mime_types:
    .csv: text/csv
  hooks:
    - namespace: feeds
      stage: post
      name: normalize
      hook: myapp.hooks.add_timestamp
  pipelines:
    feeds: myapp.pipelines:feed_pipeline
"""

import importlib
import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cachepipe.streams import DEFAULT_CHUNK_SIZE
from cachepipe.utils import DEFAULT_MIME_TYPE

if TYPE_CHECKING:
    from cachepipe.pipeline.hook import HookRegistry

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "cachepipe.yaml"


class HookConfig(BaseModel):
    """Configuration for a single transformer operation hook."""

    namespace: str
    """Hook namespace, matching the pipeline's namespace"""

    stage: str = "post"
    """Either 'pre' or 'post'"""

    name: str
    """Operation name the hook intercepts"""

    hook: str
    """Python import path to the hook function (module.func or module:func)"""


def import_object(path: str) -> Any:
    """Import an object from a 'module:attr' or 'module.attr' path.

    Raises:
        ImportError: If the module cannot be imported
        AttributeError: If the module has no such attribute
    """
    if ":" in path:
        module_path, attr = path.split(":", 1)
    else:
        module_path, attr = path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    obj: Any = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


class CachePipeConfig(BaseSettings):
    """Main configuration for cachepipe that reads from cachepipe.yaml."""

    model_config = SettingsConfigDict(
        env_prefix="CACHEPIPE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Core settings
    debug: bool = False

    # Base directory for relative step cache paths
    cache_dir: Path = Field(default_factory=lambda: Path("./cache"))

    # Read size for serving cache files
    chunk_size: int = DEFAULT_CHUNK_SIZE

    # Bound on chunks buffered between a step and its reader (0 = unbounded)
    max_buffered_chunks: int = 0

    # MIME types for cache file extensions, in addition to the built-in ones
    mime_types: dict[str, str] = Field(default_factory=dict)
    default_mime_type: str = DEFAULT_MIME_TYPE

    # Hook configurations
    hooks: list[HookConfig] = Field(default_factory=list)

    # Named pipelines: name -> import path of a Pipeline or PipelineInvoker
    pipelines: dict[str, str] = Field(default_factory=dict)

    # Path to the cachepipe config file
    config_path: Path | None = None

    def apply_logging(self) -> None:
        """Raise cachepipe loggers to DEBUG when debug is enabled."""
        if not self.debug:
            return
        cachepipe_logger = logging.getLogger("cachepipe")
        cachepipe_logger.setLevel(logging.DEBUG)
        if not cachepipe_logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(name)s:%(levelname)s: %(message)s"))
            cachepipe_logger.addHandler(handler)

    def register_hooks(self, registry: "HookRegistry") -> int:
        """Import configured hook functions and register them.

        Hooks that fail to import are logged and skipped.

        Returns:
            Number of hooks registered
        """
        registered = 0
        for entry in self.hooks:
            try:
                hook_fn = import_object(entry.hook)
            except (ImportError, AttributeError, ValueError) as e:
                logger.error(f"Failed to load hook {entry.hook}: {e}")
                continue
            try:
                registry.register(entry.namespace, entry.stage, entry.name, hook_fn)
            except ValueError as e:
                logger.error(f"Invalid hook entry {entry.hook}: {e}")
                continue
            logger.debug(f"Loaded hook: {entry.hook} as {entry.namespace}.{entry.stage}-{entry.name}")
            registered += 1
        return registered

    def load_pipeline(self, name: str) -> Any:
        """Import a named pipeline.

        Raises:
            KeyError: If no pipeline is configured under name
        """
        if name not in self.pipelines:
            raise KeyError(f"Unknown pipeline '{name}'")
        return import_object(self.pipelines[name])

    @classmethod
    def from_yaml(cls, yaml_path: Path, **kwargs: Any) -> "CachePipeConfig":
        """Load configuration from a cachepipe.yaml file.

        Args:
            yaml_path: Path to the cachepipe.yaml file
            **kwargs: Settings overriding the file

        Returns:
            CachePipeConfig instance
        """
        data: dict[str, Any] = {}
        if yaml_path.exists():
            with yaml_path.open() as f:
                data = yaml.safe_load(f) or {}

        section = data.get("cachepipe", {}) or {}
        if not isinstance(section, dict):
            logger.warning(f"Invalid cachepipe section in {yaml_path}: {type(section)}")
            section = {}

        settings = {**section, **kwargs}
        settings.setdefault("config_path", yaml_path)

        # Relative cache_dir is taken relative to the config file
        cache_dir = settings.get("cache_dir")
        if cache_dir is not None and not Path(cache_dir).is_absolute():
            settings["cache_dir"] = yaml_path.parent / cache_dir

        instance = cls(**settings)
        instance.apply_logging()
        return instance


# Global configuration instance
_config_instance: CachePipeConfig | None = None
_config_lock = threading.Lock()


def get_config() -> CachePipeConfig:
    """Get the configuration instance."""
    global _config_instance

    if _config_instance is None:
        with _config_lock:
            # Double-check locking pattern
            if _config_instance is None:
                env_config_dir = os.environ.get("CACHEPIPE_CONFIG_DIR")
                if env_config_dir:
                    config_dir = Path(env_config_dir)
                    logger.info(f"Using config directory from environment: {config_dir}")
                else:
                    config_dir = Path.home() / ".cachepipe"

                config_path = config_dir / CONFIG_FILE_NAME
                if config_path.exists():
                    logger.info(f"Loading cachepipe config from: {config_path}")
                    _config_instance = CachePipeConfig.from_yaml(config_path)
                else:
                    logger.debug(f"{CONFIG_FILE_NAME} not found at {config_path}, using default config")
                    _config_instance = CachePipeConfig()

    return _config_instance


def set_config_instance(config: CachePipeConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = config


def clear_config_instance() -> None:
    """Clear the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
