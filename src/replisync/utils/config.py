"""
Configuration loader for replisync.

This module provides configuration management with:
- Multiple configuration sources (files, dicts, env vars)
- Schema validation through pydantic
- Configuration merging by priority
- Optional hot reloading of file sources
"""

import os
import json
import asyncio
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable

import yaml
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("replisync.config")

ENV_PREFIX = "REPLISYNC_"
ENV_NESTING = "__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class StorageConfig(BaseModel):
    """Persistent store configuration."""
    backend: str = "memory"
    path: Path = Field(default_factory=lambda: Path.home() / ".replisync" / "replisync.db")
    key_prefix: str = "replisync"
    quota_bytes: Optional[int] = None
    watch_interval_ms: int = 250

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        if v not in ("memory", "sqlite"):
            raise ValueError(f"Unknown storage backend: {v}")
        return v


class TransportConfig(BaseModel):
    """Transport ladder configuration."""
    channel_name: str = "replisync-sync"
    polling_interval_ms: int = 5000
    polling_min_ms: int = 1000
    polling_max_ms: int = 10000
    signal_clear_delay_ms: int = 100
    primary_retry_ms: int = 30000
    enable_broadcast: bool = True
    enable_storage_signal: bool = True


class LivenessConfig(BaseModel):
    """Presence / heartbeat configuration."""
    liveness_window_ms: int = 15000
    initial_presence_window_ms: int = 10000


class MergeConfig(BaseModel):
    """Conflict resolution configuration."""
    terminal_field: str = "status"
    resolved_values: List[str] = Field(default_factory=lambda: ["claimed"])
    open_values: List[str] = Field(default_factory=lambda: ["unclaimed"])
    empty_markers: List[str] = Field(default_factory=lambda: ["", "N/A"])
    id_scheme: str = "unique"
    failure_threshold: int = 3

    @field_validator('id_scheme')
    @classmethod
    def validate_id_scheme(cls, v):
        if v not in ("unique", "sequential"):
            raise ValueError(f"Unknown id scheme: {v}")
        return v


class QueueConfig(BaseModel):
    """Offline queue and conflict backlog configuration."""
    max_pending_conflicts: int = 100
    conflict_retention_seconds: int = 24 * 3600


class RetryConfig(BaseModel):
    """Remote call retry configuration."""
    max_attempts: int = 5
    base_delay_ms: int = 100
    max_delay_ms: int = 10000
    jitter: float = 0.25


class RemoteConfig(BaseModel):
    """Remote persistence collaborator configuration."""
    url: Optional[str] = None
    api_key: Optional[str] = None
    table: str = "records"
    timeout_seconds: float = 30.0


class UploadConfig(BaseModel):
    """Binary asset upload configuration."""
    upload_url: Optional[str] = None
    upload_preset: Optional[str] = None
    max_file_size_mb: float = 5
    allowed_types: List[str] = Field(default_factory=lambda: [
        "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp",
    ])
    timeout_ms: int = 30000
    max_attempts: int = 3
    backoff_base_ms: int = 300


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".replisync" / "logs")
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class ReplisyncConfig(BaseModel):
    """Main replisync configuration."""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    liveness: LivenessConfig = Field(default_factory=LivenessConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True,
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[ReplisyncConfig] = None
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[ReplisyncConfig], Any]] = []
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path),
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict",
            ))

        # lowest priority first so that later merges win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> ReplisyncConfig:
        """Load and validate configuration from all sources."""
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                data = self._load_source(source)
                merged_data = self._deep_merge(merged_data, data)

            merged_data = self._deep_merge(merged_data, self._load_env_vars())

            try:
                self._config = ReplisyncConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")
                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))

            if self._config.enable_hot_reload and not self._observers:
                self._loop = asyncio.get_running_loop()
                self._setup_hot_reload()

            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
            elif source.source_type == "env":
                return self._parse_env_lines(content.splitlines())
        except (json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Could not parse {source.path}: {e}") from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_lines(self, lines: List[str]) -> Dict[str, Any]:
        """Parse KEY=value lines (.env format)."""
        pairs = {}
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            pairs[key.strip()] = value.strip().strip('"').strip("'")
        return self._nest(pairs)

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        return self._nest({
            key: value for key, value in os.environ.items()
            if key.startswith(self.env_prefix)
        })

    def _nest(self, pairs: Dict[str, str]) -> Dict[str, Any]:
        """Turn PREFIX_SECTION__FIELD=value pairs into nested dicts."""
        result: Dict[str, Any] = {}
        for key, value in pairs.items():
            if key.startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            parts = [p for p in key.lower().split(ENV_NESTING) if p]
            if not parts:
                continue
            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._convert_value(value)
        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        if value.startswith("/") or value.startswith("~"):
            return Path(value).expanduser()

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _setup_hot_reload(self) -> None:
        """Watch file sources and reload on modification."""
        for source in self._sources:
            if source.path and source.path.exists():
                observer = Observer()
                handler = ConfigFileHandler(self, source.path)
                observer.schedule(handler, str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)
                logger.info("hot_reload_enabled", path=str(source.path))

    def register_callback(self, callback: Callable[[ReplisyncConfig], Any]) -> None:
        """Register configuration change callback."""
        self._callbacks.append(callback)

    async def reload(self) -> None:
        """Reload configuration and notify callbacks if it changed."""
        logger.info("reloading_configuration")

        old_config = self._config
        try:
            new_config = await self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return

        if old_config == new_config:
            return

        for callback in self._callbacks:
            try:
                result = callback(new_config)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "callback_error",
                    callback=getattr(callback, '__name__', str(callback)),
                    error=str(e),
                )

    def get_config(self) -> ReplisyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        """Stop file watchers."""
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration files."""

    def __init__(self, loader: ConfigLoader, path: Path):
        self.loader = loader
        self.path = path

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification (called from the watchdog thread)."""
        if event.is_directory or Path(event.src_path) != self.path:
            return
        logger.info("config_file_modified", path=event.src_path)
        loop = self.loader._loop
        if loop is not None and not loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.loader.reload(), loop)


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    loader: Optional[ConfigLoader] = None,
) -> ReplisyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge with the highest priority
        loader: Loader to populate (a fresh one by default)

    Returns:
        Loaded configuration
    """
    loader = loader or ConfigLoader()

    default_paths = [
        Path.home() / ".replisync" / "config.yaml",
        Path.home() / ".replisync" / "config.json",
        Path("./replisync.yaml"),
        Path("./replisync.toml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    for i, path in enumerate(config_paths or []):
        loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


__all__ = [
    'ReplisyncConfig',
    'StorageConfig',
    'TransportConfig',
    'LivenessConfig',
    'MergeConfig',
    'QueueConfig',
    'RetryConfig',
    'RemoteConfig',
    'UploadConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
