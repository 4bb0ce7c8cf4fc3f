"""
Configuration System

Manages engine configuration from multiple sources:
1. Default values
2. Configuration file (workflow-engine.yaml)
3. Environment variables (highest priority)
"""

from typing import Any, Dict, Optional
from pathlib import Path
import importlib.resources
import logging
import os
import yaml
from dataclasses import dataclass, field, asdict

from .error_handling import ConfigurationError, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "workflow-engine.yaml"
ENV_PREFIX = "WORKFLOW_ENGINE"


@dataclass
class StorageConfig:
    """Session persistence configuration"""
    backend: str = "file"  # file | memory
    root_dir_name: str = ".bc-workflows"
    session_retention_days: int = 7
    lock_timeout_seconds: float = 10.0


@dataclass
class ScannerConfig:
    """File inventory configuration"""
    max_file_size_bytes: int = 1_000_000
    default_max_files: Optional[int] = None


@dataclass
class DiscoveryConfig:
    """Autonomous pattern discovery configuration"""
    timeout_ms: int = 30000
    default_context_lines: int = 2


@dataclass
class TokenConfig:
    """Batch confirmation token configuration"""
    retention_cap: int = 100


@dataclass
class RetryConfig:
    """Retry configuration for concurrent session writes"""
    max_attempts: int = 3
    initial_delay_ms: int = 50
    max_delay_ms: int = 1000
    exponential_base: float = 2.0
    jitter: bool = True

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class DefinitionsConfig:
    """Extra workflow definition layers"""
    layer_dirs: list[str] = field(default_factory=list)


@dataclass
class EngineConfig:
    """Complete engine configuration"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    definitions: DefinitionsConfig = field(default_factory=DefinitionsConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create configuration from dictionary"""
        config = cls()
        sections = {
            "storage": StorageConfig,
            "scanner": ScannerConfig,
            "discovery": DiscoveryConfig,
            "tokens": TokenConfig,
            "retry": RetryConfig,
            "logging": LoggingConfig,
            "definitions": DefinitionsConfig,
        }
        for name, section_cls in sections.items():
            if name in data and data[name] is not None:
                try:
                    setattr(config, name, section_cls(**data[name]))
                except TypeError as e:
                    raise ConfigurationError(f"Invalid '{name}' section: {e}", section=name)
        return config


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
        """
        self.config_file = Path(config_file) if config_file else Path(DEFAULT_CONFIG_FILE)
        self._config = self._load_config()

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _load_config(self) -> EngineConfig:
        config = EngineConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {self.config_file}: {e}")
            if file_data:
                config = EngineConfig.from_dict(file_data)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: EngineConfig) -> EngineConfig:
        """
        Apply environment variable overrides

        Environment variables format: WORKFLOW_ENGINE_<SECTION>_<KEY>
        Example: WORKFLOW_ENGINE_DISCOVERY_TIMEOUT_MS=5000
        """
        if backend := os.getenv(f"{ENV_PREFIX}_STORAGE_BACKEND"):
            config.storage.backend = backend
        if root_dir := os.getenv(f"{ENV_PREFIX}_STORAGE_ROOT_DIR_NAME"):
            config.storage.root_dir_name = root_dir
        if retention := os.getenv(f"{ENV_PREFIX}_STORAGE_SESSION_RETENTION_DAYS"):
            config.storage.session_retention_days = int(retention)
        if lock_timeout := os.getenv(f"{ENV_PREFIX}_STORAGE_LOCK_TIMEOUT_SECONDS"):
            config.storage.lock_timeout_seconds = float(lock_timeout)

        if max_size := os.getenv(f"{ENV_PREFIX}_SCANNER_MAX_FILE_SIZE_BYTES"):
            config.scanner.max_file_size_bytes = int(max_size)
        if max_files := os.getenv(f"{ENV_PREFIX}_SCANNER_DEFAULT_MAX_FILES"):
            config.scanner.default_max_files = int(max_files)

        if timeout := os.getenv(f"{ENV_PREFIX}_DISCOVERY_TIMEOUT_MS"):
            config.discovery.timeout_ms = int(timeout)

        if cap := os.getenv(f"{ENV_PREFIX}_TOKENS_RETENTION_CAP"):
            config.tokens.retention_cap = int(cap)

        if attempts := os.getenv(f"{ENV_PREFIX}_RETRY_MAX_ATTEMPTS"):
            config.retry.max_attempts = int(attempts)

        if log_level := os.getenv(f"{ENV_PREFIX}_LOG_LEVEL"):
            config.logging.level = log_level
        if log_file := os.getenv(f"{ENV_PREFIX}_LOG_FILE"):
            config.logging.file = log_file

        if layers := os.getenv(f"{ENV_PREFIX}_DEFINITIONS_LAYER_DIRS"):
            config.definitions.layer_dirs = [p for p in layers.split(os.pathsep) if p]

        return config

    def get(self, section: Optional[str] = None) -> Any:
        """Get configuration section or entire config"""
        if section is None:
            return self._config
        return getattr(self._config, section, None)

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = []

        if self._config.storage.backend not in ("file", "memory"):
            errors.append("Storage backend must be 'file' or 'memory'")
        if self._config.storage.session_retention_days < 1:
            errors.append("Session retention must be at least 1 day")
        if self._config.scanner.max_file_size_bytes < 1:
            errors.append("Scanner max file size must be positive")
        if self._config.discovery.timeout_ms < 0:
            errors.append("Discovery timeout must be non-negative")
        if self._config.discovery.default_context_lines < 0:
            errors.append("Default context lines must be non-negative")
        if self._config.tokens.retention_cap < 1:
            errors.append("Token retention cap must be at least 1")
        if self._config.retry.max_attempts < 1:
            errors.append("Retry max attempts must be at least 1")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self._config.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")

        return len(errors) == 0, errors


def configure_logging(settings: LoggingConfig) -> None:
    """Configure root logging for entry points."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.file:
        handlers.append(logging.FileHandler(settings.file))
    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def get_bundled_workflows_dir() -> Path:
    """
    Get the directory holding the bundled workflow definitions.

    Raises:
        FileNotFoundError: If the bundled definitions are missing (corrupted install).
    """
    bundled = importlib.resources.files('workflow_engine') / 'workflows'
    path = Path(str(bundled))
    if path.is_dir():
        return path

    fallback = Path(__file__).parent / 'workflows'
    if fallback.is_dir():
        return fallback

    raise FileNotFoundError(
        "Bundled workflow definitions not found. The package may be corrupted."
    )
