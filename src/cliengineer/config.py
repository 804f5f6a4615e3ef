"""Configuration management for cli-engineer."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Searched in order when no explicit config path is given
DEFAULT_CONFIG_PATHS = [
    "cli_engineer.yaml",
    ".cli_engineer.yaml",
    "~/.config/cli_engineer/config.yaml",
]

# Environment variable holding the API key for each hosted provider
PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

# Order in which enabled providers are registered with the LLM manager
PROVIDER_ORDER = ("openrouter", "openai", "anthropic", "gemini", "ollama")


class ConfigError(Exception):
    """Exception raised when a configuration file cannot be loaded."""

    pass


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class ProviderSettings:
    """Settings for one language-model provider."""

    enabled: bool = False
    model: str = ""
    temperature: Optional[float] = None
    cost_per_1m_input_tokens: float = 0.0
    cost_per_1m_output_tokens: float = 0.0
    max_tokens: Optional[int] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict, default_model: str = "") -> ProviderSettings:
        """Create ProviderSettings from dictionary."""
        temperature = data.get("temperature")
        max_tokens = data.get("max_tokens")
        return cls(
            enabled=bool(data.get("enabled", False)),
            model=data.get("model", default_model),
            temperature=float(temperature) if temperature is not None else None,
            cost_per_1m_input_tokens=float(data.get("cost_per_1m_input_tokens", 0.0)),
            cost_per_1m_output_tokens=float(data.get("cost_per_1m_output_tokens", 0.0)),
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            base_url=data.get("base_url"),
        )


# Default models, used when a provider section omits `model`
DEFAULT_MODELS = {
    "openai": "o4-mini",
    "anthropic": "claude-sonnet-4-0",
    "openrouter": "deepseek/deepseek-r1-0528-qwen3-8b",
    "gemini": "gemini-1.5-flash-latest",
    "ollama": "qwen3:8b",
}


@dataclass
class ExecutionConfig:
    """Settings for the agentic loop."""

    max_iterations: int = 10
    parallel_enabled: bool = False
    artifact_dir: str = "./artifacts"
    isolated_execution: bool = False
    cleanup_on_exit: bool = False
    disable_auto_git: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> ExecutionConfig:
        """Create ExecutionConfig from dictionary."""
        return cls(
            max_iterations=int(data.get("max_iterations", 10)),
            parallel_enabled=bool(data.get("parallel_enabled", False)),
            artifact_dir=data.get("artifact_dir", "./artifacts"),
            isolated_execution=bool(data.get("isolated_execution", False)),
            cleanup_on_exit=bool(data.get("cleanup_on_exit", False)),
            disable_auto_git=bool(data.get("disable_auto_git", False)),
        )


@dataclass
class UIConfig:
    """Settings for terminal output."""

    colorful: bool = True
    metrics: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> UIConfig:
        """Create UIConfig from dictionary."""
        return cls(
            colorful=bool(data.get("colorful", True)),
            metrics=bool(data.get("metrics", True)),
        )


@dataclass
class ContextSettings:
    """Settings for conversation context management."""

    # Fallback only; the active model's context size wins when known
    max_tokens: int = 100_000
    compression_threshold: float = 0.8
    cache_enabled: bool = True
    cache_dir: Path = field(default_factory=lambda: Path(".cli_engineer") / "context_cache")

    @classmethod
    def from_dict(cls, data: dict) -> ContextSettings:
        """Create ContextSettings from dictionary."""
        settings = cls(
            max_tokens=int(data.get("max_tokens", 100_000)),
            compression_threshold=float(data.get("compression_threshold", 0.8)),
            cache_enabled=bool(data.get("cache_enabled", True)),
        )
        if data.get("cache_dir"):
            settings.cache_dir = Path(data["cache_dir"]).expanduser()
        return settings


@dataclass
class Config:
    """Configuration settings for cli-engineer."""

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    context: ContextSettings = field(default_factory=ContextSettings)
    providers: dict[str, ProviderSettings] = field(default_factory=dict)

    # Runtime Settings
    log_level: str = "INFO"
    mock_mode: bool = False
    source_path: Optional[Path] = None

    # Retry Settings
    timeout: int = 120
    retry_max_attempts: int = 3
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 60.0

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        """Create Config from a parsed YAML mapping."""
        provider_data = data.get("ai_providers", {}) or {}
        providers = {
            name: ProviderSettings.from_dict(provider_data.get(name) or {}, DEFAULT_MODELS[name])
            for name in PROVIDER_ORDER
        }
        return cls(
            execution=ExecutionConfig.from_dict(data.get("execution", {}) or {}),
            ui=UIConfig.from_dict(data.get("ui", {}) or {}),
            context=ContextSettings.from_dict(data.get("context", {}) or {}),
            providers=providers,
            timeout=int(data.get("timeout", 120)),
        )

    @classmethod
    def from_file(cls, path: Path) -> Config:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file.

        Returns:
            Config populated from the file.

        Raises:
            ConfigError: If the file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Failed to read config file: {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file: {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")

        config = cls.from_dict(data)
        config.source_path = Path(path)
        return config

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> Config:
        """Load configuration from an explicit path or the default locations.

        Environment variables (including a `.env` file) supply API keys and
        override a few runtime settings.

        Args:
            config_path: Optional explicit path. Errors are raised for it;
                failures in default locations are logged and skipped.

        Returns:
            Config instance. Defaults are used if no file is found.
        """
        load_dotenv()

        config: Optional[Config] = None
        if config_path is not None:
            config = cls.from_file(Path(config_path))
        else:
            for candidate in DEFAULT_CONFIG_PATHS:
                path = Path(candidate).expanduser()
                if not path.exists():
                    continue
                try:
                    config = cls.from_file(path)
                    break
                except ConfigError as e:
                    logger.warning(f"Failed to load config from {candidate}: {e}")

        if config is None:
            config = cls.default()

        config.apply_env()
        return config

    @classmethod
    def default(cls) -> Config:
        """Build the built-in default configuration (OpenAI enabled)."""
        config = cls.from_dict({})
        config.providers["openai"].enabled = True
        config.providers["openai"].temperature = 1.0
        config.providers["ollama"].base_url = "http://localhost:11434"
        config.providers["ollama"].max_tokens = 8192
        return config

    def apply_env(self) -> None:
        """Apply API keys and overrides from the environment."""
        for name, env_var in PROVIDER_KEY_ENV.items():
            settings = self.providers.get(name)
            if settings is not None:
                settings.api_key = os.getenv(env_var)

        if os.getenv("CLI_ENGINEER_MAX_ITERATIONS"):
            self.execution.max_iterations = int(os.environ["CLI_ENGINEER_MAX_ITERATIONS"])
        self.log_level = os.getenv("CLI_ENGINEER_LOG_LEVEL", self.log_level)
        self.mock_mode = self.mock_mode or _env_flag("CLI_ENGINEER_MOCK_MODE")

    def enabled_providers(self) -> list[str]:
        """Names of enabled providers in registration order."""
        return [
            name for name in PROVIDER_ORDER
            if name in self.providers and self.providers[name].enabled
        ]

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.execution.max_iterations < 1:
            errors.append("execution.max_iterations must be at least 1")

        if not 0.0 <= self.context.compression_threshold <= 1.0:
            errors.append("context.compression_threshold must be between 0.0 and 1.0")

        if self.context.max_tokens <= 0:
            errors.append("context.max_tokens must be positive")

        # API keys not required in mock mode
        if not self.mock_mode:
            for name in self.enabled_providers():
                env_var = PROVIDER_KEY_ENV.get(name)
                if env_var and not self.providers[name].api_key:
                    errors.append(f"{env_var} is required when the {name} provider is enabled")

        return errors

    @property
    def artifact_path(self) -> Path:
        """Resolved artifact directory."""
        return Path(self.execution.artifact_dir).expanduser().resolve()
