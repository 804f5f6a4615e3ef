"""Concrete language-model providers.

Each provider is a thin protocol adapter behind `LLMProvider`: OpenAI-style
chat completions over HTTP (OpenAI, OpenRouter, Gemini's compatibility
endpoint), Anthropic through its SDK, and a local Ollama server. Transient
HTTP failures are retried with exponential backoff and jitter.
"""

from __future__ import annotations

import logging
import random
import re
import time
from abc import abstractmethod
from typing import Any, Optional

import anthropic
import httpx

from .config import Config, ProviderSettings
from .events import EventBus
from .llm_manager import LLMError, LLMManager, LLMProvider, LocalProvider, MockProvider

logger = logging.getLogger(__name__)

# Patterns for sensitive data that should be masked in error messages
SENSITIVE_PATTERNS = [
    (re.compile(r'(Bearer\s+)[A-Za-z0-9_.-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(api[_-]?key["\s:=]+)[A-Za-z0-9_-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(x-api-key["\s:=]+)[A-Za-z0-9_-]+', re.IGNORECASE), r'\1[REDACTED]'),
    (re.compile(r'(key=)[A-Za-z0-9_-]+'), r'\1[REDACTED]'),
    (re.compile(r'(sk-)[A-Za-z0-9_-]+'), r'\1[REDACTED]'),  # OpenAI/Anthropic/OpenRouter key format
]

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
OLLAMA_BASE_URL = "http://localhost:11434"

# Context windows used when the config does not state max_tokens
DEFAULT_CONTEXT_SIZES = {
    "openai": 128_000,
    "openrouter": 65_536,
    "gemini": 1_048_576,
    "anthropic": 200_000,
    "ollama": 8192,
}


class ProviderError(LLMError):
    """Exception raised for provider API errors."""

    pass


def sanitize_error(message: str) -> str:
    """Sanitize error messages to remove sensitive data.

    Args:
        message: Error message that may contain API keys or tokens.

    Returns:
        Sanitized message with sensitive data masked.
    """
    result = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class HTTPProvider(LLMProvider):
    """Base class for providers reached through a JSON HTTP API."""

    # Status codes eligible for retry (transient errors)
    RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        name: str,
        settings: ProviderSettings,
        timeout: int = 120,
        retry_max_attempts: int = 3,
        retry_backoff_base: float = 2.0,
        retry_backoff_max: float = 60.0,
    ):
        self._name = name
        self.settings = settings
        self.model = settings.model
        self.timeout = timeout
        self.retry_max_attempts = retry_max_attempts
        self.retry_backoff_base = retry_backoff_base
        self.retry_backoff_max = retry_backoff_max
        self.cost_per_1m_input_tokens = settings.cost_per_1m_input_tokens
        self.cost_per_1m_output_tokens = settings.cost_per_1m_output_tokens
        self.client = httpx.Client(timeout=timeout)

    @property
    def name(self) -> str:
        return self._name

    def context_size(self) -> int:
        return self.settings.max_tokens or DEFAULT_CONTEXT_SIZES.get(self._name, 8192)

    @abstractmethod
    def _build_request(self, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json payload) for a prompt."""
        pass

    @abstractmethod
    def _extract_content(self, data: dict) -> str:
        """Pull the response text out of the decoded JSON body."""
        pass

    def _should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error is transient and should be retried.

        Args:
            error: The exception that occurred.
            attempt: Current attempt number (1-indexed).

        Returns:
            True if the error is transient and retry is allowed.
        """
        if attempt >= self.retry_max_attempts:
            return False

        if isinstance(error, httpx.TimeoutException):
            return True

        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in self.RETRYABLE_STATUS_CODES

        if isinstance(error, (httpx.ConnectError, httpx.RemoteProtocolError)):
            return True

        return False

    def _get_backoff_time(self, attempt: int, retry_after: Optional[int] = None) -> float:
        """Calculate exponential backoff time with full jitter.

        Args:
            attempt: Current attempt number (1-indexed).
            retry_after: Optional Retry-After header value from server.

        Returns:
            Backoff time in seconds.
        """
        if retry_after is not None:
            return float(retry_after)

        exp_backoff = self.retry_backoff_base * (2 ** (attempt - 1))
        capped_backoff = min(exp_backoff, self.retry_backoff_max)
        return random.uniform(0, capped_backoff)

    def send_prompt(self, prompt: str) -> str:
        url, headers, payload = self._build_request(prompt)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_max_attempts + 1):
            try:
                response = self.client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                return self._extract_content(response.json())

            except (httpx.HTTPStatusError, httpx.TimeoutException, httpx.ConnectError,
                    httpx.RemoteProtocolError) as e:
                last_error = e

                if not self._should_retry(e, attempt):
                    break

                retry_after = None
                if isinstance(e, httpx.HTTPStatusError):
                    retry_after_str = e.response.headers.get("Retry-After")
                    if retry_after_str and retry_after_str.isdigit():
                        retry_after = int(retry_after_str)

                backoff = self._get_backoff_time(attempt, retry_after)
                logger.warning(
                    f"{self.name}: transient {type(e).__name__} on attempt "
                    f"{attempt}/{self.retry_max_attempts}. Retrying in {backoff:.2f}s..."
                )
                time.sleep(backoff)

            except httpx.HTTPError as e:
                raise ProviderError(
                    sanitize_error(f"Error calling {self.name}: {type(e).__name__}: {e}")
                ) from e

            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise ProviderError(
                    sanitize_error(f"Malformed response from {self.name}: {e}")
                ) from e

        if isinstance(last_error, httpx.HTTPStatusError):
            body = sanitize_error(last_error.response.text[:500])
            raise ProviderError(
                f"HTTP error from {self.name} after {attempt} attempt(s): "
                f"{last_error.response.status_code} - {body}"
            ) from last_error
        if isinstance(last_error, httpx.TimeoutException):
            raise ProviderError(
                f"Request to {self.name} timed out after {attempt} attempt(s) "
                f"(timeout: {self.timeout}s)"
            ) from last_error
        raise ProviderError(
            sanitize_error(f"Error calling {self.name} after {attempt} attempt(s): {last_error}")
        ) from last_error


class OpenAICompatibleProvider(HTTPProvider):
    """Chat-completions provider for OpenAI and API-compatible services."""

    DEFAULT_BASE_URLS = {
        "openai": OPENAI_BASE_URL,
        "openrouter": OPENROUTER_BASE_URL,
        "gemini": GEMINI_BASE_URL,
    }

    def __init__(self, name: str, settings: ProviderSettings, **kwargs: Any):
        super().__init__(name, settings, **kwargs)
        if not settings.api_key:
            raise ProviderError(f"API key for {name} is not set")
        self.base_url = (settings.base_url or self.DEFAULT_BASE_URLS.get(name, OPENAI_BASE_URL)).rstrip("/")

    def _build_request(self, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.settings.temperature is not None:
            payload["temperature"] = self.settings.temperature

        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }
        if self.name == "openrouter":
            headers["X-Title"] = "cli-engineer"

        return f"{self.base_url}/chat/completions", headers, payload

    def _extract_content(self, data: dict) -> str:
        content = data["choices"][0]["message"]["content"]
        usage = data.get("usage", {})
        if usage:
            logger.debug(
                f"{self.name} usage: {usage.get('prompt_tokens', 0)} input, "
                f"{usage.get('completion_tokens', 0)} output tokens"
            )
        return content or ""


class OllamaProvider(HTTPProvider):
    """Provider for a local Ollama server."""

    def __init__(self, settings: ProviderSettings, **kwargs: Any):
        super().__init__("ollama", settings, **kwargs)
        self.base_url = (settings.base_url or OLLAMA_BASE_URL).rstrip("/")

    def _build_request(self, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        options: dict[str, Any] = {"num_ctx": self.context_size()}
        if self.settings.temperature is not None:
            options["temperature"] = self.settings.temperature

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": options,
        }
        return f"{self.base_url}/api/generate", {"Content-Type": "application/json"}, payload

    def _extract_content(self, data: dict) -> str:
        return data["response"]


class AnthropicProvider(LLMProvider):
    """Provider for Anthropic's Messages API."""

    def __init__(self, settings: ProviderSettings, timeout: int = 120, max_output_tokens: int = 8192):
        """Initialize the Anthropic provider.

        Args:
            settings: Provider settings (model, temperature, key, costs).
            timeout: Request timeout in seconds.
            max_output_tokens: Maximum tokens in one response.
        """
        if not settings.api_key:
            raise ProviderError("API key for anthropic is not set")
        self.settings = settings
        self.model = settings.model
        self.max_output_tokens = max_output_tokens
        self.cost_per_1m_input_tokens = settings.cost_per_1m_input_tokens
        self.cost_per_1m_output_tokens = settings.cost_per_1m_output_tokens
        self.client = anthropic.Anthropic(api_key=settings.api_key, timeout=timeout)

    @property
    def name(self) -> str:
        return "anthropic"

    def context_size(self) -> int:
        return self.settings.max_tokens or DEFAULT_CONTEXT_SIZES["anthropic"]

    def send_prompt(self, prompt: str) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.settings.temperature is not None:
            kwargs["temperature"] = self.settings.temperature

        try:
            response = self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise ProviderError(sanitize_error(f"Anthropic API error: {e}")) from e

        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        return text


def create_provider(name: str, settings: ProviderSettings, config: Config) -> LLMProvider:
    """Factory function to build a provider by name.

    Raises:
        ValueError: If the provider name is unknown.
        ProviderError: If a required API key is missing.
    """
    http_kwargs = {
        "timeout": config.timeout,
        "retry_max_attempts": config.retry_max_attempts,
        "retry_backoff_base": config.retry_backoff_base,
        "retry_backoff_max": config.retry_backoff_max,
    }
    if name in ("openai", "openrouter", "gemini"):
        return OpenAICompatibleProvider(name, settings, **http_kwargs)
    if name == "ollama":
        return OllamaProvider(settings, **http_kwargs)
    if name == "anthropic":
        return AnthropicProvider(settings, timeout=config.timeout)
    raise ValueError(f"Unknown provider: {name}")


def create_llm_manager(config: Config, event_bus: Optional[EventBus] = None) -> LLMManager:
    """Build an LLMManager from configuration.

    Mock mode yields a MockProvider. Providers that fail to initialise are
    skipped with a warning; with none left, the LocalProvider is used.
    """
    if config.mock_mode:
        return LLMManager([MockProvider(context_window=config.context.max_tokens)], event_bus)

    providers: list[LLMProvider] = []
    for name in config.enabled_providers():
        try:
            providers.append(create_provider(name, config.providers[name], config))
            logger.info(f"Registered provider: {name} ({config.providers[name].model})")
        except ProviderError as e:
            logger.warning(f"Skipping provider {name}: {e}")

    if not providers:
        logger.error("No AI providers configured, using LocalProvider")
        providers.append(LocalProvider())

    return LLMManager(providers, event_bus)
