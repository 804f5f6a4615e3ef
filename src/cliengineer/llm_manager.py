"""Language-model capability interface and provider manager.

The agent core only ever calls `send_prompt` and `context_size`. Concrete
providers live in `providers.py`; this module holds the interface, the
manager that fronts the active provider, and two offline providers (an echo
provider and a scripted mock for mock mode and tests).
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from .events import EventBus, EventType, emit_to
from .tokens import estimate_cost, estimate_tokens

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Exception raised when a model call fails."""

    pass


class LLMProvider(ABC):
    """Abstract base class for language-model providers."""

    cost_per_1m_input_tokens: float = 0.0
    cost_per_1m_output_tokens: float = 0.0

    @property
    @abstractmethod
    def name(self) -> str:
        """Short provider name, e.g. "openai"."""
        pass

    @abstractmethod
    def context_size(self) -> int:
        """Maximum context window of the active model, in tokens."""
        pass

    @abstractmethod
    def send_prompt(self, prompt: str) -> str:
        """Send a prompt and return the model's text response.

        Raises:
            LLMError: If the call fails.
        """
        pass


class LocalProvider(LLMProvider):
    """Placeholder provider used when no remote model is configured."""

    @property
    def name(self) -> str:
        return "local"

    def context_size(self) -> int:
        return 4096

    def send_prompt(self, prompt: str) -> str:
        return f"Echo: {prompt}"


# Markers used by MockProvider to recognise which component is prompting
PLAN_MARKER = "numbered list of steps"
REVIEW_MARKER = "READY_TO_DEPLOY:"
SUMMARY_MARKER = "summary of the following conversation"

MockResponse = Union[str, Callable[[str], str]]


class MockProvider(LLMProvider):
    """Scripted provider for mock mode and tests.

    Responses are chosen by the first key of `responses` found in the
    prompt; unmatched prompts get a canned plan, artifact or review depending
    on the prompt kind. Reviews report ready to deploy once `ready_after`
    reviews have been produced.
    """

    def __init__(
        self,
        responses: Optional[dict[str, MockResponse]] = None,
        ready_after: int = 1,
        context_window: int = 100_000,
        fail_on: Optional[str] = None,
    ):
        """Initialize the mock provider.

        Args:
            responses: Optional mapping of prompt substrings to responses (or
                callables receiving the prompt).
            ready_after: Number of reviews after which the review says ready.
            context_window: Value reported by context_size().
            fail_on: If this substring appears in a prompt, raise LLMError.
        """
        self.responses = responses or {}
        self.ready_after = ready_after
        self.context_window = context_window
        self.fail_on = fail_on
        self.call_count = 0
        self.review_count = 0
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def last_prompt(self) -> Optional[str]:
        """The most recent prompt, if any."""
        return self.prompts[-1] if self.prompts else None

    def context_size(self) -> int:
        return self.context_window

    def send_prompt(self, prompt: str) -> str:
        self.call_count += 1
        self.prompts.append(prompt)

        if self.fail_on and self.fail_on in prompt:
            raise LLMError(f"Mock failure triggered by '{self.fail_on}'")

        for key, response in self.responses.items():
            if key in prompt:
                return response(prompt) if callable(response) else response

        if SUMMARY_MARKER in prompt:
            return "- Earlier steps were discussed and completed."
        if PLAN_MARKER in prompt:
            return self._mock_plan()
        if REVIEW_MARKER in prompt:
            return self._mock_review()
        return self._mock_artifact()

    def _mock_plan(self) -> str:
        return (
            "1. Create a new file hello.py that prints a greeting\n"
            "2. Review hello.py for correctness"
        )

    def _mock_artifact(self) -> str:
        return (
            "Here is the file:\n"
            '<artifact filename="hello.py" type="python">\n'
            "<![CDATA[\n"
            'print("Hello, world!")\n'
            "]]>\n"
            "</artifact>\n"
        )

    def _mock_review(self) -> str:
        self.review_count += 1
        ready = self.review_count >= self.ready_after
        if ready:
            return (
                "QUALITY: Good\n"
                "READY_TO_DEPLOY: true\n"
                "SUMMARY: The implementation satisfies the task.\n"
                "ISSUES:\n"
            )
        return (
            "QUALITY: Fair\n"
            "READY_TO_DEPLOY: false\n"
            f"SUMMARY: Mock review {self.review_count} found remaining work.\n"
            "ISSUES:\n"
            "- SEVERITY: Major | CATEGORY: Testing | DESCRIPTION: hello.py has no tests "
            "| SUGGESTION: Add a test module | LOCATION: hello.py\n"
        )


class LLMManager:
    """Fronts the active provider and reports API calls on the event bus."""

    def __init__(
        self,
        providers: list[LLMProvider],
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize the manager.

        Args:
            providers: Registered providers; the first one is active.
            event_bus: Optional bus for API call events.

        Raises:
            ValueError: If no providers are given.
        """
        if not providers:
            raise ValueError("At least one provider is required")
        self.providers = providers
        self.event_bus = event_bus
        self.active = 0

    def provider(self) -> LLMProvider:
        """Get the active provider."""
        return self.providers[self.active]

    def context_size(self) -> int:
        """Context window of the active provider."""
        return self.provider().context_size()

    def send_prompt(self, prompt: str) -> str:
        """Send a prompt through the active provider.

        Args:
            prompt: Prompt text.

        Returns:
            Response text.

        Raises:
            LLMError: If the provider call fails.
        """
        provider = self.provider()
        emit_to(self.event_bus, EventType.API_CALL_STARTED, {"provider": provider.name})
        started = time.monotonic()

        try:
            response = provider.send_prompt(prompt)
        except LLMError as e:
            logger.error(f"{provider.name} call failed: {e}")
            emit_to(self.event_bus, EventType.API_ERROR, {
                "provider": provider.name,
                "error": str(e),
            })
            raise

        input_tokens = estimate_tokens(prompt)
        output_tokens = estimate_tokens(response)
        cost = (
            estimate_cost(input_tokens, provider.cost_per_1m_input_tokens)
            + estimate_cost(output_tokens, provider.cost_per_1m_output_tokens)
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            f"{provider.name} responded in {duration_ms}ms "
            f"(~{input_tokens} in, ~{output_tokens} out)"
        )
        emit_to(self.event_bus, EventType.API_CALL_COMPLETED, {
            "provider": provider.name,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "tokens": input_tokens + output_tokens,
            "cost": cost,
            "duration_ms": duration_ms,
        })
        return response
