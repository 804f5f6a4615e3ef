"""Token estimation utilities for cli-engineer.

Provides lightweight token estimation for context budgeting and cost
previews without requiring a full tokenizer library.
"""

from __future__ import annotations


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text string.

    Averages a character-based estimate (~4 characters per token) with a
    word-based estimate (~1.3 tokens per word). This is an approximation of
    GPT-style tokenization and may differ from real tokenizer counts.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count.
    """
    if not text:
        return 0

    char_estimate = len(text) // 4
    word_estimate = int(len(text.split()) * 1.3)
    return (char_estimate + word_estimate) // 2


def format_token_count(tokens: int) -> str:
    """Format a token count for display.

    Args:
        tokens: Number of tokens.

    Returns:
        Human-readable string like "1.2K tokens" or "15 tokens".
    """
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K tokens"
    return f"{tokens} tokens"


def estimate_cost(tokens: int, cost_per_1m: float = 0.0) -> float:
    """Estimate the cost for a given token count.

    Args:
        tokens: Number of tokens.
        cost_per_1m: Cost per one million tokens, as advertised by the provider.

    Returns:
        Estimated cost in dollars.
    """
    return (tokens / 1_000_000) * cost_per_1m
