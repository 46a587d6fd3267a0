"""Monetary cost of chat completion responses.

Prices are USD per million tokens. A model missing from the table costs 0
and logs a warning; it is never an error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

_ONE_MILLION = Decimal(1_000_000)


class ModelPrice(NamedTuple):
    """USD per million prompt (input) and completion (output) tokens."""

    input: Decimal
    output: Decimal


def _price(input_price: str, output_price: str) -> ModelPrice:
    return ModelPrice(Decimal(input_price), Decimal(output_price))


PRICES_PER_MILLION: dict[str, ModelPrice] = {
    "o1-2024-12-17": _price("15.00", "60.00"),
    "o1-mini-2024-09-12": _price("1.10", "4.40"),
    "o1-pro-2025-03-19": _price("150.00", "600.00"),
    "o3-2025-04-16": _price("2.00", "8.00"),
    "o3-mini-2025-01-31": _price("1.10", "4.40"),
    "o3-pro-2025-06-10": _price("20.00", "80.00"),
    "o4-mini-2025-04-16": _price("1.10", "4.40"),
    "gpt-4.5-preview-2025-02-27": _price("75.00", "150.00"),
    "gpt-4o": _price("5.00", "15.00"),
    "gpt-4o-2024-05-13": _price("5.00", "15.00"),
    "gpt-4o-2024-08-06": _price("2.50", "10.00"),
    "gpt-4o-mini": _price("0.15", "0.60"),
    "gpt-4o-mini-2024-07-18": _price("0.15", "0.60"),
    "gpt-4o-audio-preview-2024-12-17": _price("2.50", "10.00"),
    "gpt-4o-realtime-preview-2024-12-17": _price("5.00", "20.00"),
    "gpt-4o-mini-audio-preview-2024-12-17": _price("0.15", "0.60"),
    "gpt-4o-mini-realtime-preview-2024-12-17": _price("0.60", "2.40"),
    "gpt-4o-search-preview-2025-03-11": _price("2.50", "10.00"),
    "gpt-4o-mini-search-preview-2025-03-11": _price("0.15", "0.60"),
    "gpt-4-0613": _price("30.00", "60.00"),
    "gpt-4-turbo-2024-04-09": _price("10.00", "30.00"),
    "gpt-4.1": _price("2.00", "8.00"),
    "gpt-4.1-2025-04-14": _price("2.00", "8.00"),
    "gpt-4.1-mini": _price("0.40", "1.60"),
    "gpt-4.1-mini-2025-04-14": _price("0.40", "1.60"),
    "gpt-4.1-nano": _price("0.10", "0.40"),
    "gpt-4.1-nano-2025-04-14": _price("0.10", "0.40"),
    "gpt-3.5-turbo": _price("0.003", "0.006"),
    "codex-mini-latest": _price("1.50", "6.00"),
    "computer-use-preview-2025-03-11": _price("3.00", "12.00"),
}


def compute_cost(
    response: Mapping[str, Any] | None,
    prices: Mapping[str, ModelPrice] = PRICES_PER_MILLION,
) -> Decimal:
    """Compute the cost of a response from its model and token usage.

    Args:
        response: Chat completion response with 'model' and 'usage'
            ('prompt_tokens', 'completion_tokens').
        prices: Price table to use.

    Returns:
        Cost in USD, or Decimal(0) when pricing or usage is unavailable.

    """
    if not response:
        logger.warning("Cannot compute cost of an empty response")
        return Decimal(0)

    model = response.get("model")
    price = prices.get(model) if isinstance(model, str) else None
    if price is None:
        logger.warning(f"Pricing information for model '{model}' is not available")
        return Decimal(0)

    usage = response.get("usage") or {}
    try:
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
    except (AttributeError, TypeError, ValueError):
        logger.warning(f"Unusable token usage for model '{model}': {usage!r}")
        return Decimal(0)

    return (
        Decimal(prompt_tokens) * price.input + Decimal(completion_tokens) * price.output
    ) / _ONE_MILLION
