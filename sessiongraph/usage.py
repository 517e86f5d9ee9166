"""Token usage aggregation and cost estimation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

from sessiongraph import config
from sessiongraph.models import AssistantMessage, TokenStats, TokenUsage, TranscriptMessage

logger = logging.getLogger("sessiongraph.usage")


@dataclass(frozen=True)
class ModelRates:
    """USD per million tokens."""

    input: float
    output: float
    cache_read: float = 0.0
    cache_write: float = 0.0


DEFAULT_RATES = ModelRates(input=3.0, output=15.0, cache_read=0.3, cache_write=3.75)

# Keys are matched as substrings of the lowercased model name, first match wins.
DEFAULT_PRICES: dict[str, ModelRates] = {
    "claude-opus-4": ModelRates(15.0, 75.0, 1.5, 18.75),
    "claude-3-opus": ModelRates(15.0, 75.0, 1.5, 18.75),
    "claude-opus": ModelRates(15.0, 75.0, 1.5, 18.75),
    "claude-sonnet-4": ModelRates(3.0, 15.0, 0.3, 3.75),
    "claude-3-7-sonnet": ModelRates(3.0, 15.0, 0.3, 3.75),
    "claude-3-5-sonnet": ModelRates(3.0, 15.0, 0.3, 3.75),
    "claude-sonnet": ModelRates(3.0, 15.0, 0.3, 3.75),
    "claude-haiku-4": ModelRates(0.8, 4.0, 0.08, 1.0),
    "claude-3-5-haiku": ModelRates(0.8, 4.0, 0.08, 1.0),
    "claude-3-haiku": ModelRates(0.25, 1.25, 0.03, 0.3),
    "claude-haiku": ModelRates(0.8, 4.0, 0.08, 1.0),
}


def _rate(raw: dict[str, Any], key: str, default: float) -> float:
    try:
        return float(raw.get(key, default))
    except (TypeError, ValueError):
        return default


class PriceTable:
    """Pluggable per-model pricing used for cost estimates."""

    def __init__(self, prices: Optional[dict[str, ModelRates]] = None, default: ModelRates = DEFAULT_RATES):
        self.prices = dict(DEFAULT_PRICES if prices is None else prices)
        self.default = default

    def rates_for(self, model: str) -> ModelRates:
        lowered = (model or "").lower()
        for key, rates in self.prices.items():
            if key in lowered:
                return rates
        return self.default

    def cost(self, model: str, usage: TokenUsage) -> float:
        rates = self.rates_for(model)
        return (
            usage.input_tokens * rates.input
            + usage.output_tokens * rates.output
            + usage.cache_read_input_tokens * rates.cache_read
            + usage.cache_creation_input_tokens * rates.cache_write
        ) / 1_000_000

    @classmethod
    def from_yaml(cls, path: Path | str) -> "PriceTable":
        """Load a table shaped like::

            default: {input: 3, output: 15, cache_read: 0.3, cache_write: 3.75}
            models:
              claude-opus-4: {input: 15, output: 75}
        """
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Price table {path} must be a mapping")

        default_raw = raw.get("default") if isinstance(raw.get("default"), dict) else {}
        default = ModelRates(
            input=_rate(default_raw, "input", DEFAULT_RATES.input),
            output=_rate(default_raw, "output", DEFAULT_RATES.output),
            cache_read=_rate(default_raw, "cache_read", DEFAULT_RATES.cache_read),
            cache_write=_rate(default_raw, "cache_write", DEFAULT_RATES.cache_write),
        )
        prices: dict[str, ModelRates] = {}
        models = raw.get("models") if isinstance(raw.get("models"), dict) else {}
        for key, entry in models.items():
            if not isinstance(entry, dict):
                continue
            prices[str(key).lower()] = ModelRates(
                input=_rate(entry, "input", default.input),
                output=_rate(entry, "output", default.output),
                cache_read=_rate(entry, "cache_read", default.cache_read),
                cache_write=_rate(entry, "cache_write", default.cache_write),
            )
        return cls(prices=prices or None, default=default)


def load_price_table(path: str | None = None) -> PriceTable:
    """Configured price table, falling back to the built-in one."""
    table_path = path if path is not None else config.PRICE_TABLE_PATH
    if not table_path:
        return PriceTable()
    try:
        return PriceTable.from_yaml(table_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning(f"Could not load price table {table_path}: {exc}; using defaults")
        return PriceTable()


def compute_token_stats(
    messages: Sequence[TranscriptMessage],
    price_table: Optional[PriceTable] = None,
) -> TokenStats:
    """Session totals, counting each API call once (its last streamed chunk)."""
    table = price_table or PriceTable()
    per_call: dict[str, tuple[str, TokenUsage]] = {}
    for message in messages:
        if not isinstance(message, AssistantMessage) or message.message.usage is None:
            continue
        call_id = message.message.id or message.uuid
        per_call[call_id] = (message.message.model, message.message.usage)

    stats = TokenStats()
    for model, usage in per_call.values():
        stats.inputTokens += usage.input_tokens
        stats.outputTokens += usage.output_tokens
        stats.cacheRead += usage.cache_read_input_tokens
        stats.cacheCreation += usage.cache_creation_input_tokens
        stats.estimatedCost += table.cost(model, usage)
    return stats
