from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class ModelPricing:
    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (max(0, int(input_tokens)) / 1_000_000.0) * self.input_per_million + (
            max(0, int(output_tokens)) / 1_000_000.0
        ) * self.output_per_million


class PricingTable:
    """USD prices per million tokens, keyed by provider then model.

    A ``"*"`` model entry acts as the provider-wide default.
    """

    def __init__(self, data: dict[str, dict[str, ModelPricing]]) -> None:
        self._data = data

    @classmethod
    def empty(cls) -> "PricingTable":
        return cls({})

    def __bool__(self) -> bool:
        return bool(self._data)

    def get(self, provider: str, model: str) -> ModelPricing | None:
        models = self._data.get(provider.strip().lower())
        if not models:
            return None
        return models.get(model.strip().lower()) or models.get("*")

    def estimate_cost_usd(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> float | None:
        price = self.get(provider, model)
        if price is None:
            return None
        return price.cost(input_tokens, output_tokens)


def _rate(model_data: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = model_data.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid pricing rate for {key}: {value!r}") from exc
    return None


def parse_pricing_map(raw: dict[str, Any]) -> PricingTable:
    parsed: dict[str, dict[str, ModelPricing]] = {}
    for provider, provider_data in raw.items():
        if not isinstance(provider_data, dict):
            continue
        models: dict[str, ModelPricing] = {}
        for model, model_data in provider_data.items():
            if not isinstance(model_data, dict):
                continue
            in_rate = _rate(model_data, "input_per_million", "prompt_per_million")
            out_rate = _rate(model_data, "output_per_million", "completion_per_million")
            if in_rate is None or out_rate is None:
                continue
            models[str(model).strip().lower()] = ModelPricing(in_rate, out_rate)
        if models:
            parsed[str(provider).strip().lower()] = models
    return PricingTable(parsed)


def load_pricing_table(path: str | Path) -> PricingTable:
    pricing_path = Path(path)
    text = pricing_path.read_text(encoding="utf-8")
    data = json.loads(text) if pricing_path.suffix.lower() == ".json" else yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"Pricing file must contain a mapping: {pricing_path}")
    pricing_raw = data.get("pricing", data)
    if not isinstance(pricing_raw, dict):
        raise ValueError(f"Pricing table must be a mapping: {pricing_path}")
    return parse_pricing_map(pricing_raw)
