from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

KNOWN_PROVIDERS = {"mock", "openai", "openrouter", "ollama"}


@dataclass(frozen=True)
class DiffConfig:
    enabled: bool = True
    # Tag for the chunking + prompt + schema combination; bumping it invalidates cached results.
    algo_version: str = "1.0.0"
    default_provider: str = "openrouter"
    default_model: str = "openai/gpt-4o-mini"
    temperature: float = 0.0
    prompt_path: str | None = None


@dataclass(frozen=True)
class LLMConfig:
    providers: tuple[str, ...] = ("openrouter",)
    base_urls: dict[str, str] = field(default_factory=dict)
    timeout_s: float = 60.0
    max_output_tokens: int = 4000


@dataclass(frozen=True)
class CacheConfig:
    path: str = "diff_cache.sqlite"


@dataclass(frozen=True)
class PricingConfig:
    enabled: bool = False
    pricing_path: str | None = None


@dataclass(frozen=True)
class EvalConfig:
    f1_threshold: float = 0.70
    case_floor: float = 0.60


@dataclass(frozen=True)
class AppConfig:
    diff: DiffConfig = DiffConfig()
    llm: LLMConfig = LLMConfig()
    cache: CacheConfig = CacheConfig()
    pricing: PricingConfig = PricingConfig()
    eval: EvalConfig = EvalConfig()
    log_path: str | None = "novdiff.log"
    concurrency: int = 2


def _resolve_optional_path(base_dir: Path, value: Any) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    path = Path(raw)
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return str(path)


def _normalize_provider(value: Any, *, field_name: str) -> str:
    raw = str(value).strip().lower()
    if raw not in KNOWN_PROVIDERS:
        allowed = ", ".join(sorted(KNOWN_PROVIDERS))
        raise ValueError(f"Invalid value for {field_name}: {raw!r}. Allowed: {allowed}")
    return raw


def _unit_interval(value: Any, *, field_name: str) -> float:
    number = float(value)
    if not 0.0 <= number <= 1.0:
        raise ValueError(f"{field_name} must be within [0, 1], got {number}")
    return number


def load_config(path: str | Path) -> AppConfig:
    cfg_path = Path(path)
    data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    base_dir = cfg_path.parent

    diff_data = data.get("diff", {}) or {}
    llm_data = data.get("llm", {}) or {}
    cache_data = data.get("cache", {}) or {}
    pricing_data = data.get("pricing", {}) or {}
    eval_data = data.get("eval", {}) or {}

    diff = DiffConfig(
        enabled=bool(diff_data.get("enabled", True)),
        algo_version=str(diff_data.get("algo_version", "1.0.0")),
        default_provider=_normalize_provider(
            diff_data.get("default_provider", "openrouter"), field_name="diff.default_provider"
        ),
        default_model=str(diff_data.get("default_model", "openai/gpt-4o-mini")),
        temperature=float(diff_data.get("temperature", 0.0)),
        prompt_path=_resolve_optional_path(base_dir, diff_data.get("prompt_path")),
    )

    providers = [
        _normalize_provider(name, field_name="llm.providers")
        for name in (llm_data.get("providers") or [diff.default_provider])
    ]
    # The default provider must always be reachable for the fallback retry.
    if diff.default_provider not in providers:
        providers.append(diff.default_provider)
    base_urls = {
        _normalize_provider(name, field_name="llm.base_urls"): str(url)
        for name, url in (llm_data.get("base_urls", {}) or {}).items()
        if url
    }
    llm = LLMConfig(
        providers=tuple(providers),
        base_urls=base_urls,
        timeout_s=float(llm_data.get("timeout_s", 60.0)),
        max_output_tokens=int(llm_data.get("max_output_tokens", 4000)),
    )

    cache = CacheConfig(path=str(cache_data.get("path", "diff_cache.sqlite")))
    pricing = PricingConfig(
        enabled=bool(pricing_data.get("enabled", False)),
        pricing_path=_resolve_optional_path(base_dir, pricing_data.get("pricing_path")),
    )
    eval_cfg = EvalConfig(
        f1_threshold=_unit_interval(eval_data.get("f1_threshold", 0.70), field_name="eval.f1_threshold"),
        case_floor=_unit_interval(eval_data.get("case_floor", 0.60), field_name="eval.case_floor"),
    )

    concurrency = int(data.get("concurrency", 2))
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")
    log_path = data.get("log_path", "novdiff.log")

    return AppConfig(
        diff=diff,
        llm=llm,
        cache=cache,
        pricing=pricing,
        eval=eval_cfg,
        log_path=(str(log_path) if log_path else None),
        concurrency=concurrency,
    )
