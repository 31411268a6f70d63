"""Precision/recall/F1 scoring of diff markers against hand-labeled golden cases.

Matching is greedy, order-preserving and never backtracks: each expected
marker consumes the first unconsumed actual marker whose chunk id matches its
regex and whose reasons intersect its own. An optimal bipartite matcher could
score some cases higher; existing F1 thresholds are calibrated against this
greedy behavior, so keep it unless the thresholds are recalibrated too.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import DiffMarker


@dataclass(frozen=True)
class ExpectedMarker:
    chunk_id: str  # regex searched against actual chunk ids
    reasons: tuple[str, ...]
    colors: tuple[str, ...] = ()
    explanation_pattern: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExpectedMarker":
        pattern = data.get("explanationPattern")
        return cls(
            chunk_id=str(data.get("chunkId", "")),
            reasons=tuple(str(r) for r in data.get("reasons") or []),
            colors=tuple(str(c) for c in data.get("colors") or []),
            explanation_pattern=(str(pattern) if pattern else None),
        )


@dataclass(frozen=True)
class GoldenCase:
    id: str
    description: str
    ai_translation: str
    fan_translation: str | None
    raw_text: str
    expected_markers: tuple[ExpectedMarker, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GoldenCase":
        fan = data.get("fanTranslation")
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            ai_translation=str(data.get("aiTranslation", "")),
            fan_translation=(str(fan) if fan else None),
            raw_text=str(data.get("rawText", "")),
            expected_markers=tuple(ExpectedMarker.from_dict(m) for m in data.get("expectedMarkers") or []),
        )


@dataclass(frozen=True)
class MatchedMarker:
    expected: ExpectedMarker
    actual: DiffMarker
    explanation_match: bool


@dataclass
class ScorerMetrics:
    precision: float
    recall: float
    f1: float
    true_positives: int
    false_positives: int
    false_negatives: int
    matched: list[MatchedMarker] = field(default_factory=list)
    missing: list[ExpectedMarker] = field(default_factory=list)
    spurious: list[DiffMarker] = field(default_factory=list)

    @property
    def weak_matches(self) -> list[MatchedMarker]:
        return [m for m in self.matched if not m.explanation_match]


def _reason_values(reasons: Any) -> set[str]:
    return {getattr(r, "value", r) for r in reasons or ()}


def _explanation_matches(pattern: str | None, explanations: list[str] | None) -> bool:
    if not pattern:
        return True
    if not explanations:
        return False
    regex = re.compile(pattern, re.IGNORECASE)
    return any(regex.search(text) for text in explanations)


def _ratios(tp: int, fp: int, fn: int) -> tuple[float, float, float]:
    precision = tp / (tp + fp) if tp + fp > 0 else 0.0
    recall = tp / (tp + fn) if tp + fn > 0 else 0.0
    f1 = (2 * precision * recall / (precision + recall)) if precision + recall > 0 else 0.0
    return precision, recall, f1


def score(expected: list[ExpectedMarker], actual: list[DiffMarker]) -> ScorerMetrics:
    matched: list[MatchedMarker] = []
    missing: list[ExpectedMarker] = []
    used: set[int] = set()

    for exp in expected:
        chunk_re = re.compile(exp.chunk_id)
        exp_reasons = _reason_values(exp.reasons)
        for idx, act in enumerate(actual):
            if idx in used or not chunk_re.search(act.chunk_id):
                continue
            if not exp_reasons & _reason_values(act.reasons):
                continue
            matched.append(
                MatchedMarker(
                    expected=exp,
                    actual=act,
                    explanation_match=_explanation_matches(exp.explanation_pattern, act.explanations),
                )
            )
            used.add(idx)
            break
        else:
            missing.append(exp)

    spurious = [act for idx, act in enumerate(actual) if idx not in used]
    tp, fp, fn = len(matched), len(spurious), len(missing)
    precision, recall, f1 = _ratios(tp, fp, fn)
    return ScorerMetrics(
        precision=precision,
        recall=recall,
        f1=f1,
        true_positives=tp,
        false_positives=fp,
        false_negatives=fn,
        matched=matched,
        missing=missing,
        spurious=spurious,
    )


def score_multiple(
    results: list[tuple[str, list[ExpectedMarker], list[DiffMarker]]],
) -> tuple[ScorerMetrics, dict[str, ScorerMetrics]]:
    """Micro-average: TP/FP/FN are summed across cases before the ratios are taken."""
    per_case: dict[str, ScorerMetrics] = {}
    tp = fp = fn = 0
    for case_id, expected, actual in results:
        metrics = score(expected, actual)
        per_case[case_id] = metrics
        tp += metrics.true_positives
        fp += metrics.false_positives
        fn += metrics.false_negatives
    precision, recall, f1 = _ratios(tp, fp, fn)
    overall = ScorerMetrics(
        precision=precision,
        recall=recall,
        f1=f1,
        true_positives=tp,
        false_positives=fp,
        false_negatives=fn,
    )
    return overall, per_case


def format_metrics(metrics: ScorerMetrics, case_name: str) -> str:
    lines = [
        f"=== {case_name} ===",
        f"Precision: {metrics.precision * 100:.1f}%",
        f"Recall:    {metrics.recall * 100:.1f}%",
        f"F1 Score:  {metrics.f1 * 100:.1f}%",
        f"TP/FP/FN:  {metrics.true_positives}/{metrics.false_positives}/{metrics.false_negatives}",
    ]
    if metrics.missing:
        lines.append("Missing markers (false negatives):")
        lines.extend(f"  - {m.chunk_id}: {', '.join(m.reasons)}" for m in metrics.missing)
    if metrics.spurious:
        lines.append("Spurious markers (false positives):")
        lines.extend(
            f"  - {m.chunk_id}: {', '.join(sorted(_reason_values(m.reasons)))}" for m in metrics.spurious
        )
    weak = metrics.weak_matches
    if weak:
        lines.append("Weak matches (correct reason, poor explanation):")
        for m in weak:
            lines.append(f"  - {m.actual.chunk_id}: {', '.join(sorted(_reason_values(m.actual.reasons)))}")
            lines.append(f"    Explanation: {'; '.join(m.actual.explanations or []) or 'none'}")
    return "\n".join(lines)


def load_golden_cases(path: str | Path) -> list[GoldenCase]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("cases", [])
    if not isinstance(data, list):
        raise ValueError(f"Golden dataset must be a JSON array of cases: {path}")
    return [GoldenCase.from_dict(item) for item in data if isinstance(item, dict)]
