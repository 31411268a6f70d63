from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any

from tqdm import tqdm

from .analysis import DiffAnalyzer
from .models import DiffAnalysisRequest, DiffMarker
from .scoring import GoldenCase, format_metrics, score, score_multiple


@dataclass(frozen=True)
class GoldenEvalResult:
    case_id: str
    description: str
    success: bool
    error_message: str | None
    duration_s: float
    model: str | None
    cost_usd: float
    chunk_count: int
    precision: float
    recall: float
    f1: float
    true_positives: int
    false_positives: int
    false_negatives: int
    weak_matches: int
    report: str
    markers: list[dict[str, Any]]


def _markers_from_result(result: GoldenEvalResult) -> list[DiffMarker]:
    return [DiffMarker.from_dict(m) for m in result.markers]


def _case_request(case: GoldenCase) -> DiffAnalysisRequest:
    return DiffAnalysisRequest(
        chapter_id=f"golden-{case.id}",
        ai_translation=case.ai_translation,
        raw_text=case.raw_text,
        fan_translation=case.fan_translation,
        ai_translation_id=f"golden-{case.id}",
    )


def evaluate_golden_case(
    analyzer: DiffAnalyzer,
    case: GoldenCase,
    *,
    provider: str,
    model: str,
    temperature: float = 0.0,
) -> GoldenEvalResult:
    t0 = perf_counter()
    try:
        result = analyzer.analyze(_case_request(case), provider=provider, model=model, temperature=temperature)
    except Exception as e:
        dt = perf_counter() - t0
        missed = len(case.expected_markers)
        return GoldenEvalResult(
            case_id=case.id,
            description=case.description,
            success=False,
            error_message=str(e),
            duration_s=dt,
            model=model,
            cost_usd=0.0,
            chunk_count=0,
            precision=0.0,
            recall=0.0,
            f1=0.0,
            true_positives=0,
            false_positives=0,
            false_negatives=missed,
            weak_matches=0,
            report=f"=== {case.id} ===\nAnalysis failed: {e}",
            markers=[],
        )

    dt = perf_counter() - t0
    metrics = score(list(case.expected_markers), result.markers)
    return GoldenEvalResult(
        case_id=case.id,
        description=case.description,
        success=True,
        error_message=None,
        duration_s=dt,
        model=result.model,
        cost_usd=result.cost_usd,
        chunk_count=len(result.markers),
        precision=metrics.precision,
        recall=metrics.recall,
        f1=metrics.f1,
        true_positives=metrics.true_positives,
        false_positives=metrics.false_positives,
        false_negatives=metrics.false_negatives,
        weak_matches=len(metrics.weak_matches),
        report=format_metrics(metrics, case.id),
        markers=[m.to_dict() for m in result.markers],
    )


def evaluate_golden_set(
    analyzer: DiffAnalyzer,
    cases: list[GoldenCase],
    *,
    provider: str,
    model: str,
    temperature: float = 0.0,
) -> list[GoldenEvalResult]:
    results: list[GoldenEvalResult] = []
    for case in tqdm(cases, desc="Golden", unit="case"):
        results.append(
            evaluate_golden_case(analyzer, case, provider=provider, model=model, temperature=temperature)
        )
    return results


def summarize_results(
    results: list[GoldenEvalResult],
    cases: list[GoldenCase],
    *,
    f1_threshold: float = 0.70,
    case_floor: float = 0.60,
) -> dict[str, Any]:
    expected_by_id = {case.id: list(case.expected_markers) for case in cases}
    overall, per_case = score_multiple(
        [(r.case_id, expected_by_id.get(r.case_id, []), _markers_from_result(r)) for r in results]
    )
    per_case_f1 = {case_id: metrics.f1 for case_id, metrics in per_case.items()}
    below_floor = sorted(case_id for case_id, f1 in per_case_f1.items() if f1 < case_floor)
    failed_count = sum(1 for r in results if not r.success)
    return {
        "cases_total": len(results),
        "cases_failed": failed_count,
        "precision": overall.precision,
        "recall": overall.recall,
        "f1": overall.f1,
        "true_positives": overall.true_positives,
        "false_positives": overall.false_positives,
        "false_negatives": overall.false_negatives,
        "per_case_f1": per_case_f1,
        "cases_below_floor": below_floor,
        "cost_usd_total": sum(r.cost_usd for r in results),
        "avg_duration_s": (sum(r.duration_s for r in results) / len(results)) if results else 0.0,
        "f1_threshold": f1_threshold,
        "case_floor": case_floor,
        "gate_passed": bool(results) and overall.f1 >= f1_threshold and not below_floor,
    }


def write_eval_report(
    results: list[GoldenEvalResult],
    cases: list[GoldenCase],
    report_path: Path,
    *,
    f1_threshold: float = 0.70,
    case_floor: float = 0.60,
) -> dict[str, Any]:
    summary = summarize_results(results, cases, f1_threshold=f1_threshold, case_floor=case_floor)
    utc = getattr(datetime, "UTC", timezone.utc)  # noqa: UP017
    payload = {
        "generated_at": datetime.now(utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "summary": summary,
        "results": [asdict(r) for r in results],
    }
    report_path = Path(report_path)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    return summary
