from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from .analysis import DiffAnalyzer
from .cache import ResultCache
from .config import AppConfig, load_config
from .errors import CacheDeleteError
from .eval import evaluate_golden_set, write_eval_report
from .llm import LLMClient, build_llm_client, build_llm_router
from .logging_utils import setup_logging
from .models import DiffAnalysisRequest, DiffMarker
from .orchestrator import DiffNotification, DiffOrchestrator, OutcomeStatus
from .pricing import PricingTable, load_pricing_table
from .prompt import DEFAULT_DIFF_PROMPT
from .scoring import format_metrics, load_golden_cases, score, score_multiple


def _read_text(path: str | None) -> str | None:
    if path is None:
        return None
    return Path(path).read_text(encoding="utf-8")


def _load_pricing(cfg: AppConfig) -> PricingTable:
    if cfg.pricing.enabled and cfg.pricing.pricing_path:
        return load_pricing_table(cfg.pricing.pricing_path)
    return PricingTable.empty()


def build_llm(cfg: AppConfig, *, mock_response: str | None = None) -> LLMClient:
    if mock_response is not None:
        return build_llm_client("mock", mock_response=mock_response)
    return build_llm_router(
        cfg.llm.providers,
        timeout_s=cfg.llm.timeout_s,
        max_output_tokens=cfg.llm.max_output_tokens,
        base_urls=cfg.llm.base_urls,
        pricing=_load_pricing(cfg),
    )


def build_analyzer(cfg: AppConfig, *, mock_response: str | None = None) -> DiffAnalyzer:
    prompt = _read_text(cfg.diff.prompt_path) or DEFAULT_DIFF_PROMPT
    return DiffAnalyzer(
        build_llm(cfg, mock_response=mock_response),
        algo_version=cfg.diff.algo_version,
        prompt_template=prompt,
    )


def _print_notification(notification: DiffNotification) -> None:
    print(f"[notify] {notification}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="novdiff", description="Paragraph-level diff markers between AI, fan and raw chapter texts."
    )
    p.add_argument("--log-level", default="INFO", help="Console/file log level (DEBUG, INFO, ...).")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("analyze", help="Analyze one chapter (uses and fills the result cache).")
    a.add_argument("--ai", required=True, help="Path to the AI translation (text/HTML)")
    a.add_argument("--raw", required=True, help="Path to the raw source text")
    a.add_argument("--fan", default=None, help="Optional path to a fan translation")
    a.add_argument("--chapter", required=True, help="Chapter id")
    a.add_argument("--config", "-c", required=True, help="Path to YAML config")
    a.add_argument("--ai-id", default=None, help="AI translation version id (enables exact cache lookup)")
    a.add_argument("--fan-id", default=None, help="Fan translation version id")
    a.add_argument("--feedback", default=None, help="Optional path to feedback on the previous version")
    a.add_argument("--provider", default=None, help="Preferred provider for this run.")
    a.add_argument("--model", default=None, help="Preferred model for this run.")
    a.add_argument("--invalidate", action="store_true", help="Drop cached results of the chapter first.")
    a.add_argument(
        "--mock-response",
        default=None,
        help="Path to a canned LLM response; runs offline with the mock client.",
    )
    a.add_argument("--json", default=None, help="Write the result JSON here ('-' for stdout).")

    s = sub.add_parser("score", help="Score stored markers against a golden dataset.")
    s.add_argument("--golden", required=True, help="Golden dataset JSON")
    s.add_argument("--actual", required=True, help="JSON mapping case id -> markers list")

    e = sub.add_parser("eval", help="Run the analyzer over a golden dataset and gate on F1.")
    e.add_argument("--golden", required=True, help="Golden dataset JSON")
    e.add_argument("--config", "-c", required=True, help="Path to YAML config")
    e.add_argument("--report", required=True, help="Output JSON report path")
    e.add_argument("--provider", default=None, help="Override diff.default_provider.")
    e.add_argument("--model", default=None, help="Override diff.default_model.")
    e.add_argument("--mock-response", default=None, help="Path to a canned LLM response (offline run).")

    c = sub.add_parser("cache", help="Inspect or purge cached diff results.")
    c.add_argument("action", choices=["list", "purge"])
    c.add_argument("--config", "-c", required=True, help="Path to YAML config")
    c.add_argument("--chapter", default=None, help="Chapter id (required for purge)")
    return p


def _cmd_analyze(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    setup_logging(Path(cfg.log_path) if cfg.log_path else None, args.log_level)
    analyzer = build_analyzer(cfg, mock_response=_read_text(args.mock_response))
    cache = ResultCache(cfg.cache.path)
    orchestrator = DiffOrchestrator(
        analyzer, cache, cfg.diff, notify=_print_notification, max_workers=cfg.concurrency
    )
    request = DiffAnalysisRequest(
        chapter_id=args.chapter,
        ai_translation=_read_text(args.ai) or "",
        raw_text=_read_text(args.raw) or "",
        fan_translation=_read_text(args.fan),
        ai_translation_id=args.ai_id,
        fan_translation_id=args.fan_id,
        previous_version_feedback=_read_text(args.feedback),
        preferred_provider=args.provider,
        preferred_model=args.model,
    )
    try:
        if args.invalidate:
            outcome = orchestrator.invalidate_chapter(request)
        else:
            outcome = orchestrator.handle_translation_completed(request)
    finally:
        cache.close()

    if outcome.status == OutcomeStatus.SKIPPED:
        print("Diff analysis is disabled in config.")
        return 0
    if outcome.result is None:
        print(f"Diff analysis failed: {outcome.error}", file=sys.stderr)
        return 1

    result = outcome.result
    print(
        f"{outcome.status.value}: chapter={result.chapter_id} markers={len(result.markers)} "
        f"model={result.model} cost=${result.cost_usd:.6f}",
        file=sys.stderr,
    )
    if args.json:
        payload = json.dumps(result.to_dict(), ensure_ascii=False, indent=2)
        if args.json == "-":
            print(payload)
        else:
            Path(args.json).write_text(payload, encoding="utf-8")
            print(f"Result written: {args.json}", file=sys.stderr)
    return 0 if outcome.error is None else 1


def _load_actual_markers(path: str) -> dict[str, list[DiffMarker]]:
    data: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Actual markers file must map case id -> markers: {path}")
    out: dict[str, list[DiffMarker]] = {}
    for case_id, markers in data.items():
        if isinstance(markers, dict):
            markers = markers.get("markers", [])
        out[str(case_id)] = [DiffMarker.from_dict(m) for m in markers or [] if isinstance(m, dict)]
    return out


def _cmd_score(args: argparse.Namespace) -> int:
    cases = load_golden_cases(args.golden)
    actual = _load_actual_markers(args.actual)
    rows = []
    for case in cases:
        markers = actual.get(case.id, [])
        print(format_metrics(score(list(case.expected_markers), markers), case.id))
        rows.append((case.id, list(case.expected_markers), markers))
    overall, _ = score_multiple(rows)
    print(format_metrics(overall, "overall (micro)"))
    return 0


def _cmd_eval(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    setup_logging(Path(cfg.log_path) if cfg.log_path else None, args.log_level)
    analyzer = build_analyzer(cfg, mock_response=_read_text(args.mock_response))
    cases = load_golden_cases(args.golden)
    results = evaluate_golden_set(
        analyzer,
        cases,
        provider=(args.provider or cfg.diff.default_provider),
        model=(args.model or cfg.diff.default_model),
        temperature=cfg.diff.temperature,
    )
    for r in results:
        print(r.report)
    summary = write_eval_report(
        results,
        cases,
        Path(args.report),
        f1_threshold=cfg.eval.f1_threshold,
        case_floor=cfg.eval.case_floor,
    )
    print(
        f"Overall: P={summary['precision']:.3f} R={summary['recall']:.3f} F1={summary['f1']:.3f} "
        f"gate={'PASS' if summary['gate_passed'] else 'FAIL'}"
    )
    if summary["cases_below_floor"]:
        print("Cases below floor:", ", ".join(summary["cases_below_floor"]))
    print(f"Report written: {args.report}")
    return 0 if summary["gate_passed"] else 1


def _cmd_cache(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    cache = ResultCache(cfg.cache.path)
    try:
        if args.action == "list":
            results = cache.get_by_chapter(args.chapter) if args.chapter else cache.all_results()
            for r in results:
                print(
                    f"{r.chapter_id}\tai={r.ai_version_id}\tfan={r.fan_version_id or '-'}\t"
                    f"raw={r.raw_version_id}\talgo={r.algo_version}\tmarkers={len(r.markers)}\t"
                    f"model={r.model}\tanalyzed_at={r.analyzed_at}"
                )
            print(f"{len(results)} result(s)")
            return 0

        if not args.chapter:
            print("cache purge requires --chapter", file=sys.stderr)
            return 2
        try:
            deleted = cache.delete_by_chapter(args.chapter)
        except CacheDeleteError as exc:
            print(f"Purge incomplete: {exc}", file=sys.stderr)
            return 1
        print(f"Deleted {deleted} result(s) for chapter {args.chapter}")
        return 0
    finally:
        cache.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "analyze":
        return _cmd_analyze(args)
    if args.cmd == "score":
        return _cmd_score(args)
    if args.cmd == "eval":
        return _cmd_eval(args)
    if args.cmd == "cache":
        return _cmd_cache(args)

    print(f"Unknown command: {args.cmd}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
