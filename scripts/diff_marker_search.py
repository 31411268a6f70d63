from __future__ import annotations

import argparse
import json
import re
import sqlite3
import sys
from pathlib import Path


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Search cached diff markers by reason, color or explanation text.")
    p.add_argument("--cache", default="diff_cache.sqlite", help="Path to diff cache sqlite file.")
    p.add_argument("--reason", default=None, help="Only markers carrying this reason (e.g. hallucination).")
    p.add_argument("--color", default=None, help="Only markers carrying this color (e.g. red).")
    p.add_argument("--text", default=None, help="Regex searched (case-insensitive) in explanations.")
    p.add_argument("--chapter", default=None, help="Restrict to one chapter id.")
    p.add_argument("--limit", type=int, default=50, help="Max markers to print.")
    p.add_argument("--json", action="store_true", help="Print JSON records instead of plain text.")
    return p.parse_args()


def main() -> int:
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")

    args = parse_args()
    cache_path = Path(args.cache)
    if not cache_path.exists():
        raise SystemExit(f"Diff cache not found: {cache_path}")

    reason = (args.reason or "").strip().lower()
    color = (args.color or "").strip().lower()
    text_re = re.compile(args.text, re.IGNORECASE) if args.text else None

    conn = sqlite3.connect(cache_path)
    try:
        query = "SELECT chapter_id, ai_version_id, model, analyzed_at, markers_json FROM diff_results"
        params: tuple[str, ...] = ()
        if args.chapter:
            query += " WHERE chapter_id = ?"
            params = (args.chapter,)
        rows = conn.execute(query + " ORDER BY analyzed_at DESC", params).fetchall()
    finally:
        conn.close()

    limit = max(1, int(args.limit))
    hits = 0
    for chapter_id, ai_version_id, model, analyzed_at, markers_json in rows:
        try:
            markers = json.loads(markers_json) if markers_json else []
        except json.JSONDecodeError:
            continue
        for marker in markers:
            reasons = [str(r) for r in marker.get("reasons") or []]
            colors = [str(c) for c in marker.get("colors") or []]
            explanations = [str(e) for e in marker.get("explanations") or [] if e]
            if reason and reason not in reasons:
                continue
            if color and color not in colors:
                continue
            if text_re is not None and not any(text_re.search(e) for e in explanations):
                continue
            hits += 1
            rec = {
                "n": hits,
                "chapter_id": chapter_id,
                "ai_version_id": ai_version_id,
                "model": model,
                "analyzed_at": analyzed_at,
                "chunk_id": marker.get("chunkId"),
                "reasons": reasons,
                "colors": colors,
                "explanations": explanations,
                "confidence": marker.get("confidence"),
            }
            if args.json:
                print(json.dumps(rec, ensure_ascii=False))
            else:
                print(f"[{hits}] {chapter_id} ({ai_version_id}) | {model} | {rec['chunk_id']}")
                print(f"    REASONS: {', '.join(reasons)} [{', '.join(colors)}]")
                for explanation in explanations:
                    print(f"    - {explanation}")
                print()
            if hits >= limit:
                return 0

    if not hits:
        print("No matches.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
