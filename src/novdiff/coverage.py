from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

from .models import Chunk, DiffMarker, DiffReason, Issue, Severity

logger = logging.getLogger(__name__)

_SAMPLE_SIZE = 5


@dataclass
class CoverageReport:
    chunk_count: int
    marker_count: int
    missing_chunk_ids: list[str]
    orphan_marker_ids: list[str]
    per_color_counts: dict[str, int]
    max_marker_position: int
    highest_chunk_position: int
    missing_explanations: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)

    @property
    def position_overflow(self) -> bool:
        return self.max_marker_position >= self.chunk_count


def _missing_explanation(marker: DiffMarker) -> bool:
    explanations = marker.explanations or []
    for index, reason in enumerate(marker.reasons):
        if reason == DiffReason.NO_CHANGE:
            continue
        if index >= len(explanations) or not explanations[index].strip():
            return True
    return False


def check_coverage(chunks: Sequence[Chunk], markers: Sequence[DiffMarker]) -> CoverageReport:
    """Compare model markers with the chunk set. Diagnostic only; never raises."""
    chunk_ids = {chunk.id for chunk in chunks}
    marker_ids = {marker.chunk_id for marker in markers}
    missing = [chunk.id for chunk in chunks if chunk.id not in marker_ids]
    orphans = [marker.chunk_id for marker in markers if marker.chunk_id not in chunk_ids]
    colors = Counter(str(getattr(color, "value", color)) for marker in markers for color in marker.colors)
    max_position = max((marker.position for marker in markers), default=-1)
    highest_chunk = chunks[-1].position if chunks else -1
    no_explanation = [marker.chunk_id for marker in markers if _missing_explanation(marker)]

    report = CoverageReport(
        chunk_count=len(chunks),
        marker_count=len(markers),
        missing_chunk_ids=missing,
        orphan_marker_ids=orphans,
        per_color_counts=dict(colors),
        max_marker_position=max_position,
        highest_chunk_position=highest_chunk,
        missing_explanations=no_explanation,
    )

    if missing:
        report.issues.append(
            Issue(
                code="coverage_missing_chunks",
                severity=Severity.WARN,
                message=f"{len(missing)} chunk(s) were not referenced by markers",
                details={"total": len(missing), "sample": missing[:_SAMPLE_SIZE]},
            )
        )
    if orphans:
        report.issues.append(
            Issue(
                code="coverage_orphan_markers",
                severity=Severity.WARN,
                message=f"{len(orphans)} marker(s) reference unknown chunk ids",
                details={"total": len(orphans), "sample": orphans[:_SAMPLE_SIZE]},
            )
        )
    if report.position_overflow and markers:
        report.issues.append(
            Issue(
                code="coverage_position_overflow",
                severity=Severity.WARN,
                message="Marker position exceeds available chunk count",
                details={"max_marker_position": max_position, "chunk_count": len(chunks)},
            )
        )
    if no_explanation:
        report.issues.append(
            Issue(
                code="coverage_missing_explanations",
                severity=Severity.INFO,
                message=f"{len(no_explanation)} marker(s) flag a divergence without an explanation",
                details={"total": len(no_explanation), "sample": no_explanation[:_SAMPLE_SIZE]},
            )
        )

    logger.debug(
        "Marker coverage: chunks=%d markers=%d colors=%s max_pos=%d highest_chunk=%d",
        report.chunk_count,
        report.marker_count,
        report.per_color_counts,
        max_position,
        highest_chunk,
    )
    for issue in report.issues:
        log = logger.warning if issue.severity == Severity.WARN else logger.info
        log("%s: %s", issue.message, issue.details.get("sample"))
    return report
