from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from .errors import DiffJsonParseError
from .models import Chunk, DiffColor, DiffMarker, DiffReason

logger = logging.getLogger(__name__)

REASON_COLORS: dict[DiffReason, DiffColor] = {
    DiffReason.MISSING_CONTEXT: DiffColor.RED,
    DiffReason.PLOT_OMISSION: DiffColor.RED,
    DiffReason.ADDED_DETAIL: DiffColor.ORANGE,
    DiffReason.HALLUCINATION: DiffColor.ORANGE,
    DiffReason.RAW_DIVERGENCE: DiffColor.ORANGE,
    DiffReason.FAN_DIVERGENCE: DiffColor.BLUE,
    DiffReason.SENSITIVITY_FILTER: DiffColor.PURPLE,
    DiffReason.STYLISTIC_CHOICE: DiffColor.GREY,
    DiffReason.NO_CHANGE: DiffColor.GREY,
}

COLOR_FALLBACK_REASONS: dict[DiffColor, DiffReason] = {
    DiffColor.RED: DiffReason.MISSING_CONTEXT,
    DiffColor.ORANGE: DiffReason.ADDED_DETAIL,
    DiffColor.GREEN: DiffReason.ADDED_DETAIL,
    DiffColor.BLUE: DiffReason.FAN_DIVERGENCE,
    DiffColor.PURPLE: DiffReason.SENSITIVITY_FILTER,
    DiffColor.GREY: DiffReason.NO_CHANGE,
}

_REASONS_BY_VALUE = {reason.value: reason for reason in DiffReason}
_COLORS_BY_VALUE = {color.value: color for color in DiffColor}


def normalize_reason(raw: Any) -> DiffReason | None:
    if not isinstance(raw, str):
        return None
    return _REASONS_BY_VALUE.get(raw.strip().lower())


def reason_to_color(reason: DiffReason) -> DiffColor:
    return REASON_COLORS.get(reason, DiffColor.GREY)


def fallback_reason_for_color(raw: Any) -> DiffReason:
    # One reason per raw color keeps reasons aligned with raw explanations.
    color = _COLORS_BY_VALUE.get(str(raw).strip().lower())
    if color is None:
        return DiffReason.NO_CHANGE
    return COLOR_FALLBACK_REASONS[color]


def _string_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _pick_explanation(candidates: Iterable[Any]) -> str:
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        trimmed = candidate.strip()
        # The model sometimes echoes the reason code into free text.
        if trimmed and normalize_reason(trimmed) is None:
            return trimmed
    return ""


def normalize_marker_for_chunk(raw_marker: dict[str, Any], chunk: Chunk) -> DiffMarker | None:
    """Turn one raw model marker into a validated marker, or None if it carries no signal."""
    reasons: list[DiffReason] = []
    for raw_reason in _string_list(raw_marker.get("reasons")):
        reason = normalize_reason(raw_reason)
        if reason is None:
            logger.warning("Unknown diff reason from LLM: %r (chunk %s)", raw_reason, chunk.id)
            continue
        reasons.append(reason)

    if not reasons:
        reasons = [fallback_reason_for_color(raw_color) for raw_color in _string_list(raw_marker.get("colors"))]

    if not reasons:
        return None

    colors = [reason_to_color(reason) for reason in reasons]
    raw_explanations = _string_list(raw_marker.get("explanations"))
    single = raw_marker.get("explanation")
    explanations: list[str] = []
    for index in range(len(reasons)):
        explanations.append(
            _pick_explanation(
                (
                    raw_explanations[index] if index < len(raw_explanations) else None,
                    raw_explanations[0] if len(raw_explanations) == 1 else None,
                    single if len(reasons) == 1 else None,
                )
            )
        )

    confidence = raw_marker.get("confidence")
    clamped: float | None = None
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        clamped = min(max(float(confidence), 0.0), 1.0)

    return DiffMarker(
        chunk_id=chunk.id,
        colors=colors,
        reasons=reasons,
        explanations=explanations,
        confidence=clamped,
        ai_range=chunk.ai_range,
        position=chunk.position,
    )


def parse_markers_response(text: str, chunks: Sequence[Chunk], *, model: str | None = None) -> list[DiffMarker]:
    """Parse raw LLM output into normalized markers.

    Raises DiffJsonParseError when the text is not a JSON object. Markers that
    reference unknown chunks or carry no recognizable reason are dropped.
    """
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as e:
        raise DiffJsonParseError(f"Failed to parse diff analysis response as JSON: {e}", model=model) from e
    if not isinstance(payload, dict):
        raise DiffJsonParseError(
            f"Diff analysis response must be a JSON object, got {type(payload).__name__}", model=model
        )

    raw_markers = payload.get("markers")
    if not isinstance(raw_markers, list):
        logger.warning("Diff analysis response has no markers array (keys: %s)", sorted(payload.keys()))
        return []

    by_id = {chunk.id: chunk for chunk in chunks}
    markers: list[DiffMarker] = []
    for raw_marker in raw_markers:
        if not isinstance(raw_marker, dict):
            logger.warning("Skipping non-object marker: %r", raw_marker)
            continue
        chunk = by_id.get(str(raw_marker.get("chunkId", "")))
        if chunk is None:
            logger.warning("Marker references unknown chunk: %s", raw_marker.get("chunkId"))
            continue
        marker = normalize_marker_for_chunk(raw_marker, chunk)
        if marker is not None:
            markers.append(marker)
        else:
            logger.debug("Dropped marker without usable reasons or colors for %s", chunk.id)
    return markers


def complete_markers(chunks: Sequence[Chunk], markers: Iterable[DiffMarker]) -> list[DiffMarker]:
    """Return exactly one marker per chunk, sorted by position.

    Chunks the model did not mention get a grey ``no-change`` marker.
    """
    chunk_ids = {chunk.id for chunk in chunks}
    by_chunk: dict[str, DiffMarker] = {}
    for marker in markers:
        if marker.chunk_id in chunk_ids:
            by_chunk[marker.chunk_id] = marker
    for chunk in chunks:
        if chunk.id not in by_chunk:
            by_chunk[chunk.id] = DiffMarker(
                chunk_id=chunk.id,
                colors=[DiffColor.GREY],
                reasons=[DiffReason.NO_CHANGE],
                ai_range=chunk.ai_range,
                position=chunk.position,
            )
    return sorted(by_chunk.values(), key=lambda marker: marker.position)
