from __future__ import annotations

import json

import pytest

from novdiff.chunking import chunk_ai_translation
from novdiff.errors import DiffJsonParseError
from novdiff.markers import (
    complete_markers,
    fallback_reason_for_color,
    normalize_marker_for_chunk,
    normalize_reason,
    parse_markers_response,
)
from novdiff.models import DiffColor, DiffReason


def _chunks():
    return chunk_ai_translation("First paragraph.<br><br>Second paragraph.<br><br>Third paragraph.")


def test_normalize_reason_accepts_case_and_whitespace():
    assert normalize_reason("  Hallucination ") == DiffReason.HALLUCINATION
    assert normalize_reason("made-up") is None
    assert normalize_reason(3) is None


def test_color_fallback_table():
    assert fallback_reason_for_color("red") == DiffReason.MISSING_CONTEXT
    assert fallback_reason_for_color("green") == DiffReason.ADDED_DETAIL
    assert fallback_reason_for_color("orange") == DiffReason.ADDED_DETAIL
    assert fallback_reason_for_color("blue") == DiffReason.FAN_DIVERGENCE
    assert fallback_reason_for_color("purple") == DiffReason.SENSITIVITY_FILTER
    assert fallback_reason_for_color("grey") == DiffReason.NO_CHANGE
    assert fallback_reason_for_color("magenta") == DiffReason.NO_CHANGE
    assert fallback_reason_for_color("gray") == DiffReason.NO_CHANGE


def test_colors_are_derived_parallel_to_reasons_without_dedup():
    chunk = _chunks()[0]
    marker = normalize_marker_for_chunk(
        {"chunkId": chunk.id, "reasons": ["missing-context", "plot-omission", "bogus"], "colors": ["blue"]},
        chunk,
    )

    assert marker is not None
    assert marker.reasons == [DiffReason.MISSING_CONTEXT, DiffReason.PLOT_OMISSION]
    assert marker.colors == [DiffColor.RED, DiffColor.RED]
    assert marker.ai_range == chunk.ai_range
    assert marker.position == chunk.position


def test_reasons_fall_back_to_colors_when_none_recognized():
    chunk = _chunks()[1]
    marker = normalize_marker_for_chunk({"chunkId": chunk.id, "reasons": ["???"], "colors": ["purple"]}, chunk)

    assert marker is not None
    assert marker.reasons == [DiffReason.SENSITIVITY_FILTER]
    assert marker.colors == [DiffColor.PURPLE]


def test_marker_without_reasons_or_colors_is_discarded():
    chunk = _chunks()[0]
    assert normalize_marker_for_chunk({"chunkId": chunk.id, "reasons": ["bogus"], "colors": []}, chunk) is None
    assert normalize_marker_for_chunk({"chunkId": chunk.id}, chunk) is None


def test_unknown_colors_keep_reasons_aligned_with_explanations():
    chunk = _chunks()[0]
    marker = normalize_marker_for_chunk(
        {"chunkId": chunk.id, "colors": ["gray", "red"], "explanations": ["Wording differs.", "Drops the vow."]},
        chunk,
    )

    assert marker is not None
    assert marker.reasons == [DiffReason.NO_CHANGE, DiffReason.MISSING_CONTEXT]
    assert marker.colors == [DiffColor.GREY, DiffColor.RED]
    assert marker.explanations == ["Wording differs.", "Drops the vow."]


def test_marker_with_only_unknown_color_keeps_explanation_and_confidence():
    chunk = _chunks()[0]
    marker = normalize_marker_for_chunk(
        {"chunkId": chunk.id, "colors": ["gray"], "explanation": "Phrasing only.", "confidence": 0.9}, chunk
    )

    assert marker is not None
    assert marker.reasons == [DiffReason.NO_CHANGE]
    assert marker.explanations == ["Phrasing only."]
    assert marker.confidence == 0.9


def test_explanations_prefer_per_index_entries():
    chunk = _chunks()[0]
    marker = normalize_marker_for_chunk(
        {
            "chunkId": chunk.id,
            "reasons": ["hallucination", "fan-divergence"],
            "explanations": ["Invents a sword.", "Fan says spear."],
            "explanation": "ignored",
        },
        chunk,
    )
    assert marker is not None
    assert marker.explanations == ["Invents a sword.", "Fan says spear."]


def test_single_explanation_only_applies_to_single_reason():
    chunk = _chunks()[0]
    one = normalize_marker_for_chunk(
        {"chunkId": chunk.id, "reasons": ["added-detail"], "explanation": "Adds a sunset."}, chunk
    )
    two = normalize_marker_for_chunk(
        {"chunkId": chunk.id, "reasons": ["added-detail", "hallucination"], "explanation": "Adds a sunset."},
        chunk,
    )
    assert one is not None and one.explanations == ["Adds a sunset."]
    assert two is not None and two.explanations == ["", ""]


def test_explanation_echoing_a_reason_keyword_is_rejected():
    chunk = _chunks()[0]
    marker = normalize_marker_for_chunk(
        {"chunkId": chunk.id, "reasons": ["hallucination"], "explanations": ["hallucination"]}, chunk
    )
    assert marker is not None
    assert marker.explanations == [""]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(1.7, 1.0), (-0.2, 0.0), (0.42, 0.42), ("0.9", None), (True, None), (None, None)],
)
def test_confidence_is_clamped_or_unset(raw, expected):
    chunk = _chunks()[0]
    marker = normalize_marker_for_chunk({"chunkId": chunk.id, "reasons": ["no-change"], "confidence": raw}, chunk)
    assert marker is not None
    assert marker.confidence == expected


def test_parse_rejects_non_json_with_distinct_error():
    with pytest.raises(DiffJsonParseError) as exc_info:
        parse_markers_response("Sure! Here are the markers:", _chunks(), model="m1")
    assert exc_info.value.model == "m1"


def test_parse_rejects_non_object_top_level():
    with pytest.raises(DiffJsonParseError):
        parse_markers_response("[1, 2]", _chunks())


def test_parse_without_markers_array_returns_empty():
    assert parse_markers_response('{"result": "ok"}', _chunks()) == []


def test_parse_drops_unknown_chunks_and_keeps_known():
    chunks = _chunks()
    payload = {
        "markers": [
            {"chunkId": "para-99-ffff", "reasons": ["hallucination"]},
            {"chunkId": chunks[2].id, "reasons": ["raw-divergence"], "confidence": 0.8},
            "not-a-marker",
        ]
    }
    markers = parse_markers_response(json.dumps(payload), chunks)

    assert [m.chunk_id for m in markers] == [chunks[2].id]
    assert markers[0].colors == [DiffColor.ORANGE]


def test_complete_markers_fills_every_chunk_in_order():
    chunks = _chunks()
    only_last = parse_markers_response(
        json.dumps({"markers": [{"chunkId": chunks[2].id, "reasons": ["fan-divergence"]}]}), chunks
    )
    completed = complete_markers(chunks, only_last)

    assert len(completed) == len(chunks)
    assert [m.position for m in completed] == [0, 1, 2]
    assert completed[0].reasons == [DiffReason.NO_CHANGE]
    assert completed[0].colors == [DiffColor.GREY]
    assert completed[2].reasons == [DiffReason.FAN_DIVERGENCE]
    for marker in completed:
        assert len(marker.colors) == len(marker.reasons)


def test_complete_markers_ignores_markers_for_foreign_chunks():
    chunks = _chunks()
    other = chunk_ai_translation("Completely different text.")
    foreign = normalize_marker_for_chunk({"chunkId": other[0].id, "reasons": ["hallucination"]}, other[0])

    completed = complete_markers(chunks, [foreign])

    assert [m.chunk_id for m in completed] == [c.id for c in chunks]
