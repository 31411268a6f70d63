from __future__ import annotations

from novdiff.chunking import chunk_ai_translation
from novdiff.models import DiffReason
from novdiff.prompt import (
    DEFAULT_DIFF_PROMPT,
    NO_FAN_TRANSLATION,
    NO_PREVIOUS_FEEDBACK,
    build_prompt,
    format_chunks,
)


def test_format_chunks_uses_ids_and_blank_lines():
    chunks = chunk_ai_translation("One.<br><br>Two.")
    assert format_chunks(chunks) == f"[{chunks[0].id}]: One.\n\n[{chunks[1].id}]: Two."


def test_build_prompt_substitutes_all_inputs():
    chunks = chunk_ai_translation("One.")
    template = "C:{{chunks}}|F:{{fanTranslation}}|R:{{rawText}}|P:{{previousFeedback}}"

    prompt = build_prompt(template, chunks, "fan text", "raw text", "be stricter")

    assert prompt == f"C:[{chunks[0].id}]: One.|F:fan text|R:raw text|P:be stricter"


def test_build_prompt_uses_fallbacks_for_missing_inputs():
    chunks = chunk_ai_translation("One.")
    prompt = build_prompt("{{fanTranslation}} / {{previousFeedback}}", chunks, None, "raw")
    assert prompt == f"{NO_FAN_TRANSLATION} / {NO_PREVIOUS_FEEDBACK}"


def test_template_without_placeholder_silently_drops_input():
    chunks = chunk_ai_translation("One.")
    assert build_prompt("only {{rawText}}", chunks, "fan", "raw") == "only raw"


def test_placeholder_text_inside_inputs_is_not_expanded():
    chunks = chunk_ai_translation("One.")
    prompt = build_prompt("{{fanTranslation}}|{{rawText}}", chunks, "mentions {{rawText}}", "RAW")
    assert prompt == "mentions {{rawText}}|RAW"


def test_default_prompt_lists_every_reason():
    chunks = chunk_ai_translation("One.")
    prompt = build_prompt(DEFAULT_DIFF_PROMPT, chunks, None, "raw")

    for reason in DiffReason:
        assert reason.value in prompt
    assert "{{" not in prompt
    assert chunks[0].id in prompt
