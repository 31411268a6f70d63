from __future__ import annotations

import re
from collections.abc import Sequence

from .markers import REASON_COLORS
from .models import Chunk, DiffReason

NO_FAN_TRANSLATION = "(No fan translation available)"
NO_PREVIOUS_FEEDBACK = "(No previous feedback)"

_PLACEHOLDER_RE = re.compile(r"\{\{(chunks|fanTranslation|rawText|previousFeedback)\}\}")

REASON_DESCRIPTIONS: dict[DiffReason, str] = {
    DiffReason.MISSING_CONTEXT: "AI translation drops context present in the fan translation or raw text",
    DiffReason.PLOT_OMISSION: "AI translation skips a plot-relevant event or statement",
    DiffReason.ADDED_DETAIL: "AI translation elaborates beyond what the raw text says",
    DiffReason.HALLUCINATION: "AI translation invents content with no basis in the raw text",
    DiffReason.FAN_DIVERGENCE: "AI and fan translations disagree in meaning, both plausible from the raw",
    DiffReason.SENSITIVITY_FILTER: "AI translation softens or censors violent, sexual or crude content",
    DiffReason.RAW_DIVERGENCE: "AI translation departs from the raw source in meaning",
    DiffReason.STYLISTIC_CHOICE: "Same meaning, different phrasing or word choice",
    DiffReason.NO_CHANGE: "No meaningful difference",
}

DEFAULT_DIFF_PROMPT = """You compare an AI translation of a web-novel chapter against a fan translation and the raw source text.

The AI translation is split into paragraphs. Each paragraph is prefixed with its id in square brackets.
For every paragraph, decide whether its meaning diverges from the fan translation or from the raw text.

Allowed reasons:
{{reasonList}}

Colors follow from reasons:
{{colorLegend}}

Respond with a single JSON object and nothing else:
{"markers": [{"chunkId": "<paragraph id>", "reasons": ["<reason>"], "explanations": ["<one short sentence per reason>"], "confidence": 0.0}]}

Rules:
- Use only the paragraph ids listed below.
- One marker per paragraph; use "no-change" when nothing diverges.
- Explanations are plain sentences, never a reason code.

AI TRANSLATION PARAGRAPHS:
{{chunks}}

FAN TRANSLATION:
{{fanTranslation}}

RAW SOURCE TEXT:
{{rawText}}

FEEDBACK ON THE PREVIOUS VERSION:
{{previousFeedback}}
"""


def _reason_list() -> str:
    return "\n".join(f"- {reason.value}: {REASON_DESCRIPTIONS[reason]}" for reason in DiffReason)


def _color_legend() -> str:
    by_color: dict[str, list[str]] = {}
    for reason, color in REASON_COLORS.items():
        by_color.setdefault(color.value, []).append(reason.value)
    return "\n".join(f"- {color}: {', '.join(reasons)}" for color, reasons in by_color.items())


def apply_prompt_variables(template: str) -> str:
    """Expand the static variables that describe the reason vocabulary."""
    return template.replace("{{reasonList}}", _reason_list()).replace("{{colorLegend}}", _color_legend())


def format_chunks(chunks: Sequence[Chunk]) -> str:
    return "\n\n".join(f"[{chunk.id}]: {chunk.text}" for chunk in chunks)


def build_prompt(
    template: str,
    chunks: Sequence[Chunk],
    fan_text: str | None,
    raw_text: str,
    previous_feedback: str | None = None,
) -> str:
    # A template without a placeholder silently loses that input.
    values = {
        "chunks": format_chunks(chunks),
        "fanTranslation": fan_text or NO_FAN_TRANSLATION,
        "rawText": raw_text,
        "previousFeedback": previous_feedback or NO_PREVIOUS_FEEDBACK,
    }
    # Single pass, so placeholder-like text inside the inputs is left as-is.
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], apply_prompt_variables(template))
