from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .chunking import chunk_ai_translation
from .coverage import check_coverage
from .hashing import compute_diff_hash
from .llm import LLMClient, LLMRequest
from .markers import complete_markers, parse_markers_response
from .models import DiffAnalysisRequest, DiffMarker, DiffResult
from .prompt import DEFAULT_DIFF_PROMPT, build_prompt

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 500


def _now_ms() -> int:
    return int(time.time() * 1000)


def _preview(label: str, value: str) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    if len(value) <= 2 * _PREVIEW_CHARS:
        logger.debug("%s (%d chars): %s", label, len(value), value)
    else:
        logger.debug(
            "%s (%d chars): %s ... %s", label, len(value), value[:_PREVIEW_CHARS], value[-_PREVIEW_CHARS:]
        )


class DiffAnalyzer:
    """Runs one analysis pass: chunk, prompt, call the model, normalize, complete.

    Without an LLM client every chunk gets a grey ``no-change`` marker.
    """

    def __init__(
        self,
        llm: LLMClient | None,
        *,
        algo_version: str = "1.0.0",
        prompt_template: str = DEFAULT_DIFF_PROMPT,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.llm = llm
        self.algo_version = algo_version
        self.prompt_template = prompt_template
        self._clock = clock

    def analyze(
        self,
        request: DiffAnalysisRequest,
        *,
        provider: str,
        model: str,
        temperature: float = 0.0,
    ) -> DiffResult:
        """Analyze one chapter with the given provider/model.

        Raises DiffJsonParseError for unparseable model output and
        TranslatorError when the call itself fails.
        """
        chunks = chunk_ai_translation(request.ai_translation)
        logger.info("Diff analysis for chapter %s: %d chunks", request.chapter_id, len(chunks))

        markers: list[DiffMarker] = []
        cost_usd = 0.0
        model_used = model
        if self.llm is None:
            logger.warning("No LLM client configured; chapter %s gets no-change markers only", request.chapter_id)
        else:
            prompt = build_prompt(
                request.prompt_override or self.prompt_template,
                chunks,
                request.fan_translation,
                request.raw_text,
                request.previous_version_feedback,
            )
            _preview("Diff prompt", prompt)
            logger.info("Calling %s/%s (temperature=%s)", provider, model, temperature)
            response = self.llm.translate(
                LLMRequest(text=prompt, provider=provider, model=model, temperature=temperature)
            )
            _preview("Diff LLM response", response.translated_text)
            markers = parse_markers_response(response.translated_text, chunks, model=model)
            coverage = check_coverage(chunks, markers)
            if coverage.missing_chunk_ids:
                logger.info(
                    "Applying no-change fallback markers for %d uncovered chunk(s)", len(coverage.missing_chunk_ids)
                )
            cost_usd = float(response.cost or 0.0)
            model_used = response.model or model

        completed = complete_markers(chunks, markers)
        raw_hash = compute_diff_hash(request.raw_text)
        result = DiffResult(
            chapter_id=request.chapter_id,
            ai_version_id=request.ai_translation_id or str(self._clock()),
            fan_version_id=request.fan_translation_id,
            raw_version_id=raw_hash,
            algo_version=self.algo_version,
            ai_hash=compute_diff_hash(request.ai_translation),
            fan_hash=(compute_diff_hash(request.fan_translation) if request.fan_translation else None),
            raw_hash=raw_hash,
            markers=completed,
            analyzed_at=self._clock(),
            cost_usd=cost_usd,
            model=model_used,
        )
        logger.info(
            "Diff analysis complete for %s: markers=%d cost=$%.6f model=%s",
            request.chapter_id,
            len(completed),
            cost_usd,
            model_used,
        )
        return result
