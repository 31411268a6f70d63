from __future__ import annotations

import json
from dataclasses import dataclass, field

import pytest

from novdiff.analysis import DiffAnalyzer
from novdiff.chunking import chunk_ai_translation
from novdiff.errors import DiffJsonParseError
from novdiff.hashing import compute_diff_hash
from novdiff.llm import LLMRequest, LLMResponse
from novdiff.models import DiffAnalysisRequest, DiffColor, DiffReason


@dataclass
class _ScriptedLLM:
    response_text: str
    cost: float | None = 0.002
    providers: tuple[str, ...] = ("openrouter",)
    requests: list[LLMRequest] = field(default_factory=list)

    def translate(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        return LLMResponse(translated_text=self.response_text, cost=self.cost, model=f"{request.model}-served")


def test_without_llm_every_chunk_is_no_change():
    analyzer = DiffAnalyzer(None, clock=lambda: 1234)
    request = DiffAnalysisRequest(
        chapter_id="ch-a",
        ai_translation="Same text.<br><br>Same text again.",
        fan_translation="Same text.<br><br>Same text again.",
        raw_text="Same text.<br><br>Same text again.",
    )

    result = analyzer.analyze(request, provider="openrouter", model="openai/gpt-4o-mini")

    assert len(result.markers) == 2
    for marker in result.markers:
        assert marker.colors == [DiffColor.GREY]
        assert marker.reasons == [DiffReason.NO_CHANGE]
    assert result.cost_usd == 0.0
    assert result.ai_version_id == "1234"
    assert result.analyzed_at == 1234


def test_single_chunk_marker_is_normalized_and_kept():
    text = "Only one paragraph here."
    chunk_id = chunk_ai_translation(text)[0].id
    llm = _ScriptedLLM(
        json.dumps({"markers": [{"chunkId": chunk_id, "colors": ["grey"], "reasons": ["stylistic-choice"]}]})
    )
    analyzer = DiffAnalyzer(llm, algo_version="1.0.0", clock=lambda: 99)
    request = DiffAnalysisRequest(
        chapter_id="ch-b",
        ai_translation=text,
        raw_text="原文",
        fan_translation="Fan text.",
        ai_translation_id="ai-v7",
        fan_translation_id="fan-v2",
    )

    result = analyzer.analyze(request, provider="openrouter", model="openai/gpt-4o-mini", temperature=0.2)

    assert len(result.markers) == 1
    assert [r.value for r in result.markers[0].reasons] == ["stylistic-choice"]
    assert [c.value for c in result.markers[0].colors] == ["grey"]
    assert result.model == "openai/gpt-4o-mini-served"
    assert result.cost_usd == 0.002
    assert result.ai_version_id == "ai-v7"
    assert result.fan_version_id == "fan-v2"
    assert result.raw_version_id == compute_diff_hash("原文")
    assert result.ai_hash == compute_diff_hash(text)
    assert result.fan_hash == compute_diff_hash("Fan text.")
    assert result.raw_hash == result.raw_version_id

    sent = llm.requests[0]
    assert sent.temperature == 0.2
    assert f"[{chunk_id}]: {text}" in sent.text
    assert "Fan text." in sent.text


def test_prompt_override_replaces_template():
    llm = _ScriptedLLM('{"markers": []}')
    analyzer = DiffAnalyzer(llm)
    request = DiffAnalysisRequest(
        chapter_id="ch", ai_translation="A.", raw_text="R", prompt_override="RAW={{rawText}}"
    )

    analyzer.analyze(request, provider="openrouter", model="m")

    assert llm.requests[0].text == "RAW=R"


def test_fan_hash_is_none_without_fan_translation():
    analyzer = DiffAnalyzer(_ScriptedLLM('{"markers": []}', cost=None))
    result = analyzer.analyze(
        DiffAnalysisRequest(chapter_id="ch", ai_translation="A.", raw_text="R"), provider="openrouter", model="m"
    )
    assert result.fan_hash is None
    assert result.fan_version_id is None
    assert result.cost_usd == 0.0


def test_unparseable_response_raises_parse_error():
    analyzer = DiffAnalyzer(_ScriptedLLM("not json at all"))
    with pytest.raises(DiffJsonParseError):
        analyzer.analyze(
            DiffAnalysisRequest(chapter_id="ch", ai_translation="A.", raw_text="R"), provider="openrouter", model="m"
        )
