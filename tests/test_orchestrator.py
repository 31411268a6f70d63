from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Barrier, Thread

from novdiff.analysis import DiffAnalyzer
from novdiff.cache import ResultCache
from novdiff.chunking import chunk_ai_translation
from novdiff.config import DiffConfig
from novdiff.errors import TranslatorError
from novdiff.llm import LLMRequest, LLMResponse
from novdiff.models import DiffAnalysisRequest, DiffReason
from novdiff.orchestrator import DiffFailed, DiffOrchestrator, DiffUpdated, OutcomeStatus

_TEXT = "The hero drew his blade.<br><br>Night fell over the city."


@dataclass
class _RecordingLLM:
    reply: Callable[[LLMRequest], str]
    providers: tuple[str, ...] = ("openrouter", "ollama")
    requests: list[LLMRequest] = field(default_factory=list)

    def translate(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        return LLMResponse(translated_text=self.reply(request), cost=0.001, model=request.model)


def _no_markers(_request: LLMRequest) -> str:
    return '{"markers": []}'


def _request(**overrides) -> DiffAnalysisRequest:
    values = dict(
        chapter_id="ch-1",
        ai_translation=_TEXT,
        raw_text="英雄拔剑。夜幕降临。",
        fan_translation=None,
        ai_translation_id="ai-v1",
    )
    values.update(overrides)
    return DiffAnalysisRequest(**values)


def _orchestrator(llm, *, cache=None, settings=None):
    notifications: list[object] = []
    orch = DiffOrchestrator(
        DiffAnalyzer(llm, clock=lambda: 1000),
        cache or ResultCache(),
        settings or DiffConfig(),
        notify=notifications.append,
    )
    return orch, notifications


def test_fresh_analysis_is_cached_and_notified():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm)

    outcome = orch.handle_translation_completed(_request())

    assert outcome.status == OutcomeStatus.ANALYZED
    assert outcome.cache_written
    assert len(outcome.result.markers) == 2
    assert notifications == [DiffUpdated(chapter_id="ch-1")]
    assert llm.requests[0].provider == "openrouter"
    assert llm.requests[0].model == "openai/gpt-4o-mini"
    assert orch.cache.get(outcome.result.key) is not None


def test_exact_key_hit_skips_llm():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm)

    orch.handle_translation_completed(_request())
    second = orch.handle_translation_completed(_request())

    assert second.status == OutcomeStatus.CACHE_HIT
    assert len(llm.requests) == 1
    assert notifications[-1] == DiffUpdated(chapter_id="ch-1", cache_hit=True)


def test_hash_fallback_hit_for_new_version_id_with_same_content():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm)

    orch.handle_translation_completed(_request(ai_translation_id="ai-v1"))
    again = orch.handle_translation_completed(_request(ai_translation_id="ai-v2"))
    no_id = orch.handle_translation_completed(_request(ai_translation_id=None))

    assert again.status == OutcomeStatus.CACHE_HIT
    assert no_id.status == OutcomeStatus.CACHE_HIT
    assert len(llm.requests) == 1


def test_changed_fan_translation_misses_cache():
    llm = _RecordingLLM(_no_markers)
    orch, _ = _orchestrator(llm)

    orch.handle_translation_completed(_request())
    outcome = orch.handle_translation_completed(_request(fan_translation="Fan text.", fan_translation_id="f1"))

    assert outcome.status == OutcomeStatus.ANALYZED
    assert len(llm.requests) == 2


def test_disabled_feature_does_nothing():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm, settings=DiffConfig(enabled=False))

    outcome = orch.handle_translation_completed(_request())

    assert outcome.status == OutcomeStatus.SKIPPED
    assert notifications == []
    assert llm.requests == []
    assert orch.cache.all_results() == []


def test_supported_preferred_model_is_used():
    llm = _RecordingLLM(_no_markers)
    orch, _ = _orchestrator(llm)

    outcome = orch.handle_translation_completed(
        _request(preferred_provider="Ollama", preferred_model="qwen2.5:7b", preferred_temperature=0.4)
    )

    assert (llm.requests[0].provider, llm.requests[0].model) == ("ollama", "qwen2.5:7b")
    assert llm.requests[0].temperature == 0.4
    assert outcome.model == "qwen2.5:7b"


def test_unsupported_preferred_provider_falls_back_to_default():
    llm = _RecordingLLM(_no_markers)
    orch, _ = _orchestrator(llm)

    orch.handle_translation_completed(_request(preferred_provider="openai", preferred_model="gpt-4.1"))

    assert (llm.requests[0].provider, llm.requests[0].model) == ("openrouter", "openai/gpt-4o-mini")


def test_parse_failure_on_preferred_model_retries_once_with_default():
    chunk_id = chunk_ai_translation(_TEXT)[1].id

    def reply(request: LLMRequest) -> str:
        if request.provider == "ollama":
            return "I think paragraph two is fine."
        return json.dumps({"markers": [{"chunkId": chunk_id, "reasons": ["added-detail"]}]})

    llm = _RecordingLLM(reply)
    orch, notifications = _orchestrator(llm)

    outcome = orch.handle_translation_completed(_request(preferred_provider="ollama", preferred_model="qwen2.5:7b"))

    assert outcome.status == OutcomeStatus.ANALYZED
    assert outcome.retried
    assert [r.provider for r in llm.requests] == ["ollama", "openrouter"]
    assert outcome.result.model == "openai/gpt-4o-mini"
    assert outcome.result.markers[1].reasons == [DiffReason.ADDED_DETAIL]
    assert notifications == [DiffUpdated(chapter_id="ch-1")]


def test_parse_failure_on_default_model_is_not_retried():
    llm = _RecordingLLM(lambda _req: "<html>oops</html>")
    orch, notifications = _orchestrator(llm)

    outcome = orch.handle_translation_completed(_request())

    assert outcome.status == OutcomeStatus.FAILED
    assert len(llm.requests) == 1
    assert len(notifications) == 1
    assert isinstance(notifications[0], DiffFailed)
    assert orch.cache.all_results() == []


def test_retry_failure_is_reported_after_exactly_two_calls():
    llm = _RecordingLLM(lambda _req: "not json")
    orch, notifications = _orchestrator(llm)

    outcome = orch.handle_translation_completed(_request(preferred_provider="ollama", preferred_model="qwen2.5:7b"))

    assert outcome.status == OutcomeStatus.FAILED
    assert len(llm.requests) == 2
    assert isinstance(notifications[-1], DiffFailed)


def test_translator_error_is_contained():
    def reply(_request: LLMRequest) -> str:
        raise TranslatorError("401 unauthorized", provider="openrouter")

    llm = _RecordingLLM(reply)
    orch, notifications = _orchestrator(llm)

    outcome = orch.handle_translation_completed(_request())

    assert outcome.status == OutcomeStatus.FAILED
    assert "401" in outcome.error
    assert notifications == [DiffFailed(chapter_id="ch-1", error="401 unauthorized")]
    assert len(llm.requests) == 1


class _ReadOnlyCache(ResultCache):
    def save(self, result):
        raise sqlite3.OperationalError("attempt to write a readonly database")


def test_cache_write_failure_keeps_result():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm, cache=_ReadOnlyCache())

    outcome = orch.handle_translation_completed(_request())

    assert outcome.status == OutcomeStatus.ANALYZED
    assert outcome.result is not None
    assert not outcome.cache_written
    assert "readonly" in outcome.error
    assert isinstance(notifications[-1], DiffFailed)


def test_failing_notification_handler_does_not_propagate():
    def explode(_notification):
        raise RuntimeError("ui gone")

    orch = DiffOrchestrator(DiffAnalyzer(_RecordingLLM(_no_markers)), ResultCache(), DiffConfig(), notify=explode)

    outcome = orch.handle_translation_completed(_request())

    assert outcome.status == OutcomeStatus.ANALYZED


def test_invalidate_chapter_deletes_and_reanalyzes():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm)
    orch.handle_translation_completed(_request())
    orch.handle_translation_completed(_request(ai_translation="Another version.", ai_translation_id="ai-v2"))

    outcome = orch.invalidate_chapter(_request())

    assert outcome.status == OutcomeStatus.ANALYZED
    assert len(llm.requests) == 3
    assert DiffUpdated(chapter_id="ch-1", invalidated=True) in notifications
    assert len(orch.cache.get_by_chapter("ch-1")) == 1


def test_submit_runs_in_background():
    llm = _RecordingLLM(_no_markers)
    orch, notifications = _orchestrator(llm)
    try:
        futures = [orch.submit(_request(chapter_id=f"ch-{i}", ai_translation_id=f"v{i}")) for i in range(4)]
        outcomes = [f.result(timeout=10) for f in futures]
    finally:
        orch.shutdown()

    assert all(o.status == OutcomeStatus.ANALYZED for o in outcomes)
    assert {n.chapter_id for n in notifications} == {"ch-0", "ch-1", "ch-2", "ch-3"}
    assert len(orch.cache.all_results()) == 4


def test_concurrent_submits_share_one_executor():
    llm = _RecordingLLM(_no_markers)
    orch, _ = _orchestrator(llm)
    barrier = Barrier(6)
    futures = []
    executors = []

    def _submit(i: int) -> None:
        barrier.wait()
        futures.append(orch.submit(_request(chapter_id=f"ch-{i}", ai_translation_id=f"v{i}")))
        executors.append(orch._executor)

    threads = [Thread(target=_submit, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    try:
        outcomes = [f.result(timeout=10) for f in futures]
    finally:
        orch.shutdown()

    assert len(outcomes) == 6
    assert all(o.status == OutcomeStatus.ANALYZED for o in outcomes)
    assert len({id(e) for e in executors}) == 1
    assert orch._executor is None
