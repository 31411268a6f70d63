from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Union

from .analysis import DiffAnalyzer
from .cache import ResultCache
from .config import DiffConfig
from .errors import DiffJsonParseError
from .hashing import compute_diff_hash
from .llm import supports_provider
from .models import DiffAnalysisRequest, DiffResult, DiffResultKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiffUpdated:
    chapter_id: str
    cache_hit: bool = False
    invalidated: bool = False


@dataclass(frozen=True)
class DiffFailed:
    chapter_id: str
    error: str


DiffNotification = Union[DiffUpdated, DiffFailed]


class OutcomeStatus(str, Enum):
    SKIPPED = "skipped"
    CACHE_HIT = "cache_hit"
    ANALYZED = "analyzed"
    FAILED = "failed"


@dataclass
class DiffOutcome:
    status: OutcomeStatus
    chapter_id: str
    result: DiffResult | None = None
    error: str | None = None
    model: str | None = None
    retried: bool = False
    cache_written: bool = False


class DiffOrchestrator:
    """Reacts to "translation completed" signals for a chapter.

    Concurrent signals for the same chapter are not coalesced: each runs to
    completion and the last cache write wins.
    """

    def __init__(
        self,
        analyzer: DiffAnalyzer,
        cache: ResultCache,
        settings: DiffConfig,
        *,
        notify: Callable[[DiffNotification], None] | None = None,
        max_workers: int = 2,
    ) -> None:
        self.analyzer = analyzer
        self.cache = cache
        self.settings = settings
        self._notify_cb = notify
        self._max_workers = max(1, int(max_workers))
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = Lock()

    def _notify(self, notification: DiffNotification) -> None:
        if self._notify_cb is None:
            return
        try:
            self._notify_cb(notification)
        except Exception:
            logger.exception("Diff notification handler failed for chapter %s", notification.chapter_id)

    def _lookup_cached(self, request: DiffAnalysisRequest) -> DiffResult | None:
        algo_version = self.settings.algo_version
        raw_hash = compute_diff_hash(request.raw_text)
        try:
            if request.ai_translation_id:
                cached = self.cache.get(
                    DiffResultKey(
                        chapter_id=request.chapter_id,
                        ai_version_id=request.ai_translation_id,
                        fan_version_id=request.fan_translation_id,
                        raw_version_id=raw_hash,
                        algo_version=algo_version,
                    )
                )
                if cached is not None:
                    return cached
            return self.cache.find_by_hashes(
                request.chapter_id,
                compute_diff_hash(request.ai_translation),
                compute_diff_hash(request.fan_translation) if request.fan_translation else None,
                raw_hash,
                algo_version,
            )
        except Exception as exc:
            logger.warning("Diff cache lookup failed for chapter %s: %s", request.chapter_id, exc)
            return None

    def _select_model(self, request: DiffAnalysisRequest) -> tuple[str, str]:
        provider = (request.preferred_provider or "").strip().lower()
        model = (request.preferred_model or "").strip()
        llm = self.analyzer.llm
        if provider and model and llm is not None and supports_provider(llm, provider):
            return provider, model
        if provider and model:
            logger.info("Preferred provider %s is not supported for diff analysis; using default", provider)
        return self.settings.default_provider, self.settings.default_model

    def _analyze_with_fallback(self, request: DiffAnalysisRequest) -> tuple[DiffResult, bool]:
        provider, model = self._select_model(request)
        temperature = (
            request.preferred_temperature
            if request.preferred_temperature is not None
            else self.settings.temperature
        )
        try:
            return self.analyzer.analyze(request, provider=provider, model=model, temperature=temperature), False
        except DiffJsonParseError as exc:
            default = (self.settings.default_provider, self.settings.default_model)
            if (provider, model) == default:
                raise
            logger.warning(
                "Chapter %s: %s/%s returned unparseable JSON (%s); retrying once with %s/%s",
                request.chapter_id,
                provider,
                model,
                exc,
                *default,
            )
        result = self.analyzer.analyze(
            request,
            provider=self.settings.default_provider,
            model=self.settings.default_model,
            temperature=self.settings.temperature,
        )
        return result, True

    def handle_translation_completed(self, request: DiffAnalysisRequest) -> DiffOutcome:
        """Analyze (or reuse) diff markers for a freshly translated chapter. Never raises."""
        chapter_id = request.chapter_id
        if not self.settings.enabled:
            logger.debug("Diff analysis disabled; skipping chapter %s", chapter_id)
            return DiffOutcome(status=OutcomeStatus.SKIPPED, chapter_id=chapter_id)

        cached = self._lookup_cached(request)
        if cached is not None:
            logger.info("Diff cache hit for chapter %s (model=%s)", chapter_id, cached.model)
            self._notify(DiffUpdated(chapter_id=chapter_id, cache_hit=True))
            return DiffOutcome(
                status=OutcomeStatus.CACHE_HIT, chapter_id=chapter_id, result=cached, model=cached.model
            )

        try:
            result, retried = self._analyze_with_fallback(request)
        except Exception as exc:
            logger.exception("Diff analysis failed for chapter %s", chapter_id)
            self._notify(DiffFailed(chapter_id=chapter_id, error=str(exc)))
            return DiffOutcome(status=OutcomeStatus.FAILED, chapter_id=chapter_id, error=str(exc))

        outcome = DiffOutcome(
            status=OutcomeStatus.ANALYZED,
            chapter_id=chapter_id,
            result=result,
            model=result.model,
            retried=retried,
        )
        try:
            self.cache.save(result)
            outcome.cache_written = True
        except Exception as exc:
            # The computed result stays usable; later lookups will miss until a write succeeds.
            logger.exception("Failed to persist diff result for chapter %s", chapter_id)
            outcome.error = f"cache write failed: {exc}"
            self._notify(DiffFailed(chapter_id=chapter_id, error=outcome.error))
            return outcome

        self._notify(DiffUpdated(chapter_id=chapter_id))
        return outcome

    def invalidate_chapter(self, request: DiffAnalysisRequest) -> DiffOutcome:
        """Drop every cached result of the chapter and analyze it again."""
        try:
            deleted = self.cache.delete_by_chapter(request.chapter_id)
        except Exception as exc:
            logger.exception("Failed to invalidate diff results for chapter %s", request.chapter_id)
            self._notify(DiffFailed(chapter_id=request.chapter_id, error=str(exc)))
            return DiffOutcome(status=OutcomeStatus.FAILED, chapter_id=request.chapter_id, error=str(exc))
        logger.info("Invalidated %d diff result(s) for chapter %s", deleted, request.chapter_id)
        self._notify(DiffUpdated(chapter_id=request.chapter_id, invalidated=True))
        return self.handle_translation_completed(request)

    def submit(self, request: DiffAnalysisRequest) -> Future[DiffOutcome]:
        """Run the handler in the background so the triggering flow never waits on it."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="novdiff")
            return self._executor.submit(self.handle_translation_completed, request)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
