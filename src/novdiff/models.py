from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    ERROR = "error"
    WARN = "warn"
    INFO = "info"


class DiffReason(str, Enum):
    MISSING_CONTEXT = "missing-context"
    PLOT_OMISSION = "plot-omission"
    ADDED_DETAIL = "added-detail"
    HALLUCINATION = "hallucination"
    FAN_DIVERGENCE = "fan-divergence"
    SENSITIVITY_FILTER = "sensitivity-filter"
    RAW_DIVERGENCE = "raw-divergence"
    STYLISTIC_CHOICE = "stylistic-choice"
    NO_CHANGE = "no-change"


class DiffColor(str, Enum):
    RED = "red"
    ORANGE = "orange"
    # Accepted from model output only; never derived from a reason.
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    GREY = "grey"


@dataclass
class Issue:
    code: str
    severity: Severity
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AiRange:
    start: int
    end: int


@dataclass(frozen=True)
class Chunk:
    """An independently addressable paragraph of the AI translation."""

    id: str
    text: str
    start: int
    end: int
    position: int

    @property
    def ai_range(self) -> AiRange:
        return AiRange(self.start, self.end)


@dataclass
class DiffMarker:
    chunk_id: str
    colors: list[DiffColor]
    reasons: list[DiffReason]
    ai_range: AiRange
    position: int
    explanations: list[str] | None = None
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "chunkId": self.chunk_id,
            "colors": [DiffColor(c).value for c in self.colors],
            "reasons": [DiffReason(r).value for r in self.reasons],
            "aiRange": {"start": self.ai_range.start, "end": self.ai_range.end},
            "position": self.position,
        }
        if self.explanations is not None:
            out["explanations"] = list(self.explanations)
        if self.confidence is not None:
            out["confidence"] = self.confidence
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiffMarker":
        rng = data.get("aiRange") or {}
        explanations = data.get("explanations")
        confidence = data.get("confidence")
        return cls(
            chunk_id=str(data.get("chunkId", "")),
            colors=[DiffColor(str(c)) for c in data.get("colors") or []],
            reasons=[DiffReason(str(r)) for r in data.get("reasons") or []],
            ai_range=AiRange(int(rng.get("start", 0)), int(rng.get("end", 0))),
            position=int(data.get("position", 0)),
            explanations=[str(e) for e in explanations] if isinstance(explanations, list) else None,
            confidence=float(confidence) if confidence is not None else None,
        )


@dataclass(frozen=True)
class DiffResultKey:
    chapter_id: str
    ai_version_id: str
    fan_version_id: Optional[str]
    raw_version_id: str
    algo_version: str

    def storage_tuple(self) -> tuple[str, str, str, str, str]:
        # Composite keys cannot hold NULL, so a missing fan version is stored as "".
        return (
            self.chapter_id,
            self.ai_version_id,
            self.fan_version_id or "",
            self.raw_version_id,
            self.algo_version,
        )


@dataclass
class DiffResult:
    chapter_id: str
    ai_version_id: str
    fan_version_id: Optional[str]
    raw_version_id: str
    algo_version: str
    markers: list[DiffMarker]
    analyzed_at: int
    cost_usd: float
    model: str
    ai_hash: str | None = None
    fan_hash: str | None = None
    raw_hash: str | None = None

    @property
    def key(self) -> DiffResultKey:
        return DiffResultKey(
            chapter_id=self.chapter_id,
            ai_version_id=self.ai_version_id,
            fan_version_id=self.fan_version_id,
            raw_version_id=self.raw_version_id,
            algo_version=self.algo_version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chapterId": self.chapter_id,
            "aiVersionId": self.ai_version_id,
            "fanVersionId": self.fan_version_id,
            "rawVersionId": self.raw_version_id,
            "algoVersion": self.algo_version,
            "aiHash": self.ai_hash,
            "fanHash": self.fan_hash,
            "rawHash": self.raw_hash,
            "markers": [m.to_dict() for m in self.markers],
            "analyzedAt": self.analyzed_at,
            "costUsd": self.cost_usd,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiffResult":
        fan_version_id = data.get("fanVersionId")
        raw_version_id = str(data.get("rawVersionId", ""))
        return cls(
            chapter_id=str(data["chapterId"]),
            ai_version_id=str(data.get("aiVersionId", "")),
            fan_version_id=(str(fan_version_id) if fan_version_id else None),
            raw_version_id=raw_version_id,
            algo_version=str(data.get("algoVersion", "")),
            markers=[DiffMarker.from_dict(m) for m in data.get("markers") or []],
            analyzed_at=int(data.get("analyzedAt", 0) or 0),
            cost_usd=float(data.get("costUsd", 0.0) or 0.0),
            model=str(data.get("model", "")),
            ai_hash=data.get("aiHash") or None,
            fan_hash=data.get("fanHash") or None,
            raw_hash=data.get("rawHash") or raw_version_id,
        )


@dataclass
class DiffAnalysisRequest:
    """Payload of a "translation completed" signal."""

    chapter_id: str
    ai_translation: str
    raw_text: str
    fan_translation: str | None = None
    ai_translation_id: str | None = None
    fan_translation_id: str | None = None
    previous_version_feedback: str | None = None
    preferred_provider: str | None = None
    preferred_model: str | None = None
    preferred_temperature: float | None = None
    prompt_override: str | None = None
