from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class DiffError(RuntimeError):
    """Base class for diff pipeline failures."""


class DiffJsonParseError(DiffError):
    """LLM response was not JSON or had an unexpected top-level shape."""

    def __init__(self, message: str, model: str | None = None) -> None:
        super().__init__(message)
        self.model = model


class TranslatorError(DiffError):
    """The LLM call itself failed (network, auth, quota, response schema)."""

    def __init__(self, message: str, *, provider: str | None = None, model: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model


class CacheDeleteError(DiffError):
    def __init__(self, chapter_id: str, failed_keys: Sequence[Any], deleted: int) -> None:
        super().__init__(
            f"Failed to delete {len(failed_keys)} diff result(s) for chapter {chapter_id!r} "
            f"({deleted} deleted)"
        )
        self.chapter_id = chapter_id
        self.failed_keys = list(failed_keys)
        self.deleted = deleted
