from __future__ import annotations

import re

from .hashing import short_hash
from .models import Chunk

# Paragraph boundaries: a run of 2+ <br>, a horizontal rule, or a </p><p> transition.
_BOUNDARY_RE = re.compile(r"(?:<br\s*/?>\s*){2,}|<hr\s*/?>|</p>\s*<p[^>]*>", flags=re.IGNORECASE)
_INLINE_TAG_RE = re.compile(r"<(/?)(i|b|em|strong)(?:\s[^>]*)?>", flags=re.IGNORECASE)

_BR_RUN_RE = re.compile(r"(?:<br\s*/?>\s*){2,}", flags=re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", flags=re.IGNORECASE)
_HR_RE = re.compile(r"<hr\s*/?>", flags=re.IGNORECASE)
_P_TRANSITION_RE = re.compile(r"</p>\s*<p[^>]*>", flags=re.IGNORECASE)
_P_TAG_RE = re.compile(r"</?p(?:\s[^>]*)?>", flags=re.IGNORECASE)
_ANY_TAG_RE = re.compile(r"</?[^>]+>")
_NBSP_RE = re.compile(r"&nbsp;", flags=re.IGNORECASE)
_MANY_NEWLINES_RE = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")

# Offset allowance for the boundary removed between two kept paragraphs.
SEPARATOR_WIDTH = 2


def balance_inline_tags(segments: list[str]) -> list[str]:
    """Close inline tags left open at a boundary and reopen them in the next segment."""
    balanced: list[str] = []
    carried: list[str] = []
    for segment in segments:
        stack = list(carried)
        for m in _INLINE_TAG_RE.finditer(segment):
            name = m.group(2).lower()
            if not m.group(1):
                stack.append(name)
                continue
            # Unmatched closers are left alone.
            for idx in range(len(stack) - 1, -1, -1):
                if stack[idx] == name:
                    del stack[idx]
                    break
        prefix = "".join(f"<{name}>" for name in carried)
        suffix = "".join(f"</{name}>" for name in reversed(stack))
        balanced.append(prefix + segment + suffix)
        carried = stack
    return balanced


def split_into_paragraph_segments(text: str) -> list[str]:
    segments: list[str] = []
    last = 0
    for m in _BOUNDARY_RE.finditer(text):
        segments.append(text[last : m.start()])
        last = m.end()
    if last < len(text):
        segments.append(text[last:])
    return balance_inline_tags(segments)


def normalize_chunk_text(html: str) -> str:
    out = _BR_RUN_RE.sub("\n\n", html)
    out = _BR_RE.sub("\n", out)
    out = _HR_RE.sub("\n\n", out)
    out = _P_TRANSITION_RE.sub("\n\n", out)
    out = _P_TAG_RE.sub("", out)
    out = _ANY_TAG_RE.sub("", out)
    out = _NBSP_RE.sub(" ", out)
    out = out.replace("\r\n", "\n")
    out = _MANY_NEWLINES_RE.sub("\n\n", out)
    out = _TRAILING_SPACE_RE.sub("\n", out)
    return out


def make_chunk_id(position: int, text: str) -> str:
    return f"para-{position}-{short_hash(text)}"


def chunk_ai_translation(text: str) -> list[Chunk]:
    """Split an HTML-ish chapter translation into stable paragraph chunks.

    Segments that are empty after normalization are dropped and do not consume
    a position. Offsets refer to the kept paragraphs joined by a two-character
    separator. When nothing survives, the whole input becomes chunk 0.
    """
    chunks: list[Chunk] = []
    offset = 0
    for segment in split_into_paragraph_segments(text):
        normalized = normalize_chunk_text(segment)
        if not normalized.strip():
            continue
        position = len(chunks)
        start = offset
        end = start + len(normalized)
        chunks.append(
            Chunk(
                id=make_chunk_id(position, normalized),
                text=normalized,
                start=start,
                end=end,
                position=position,
            )
        )
        offset = end + SEPARATOR_WIDTH

    if not chunks:
        fallback = normalize_chunk_text(text) or text
        return [Chunk(id=make_chunk_id(0, fallback), text=fallback, start=0, end=len(fallback), position=0)]
    return chunks
