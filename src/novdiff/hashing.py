from __future__ import annotations

_MASK_32 = 0xFFFFFFFF


def _utf16_units(text: str):
    for ch in text:
        code = ord(ch)
        if code > 0xFFFF:
            code -= 0x10000
            yield 0xD800 + (code >> 10)
            yield 0xDC00 + (code & 0x3FF)
        else:
            yield code


def compute_diff_hash(text: str) -> str:
    """Return an 8-char lowercase hex fingerprint of ``text``.

    Rolling ``h = h*31 + unit`` over UTF-16 code units, wrapped to a signed
    32-bit integer. The absolute value is zero-padded to 8 hex digits, so the
    empty string maps to ``"00000000"``.
    """
    h = 0
    for unit in _utf16_units(text or ""):
        h = (h * 31 + unit) & _MASK_32
    if h & 0x80000000:
        h -= 0x100000000
    return format(abs(h), "08x")


def short_hash(text: str, length: int = 4) -> str:
    return compute_diff_hash(text)[:length]
