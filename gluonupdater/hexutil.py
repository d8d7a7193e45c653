"""Decoding of fixed-length hexadecimal strings."""

from __future__ import annotations

import string

_HEX_DIGITS = frozenset(string.hexdigits)


def parse_hex(text: str, length: int) -> bytes:
    """Decode ``text`` into exactly ``length`` bytes.

    The string must consist of exactly ``2 * length`` hexadecimal digits
    (either case) and nothing else; otherwise ``ValueError`` is raised.
    """
    if len(text) != 2 * length:
        raise ValueError(
            f"expected {2 * length} hexadecimal digits, got {len(text)} characters"
        )
    if not all(char in _HEX_DIGITS for char in text):
        raise ValueError(f"invalid hexadecimal string: {text!r}")
    return bytes.fromhex(text)