"""Comparison of firmware version strings."""

from __future__ import annotations


def _is_digit(char: str) -> bool:
    return "0" <= char <= "9"


def _is_alpha(char: str) -> bool:
    return "a" <= char <= "z" or "A" <= char <= "Z"


def _char_order(char: str) -> int:
    """Sort weight of one character; the empty string marks the end."""
    if char == "":
        return -1
    if _is_digit(char):
        return 0
    if _is_alpha(char):
        return ord(char)
    if char == "~":
        return -2
    return ord(char) + 256


def newer_than(a: str | None, b: str | None) -> bool:
    """Return True if version ``a`` is strictly newer than version ``b``.

    Non-digit parts are compared character by character (letters sort before
    other symbols, ``~`` sorts before the end of the string), digit runs are
    compared numerically. A missing ``a`` is never newer; any ``a`` is newer
    than a missing ``b``.
    """
    if a is None:
        return False
    if b is None:
        return True

    i = j = 0

    def at(text: str, pos: int) -> str:
        return text[pos] if pos < len(text) else ""

    while i < len(a) or j < len(b):
        first_diff = 0

        while (at(a, i) and not _is_digit(at(a, i))) or (
            at(b, j) and not _is_digit(at(b, j))
        ):
            ac = _char_order(at(a, i))
            bc = _char_order(at(b, j))
            if ac != bc:
                return ac > bc
            i += 1
            j += 1

        while at(a, i) == "0":
            i += 1
        while at(b, j) == "0":
            j += 1

        while _is_digit(at(a, i)) and _is_digit(at(b, j)):
            if first_diff == 0:
                first_diff = ord(a[i]) - ord(b[j])
            i += 1
            j += 1

        if _is_digit(at(a, i)):
            return True
        if _is_digit(at(b, j)):
            return False

        if first_diff != 0:
            return first_diff > 0

    return False