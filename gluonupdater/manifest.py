"""Parsing of signed update manifests."""

from __future__ import annotations

import hashlib
import logging
import math
import re
import struct
import sys
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from .hexutil import parse_hex

MAX_LINE_LENGTH = 512
SIGNATURE_SIZE = 64
HASH_SIZE = 32
SEPARATOR = "---"

_log = logging.getLogger(__name__)

_RFC3339 = re.compile(
    r"\s*(\d{1,4})-\s*(\d{1,2})-\s*(\d{1,2})\s*(\d{1,2}):\s*(\d{1,2}):\s*(\d{1,2})"
    r"(.)\s*(\d{1,2}):\s*(\d{1,2})",
    re.DOTALL,
)
_FLOAT = re.compile(
    r"\s*([+-]?(?:inf(?:inity)?|nan|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?))",
    re.IGNORECASE,
)
_SIZE = re.compile(r"\s*([+-]?)(\d+)")


class ManifestError(ValueError):
    """Raised for manifest data that cannot be parsed."""


def parse_rfc3339(text: str) -> int:
    """Parse ``YYYY-MM-DD hh:mm:ss+hh:mm`` into seconds since the epoch."""
    match = _RFC3339.match(text)
    if not match:
        raise ManifestError(f"invalid date: {text!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.group(1, 2, 3, 4, 5, 6))
    tz_sign = match.group(7)
    tz_hour, tz_minute = int(match.group(8)), int(match.group(9))

    a = (14 - month) // 12
    y = year - a
    m = month + 12 * a - 3
    days = day + (153 * m + 2) // 5 + 365 * y + y // 4 - y // 100 + y // 400 - 719469
    seconds = hour * 3600 + minute * 60 + second

    tz = 3600 * tz_hour + 60 * tz_minute
    if tz_sign == "-":
        tz = -tz
    elif tz_sign != "+":
        raise ManifestError(f"invalid time zone in date: {text!r}")

    return 86400 * days + seconds - tz


def _parse_float(text: str) -> float:
    """Read a leading single-precision number, 0.0 if there is none."""
    match = _FLOAT.match(text)
    if not match:
        return 0.0
    value = float(match.group(1))
    try:
        return struct.unpack("f", struct.pack("f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _parse_size(text: str) -> int | None:
    match = _SIZE.fullmatch(text)
    if not match:
        return None
    value = int(match.group(2))
    if match.group(1) == "-" and value != 0:
        return None
    if value > sys.maxsize:
        return None
    return value


@dataclass
class Manifest:
    """State collected while reading a manifest line by line."""

    sep_found: bool = False
    branch_ok: bool = False
    date_ok: bool = False
    priority_ok: bool = False
    model_ok: bool = False
    image_filename: str | None = None
    image_hash: bytes = b""
    version: str | None = None
    date: int = 0
    priority: float = 0.0
    imagesize: int = 0
    signatures: list[bytes] = field(default_factory=list)
    _hash: Any = field(default_factory=hashlib.sha256, repr=False, compare=False)

    def parse_line(self, line: str, branch: str, image_name: str) -> None:
        """Process one manifest line (without its newline)."""
        if self.sep_found:
            try:
                self.signatures.append(parse_hex(line, SIGNATURE_SIZE))
            except ValueError:
                _log.warning("garbage in signature area: %s", line)
            return

        if line == SEPARATOR:
            self.sep_found = True
            return

        self._hash.update(line.encode("utf-8", "surrogateescape") + b"\n")

        if line.startswith("BRANCH=") and line[7:] == branch:
            self.branch_ok = True
        elif line.startswith("DATE="):
            if self.date_ok:
                return
            try:
                self.date = parse_rfc3339(line[5:])
            except ManifestError:
                self.date_ok = False
            else:
                self.date_ok = True
        elif line.startswith("PRIORITY="):
            if self.priority_ok:
                return
            self.priority = _parse_float(line[9:])
            self.priority_ok = True
        else:
            self._parse_image_line(line, image_name)

    def _parse_image_line(self, line: str, image_name: str) -> None:
        if self.model_ok:
            return
        fields = [token for token in line.split(" ") if token]
        if len(fields) != 5:
            return
        model, version, checksum, imagesize, filename = fields
        if model != image_name:
            return
        try:
            image_hash = parse_hex(checksum, HASH_SIZE)
        except ValueError:
            return
        size = _parse_size(imagesize)
        if size is None:
            return

        self.image_hash = image_hash
        self.imagesize = size
        self.version = version
        self.image_filename = filename
        self.model_ok = True

    def digest(self) -> bytes:
        """SHA-256 of the signed part of the manifest read so far."""
        return self._hash.copy().digest()


class LineSplitter:
    """Cuts a stream of bytes into lines of bounded length."""

    def __init__(self, limit: int = MAX_LINE_LENGTH) -> None:
        self.limit = limit
        self._pending = b""
        self._failed = False

    def _error(self) -> ManifestError:
        return ManifestError(
            f"encountered manifest line exceeding limit of {self.limit} characters"
        )

    def feed(self, data: bytes) -> Iterator[str]:
        """Yield every line completed by ``data``.

        A line of ``limit`` characters or more raises ``ManifestError``, as
        does every later call. An unterminated last line is never yielded.
        """
        if self._failed:
            raise self._error()
        self._pending += data
        while True:
            pos = self._pending.find(b"\n")
            if pos < 0 or pos >= self.limit:
                break
            line = self._pending[:pos]
            self._pending = self._pending[pos + 1 :]
            yield line.decode("utf-8", "surrogateescape")
        if len(self._pending) >= self.limit:
            self._failed = True
            self._pending = b""
            raise self._error()