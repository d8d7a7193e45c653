"""Helpers for hook directories and system state."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path

_log = logging.getLogger(__name__)

_LEADING_FLOAT = re.compile(
    r"\s*([+-]?(?:inf(?:inity)?|nan|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?))",
    re.IGNORECASE,
)


def run_dir(directory: str | Path) -> list[tuple[Path, int | None]]:
    """Run every executable entry of ``directory`` in name order.

    Hidden entries are skipped, as are entries that are not executable.
    Failures only produce warnings. Returns each program run with its exit
    status (negative for a signal, ``None`` if it could not be started).
    """
    base = Path(directory)
    try:
        entries = sorted(p for p in base.iterdir() if not p.name.startswith("."))
    except OSError:
        return []

    results: list[tuple[Path, int | None]] = []
    for path in entries:
        if not os.access(path, os.X_OK):
            continue
        try:
            completed = subprocess.run([str(path)], check=False)
        except OSError as exc:
            _log.warning("execution of %s failed: %s", path, exc)
            results.append((path, None))
            continue

        code = completed.returncode
        if code < 0:
            _log.warning("execution of %s exited abnormally", path)
        elif code:
            _log.warning("execution of %s exited with status code %d", path, code)
        results.append((path, code))
    return results


def get_uptime(path: str | Path = "/proc/uptime") -> float:
    """Return the system uptime in seconds as read from ``path``."""
    try:
        with open(path, encoding="ascii", errors="replace") as handle:
            content = handle.read()
    except OSError as exc:
        raise RuntimeError("unable to determine uptime") from exc
    match = _LEADING_FLOAT.match(content)
    if not match:
        raise RuntimeError("unable to determine uptime")
    return float(match.group(1))