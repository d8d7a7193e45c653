"""Discovery of the platform the firmware runs on."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_SYSINFO_DIR = "/tmp/sysinfo"


@dataclass(frozen=True)
class PlatformInfo:
    """Target, board and image identification of a device."""

    target: str
    subtarget: str | None = None
    board_name: str | None = None
    model: str | None = None
    image_name: str | None = None


def read_line(path: str | Path) -> str | None:
    """Return the first line of a file without its newline.

    ``None`` is returned if the file cannot be opened or holds nothing.
    """
    try:
        with open(path, encoding="utf-8", errors="surrogateescape", newline="") as handle:
            line = handle.readline()
    except OSError:
        return None
    if not line:
        return None
    return line[:-1] if line.endswith("\n") else line


def _is_alnum(char: str) -> bool:
    return char.isascii() and char.isalnum()


def sanitize_image_name(name: str | None) -> str | None:
    """Turn a board or model name into a lower-case image name.

    Runs of characters other than ASCII letters, digits and ``+`` become a
    single ``-`` (or ``.`` if the run held only dots); separators at the end
    are dropped.
    """
    if name is None:
        return None

    out: list[str] = []
    dot = dash = False
    for char in name:
        if char == ".":
            dot = True
            continue
        if char != "+" and not _is_alnum(char):
            dash = True
            continue
        if dash:
            out.append("-")
        elif dot:
            out.append(".")
        dash = dot = False
        out.append(char.lower())
    return "".join(out)


def _sysinfo(sysinfo_dir: str | Path, name: str) -> str | None:
    return read_line(Path(sysinfo_dir) / name)


def model_platform(
    target: str,
    subtarget: str | None = None,
    sysinfo_dir: str | Path = DEFAULT_SYSINFO_DIR,
) -> PlatformInfo:
    """Platform whose image name is derived from the model name."""
    board_name = _sysinfo(sysinfo_dir, "board_name")
    model = _sysinfo(sysinfo_dir, "model")
    return PlatformInfo(
        target=target,
        subtarget=subtarget,
        board_name=board_name,
        model=model,
        image_name=sanitize_image_name(model),
    )


def board_name_platform(
    target: str,
    subtarget: str | None = None,
    sysinfo_dir: str | Path = DEFAULT_SYSINFO_DIR,
) -> PlatformInfo:
    """Platform whose image name is derived from the board name."""
    board_name = _sysinfo(sysinfo_dir, "board_name")
    model = _sysinfo(sysinfo_dir, "model")
    return PlatformInfo(
        target=target,
        subtarget=subtarget,
        board_name=board_name,
        model=model,
        image_name=sanitize_image_name(board_name),
    )


def subtarget_platform(
    target: str,
    subtarget: str | None = None,
    sysinfo_dir: str | Path = DEFAULT_SYSINFO_DIR,
) -> PlatformInfo:
    """Platform with one image per subtarget, named ``<target>-<subtarget>``."""
    return PlatformInfo(
        target=target,
        subtarget=subtarget,
        board_name=None,
        model=_sysinfo(sysinfo_dir, "model"),
        image_name=f"{target}-{subtarget}",
    )


def nosysupgrade_platform(
    target: str,
    subtarget: str | None = None,
    sysinfo_dir: str | Path = DEFAULT_SYSINFO_DIR,
) -> PlatformInfo:
    """Platform that cannot be upgraded: it has no image name."""
    return PlatformInfo(
        target=target,
        subtarget=subtarget,
        board_name=_sysinfo(sysinfo_dir, "board_name"),
        model=_sysinfo(sysinfo_dir, "model"),
        image_name=None,
    )


def custom_platform(
    target: str,
    subtarget: str | None,
    board_name_path: str | Path,
    model_path: str | Path,
    image_name_path: str | Path,
) -> PlatformInfo:
    """Platform whose names are each read from a file of their own."""
    return PlatformInfo(
        target=target,
        subtarget=subtarget,
        board_name=read_line(board_name_path),
        model=read_line(model_path),
        image_name=read_line(image_name_path),
    )