"""Loading of updater settings from a UCI configuration file."""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from .hexutil import parse_hex
from .platforminfo import read_line

DEFAULT_CONFIG_PATH = "/etc/config/autoupdater"
PUBKEY_SIZE = 32

_ULONG_MAX = 2**64 - 1
_NAME = re.compile(r"[A-Za-z0-9_]+")
_NUMBER = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")

_log = logging.getLogger(__name__)

UciSections = dict[str, dict[str, "str | list[str]"]]


class SettingsError(Exception):
    """The settings cannot be used; ``exit_code`` is what the program exits with."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class Settings:
    """Options from the command line and the configuration."""

    force: bool = False
    fallback: bool = False
    no_action: bool = False
    force_version: bool = False
    branch: str | None = None
    good_signatures: int = 0
    old_version: str | None = None
    mirrors: list[str] = field(default_factory=list)
    pubkeys: list[bytes] = field(default_factory=list)


def parse_uci(text: str) -> UciSections:
    """Parse UCI configuration text into sections keyed by name.

    Each section maps option names to a string or, for lists, a list of
    strings, and holds its type under ``.type`` and its name under ``.name``.
    Unnamed sections are named ``@<type>[<index>]``. Lines that cannot be
    parsed are skipped.
    """
    sections: UciSections = {}
    counts: dict[str, int] = {}
    current: dict[str, str | list[str]] | None = None

    for line in text.splitlines():
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError:
            continue
        if not tokens:
            continue
        keyword, *args = tokens

        if keyword == "config":
            if not 1 <= len(args) <= 2 or (len(args) == 2 and not _NAME.fullmatch(args[1])):
                current = None
                continue
            section_type = args[0]
            index = counts.get(section_type, 0)
            counts[section_type] = index + 1
            name = args[1] if len(args) == 2 else f"@{section_type}[{index}]"
            current = sections.setdefault(name, {})
            current[".type"] = section_type
            current[".name"] = name
        elif keyword in ("option", "list"):
            if current is None or len(args) != 2 or not _NAME.fullmatch(args[0]):
                continue
            key, value = args
            if keyword == "option":
                current[key] = value
            else:
                existing = current.get(key)
                if isinstance(existing, list):
                    existing.append(value)
                else:
                    current[key] = [value]

    return sections


def _string(section: dict[str, str | list[str]], option: str) -> str | None:
    value = section.get(option)
    return value if isinstance(value, str) else None


def _parse_unsigned(text: str) -> int | None:
    match = _NUMBER.fullmatch(text)
    if not match:
        return None
    digits = match.group(2)
    if digits[:2] in ("0x", "0X"):
        value = int(digits[2:], 16)
    elif digits.startswith("0"):
        value = int(digits, 8)
    else:
        value = int(digits)
    value = min(value, _ULONG_MAX)
    if match.group(1) == "-":
        value = -value % (_ULONG_MAX + 1)
    return value


def _positive_number(section: dict[str, str | list[str]], option: str) -> int:
    text = _string(section, option)
    if text is None:
        raise SettingsError(f"unable to load option '{option}'")
    value = _parse_unsigned(text)
    if not value:
        raise SettingsError(f"invalid value for option '{option}'")
    return value


def _string_list(section: dict[str, str | list[str]], option: str) -> list[str]:
    if option not in section:
        raise SettingsError(f"unable to load option '{option}'")
    value = section[option]
    if not isinstance(value, list):
        raise SettingsError(f"invalid value for option '{option}'")
    return list(value)


def load_settings(
    settings: Settings, config_path: str | Path = DEFAULT_CONFIG_PATH
) -> Settings:
    """Complete ``settings`` from the configuration file and return it.

    Values already given (branch, mirrors) are kept. Invalid public keys are
    skipped with a warning; every other problem raises ``SettingsError``.
    """
    try:
        text = Path(config_path).read_text(encoding="utf-8", errors="surrogateescape")
    except OSError as exc:
        raise SettingsError("unable to load UCI package") from exc
    sections = parse_uci(text)

    section = sections.get("settings")
    if section is None or section.get(".type") != "autoupdater":
        raise SettingsError("unable to load UCI settings")

    if _string(section, "enabled") != "1" and not settings.force:
        raise SettingsError("autoupdater is disabled", exit_code=0)

    version_file = _string(section, "version_file")
    if version_file is not None:
        settings.old_version = read_line(version_file)

    if settings.branch is None:
        settings.branch = _string(section, "branch")
    if settings.branch is None:
        raise SettingsError("no branch given in settings or command line")

    branch = sections.get(settings.branch)
    if branch is None or branch.get(".type") != "branch":
        raise SettingsError(
            f"unable to load branch configuration for branch '{settings.branch}'"
        )

    settings.good_signatures = _positive_number(branch, "good_signatures")
    if not settings.mirrors:
        settings.mirrors = _string_list(branch, "mirror")

    pubkeys = []
    for text_key in _string_list(branch, "pubkey"):
        try:
            pubkeys.append(parse_hex(text_key, PUBKEY_SIZE))
        except ValueError:
            _log.warning("ignoring invalid public key %s", text_key)
    settings.pubkeys = pubkeys
    return settings