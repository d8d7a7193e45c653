"""Command-line updater: fetch a signed manifest, then download and flash firmware."""

from __future__ import annotations

import fcntl
import getopt
import hashlib
import os
import random
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .http import DownloadError, get_url
from .manifest import SEPARATOR, LineSplitter, Manifest, ManifestError
from .platforminfo import model_platform
from .settings import DEFAULT_CONFIG_PATH, Settings, SettingsError, load_settings
from .util import get_uptime, run_dir
from .version import newer_than

Verifier = Callable[[bytes, Sequence[bytes], Sequence[bytes]], int]

UPGRADE_COMPAT_OPTION = "--ignore-minor-compat-version"

USAGE = (
    "\n"
    "Usage: autoupdater [options] [<mirror> ...]\n\n"
    "Possible options are:\n"
    "  -b, --branch BRANCH  Override the branch given in the configuration.\n\n"
    "  -f, --force          Always upgrade to a new version, ignoring its priority\n"
    "                       and whether the autoupdater even is enabled.\n\n"
    "  -h, --help           Show this help.\n\n"
    "  -n, --no-action      Download and validate the manifest as usual, then only\n"
    "                       download but do not flash a new firmware if one is\n"
    "                       available.\n\n"
    "  --fallback           Upgrade if and only if the upgrade timespan of the new\n"
    "                       version has passed for at least 24 hours.\n\n"
    "  --force-version      Skip version check to allow downgrades.\n\n"
    "  <mirror> ...         Override the mirror URLs given in the configuration. If\n"
    "                       specified, these are not shuffled.\n\n"
)


@dataclass(frozen=True)
class Paths:
    """File system locations the updater works with."""

    download_d_dir: str | Path = "/usr/lib/autoupdater/download.d"
    abort_d_dir: str | Path = "/usr/lib/autoupdater/abort.d"
    upgrade_d_dir: str | Path = "/usr/lib/autoupdater/upgrade.d"
    lockfile: str | Path = "/var/lock/autoupdater.lock"
    firmware_path: str | Path = "/tmp/firmware.bin"
    sysupgrade_path: str | Path = "/sbin/sysupgrade"
    config_path: str | Path = DEFAULT_CONFIG_PATH


class _Interrupted(Exception):
    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum


def _err(message: str) -> None:
    print(f"autoupdater: {message}", file=sys.stderr, flush=True)


def _usage() -> None:
    sys.stderr.write(USAGE)
    sys.stderr.flush()


def parse_args(argv: Sequence[str]) -> Settings:
    """Build settings from command-line arguments.

    ``--help`` exits with status 0, an unknown option with status 1.
    """
    try:
        options, mirrors = getopt.gnu_getopt(
            list(argv),
            "b:fhn",
            ["branch=", "force", "fallback", "no-action", "force-version", "help"],
        )
    except getopt.GetoptError:
        _usage()
        raise SystemExit(1) from None

    settings = Settings()
    for option, value in options:
        if option in ("-b", "--branch"):
            settings.branch = value
        elif option in ("-f", "--force"):
            settings.force = True
        elif option == "--fallback":
            settings.fallback = True
        elif option in ("-h", "--help"):
            _usage()
            raise SystemExit(0)
        elif option in ("-n", "--no-action"):
            settings.no_action = True
        elif option == "--force-version":
            settings.force_version = True

    settings.mirrors = list(mirrors)
    return settings


def get_probability(
    date: int,
    priority: float,
    fallback: bool = False,
    now: float | None = None,
    uptime: float | None = None,
) -> float:
    """Probability of upgrading now to a release published at ``date``.

    ``priority`` is the number of days over which the rollout is spread. The
    uptime is only consulted (and read from the system if not given) when the
    release date lies in the future.
    """
    seconds = priority * 86400
    if now is None:
        now = time.time()
    diff = int(now) - date

    if diff < 0:
        # Either the manifest date or our clock is wrong; assume the latter.
        _err("warning: clock seems to be incorrect.")
        if uptime is None:
            uptime = get_uptime()
        if uptime < 600:
            # Probably no time from NTP yet; wait for the next run.
            return 0.0
        return 0.75**priority

    if fallback:
        return 1.0 if diff >= seconds + 86400 else 0.0
    if diff >= seconds:
        return 1.0

    x = diff / seconds
    # Smooth step: 0 at 0, 1 at 1, flat at both ends.
    return 3 * x * x - 2 * x * x * x


def lock_autoupdater(path: str | Path) -> int:
    """Take the exclusive updater lock and return its file descriptor."""
    try:
        fd = os.open(path, os.O_CREAT | os.O_RDONLY | os.O_CLOEXEC, 0o600)
    except OSError as exc:
        raise RuntimeError(f"unable to open lock file: {exc.strerror}") from exc
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        os.close(fd)
        raise RuntimeError("another instance is currently running") from exc
    return fd


def _fetch_manifest(
    url: str, branch: str, image_name: str, firmware_version: str | None
) -> tuple[Manifest, bytes]:
    manifest = Manifest()
    signed = bytearray()
    splitter = LineSplitter()
    overflow = False

    def on_data(chunk: bytes) -> None:
        nonlocal overflow
        if overflow:
            return
        try:
            for line in splitter.feed(chunk):
                if not manifest.sep_found and line != SEPARATOR:
                    signed.extend(line.encode("utf-8", "surrogateescape") + b"\n")
                manifest.parse_line(line, branch, image_name)
        except ManifestError as exc:
            overflow = True
            _err(f"error: {exc}")

    get_url(url, on_data, -1, firmware_version)
    return manifest, bytes(signed)


def _download_image(url: str, size: int, firmware_version: str | None, out) -> bytes:
    digest = hashlib.sha256()
    received = 0

    def on_data(chunk: bytes) -> None:
        nonlocal received
        received += len(chunk)
        sys.stdout.write(f"\rDownloading image: {received // 1024: 5d} / {size // 1024} KiB")
        sys.stdout.flush()
        if out.write(chunk) != len(chunk):
            raise OSError("short write")
        digest.update(chunk)

    try:
        get_url(url, on_data, size, firmware_version)
    finally:
        print(flush=True)
    return digest.digest()


def _abort(paths: Paths) -> bool:
    try:
        os.unlink(paths.firmware_path)
    except FileNotFoundError:
        pass
    run_dir(paths.abort_d_dir)
    return False


def _update_from(
    mirror: str,
    settings: Settings,
    image_name: str,
    verifier: Verifier,
    paths: Paths,
) -> bool:
    branch = settings.branch
    manifest_url = f"{mirror}/{branch}.manifest"
    print(f"Retrieving manifest from {manifest_url} ...", flush=True)

    try:
        manifest, signed = _fetch_manifest(manifest_url, branch, image_name, settings.old_version)
    except DownloadError as exc:
        _err(f"warning: error downloading manifest: {exc}")
        if exc.signal:
            raise _Interrupted(exc.signal) from exc
        return False

    good = verifier(signed, manifest.signatures, settings.pubkeys)
    if good < settings.good_signatures:
        _err(
            f"warning: manifest {manifest_url} only carried {good} valid signatures, "
            f"{settings.good_signatures} are required"
        )
        return False

    if not manifest.date_ok or not manifest.priority_ok:
        _err("warning: manifest is missing mandatory fields")
        return False
    if not manifest.branch_ok:
        _err(f"warning: manifest {manifest_url} is not for branch {branch}")
        return False
    if not manifest.model_ok:
        _err(f"warning: no matching firmware found (model {image_name})")
        return False

    if not newer_than(manifest.version, settings.old_version) and not settings.force_version:
        print("No new firmware available.", flush=True)
        return True

    if not settings.force and random.random() >= get_probability(
        manifest.date, manifest.priority, settings.fallback
    ):
        _err("info: no autoupdate this time. Use -f to override.")
        return True

    run_dir(paths.download_d_dir)

    firmware = os.fspath(paths.firmware_path)
    try:
        fd = os.open(firmware, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    except OSError:
        _err(f"error: failed opening firmware file {firmware}")
        return _abort(paths)

    image_url = f"{mirror}/{manifest.image_filename}"
    interrupted = 0
    image_hash: bytes | None = None
    with os.fdopen(fd, "wb", buffering=0) as out:
        try:
            image_hash = _download_image(image_url, manifest.imagesize, settings.old_version, out)
        except DownloadError as exc:
            _err(f"warning: error downloading image: {exc}")
            interrupted = exc.signal
        except OSError as exc:
            _err(f"error: downloading firmware image failed: {exc.strerror or exc}")

    if image_hash is None:
        _abort(paths)
        if interrupted:
            raise _Interrupted(interrupted)
        return False

    if image_hash != manifest.image_hash:
        _err("warning: invalid image checksum!")
        return _abort(paths)

    sysupgrade = os.fspath(paths.sysupgrade_path)
    sys.stdout.flush()
    try:
        code = subprocess.run(
            [sysupgrade, "--test", UPGRADE_COMPAT_OPTION, firmware], check=False
        ).returncode
    except OSError:
        code = 127
    if code != 0:
        _err(f"warning: sysupgrade --test failed with return code: {code}")
        return _abort(paths)

    if settings.no_action:
        print(
            "autoupdater: info: Aborting successful upgrade because simulation was requested.\n"
            f"autoupdater: info: You can find the firmware file in {firmware}",
            flush=True,
        )
        run_dir(paths.abort_d_dir)
        return True

    run_dir(paths.upgrade_d_dir)
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        os.execl(sysupgrade, sysupgrade, UPGRADE_COMPAT_OPTION, firmware)
    except OSError:
        pass
    _err("error: failed to call sysupgrade")
    return _abort(paths)


def autoupdate(
    mirror: str,
    settings: Settings,
    image_name: str,
    verifier: Verifier,
    paths: Paths | None = None,
) -> bool:
    """Try one mirror; return True if the run counts as successful.

    ``verifier(data, signatures, pubkeys)`` returns how many of the public
    keys carry a valid signature over the signed part of the manifest. On a
    successful upgrade this call does not return: sysupgrade replaces the
    process. A download interrupted by a signal re-raises that signal.
    """
    if paths is None:
        paths = Paths()
    try:
        return _update_from(mirror, settings, image_name, verifier, paths)
    except _Interrupted as exc:
        signal.signal(exc.signum, signal.SIG_DFL)
        signal.raise_signal(exc.signum)
        return False


def _ecdsaverify(data: bytes, signatures: Sequence[bytes], pubkeys: Sequence[bytes]) -> int:
    """Count public keys with a valid signature, using the ecdsaverify tool."""
    if not signatures:
        return 0
    signature_args = [arg for sig in signatures for arg in ("-s", sig.hex())]
    good = 0
    for key in pubkeys:
        try:
            result = subprocess.run(
                ["ecdsaverify", "-p", key.hex(), *signature_args],
                input=data,
                capture_output=True,
                check=False,
            )
        except OSError:
            _err("warning: unable to run ecdsaverify")
            return 0
        if result.returncode == 0:
            good += 1
    return good


def main(argv: Sequence[str] | None = None) -> int:
    """Run the updater; return the process exit status."""
    settings = parse_args(sys.argv[1:] if argv is None else argv)
    paths = Paths()

    image_name = model_platform("default").image_name
    if not image_name:
        _err("error: unsupported hardware model")
        return 1

    external_mirrors = bool(settings.mirrors)
    try:
        load_settings(settings, paths.config_path)
    except SettingsError as exc:
        if exc.exit_code == 0:
            print(exc, file=sys.stderr)
        else:
            _err(f"error: {exc}")
        return exc.exit_code

    try:
        lock_fd = lock_autoupdater(paths.lockfile)
    except RuntimeError as exc:
        _err(f"error: {exc}")
        return 1

    try:
        # Keep the lock held across the exec of sysupgrade; subprocesses
        # started on the way close it because they do not inherit it.
        os.set_inheritable(lock_fd, True)
        mirrors = list(settings.mirrors)
        while mirrors:
            index = 0 if external_mirrors else random.randrange(len(mirrors))
            mirror = mirrors.pop(index)
            if autoupdate(mirror, settings, image_name, _ecdsaverify, paths):
                # The lock file's mtime records the last successful run.
                os.utime(lock_fd)
                return 0
        _err("error: no usable mirror found")
        return 1
    except RuntimeError as exc:
        _err(f"error: {exc}")
        return 1
    finally:
        os.close(lock_fd)