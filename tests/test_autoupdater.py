import functools
import hashlib
import os
import threading
from datetime import datetime, timedelta, timezone
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer

import pytest

from gluonupdater.autoupdater import (
    Paths,
    autoupdate,
    get_probability,
    lock_autoupdater,
    main,
    parse_args,
)
from gluonupdater.settings import Settings

IMAGE = b"firmware image contents" * 100
SIGNATURE_LINE = "ab" * 64


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        pass


@pytest.fixture
def server(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    handler = functools.partial(_QuietHandler, directory=str(root))
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield root, f"http://127.0.0.1:{httpd.server_address[1]}"
    httpd.shutdown()
    httpd.server_close()


def _script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)


def make_paths(tmp_path, sysupgrade_code=0):
    hooks = tmp_path / "hooks"
    for name in ("download", "abort", "upgrade"):
        directory = hooks / f"{name}.d"
        directory.mkdir(parents=True)
        _script(directory / "10-mark", f'touch "{hooks / (name + ".marker")}"\n')
    _script(
        tmp_path / "sysupgrade",
        f'echo "$@" >> "{tmp_path / "sysupgrade.log"}"\nexit {sysupgrade_code}\n',
    )
    return Paths(
        download_d_dir=hooks / "download.d",
        abort_d_dir=hooks / "abort.d",
        upgrade_d_dir=hooks / "upgrade.d",
        lockfile=tmp_path / "lock",
        firmware_path=tmp_path / "firmware.bin",
        sysupgrade_path=tmp_path / "sysupgrade",
        config_path=tmp_path / "config",
    )


def marker(tmp_path, name):
    return tmp_path / "hooks" / f"{name}.marker"


def manifest_text(
    version="2.0",
    model="test-device",
    image=IMAGE,
    branch="stable",
    date="2020-01-01 00:00:00+00:00",
    priority="0",
    filename="image.bin",
):
    digest = hashlib.sha256(image).hexdigest()
    return (
        f"BRANCH={branch}\nDATE={date}\nPRIORITY={priority}\n"
        f"{model} {version} {digest} {len(IMAGE)} {filename}\n"
        f"---\n{SIGNATURE_LINE}\n"
    )


def publish(root, text, branch="stable"):
    (root / f"{branch}.manifest").write_text(text)
    (root / "image.bin").write_bytes(IMAGE)


def make_settings(**kwargs):
    kwargs.setdefault("branch", "stable")
    kwargs.setdefault("good_signatures", 1)
    kwargs.setdefault("old_version", "1.0")
    kwargs.setdefault("pubkeys", [bytes(32)])
    return Settings(**kwargs)


def count_signatures(data, signatures, pubkeys):
    return len(signatures)


def test_parse_args_flags_and_mirrors():
    settings = parse_args(
        ["-f", "-n", "--fallback", "--force-version", "-b", "beta", "http://a", "http://b"]
    )
    assert settings.force and settings.no_action
    assert settings.fallback and settings.force_version
    assert settings.branch == "beta"
    assert settings.mirrors == ["http://a", "http://b"]


def test_parse_args_permuted_long_branch():
    settings = parse_args(["http://m", "--branch=x"])
    assert settings.branch == "x"
    assert settings.mirrors == ["http://m"]
    assert not settings.force


def test_parse_args_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as info:
        parse_args(["--help"])
    assert info.value.code == 0
    assert "Usage: autoupdater [options] [<mirror> ...]" in capsys.readouterr().err


def test_parse_args_unknown_option_exits_one():
    with pytest.raises(SystemExit) as info:
        parse_args(["--bogus"])
    assert info.value.code == 1


def test_main_unknown_option_exits_one():
    with pytest.raises(SystemExit) as info:
        main(["-x"])
    assert info.value.code == 1


def test_probability_after_timespan_is_one():
    assert get_probability(1000, 1.0, now=1000 + 86400) == 1.0


def test_probability_is_symmetric_smooth_step():
    now = 10_000_000
    early = get_probability(now - 86400 // 4, 1.0, now=now)
    late = get_probability(now - 3 * 86400 // 4, 1.0, now=now)
    assert 0.0 < early < late < 1.0
    assert early + late == pytest.approx(1.0)


def test_probability_fallback_waits_extra_day():
    now = 10_000_000
    assert get_probability(now - 2 * 86400 + 1, 1.0, fallback=True, now=now) == 0.0
    assert get_probability(now - 2 * 86400, 1.0, fallback=True, now=now) == 1.0


def test_probability_wrong_clock(capsys):
    now = 10_000
    assert get_probability(now + 100, 0.0, now=now, uptime=10.0) == 0.0
    assert get_probability(now + 100, 0.0, now=now, uptime=1000.0) == 1.0
    high = get_probability(now + 100, 1.0, now=now, uptime=1000.0)
    higher = get_probability(now + 100, 2.0, now=now, uptime=1000.0)
    assert higher < high < 1.0
    assert "clock seems to be incorrect" in capsys.readouterr().err


def test_lock_is_exclusive(tmp_path):
    path = tmp_path / "autoupdater.lock"
    fd = lock_autoupdater(path)
    try:
        with pytest.raises(RuntimeError, match="another instance"):
            lock_autoupdater(path)
    finally:
        os.close(fd)
    again = lock_autoupdater(path)
    os.close(again)
    assert path.exists()


def test_lock_open_failure(tmp_path):
    with pytest.raises(RuntimeError, match="unable to open lock file"):
        lock_autoupdater(tmp_path / "missing" / "lock")


def test_no_new_firmware(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text(version="1.0"))
    paths = make_paths(tmp_path)
    assert autoupdate(url, make_settings(), "test-device", count_signatures, paths) is True
    assert "No new firmware available." in capsys.readouterr().out
    assert not marker(tmp_path, "download").exists()


def test_verifier_gets_signed_part(tmp_path, server, capsys):
    root, url = server
    text = manifest_text(version="1.0")
    publish(root, text)
    seen = {}

    def verifier(data, signatures, pubkeys):
        seen["data"] = data
        seen["signatures"] = list(signatures)
        seen["pubkeys"] = list(pubkeys)
        return 1

    result = autoupdate(url, make_settings(), "test-device", verifier, make_paths(tmp_path))
    assert result is True
    assert "No new firmware available." in capsys.readouterr().out
    assert seen["data"] == text.split("---\n")[0].encode()
    assert seen["signatures"] == [bytes.fromhex(SIGNATURE_LINE)]
    assert seen["pubkeys"] == [bytes(32)]


def test_too_few_signatures(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text())
    result = autoupdate(url, make_settings(), "test-device", lambda *a: 0, make_paths(tmp_path))
    assert result is False
    assert "only carried 0 valid signatures, 1 are required" in capsys.readouterr().err


def test_wrong_branch(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text(branch="beta"))
    result = autoupdate(url, make_settings(), "test-device", count_signatures, make_paths(tmp_path))
    assert result is False
    assert "is not for branch stable" in capsys.readouterr().err


def test_wrong_model(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text())
    result = autoupdate(url, make_settings(), "other", count_signatures, make_paths(tmp_path))
    assert result is False
    assert "no matching firmware found (model other)" in capsys.readouterr().err


def test_missing_manifest(tmp_path, server, capsys):
    _, url = server
    result = autoupdate(url, make_settings(), "test-device", count_signatures, make_paths(tmp_path))
    assert result is False
    assert "HTTP error 404" in capsys.readouterr().err


def test_simulated_upgrade_downloads_image(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text())
    paths = make_paths(tmp_path)
    settings = make_settings(no_action=True)
    assert autoupdate(url, settings, "test-device", count_signatures, paths) is True
    assert (tmp_path / "firmware.bin").read_bytes() == IMAGE
    assert marker(tmp_path, "download").exists()
    assert marker(tmp_path, "abort").exists()
    assert not marker(tmp_path, "upgrade").exists()
    log = (tmp_path / "sysupgrade.log").read_text()
    assert log.strip() == f"--test --ignore-minor-compat-version {tmp_path / 'firmware.bin'}"
    assert "simulation was requested" in capsys.readouterr().out


def test_force_version_allows_same_version(tmp_path, server):
    root, url = server
    publish(root, manifest_text(version="1.0"))
    settings = make_settings(no_action=True, force_version=True)
    paths = make_paths(tmp_path)
    assert autoupdate(url, settings, "test-device", count_signatures, paths) is True
    assert (tmp_path / "firmware.bin").read_bytes() == IMAGE


def test_invalid_checksum_removes_image(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text(image=b"something else"))
    paths = make_paths(tmp_path)
    result = autoupdate(url, make_settings(no_action=True), "test-device", count_signatures, paths)
    assert result is False
    assert not (tmp_path / "firmware.bin").exists()
    assert marker(tmp_path, "abort").exists()
    assert "invalid image checksum!" in capsys.readouterr().err


def test_failed_sysupgrade_test(tmp_path, server, capsys):
    root, url = server
    publish(root, manifest_text())
    paths = make_paths(tmp_path, sysupgrade_code=1)
    result = autoupdate(url, make_settings(no_action=True), "test-device", count_signatures, paths)
    assert result is False
    assert not (tmp_path / "firmware.bin").exists()
    assert "sysupgrade --test failed with return code: 1" in capsys.readouterr().err


def test_low_probability_skips_update(tmp_path, server, capsys):
    root, url = server
    recent = datetime.now(timezone.utc) - timedelta(seconds=1)
    publish(
        root,
        manifest_text(date=recent.strftime("%Y-%m-%d %H:%M:%S+00:00"), priority="100000"),
    )
    paths = make_paths(tmp_path)
    assert autoupdate(url, make_settings(), "test-device", count_signatures, paths) is True
    assert "no autoupdate this time" in capsys.readouterr().err
    assert not marker(tmp_path, "download").exists()