# gluonupdater

An automatic firmware updater for routers. It downloads a signed manifest
from one of the configured mirrors, counts its valid signatures, checks its
contents, decides whether a newer firmware should be installed now, downloads
the image and verifies its SHA-256 checksum, tests it with
`sysupgrade --test` and finally replaces itself with `sysupgrade`.

## Installation

```
pip install .
```

## Command line

```
autoupdater [options] [<mirror> ...]
```

Options:

- `-b`, `--branch BRANCH`: use this branch instead of the configured one.
- `-f`, `--force`: always upgrade to a new version. This ignores the
  rollout probability and whether the updater is enabled at all.
- `-n`, `--no-action`: download and validate as usual, but do not flash the
  new firmware; the image is left in `/tmp/firmware.bin`.
- `--fallback`: upgrade only when the new version's rollout timespan has
  passed by at least 24 hours.
- `--force-version`: skip the version check, so that downgrades are allowed.
- `-h`, `--help`: show the help text.
- `<mirror> ...`: use these mirror URLs instead of the configured ones. They
  are tried in the order given; configured mirrors are tried in random order.

The exit status is 0 after a successful run (including "no new firmware"
and "no update this time") and 1 when no mirror could be used or the
configuration is unusable. A disabled updater exits with 0.

Files used:

- `/etc/config/autoupdater`: UCI configuration. The `settings` section (of
  type `autoupdater`) holds `enabled`, `branch` and optionally
  `version_file`; each `branch` section lists `mirror` and `pubkey` entries
  and the number of `good_signatures` required.
- `/tmp/sysinfo/model`: the device model, from which the image name is
  derived.
- `/var/lock/autoupdater.lock`: lock against concurrent runs; its mtime is
  updated after each successful run.
- `/usr/lib/autoupdater/download.d`, `abort.d`, `upgrade.d`: executable hooks
  run before the download, when an update is abandoned, and before flashing.

## Manifest format

A manifest is a list of lines, then a line holding only `---`, then one
hex-encoded 64-byte signature per line:

```
BRANCH=stable
DATE=2024-01-01 00:00:00+00:00
PRIORITY=7
my-router 1.2.3 <sha256 hex> <size> my-router-1.2.3-sysupgrade.bin
---
<signature hex>
```

`PRIORITY` is the number of days over which the rollout is spread. Lines
longer than 512 characters are rejected.

## Library use

```python
from gluonupdater.version import newer_than
from gluonupdater.manifest import Manifest, LineSplitter
from gluonupdater.hexutil import parse_hex

newer_than("2024.1.1", "2023.2")       # True
parse_hex("00ff", 2)                   # b"\x00\xff"

manifest = Manifest()
splitter = LineSplitter()
for line in splitter.feed(b"BRANCH=stable\nPRIORITY=1\n"):
    manifest.parse_line(line, "stable", "my-router")
manifest.branch_ok                     # True
manifest.digest()                      # SHA-256 of the signed lines
```

Other modules:

- `gluonupdater.platforminfo`: `PlatformInfo` and the functions
  `model_platform`, `board_name_platform`, `subtarget_platform`,
  `nosysupgrade_platform` and `custom_platform`, which read the board name
  and model of a device and derive its image name; `sanitize_image_name`
  and `read_line` helpers.
- `gluonupdater.http`: `get_url` downloads a URL in chunks, follows up to
  10 redirects and checks the length, raising `DownloadError` on failure.
- `gluonupdater.settings`: `parse_uci` reads UCI text, `load_settings` fills
  a `Settings` object from the configuration, raising `SettingsError`.
- `gluonupdater.util`: `run_dir` runs hook directories, `get_uptime` reads
  `/proc/uptime`.
- `gluonupdater.autoupdater`: `parse_args`, `get_probability`,
  `lock_autoupdater`, `autoupdate` (one mirror, with a pluggable signature
  verifier and `Paths`) and `main`.

## Limitations

- The package does not verify ECDSA signatures itself. The command counts
  valid signatures by running the external `ecdsaverify` program once per
  public key; without it, no manifest is accepted. Library users pass their
  own verifier to `autoupdate`.
- The command always derives the image name from the model name in
  `/tmp/sysinfo/model`; other ways of naming the platform are available only
  through the library functions.
- The image is flashed by the external `sysupgrade` program.