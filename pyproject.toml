[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gluonupdater"
version = "1.0.0"
description = "Firmware autoupdater: fetches signed manifests from mirrors, downloads and verifies images, and hands them to sysupgrade"
requires-python = ">=3.10"
dependencies = []
keywords = ["firmware", "autoupdater", "sysupgrade", "manifest", "uci"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
autoupdater = "gluonupdater.autoupdater:main"

[tool.hatch.build.targets.wheel]
packages = ["gluonupdater"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
