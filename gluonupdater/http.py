"""HTTP downloads with redirect, status and length checking."""

from __future__ import annotations

import http.client
import re
import signal
import sys
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Iterator
from contextlib import contextmanager

TIMEOUT = 300.0
USER_AGENT = "Gluon Autoupdater (using libuclient)"
MAX_REDIRECTS = 10
CHUNK_SIZE = 1024

ERROR_CONNECT = 1
ERROR_TIMEDOUT = 2
ERROR_REDIRECT_FAILED = 32
ERROR_TOO_MANY_REDIRECTS = 33
ERROR_CONNECTION_RESET_PREMATURELY = 34
ERROR_SIZE_MISMATCH = 35
ERROR_STATUS_CODE = 1024
ERROR_INTERRUPTED = 2048

_REDIRECT_CODES = frozenset({301, 302, 307})
_CONTENT_LENGTH = re.compile(r"\s*\+?(\d+)")

_MESSAGES = {
    ERROR_CONNECT: "Connection failed",
    ERROR_TIMEDOUT: "Connection timed out",
    ERROR_REDIRECT_FAILED: "Failed to redirect",
    ERROR_TOO_MANY_REDIRECTS: "Too many redirects",
    ERROR_CONNECTION_RESET_PREMATURELY: "Connection reset prematurely",
    ERROR_SIZE_MISMATCH: "Incorrect file size",
}


def error_message(code: int) -> str:
    """Describe a download error code."""
    if code & ERROR_STATUS_CODE:
        return f"HTTP error {code & ~ERROR_STATUS_CODE}"
    if code & ERROR_INTERRUPTED:
        return f"Interrupted by signal {code & ~ERROR_INTERRUPTED}"
    return _MESSAGES.get(code, "Unknown error")


def interrupted_signal(code: int) -> int:
    """Return the signal that interrupted a download, or 0 if none did."""
    if code & ERROR_INTERRUPTED:
        return code & ~ERROR_INTERRUPTED
    return 0


class DownloadError(Exception):
    """A download failed; ``code`` tells why."""

    def __init__(self, code: int) -> None:
        super().__init__(error_message(code))
        self.code = code

    @property
    def signal(self) -> int:
        """The interrupting signal, or 0."""
        return interrupted_signal(self.code)


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: D401
        return None


_OPENER = urllib.request.build_opener(urllib.request.ProxyHandler({}), _NoRedirect)


@contextmanager
def _network() -> Iterator[None]:
    """Turn failures of the transport into ``DownloadError``."""
    try:
        yield
    except urllib.error.HTTPError:
        raise
    except KeyboardInterrupt:
        raise DownloadError(ERROR_INTERRUPTED | signal.SIGINT) from None
    except TimeoutError as exc:
        raise DownloadError(ERROR_TIMEDOUT) from exc
    except urllib.error.URLError as exc:
        code = ERROR_TIMEDOUT if isinstance(exc.reason, TimeoutError) else ERROR_CONNECT
        raise DownloadError(code) from exc
    except http.client.IncompleteRead as exc:
        raise DownloadError(ERROR_CONNECTION_RESET_PREMATURELY) from exc
    except (http.client.HTTPException, OSError, ValueError) as exc:
        raise DownloadError(ERROR_CONNECT) from exc


def _open(url: str, headers: dict[str, str], timeout: float):
    retries = 0
    while True:
        request = urllib.request.Request(url, headers=headers, method="GET")
        try:
            with _network():
                return _OPENER.open(request, timeout=timeout)
        except urllib.error.HTTPError as exc:
            status = exc.code
            location = exc.headers.get("Location") if exc.headers is not None else None
            exc.close()

        if status in _REDIRECT_CODES and retries < MAX_REDIRECTS and location:
            target = urllib.parse.urljoin(url, location)
            if urllib.parse.urlsplit(target).scheme not in ("http", "https"):
                raise DownloadError(ERROR_REDIRECT_FAILED)
            url = target
            retries += 1
            continue
        if status in _REDIRECT_CODES:
            raise DownloadError(ERROR_TOO_MANY_REDIRECTS)
        raise DownloadError(ERROR_STATUS_CODE | status)


def _content_length(value: str | None) -> int | None:
    if value is None:
        return None
    match = _CONTENT_LENGTH.fullmatch(value)
    if not match:
        return None
    length = int(match.group(1))
    return length if length <= sys.maxsize else None


def get_url(
    url: str,
    on_data: Callable[[bytes], object],
    expected_length: int = -1,
    firmware_version: str | None = None,
    timeout: float = TIMEOUT,
) -> int:
    """Download ``url``, handing each received chunk to ``on_data``.

    A negative ``expected_length`` means the size is not known in advance.
    Returns the number of bytes received; raises ``DownloadError`` on failure.
    """
    headers = {"User-Agent": USER_AGENT}
    if firmware_version is not None:
        headers["X-Firmware-Version"] = firmware_version

    response = _open(url, headers, timeout)
    with response:
        if response.status != 200:
            raise DownloadError(ERROR_STATUS_CODE | response.status)

        length = expected_length
        declared = _content_length(response.headers.get("Content-Length"))
        if declared is not None:
            if length >= 0 and length != declared:
                raise DownloadError(ERROR_SIZE_MISMATCH)
            length = declared

        downloaded = 0
        while True:
            with _network():
                chunk = response.read(CHUNK_SIZE)
            if not chunk:
                break
            downloaded += len(chunk)
            if length >= 0 and downloaded > length:
                raise DownloadError(ERROR_SIZE_MISMATCH)
            on_data(chunk)

        if declared is not None and downloaded < declared:
            raise DownloadError(ERROR_CONNECTION_RESET_PREMATURELY)
        if length >= 0 and downloaded != length:
            raise DownloadError(ERROR_SIZE_MISMATCH)
    return downloaded