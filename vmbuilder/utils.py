"""Utility functions for vmbuilder."""

from __future__ import annotations

import hashlib
import http.client
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vmbuilder.constants import (
    _LOG_VERBOSE,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT,
    TRUTHY,
    USER_AGENT,
)
from vmbuilder.exceptions import BuildError, CancellationRequested

ProgressCallback = Callable[[int, Optional[int]], None]


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CancellationRequested()


def wait_or_cancel(cancel: Optional[threading.Event], delay: float) -> None:
    """Sleep for ``delay`` seconds, raising CancellationRequested if cancelled meanwhile."""
    if cancel is None:
        time.sleep(delay)
    elif cancel.wait(delay):
        raise CancellationRequested()


def _content_length(response) -> Optional[int]:
    raw = response.headers.get("Content-Length")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        log("WARN", f"Ignoring malformed Content-Length header: {raw!r}")
        return None


def file_digest(path: Path, checksum_type: str, cancel: Optional[threading.Event] = None) -> str:
    """Return the lower-case hex digest of a local file."""
    hasher = hashlib.new(checksum_type)
    with open(path, "rb") as f:
        while True:
            check_cancel(cancel)
            chunk = f.read(DOWNLOAD_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest().lower()


def download_file(
    url: str,
    destination: Path,
    checksum_type: str,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressCallback] = None,
) -> str:
    """Stream ``url`` into ``destination`` and return the digest of the written bytes.

    The destination is removed if the transfer fails or is cancelled.
    """
    log("DEBUG", f"Downloading {url} -> {destination}")
    check_cancel(cancel)
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        response = urlopen(req, timeout=DOWNLOAD_TIMEOUT)
    except HTTPError as exc:
        raise BuildError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise BuildError(f"Failed to download {url}: {exc.reason}")

    hasher = hashlib.new(checksum_type)
    downloaded = 0
    total_bytes: Optional[int] = None

    try:
        total_bytes = _content_length(response)
        with open(destination, "wb") as out:
            while True:
                check_cancel(cancel)
                try:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                except (OSError, http.client.HTTPException) as exc:
                    raise BuildError(f"Connection lost while downloading {url}: {exc}")
                if not chunk:
                    break
                out.write(chunk)
                hasher.update(chunk)
                downloaded += len(chunk)
                if progress is not None:
                    progress(downloaded, total_bytes)
    except BaseException:
        destination.unlink(missing_ok=True)
        raise
    finally:
        response.close()

    if total_bytes is not None and downloaded != total_bytes:
        destination.unlink(missing_ok=True)
        raise BuildError(f"Incomplete download of {url}: got {downloaded} of {total_bytes} bytes")
    return hasher.hexdigest().lower()


def download_file_with_retry(
    url: str,
    destination: Path,
    checksum_type: str,
    retries: int = 3,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressCallback] = None,
) -> str:
    """Retry ``download_file`` on transfer errors with exponential backoff."""
    attempt = 1
    while True:
        try:
            return download_file(url, destination, checksum_type, cancel=cancel, progress=progress)
        except BuildError as exc:
            if attempt >= retries:
                raise
            delay = min(2**attempt, 30)
            log("WARN", f"{exc} (attempt {attempt}/{retries}); retrying in {delay}s")
            wait_or_cancel(cancel, delay)
            attempt += 1
