"""Download cache shared by concurrent builds."""

from __future__ import annotations

import fcntl
import hashlib
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional
from urllib.parse import urlparse

from vmbuilder.constants import CACHE_DIR
from vmbuilder.utils import check_cancel, ensure_directory, log, wait_or_cancel

_LOCK_POLL_INTERVAL = 0.2


def cache_key(url: str, checksum_type: str, checksum: str) -> str:
    """Derive a filesystem-safe key from the URL and its expected digest."""
    digest = hashlib.sha256(f"{url}\0{checksum_type}:{checksum}".encode("utf-8")).hexdigest()[:24]
    filename = Path(urlparse(url).path or "").name or "download"
    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename) or "download"
    return f"{digest}-{safe_name}"


class FileCache:
    """Directory of downloaded files, one entry per key.

    ``lock(key)`` gives exclusive ownership of an entry across threads and
    processes. An entry is complete once ``path(key)`` exists; writers stage
    their data in ``partial_path(key)`` and promote it with ``commit``.

    Each key keeps a small ``<key>.lock`` file for the lifetime of the cache
    directory. Unlinking it while another process waits on the old inode
    would let two holders in at once, so it is never removed here.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory is not None else CACHE_DIR
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def path(self, key: str) -> Path:
        return self.directory / key

    def partial_path(self, key: str) -> Path:
        return self.directory / f"{key}.part"

    def lock_path(self, key: str) -> Path:
        return self.directory / f"{key}.lock"

    def is_complete(self, key: str) -> bool:
        return self.path(key).is_file()

    def _thread_lock(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def lock(self, key: str, cancel: Optional[threading.Event] = None) -> Iterator[Path]:
        """Hold the entry for ``key`` exclusively; yields its final path.

        While waiting, ``cancel`` is polled and CancellationRequested raised
        once it is set.
        """
        ensure_directory(self.directory)
        thread_lock = self._thread_lock(key)
        while not thread_lock.acquire(timeout=_LOCK_POLL_INTERVAL):
            check_cancel(cancel)
        try:
            lock_path = self.lock_path(key)
            with open(lock_path, "a") as handle:
                log("DEBUG", f"Waiting for cache lock {lock_path}")
                while True:
                    try:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        wait_or_cancel(cancel, _LOCK_POLL_INTERVAL)
                try:
                    yield self.path(key)
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            thread_lock.release()

    def commit(self, key: str) -> Path:
        """Promote the staged partial file to a complete entry."""
        final = self.path(key)
        self.partial_path(key).replace(final)
        return final

    def discard(self, key: str) -> None:
        self.partial_path(key).unlink(missing_ok=True)
