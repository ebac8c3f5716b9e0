"""On-disk cache for credentials, volume and audio files."""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable

from .authentication import Credentials

log = logging.getLogger(__name__)

_VOLUME_PATTERN = re.compile(r"\+?[0-9]+")
_VOLUME_MAX = 0xFFFF


class CacheError(Exception):
    """Raised when the audio cache location is not usable."""

    def __init__(self, message: str = "audio cache location is not configured") -> None:
        super().__init__(message)


class SizeLimiter:
    """Tracks file sizes and access times, evicting the oldest past a size limit."""

    def __init__(self, limit: int) -> None:
        self.size_limit = limit
        self.in_use = 0
        self._entries: dict[Path, tuple[float, int]] = {}

    def add(self, file: Path, size: int, accessed: float) -> None:
        """Add or replace an entry."""
        file = Path(file)
        old = self._entries.get(file)
        self._entries[file] = (accessed, size)
        self.in_use += size
        if old is not None:
            self.in_use -= old[1]

    def exceeds_limit(self) -> bool:
        return self.in_use > self.size_limit

    def pop(self) -> Path | None:
        """Remove and return the least recently accessed file while over the limit."""
        if not self.exceeds_limit():
            return None
        if not self._entries:
            log.error("in_use was > 0, so the queue should have contained an item.")
            return None
        oldest = min(self._entries, key=lambda path: self._entries[path][0])
        _, size = self._entries.pop(oldest)
        self.in_use -= size
        return oldest

    def update(self, file: Path, access_time: float) -> bool:
        """Set a new access time; returns whether the file was tracked."""
        file = Path(file)
        entry = self._entries.get(file)
        if entry is None:
            return False
        self._entries[file] = (access_time, entry[1])
        return True

    def remove(self, file: Path) -> bool:
        """Forget a file; returns whether it was tracked."""
        entry = self._entries.pop(Path(file), None)
        if entry is None:
            return False
        self.in_use -= entry[1]
        return True


def _file_metadata(path: Path) -> tuple[float, int]:
    stat = path.stat()
    accessed = stat.st_atime or stat.st_mtime or stat.st_ctime or time.time()
    return accessed, stat.st_size


def _scan_dir(limiter: SizeLimiter, path: Path) -> None:
    try:
        entries = list(os.scandir(path))
    except OSError as exc:
        log.warning("Could not read directory %s in cache dir: %s", path, exc)
        return
    for entry in entries:
        entry_path = Path(entry.path)
        try:
            if entry.is_symlink() or entry.is_dir(follow_symlinks=False):
                _scan_dir(limiter, entry_path)
            elif entry.is_file(follow_symlinks=False):
                try:
                    accessed, size = _file_metadata(entry_path)
                except OSError as exc:
                    log.warning("Could not read file %s in cache dir: %s", entry_path, exc)
                else:
                    limiter.add(entry_path, size, accessed)
            else:
                log.warning("File %s in cache dir has unsupported type", entry_path)
        except OSError as exc:
            log.warning("Could not get type of file %s in cache dir: %s", entry_path, exc)


def _prune(pop: Callable[[], Path | None]) -> None:
    count = 0
    last_error: OSError | None = None
    first = True
    while (file := pop()) is not None:
        if first:
            log.debug("Cache dir exceeds limit, removing least recently used files.")
            first = False
        try:
            os.remove(file)
        except OSError as exc:
            log.warning("Could not remove file %s from cache dir: %s", file, exc)
            last_error = exc
        else:
            count += 1
    if count:
        log.info("Removed %d cache files.", count)
    if last_error is not None:
        raise last_error


class _FsSizeLimiter:
    def __init__(self, path: Path, limit: int) -> None:
        limiter = SizeLimiter(limit)
        _scan_dir(limiter, path)
        _prune(limiter.pop)
        self._limiter = limiter
        self._lock = threading.Lock()

    def _locked_pop(self) -> Path | None:
        with self._lock:
            return self._limiter.pop()

    def add(self, file: Path, size: int) -> None:
        with self._lock:
            self._limiter.add(file, size, time.time())

    def touch(self, file: Path) -> bool:
        with self._lock:
            return self._limiter.update(file, time.time())

    def remove(self, file: Path) -> bool:
        with self._lock:
            return self._limiter.remove(file)

    def prune(self) -> None:
        _prune(self._locked_pop)


class Cache:
    """A cache for volume, credentials and audio files."""

    def __init__(
        self,
        credentials_path: str | os.PathLike | None = None,
        volume_path: str | os.PathLike | None = None,
        audio_path: str | os.PathLike | None = None,
        size_limit: int | None = None,
    ) -> None:
        self._credentials_location: Path | None = None
        self._volume_location: Path | None = None
        self._audio_location: Path | None = None
        self._size_limiter: _FsSizeLimiter | None = None

        if credentials_path is not None:
            location = Path(credentials_path)
            location.mkdir(parents=True, exist_ok=True)
            self._credentials_location = location / "credentials.json"

        if volume_path is not None:
            location = Path(volume_path)
            location.mkdir(parents=True, exist_ok=True)
            self._volume_location = location / "volume"

        if audio_path is not None:
            location = Path(audio_path)
            location.mkdir(parents=True, exist_ok=True)
            if size_limit is not None:
                self._size_limiter = _FsSizeLimiter(location, size_limit)
            self._audio_location = location

    def credentials(self) -> Credentials | None:
        """The cached credentials, or None if absent or unreadable."""
        if self._credentials_location is None:
            return None
        try:
            text = self._credentials_location.read_text()
            return Credentials.from_json(text)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            log.warning("Error reading credentials from cache: %s", exc)
            return None

    def save_credentials(self, credentials: Credentials) -> None:
        if self._credentials_location is None:
            return
        try:
            self._credentials_location.write_text(credentials.to_json())
        except OSError as exc:
            log.warning("Cannot save credentials to cache: %s", exc)

    def volume(self) -> int | None:
        """The cached volume, or None if absent or unreadable."""
        if self._volume_location is None:
            return None
        try:
            contents = self._volume_location.read_text()
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("Error reading volume from cache: %s", exc)
            return None
        if _VOLUME_PATTERN.fullmatch(contents) is None or int(contents) > _VOLUME_MAX:
            log.warning("Error reading volume from cache: invalid value %r", contents)
            return None
        return int(contents)

    def save_volume(self, volume: int) -> None:
        if self._volume_location is None:
            return
        try:
            self._volume_location.write_text(str(volume))
        except OSError as exc:
            log.warning("Cannot save volume to cache: %s", exc)

    def file_path(self, file_id: bytes) -> Path | None:
        """Where the audio file with this id is stored, if audio caching is on."""
        if self._audio_location is None:
            return None
        name = bytes(file_id).hex()
        return self._audio_location / name[:2] / name[2:]

    def file(self, file_id: bytes) -> BinaryIO | None:
        """Open a cached audio file for reading, or None if it is not cached."""
        path = self.file_path(file_id)
        if path is None:
            return None
        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("Error reading file from cache: %s", exc)
            return None
        if self._size_limiter is not None and not self._size_limiter.touch(path):
            log.error("limiter could not touch %s", path)
        return handle

    def save_file(self, file_id: bytes, contents: BinaryIO) -> Path:
        """Copy ``contents`` into the cache and return the path written."""
        path = self.file_path(file_id)
        if path is None:
            raise CacheError()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as out:
                shutil.copyfileobj(contents, out)
                size = out.tell()
        except OSError as exc:
            raise CacheError() from exc
        if self._size_limiter is not None:
            self._size_limiter.add(path, size)
            self._size_limiter.prune()
        return path

    def remove_file(self, file_id: bytes) -> None:
        path = self.file_path(file_id)
        if path is None:
            raise CacheError()
        os.remove(path)
        if self._size_limiter is not None:
            self._size_limiter.remove(path)