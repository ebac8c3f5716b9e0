"""Range-based streaming of audio files into a local temporary file."""

from __future__ import annotations

import io
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Mapping, Protocol

from .range_set import Range, RangeSet

log = logging.getLogger(__name__)

MINIMUM_DOWNLOAD_SIZE = 64 * 1024
"""Smallest block requested from the servers in one request, in bytes."""

MINIMUM_THROUGHPUT = 8 * 1024
"""Lowest network throughput assumed, in bytes per second."""

INITIAL_PING_TIME_ESTIMATE = 0.5
"""Ping time in seconds used before one has been measured."""

MAXIMUM_ASSUMED_PING_TIME = 1.5
"""Measured ping times are capped to this many seconds."""

READ_AHEAD_BEFORE_PLAYBACK = 1.0
"""Seconds of audio that must be present before playback starts."""

READ_AHEAD_DURING_PLAYBACK = 5.0
"""Seconds of audio requested ahead of the read position while playing."""

PREFETCH_THRESHOLD_FACTOR = 4.0
"""Pending bytes below this factor times ping time times data rate trigger a prefetch."""

DOWNLOAD_TIMEOUT = float(MINIMUM_DOWNLOAD_SIZE // MINIMUM_THROUGHPUT)
"""Seconds to wait for download progress before giving up."""

HTTP_PARTIAL_CONTENT = 206
HTTP_TOO_MANY_REQUESTS = 429

_DIGITS = re.compile(r"\+?[0-9]+")


class AudioFileError(Exception):
    """Raised when an audio file cannot be streamed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class RangeResponse:
    """One response to a ranged HTTP request."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True)
class FetchCommand:
    """Ask the loader to fetch a range of the file."""

    range: Range


@dataclass(frozen=True)
class CloseCommand:
    """Tell the loader to stop and load no more data."""


class _CommandSink(Protocol):
    def put(self, item: FetchCommand | CloseCommand) -> None: ...


class AudioFileShared:
    """Download state shared between readers and the loader.

    ``requested`` and ``downloaded`` are guarded by ``cond``; whoever changes
    ``downloaded`` must notify it.
    """

    def __init__(self, file_size: int, bytes_per_second: int) -> None:
        self.file_size = file_size
        self.bytes_per_second = bytes_per_second
        self.cond = threading.Condition()
        self.requested = RangeSet()
        self.downloaded = RangeSet()
        self.download_streaming = False
        self.download_slots = threading.BoundedSemaphore(1)
        self.download_timeout = DOWNLOAD_TIMEOUT
        self.read_position = 0
        self.throughput = 0
        self._ping_time_ms = 0

    def ping_time(self) -> float:
        """Estimated ping time in seconds."""
        if self._ping_time_ms > 0:
            return self._ping_time_ms / 1000
        return INITIAL_PING_TIME_ESTIMATE

    def set_ping_time(self, seconds: float) -> None:
        self._ping_time_ms = int(seconds * 1000)


class StreamLoaderController:
    """Controls the download strategy of one audio file.

    For a file that is fully present already, ``commands`` and ``shared`` are None.
    """

    def __init__(
        self,
        commands: _CommandSink | None,
        shared: AudioFileShared | None,
        file_size: int,
    ) -> None:
        self._commands = commands
        self._shared = shared
        self._file_size = file_size

    def __len__(self) -> int:
        return self._file_size

    def range_available(self, range: Range) -> bool:
        """Whether the whole of ``range`` has been downloaded."""
        shared = self._shared
        if shared is None:
            return range.length <= self._file_size - range.start
        with shared.cond:
            return range.length <= shared.downloaded.contained_length_from_value(range.start)

    def range_to_end_available(self) -> bool:
        """Whether everything from the read position to the end is present."""
        shared = self._shared
        if shared is None:
            return True
        read_position = shared.read_position
        return self.range_available(Range(read_position, self._file_size - read_position))

    def ping_time(self) -> float | None:
        return None if self._shared is None else self._shared.ping_time()

    def _send(self, command: FetchCommand | CloseCommand) -> None:
        if self._commands is not None:
            self._commands.put(command)

    def fetch(self, range: Range) -> None:
        """Ask for a range of the file without waiting for it."""
        self._send(FetchCommand(range))

    def fetch_blocking(self, range: Range) -> None:
        """Ask for a range of the file and wait until it has been downloaded."""
        size = self._file_size
        if range.start >= size:
            range = Range(range.start, 0)
        elif range.end() > size:
            range = Range(range.start, size - range.start)

        self.fetch(range)

        shared = self._shared
        if shared is None:
            return
        with shared.cond:
            while range.length > shared.downloaded.contained_length_from_value(range.start):
                if not shared.cond.wait(shared.download_timeout):
                    raise AudioFileError("wait timeout exceeded")
                covered = shared.downloaded.union(shared.requested)
                if range.length > covered.contained_length_from_value(range.start):
                    # Neither downloaded nor requested, probably after a network error.
                    self.fetch(range)

    def fetch_next_and_wait(self, request_length: int, wait_length: int) -> None:
        """Request data from the read position on and wait for part of it."""
        shared = self._shared
        if shared is None:
            return
        start = shared.read_position
        self.fetch(Range(start, request_length))
        self.fetch_blocking(Range(start, wait_length))

    def set_random_access_mode(self) -> None:
        if self._shared is not None:
            self._shared.download_streaming = False

    def set_stream_mode(self) -> None:
        if self._shared is not None:
            self._shared.download_streaming = True

    def close(self) -> None:
        """Stop loading any more data for this file."""
        self._send(CloseCommand())


class AudioFileStreaming:
    """A readable, seekable file whose content arrives while it is read."""

    def __init__(
        self, read_file: BinaryIO, commands: _CommandSink, shared: AudioFileShared
    ) -> None:
        self._read_file = read_file
        self._commands = commands
        self._shared = shared
        self._position = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        shared = self._shared
        offset = self._position
        if offset >= shared.file_size:
            return b""

        remaining = shared.file_size - offset
        length = remaining if size is None or size < 0 else min(size, remaining)
        if length == 0:
            return b""

        if shared.download_streaming:
            read_ahead = int(READ_AHEAD_DURING_PLAYBACK * shared.bytes_per_second)
            length_to_request = min(length + read_ahead, remaining)
        else:
            length_to_request = length

        to_request = RangeSet([Range(offset, length_to_request)])
        with shared.cond:
            to_request.subtract_range_set(shared.downloaded)
            to_request.subtract_range_set(shared.requested)
            for rng in to_request:
                self._commands.put(FetchCommand(rng))

            while offset not in shared.downloaded:
                if not shared.cond.wait(shared.download_timeout):
                    raise AudioFileError("wait timeout exceeded")
            available = shared.downloaded.contained_length_from_value(offset)

        self._position = self._read_file.seek(offset)
        data = self._read_file.read(min(length, available))
        self._position += len(data)
        shared.read_position = self._position
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        shared = self._shared
        current = self._position
        if whence == io.SEEK_SET:
            requested = offset
        elif whence == io.SEEK_CUR:
            requested = current + offset
        elif whence == io.SEEK_END:
            requested = shared.file_size + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if requested == current:
            return current

        with shared.cond:
            available = requested in shared.downloaded

        was_streaming = False
        if not available:
            was_streaming = shared.download_streaming
            if was_streaming:
                shared.download_streaming = False

        self._position = self._read_file.seek(offset, whence)
        shared.read_position = self._position

        if not available and was_streaming:
            shared.download_streaming = True
        return self._position

    def tell(self) -> int:
        return self._position

    def controller(self) -> StreamLoaderController:
        """A controller for this file's downloads."""
        return StreamLoaderController(self._commands, self._shared, self._shared.file_size)


def parse_content_range(value: str) -> tuple[int, int]:
    """Parse a ``Content-Range`` value into ``(last byte position, file size)``."""
    hyphen = max(value.find("-"), 0)
    slash = max(value.find("/"), 0)
    if hyphen + 1 > slash:
        raise AudioFileError(f"invalid Content-Range: {value!r}")
    upper_text = value[hyphen + 1 : slash]
    size_text = value[slash + 1 :]
    if not _DIGITS.fullmatch(upper_text) or not _DIGITS.fullmatch(size_text):
        raise AudioFileError(f"invalid Content-Range: {value!r}")
    return int(upper_text), int(size_text)