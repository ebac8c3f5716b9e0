"""Background loading of audio file ranges into a local file."""

from __future__ import annotations

import logging
import os
import queue
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Iterator, Mapping, Protocol

from .cdn_url import CdnUrl
from .fetch import (
    HTTP_PARTIAL_CONTENT,
    HTTP_TOO_MANY_REQUESTS,
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    MINIMUM_THROUGHPUT,
    PREFETCH_THRESHOLD_FACTOR,
    AudioFileError,
    AudioFileShared,
    AudioFileStreaming,
    CloseCommand,
    FetchCommand,
    RangeResponse,
    parse_content_range,
)
from .range_set import Range, RangeSet

log = logging.getLogger(__name__)

RangeRequester = Callable[[int, int], Iterable[RangeResponse]]
"""Starts a ranged request for ``(offset, length)`` and yields its responses."""

CompletionHandler = Callable[[BinaryIO], None]


class _Sink(Protocol):
    def put(self, item: object) -> None: ...


@dataclass
class StreamingRequest:
    """An open ranged request and the part of the file it covers."""

    responses: Iterator[RangeResponse]
    initial_response: RangeResponse | None
    offset: int
    length: int

    def __post_init__(self) -> None:
        self.responses = iter(self.responses)


@dataclass(frozen=True)
class ThroughputData:
    """Measured download throughput in bytes per second."""

    throughput: int


@dataclass(frozen=True)
class ResponseTimeData:
    """Measured time to the first response, in seconds."""

    seconds: float


@dataclass(frozen=True)
class PartialFileData:
    """A piece of the file received from the network."""

    offset: int
    data: bytes


def _header(headers: Mapping[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _retry_after(headers: Mapping[str, str]) -> int | None:
    value = _header(headers, "Retry-After")
    if value is None:
        return None
    value = value.strip()
    return int(value) if value.isdigit() else None


def receive_data(shared: AudioFileShared, file_data: _Sink, request: StreamingRequest) -> None:
    """Drain one request's responses into ``file_data``, holding a download slot meanwhile.

    Parts of the request that never arrive are taken off the requested set again.
    """
    offset = request.offset
    actual_length = 0
    error: Exception | None = None

    shared.download_slots.acquire()
    try:
        request_time = time.monotonic()
        measure_ping_time = True
        measure_throughput = True

        while True:
            if request.initial_response is not None:
                # This response was obtained before the loader started.
                response = request.initial_response
                request.initial_response = None
                measure_ping_time = False
                measure_throughput = False
            else:
                try:
                    response = next(request.responses)
                except StopIteration:
                    if actual_length != request.length:
                        error = AudioFileError(
                            f"did not expect body to contain {actual_length} bytes"
                        )
                    break
                except Exception as exc:
                    error = exc
                    break

            if measure_ping_time:
                elapsed = time.monotonic() - request_time
                if int(elapsed * 1000) > 0:
                    file_data.put(ResponseTimeData(elapsed))
                    measure_ping_time = False

            if response.status != HTTP_PARTIAL_CONTENT:
                if response.status == HTTP_TOO_MANY_REQUESTS:
                    delay = _retry_after(response.headers)
                    if delay is not None:
                        log.warning("Rate limiting, retrying in %d seconds...", delay)
                        time.sleep(delay)
                error = AudioFileError(
                    f"invalid status code {response.status}", response.status
                )
                break

            data = bytes(response.body)
            file_data.put(PartialFileData(offset, data))
            actual_length += len(data)
            offset += len(data)

        close = getattr(request.responses, "close", None)
        if callable(close):
            close()

        if measure_throughput:
            duration_ms = int((time.monotonic() - request_time) * 1000)
            if actual_length > 0 and duration_ms > 0:
                file_data.put(ThroughputData(1000 * actual_length // duration_ms))

        bytes_remaining = request.length - actual_length
        if bytes_remaining > 0:
            with shared.cond:
                shared.requested.subtract_range(Range(offset, bytes_remaining))
                shared.cond.notify_all()
    finally:
        shared.download_slots.release()

    if error is not None:
        log.error(
            "Streamer error requesting range %d +%d: %r",
            request.offset,
            request.length,
            error,
        )
        raise error


def _run_in_background(target: Callable[..., object], *args: object) -> None:
    def runner() -> None:
        try:
            target(*args)
        except Exception as exc:
            log.debug("background task ended with error: %s", exc)

    threading.Thread(target=runner, daemon=True).start()


class AudioFileFetch:
    """Turns commands and received data into downloads and writes to ``output``."""

    def __init__(
        self,
        shared: AudioFileShared,
        requester: RangeRequester,
        output: BinaryIO | None,
        file_data: _Sink,
        on_complete: CompletionHandler | None = None,
    ) -> None:
        self.shared = shared
        self.requester = requester
        self.output = output
        self.file_data = file_data
        self.on_complete = on_complete
        self.network_response_times: list[float] = []

    def has_download_slots_available(self) -> bool:
        slots = self.shared.download_slots
        if slots.acquire(blocking=False):
            slots.release()
            return True
        return False

    def download_range(self, offset: int, length: int) -> None:
        """Request the parts of ``[offset, offset + length)`` not yet downloaded or requested."""
        shared = self.shared
        length = max(length, MINIMUM_DOWNLOAD_SIZE)
        # While streaming, fetch large chunks for throughput, about one second's worth.
        if shared.download_streaming:
            length = max(length, shared.throughput)
        if offset + length > shared.file_size:
            length = max(shared.file_size - offset, 0)

        to_request = RangeSet([Range(offset, length)])
        with shared.cond:
            to_request.subtract_range_set(shared.downloaded)
            to_request.subtract_range_set(shared.requested)
            for rng in to_request:
                responses = self.requester(rng.start, rng.length)
                shared.requested.add_range(rng)
                request = StreamingRequest(responses, None, rng.start, rng.length)
                _run_in_background(receive_data, shared, self.file_data, request)

    def pre_fetch_more_data(self, size: int) -> None:
        """Request up to ``size`` missing bytes, after the read position first."""
        shared = self.shared
        missing = RangeSet([Range(0, shared.file_size)])
        with shared.cond:
            missing.subtract_range_set(shared.downloaded)
            missing.subtract_range_set(shared.requested)

        read_position = min(shared.read_position, shared.file_size)
        tail_end = RangeSet([Range(read_position, shared.file_size - read_position)])
        tail_end = tail_end.intersection(missing)

        if tail_end:
            rng = tail_end[0]
            self.download_range(rng.start, min(rng.length, size))
        elif missing:
            rng = missing[0]
            self.download_range(rng.start, min(rng.length, size))

    def handle_file_data(
        self, data: ThroughputData | ResponseTimeData | PartialFileData
    ) -> bool:
        """Process one received item; returns False once the whole file is present."""
        shared = self.shared
        if isinstance(data, ThroughputData):
            throughput = data.throughput
            if throughput < MINIMUM_THROUGHPUT:
                log.warning(
                    "Throughput %d kbps lower than minimum %d, setting to minimum",
                    throughput // 1000,
                    MINIMUM_THROUGHPUT // 1000,
                )
                throughput = MINIMUM_THROUGHPUT
            old = shared.throughput
            average = (old + throughput) // 2 if old > 0 else throughput
            if old == 0 or abs((average - old) / old) > 0.1:
                log.debug("Throughput now estimated as: %d kbps", average // 1000)
            shared.throughput = average
            return True

        if isinstance(data, ResponseTimeData):
            response_time = data.seconds
            if response_time > MAXIMUM_ASSUMED_PING_TIME:
                log.warning(
                    "Time to first byte %d ms exceeds maximum %d, setting to maximum",
                    int(response_time * 1000),
                    int(MAXIMUM_ASSUMED_PING_TIME * 1000),
                )
                response_time = MAXIMUM_ASSUMED_PING_TIME
            old_ping = shared.ping_time()

            # Keep the two most recent so the new one makes at most three.
            del self.network_response_times[:-2]
            self.network_response_times.append(response_time)
            times = self.network_response_times
            if len(times) == 1:
                ping_time = times[0]
            elif len(times) == 2:
                ping_time = (times[0] + times[1]) / 2
            else:
                ping_time = sorted(times)[1]

            if old_ping == 0 or abs((ping_time - old_ping) / old_ping) > 0.1:
                log.debug("Time to first byte now estimated as: %d ms", int(ping_time * 1000))
            shared.set_ping_time(ping_time)
            return True

        if self.output is None:
            raise AudioFileError("no output available")
        self.output.seek(data.offset)
        self.output.write(data.data)
        self.output.flush()

        with shared.cond:
            shared.downloaded.add_range(Range(data.offset, len(data.data)))
            shared.cond.notify_all()
            full = shared.downloaded.contained_length_from_value(0) >= shared.file_size

        if full:
            self.finish()
            return False
        return True

    def handle_stream_loader_command(self, cmd: FetchCommand | CloseCommand) -> bool:
        """Process one loader command; returns False when loading should stop."""
        if isinstance(cmd, CloseCommand):
            return False
        self.download_range(cmd.range.start, cmd.range.length)
        return True

    def finish(self) -> None:
        """Hand the completed output, rewound, to the completion handler."""
        output, self.output = self.output, None
        on_complete, self.on_complete = self.on_complete, None
        if output is not None:
            output.seek(0)
            if on_complete is not None:
                on_complete(output)


def audio_file_fetch(
    shared: AudioFileShared,
    requester: RangeRequester,
    initial_request: StreamingRequest,
    output: BinaryIO,
    commands: queue.Queue,
    on_complete: CompletionHandler | None = None,
) -> None:
    """Run the loader until the file is complete or a close command arrives.

    Received data is posted to ``commands`` as well, so one queue carries both.
    """
    with shared.cond:
        shared.requested.add_range(
            Range(initial_request.offset, initial_request.offset + initial_request.length)
        )

    _run_in_background(receive_data, shared, commands, initial_request)

    fetch = AudioFileFetch(shared, requester, output, commands, on_complete)

    while True:
        item = commands.get()
        if isinstance(item, (FetchCommand, CloseCommand)):
            keep_going = fetch.handle_stream_loader_command(item)
        else:
            keep_going = fetch.handle_file_data(item)
        if not keep_going:
            break

        if shared.download_streaming and fetch.has_download_slots_available():
            with shared.cond:
                bytes_pending = len(shared.requested.minus(shared.downloaded))
            ping_time = shared.ping_time()
            desired_pending = max(
                int(PREFETCH_THRESHOLD_FACTOR * ping_time * shared.bytes_per_second),
                int(ping_time * shared.throughput),
            )
            if bytes_pending < desired_pending:
                fetch.pre_fetch_more_data(desired_pending - bytes_pending)


def open_streaming(
    cdn_url: CdnUrl,
    requester: Callable[[str, int, int], Iterable[RangeResponse]],
    tmp_dir: str | os.PathLike | None,
    bytes_per_second: int,
    on_complete: CompletionHandler | None = None,
) -> AudioFileStreaming:
    """Start streaming the file at ``cdn_url`` and return a reader for it.

    ``requester`` is called with a URL, an offset and a length. ``on_complete``
    receives the finished temporary file.
    """

    def fetch_range(offset: int, length: int) -> Iterable[RangeResponse]:
        return requester(cdn_url.try_get_url(), offset, length)

    # A request larger than the file returns the whole file as partial content.
    responses = iter(fetch_range(0, MINIMUM_DOWNLOAD_SIZE))
    response = next(responses, None)
    if response is None:
        raise AudioFileError("streamer received no data")
    if response.status != HTTP_PARTIAL_CONTENT:
        log.debug("Opening audio file expected partial content but got: %d", response.status)
        raise AudioFileError(f"invalid status code {response.status}", response.status)

    content_range = _header(response.headers, "Content-Range")
    if content_range is None:
        raise AudioFileError("required header not found")
    upper_bound, file_size = parse_content_range(content_range)

    initial_request = StreamingRequest(responses, response, 0, upper_bound + 1)
    shared = AudioFileShared(file_size, bytes_per_second)

    write_file = tempfile.NamedTemporaryFile(mode="w+b", dir=tmp_dir)
    write_file.truncate(file_size)
    write_file.flush()
    read_file = open(write_file.name, "rb")

    commands: queue.Queue = queue.Queue()
    _run_in_background(
        audio_file_fetch, shared, fetch_range, initial_request, write_file, commands, on_complete
    )
    return AudioFileStreaming(read_file, commands, shared)