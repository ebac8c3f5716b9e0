import io
import queue
import threading

import pytest

from spotcore.fetch import (
    INITIAL_PING_TIME_ESTIMATE,
    READ_AHEAD_DURING_PLAYBACK,
    AudioFileError,
    AudioFileShared,
    AudioFileStreaming,
    CloseCommand,
    FetchCommand,
    RangeResponse,
    StreamLoaderController,
    parse_content_range,
)
from spotcore.range_set import Range, RangeSet

CONTENT = bytes(range(256)) * 4


def _drain(commands):
    items = []
    while True:
        try:
            items.append(commands.get_nowait())
        except queue.Empty:
            return items


def _mark(shared, rng):
    with shared.cond:
        shared.downloaded.add_range(rng)
        shared.cond.notify_all()


def _serve(shared, commands, stop):
    while not stop.is_set():
        try:
            cmd = commands.get(timeout=0.02)
        except queue.Empty:
            continue
        if isinstance(cmd, FetchCommand):
            _mark(shared, cmd.range)
        else:
            return


@pytest.fixture
def served():
    shared = AudioFileShared(len(CONTENT), 10)
    shared.download_timeout = 2.0
    commands = queue.SimpleQueue()
    stop = threading.Event()
    worker = threading.Thread(target=_serve, args=(shared, commands, stop), daemon=True)
    worker.start()
    yield shared, commands
    stop.set()
    worker.join()


def test_parse_content_range():
    assert parse_content_range("bytes 0-65535/1234567") == (65535, 1234567)


@pytest.mark.parametrize("value", ["bytes 0-abc/10", "bytes 0-5", "garbage", "bytes 0-5/"])
def test_parse_content_range_invalid(value):
    with pytest.raises(AudioFileError):
        parse_content_range(value)


def test_range_response_fields():
    response = RangeResponse(206, {"Content-Range": "bytes 0-1/2"}, b"ab")
    assert parse_content_range(response.headers["Content-Range"]) == (1, 2)
    assert response.body == b"ab"


def test_ping_time_default_and_set():
    shared = AudioFileShared(100, 10)
    assert shared.ping_time() == INITIAL_PING_TIME_ESTIMATE
    shared.set_ping_time(0.25)
    assert shared.ping_time() == pytest.approx(0.25)


def test_cached_controller():
    controller = StreamLoaderController(None, None, 100)
    assert len(controller) == 100
    assert controller.range_available(Range(10, 90))
    assert not controller.range_available(Range(10, 91))
    assert controller.range_to_end_available()
    assert controller.ping_time() is None
    controller.fetch_blocking(Range(0, 100))
    controller.fetch_next_and_wait(10, 10)
    controller.close()
    assert len(controller) == 100


def test_controller_range_available_follows_downloads():
    shared = AudioFileShared(100, 10)
    controller = StreamLoaderController(queue.SimpleQueue(), shared, 100)
    assert not controller.range_available(Range(0, 10))
    _mark(shared, Range(0, 50))
    assert controller.range_available(Range(0, 50))
    assert not controller.range_available(Range(40, 20))
    shared.read_position = 50
    assert not controller.range_to_end_available()
    _mark(shared, Range(50, 50))
    assert controller.range_to_end_available()


def test_fetch_and_close_send_commands():
    commands = queue.SimpleQueue()
    controller = StreamLoaderController(commands, AudioFileShared(100, 10), 100)
    controller.fetch(Range(5, 10))
    controller.close()
    assert _drain(commands) == [FetchCommand(Range(5, 10)), CloseCommand()]


def test_fetch_blocking_clamps_to_file_size():
    shared = AudioFileShared(100, 10)
    _mark(shared, Range(0, 100))
    commands = queue.SimpleQueue()
    controller = StreamLoaderController(commands, shared, 100)
    controller.fetch_blocking(Range(80, 50))
    controller.fetch_blocking(Range(150, 10))
    assert _drain(commands) == [
        FetchCommand(Range(80, 20)),
        FetchCommand(Range(150, 0)),
    ]


def test_fetch_blocking_times_out():
    shared = AudioFileShared(100, 10)
    shared.download_timeout = 0.05
    controller = StreamLoaderController(queue.SimpleQueue(), shared, 100)
    with pytest.raises(AudioFileError):
        controller.fetch_blocking(Range(0, 10))


def test_fetch_blocking_waits_for_loader(served):
    shared, commands = served
    controller = StreamLoaderController(commands, shared, shared.file_size)
    controller.fetch_blocking(Range(100, 200))
    assert controller.range_available(Range(100, 200))


def test_fetch_next_and_wait_from_read_position(served):
    shared, commands = served
    shared.read_position = 300
    controller = StreamLoaderController(commands, shared, shared.file_size)
    controller.fetch_next_and_wait(100, 50)
    assert shared.downloaded.contained_length_from_value(300) >= 50


def test_stream_and_random_access_modes():
    shared = AudioFileShared(100, 10)
    controller = StreamLoaderController(queue.SimpleQueue(), shared, 100)
    controller.set_stream_mode()
    assert shared.download_streaming is True
    controller.set_random_access_mode()
    assert shared.download_streaming is False


def test_read_downloaded_file_sends_nothing():
    shared = AudioFileShared(len(CONTENT), 10)
    _mark(shared, Range(0, len(CONTENT)))
    commands = queue.SimpleQueue()
    stream = AudioFileStreaming(io.BytesIO(CONTENT), commands, shared)
    assert stream.read() == CONTENT
    assert stream.tell() == len(CONTENT)
    assert shared.read_position == len(CONTENT)
    assert stream.read(10) == b""
    assert _drain(commands) == []


def test_read_fetches_missing_data(served):
    shared, commands = served
    stream = AudioFileStreaming(io.BytesIO(CONTENT), commands, shared)
    assert stream.read(100) == CONTENT[:100]
    assert stream.read(50) == CONTENT[100:150]
    assert stream.tell() == 150


def test_read_stops_at_downloaded_boundary():
    shared = AudioFileShared(len(CONTENT), 10)
    _mark(shared, Range(0, 40))
    stream = AudioFileStreaming(io.BytesIO(CONTENT), queue.SimpleQueue(), shared)
    assert stream.read(100) == CONTENT[:40]


def test_read_in_stream_mode_requests_read_ahead():
    shared = AudioFileShared(len(CONTENT), 10)
    shared.download_streaming = True
    _mark(shared, Range(0, 20))
    commands = queue.SimpleQueue()
    stream = AudioFileStreaming(io.BytesIO(CONTENT), commands, shared)
    stream.read(40)
    ahead = int(READ_AHEAD_DURING_PLAYBACK * shared.bytes_per_second)
    assert _drain(commands) == [FetchCommand(Range(20, 40 + ahead - 20))]


def test_read_skips_requested_ranges():
    shared = AudioFileShared(len(CONTENT), 10)
    _mark(shared, Range(0, 10))
    shared.requested = RangeSet([Range(10, 20)])
    commands = queue.SimpleQueue()
    stream = AudioFileStreaming(io.BytesIO(CONTENT), commands, shared)
    stream.read(50)
    assert _drain(commands) == [FetchCommand(Range(30, 20))]


def test_read_times_out():
    shared = AudioFileShared(len(CONTENT), 10)
    shared.download_timeout = 0.05
    stream = AudioFileStreaming(io.BytesIO(CONTENT), queue.SimpleQueue(), shared)
    with pytest.raises(AudioFileError):
        stream.read(10)


def test_seek_updates_position_and_keeps_mode():
    shared = AudioFileShared(len(CONTENT), 10)
    shared.download_streaming = True
    _mark(shared, Range(0, len(CONTENT)))
    stream = AudioFileStreaming(io.BytesIO(CONTENT), queue.SimpleQueue(), shared)
    assert stream.seek(500) == 500
    assert shared.read_position == 500
    assert stream.seek(-10, io.SEEK_CUR) == 490
    assert stream.seek(-24, io.SEEK_END) == len(CONTENT) - 24
    assert stream.read(24) == CONTENT[-24:]
    assert shared.download_streaming is True


def test_seek_to_missing_data_restores_streaming():
    shared = AudioFileShared(len(CONTENT), 10)
    shared.download_streaming = True
    stream = AudioFileStreaming(io.BytesIO(CONTENT), queue.SimpleQueue(), shared)
    assert stream.seek(300) == 300
    assert stream.tell() == 300
    assert shared.download_streaming is True


def test_streaming_controller_shares_state():
    shared = AudioFileShared(len(CONTENT), 10)
    commands = queue.SimpleQueue()
    stream = AudioFileStreaming(io.BytesIO(CONTENT), commands, shared)
    controller = stream.controller()
    assert len(controller) == len(CONTENT)
    controller.set_stream_mode()
    assert shared.download_streaming is True
    controller.fetch(Range(0, 5))
    assert _drain(commands) == [FetchCommand(Range(0, 5))]