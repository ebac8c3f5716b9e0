"""Multiplexed data channels carried over the session connection."""

from __future__ import annotations

import enum
import logging
import queue
import struct
import threading
import time
from dataclasses import dataclass
from typing import Iterator

log = logging.getLogger(__name__)

_ONE_SECOND_MS = 1000
_CLOSED = None


class ChannelError(Exception):
    """Raised when a channel fails or its other end goes away."""

    def __init__(self, message: str = "channel error") -> None:
        super().__init__(message)


class ChannelPacket(enum.IntEnum):
    """Packet types delivered to channels."""

    STREAM_CHUNK_RES = 0x09
    CHANNEL_ERROR = 0x0A
    CHANNEL_ABORT = 0x0D


@dataclass(frozen=True)
class HeaderEvent:
    """A header sent at the start of a channel."""

    id: int
    data: bytes


@dataclass(frozen=True)
class DataEvent:
    """A chunk of channel payload."""

    data: bytes


class _State(enum.Enum):
    HEADER = enum.auto()
    DATA = enum.auto()
    CLOSED = enum.auto()


class Channel:
    """Iterates over the header and data events of one channel."""

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[tuple[int, bytes] | None] = queue.SimpleQueue()
        self._state = _State.HEADER
        self._buffer = b""
        self._receiver_closed = False

    def _deliver(self, cmd: int, data: bytes) -> None:
        if self._receiver_closed:
            raise ChannelError()
        self._queue.put((cmd, data))

    def _disconnect(self) -> None:
        self._queue.put(_CLOSED)

    def _recv_packet(self) -> bytes:
        item = self._queue.get()
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            raise ChannelError()
        cmd, packet = item
        if cmd == ChannelPacket.CHANNEL_ERROR:
            code = struct.unpack_from(">H", packet)[0] if len(packet) >= 2 else 0
            log.error("channel error: %d %d", len(packet), code)
            self._state = _State.CLOSED
            raise ChannelError()
        return packet

    def __iter__(self) -> Iterator[HeaderEvent | DataEvent]:
        return self

    def __next__(self) -> HeaderEvent | DataEvent:
        while True:
            if self._state is _State.CLOSED:
                log.error("Polling already terminated channel")
                raise StopIteration

            if self._state is _State.HEADER:
                data = self._buffer or self._recv_packet()
                if len(data) < 2:
                    raise ChannelError("truncated header")
                (length,) = struct.unpack_from(">H", data)
                data = data[2:]
                if length == 0:
                    self._buffer = b""
                    self._state = _State.DATA
                    continue
                if len(data) < length:
                    raise ChannelError("truncated header")
                header_id = data[0]
                header_data = bytes(data[1:length])
                self._buffer = data[length:]
                return HeaderEvent(header_id, header_data)

            data = self._recv_packet()
            if not data:
                self._receiver_closed = True
                self._state = _State.CLOSED
                raise StopIteration
            return DataEvent(bytes(data))

    def headers(self) -> Iterator[tuple[int, bytes]]:
        """Yield ``(id, data)`` for each header; the first non-header event ends it."""
        for event in self:
            if not isinstance(event, HeaderEvent):
                return
            yield event.id, event.data

    def data(self) -> Iterator[bytes]:
        """Yield the payload chunks, skipping any headers."""
        for event in self:
            if isinstance(event, DataEvent):
                yield event.data


class ChannelManager:
    """Allocates channel ids and routes incoming packets to their channels."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequence = 0
        self._channels: dict[int, Channel] = {}
        self._download_rate_estimate = 0
        self._measurement_start: float | None = None
        self._measurement_bytes = 0
        self._invalid = False

    def allocate(self) -> tuple[int, Channel]:
        """Open a new channel and return its id with it."""
        channel = Channel()
        with self._lock:
            seq = self._sequence
            self._sequence = (self._sequence + 1) & 0xFFFF
            if self._invalid:
                channel._disconnect()
            else:
                self._channels[seq] = channel
        return seq, channel

    def dispatch(self, cmd: int, data: bytes) -> None:
        """Route a packet whose payload starts with a 16-bit channel id."""
        if len(data) < 2:
            raise ChannelError("packet too short")
        (channel_id,) = struct.unpack_from(">H", data)
        payload = bytes(data[2:])

        with self._lock:
            now = time.monotonic()
            if self._measurement_start is None:
                self._measurement_start = now
            else:
                elapsed_ms = int((now - self._measurement_start) * 1000)
                if elapsed_ms > _ONE_SECOND_MS:
                    self._download_rate_estimate = (
                        _ONE_SECOND_MS * self._measurement_bytes // elapsed_ms
                    )
                    self._measurement_start = now
                    self._measurement_bytes = 0
            self._measurement_bytes += len(payload)

            channel = self._channels.get(channel_id)
            if channel is not None:
                channel._deliver(cmd, payload)

    def download_rate_estimate(self) -> int:
        """Estimated download rate in bytes per second."""
        with self._lock:
            return self._download_rate_estimate

    def shutdown(self) -> None:
        """Disconnect every channel; channels allocated later fail at once."""
        with self._lock:
            self._invalid = True
            for channel in self._channels.values():
                channel._disconnect()
            self._channels.clear()