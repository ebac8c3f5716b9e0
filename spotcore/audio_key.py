"""Requesting and receiving per-file audio decryption keys."""

from __future__ import annotations

import enum
import logging
import struct
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable

log = logging.getLogger(__name__)

KEY_LENGTH = 16


@dataclass(frozen=True)
class AudioKey:
    """A 128-bit AES key for one audio file."""

    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != KEY_LENGTH:
            raise ValueError(f"audio key must be {KEY_LENGTH} bytes, got {len(self.data)}")


class AudioKeyError(Exception):
    """Raised when a key cannot be obtained or a key packet is unexpected."""


class AudioKeyPacket(enum.IntEnum):
    """Packet types used by the key exchange."""

    REQUEST_KEY = 0x0C
    AES_KEY = 0x0D
    AES_KEY_ERROR = 0x0E


class AudioKeyManager:
    """Tracks outstanding key requests and resolves them from incoming packets.

    ``send_request`` is called with the packet type and payload of each request.
    """

    def __init__(self, send_request: Callable[[AudioKeyPacket, bytes], None]) -> None:
        self._send_request = send_request
        self._lock = threading.Lock()
        self._sequence = 0
        self._pending: dict[int, Future[AudioKey]] = {}

    def dispatch(self, cmd: int, data: bytes) -> None:
        """Handle a key response packet."""
        (seq,) = struct.unpack_from(">I", data)
        payload = data[4:]

        with self._lock:
            future = self._pending.pop(seq, None)
        if future is None:
            raise AudioKeyError(f"sequence {seq} not pending")

        try:
            packet = AudioKeyPacket(cmd)
        except ValueError:
            packet = None

        if packet is AudioKeyPacket.AES_KEY:
            try:
                key = AudioKey(bytes(payload[:KEY_LENGTH]))
            except ValueError as exc:
                future.set_exception(AudioKeyError("audio key error"))
                raise AudioKeyError("audio key error") from exc
            future.set_result(key)
        elif packet is AudioKeyPacket.AES_KEY_ERROR:
            if len(payload) >= 2:
                log.error("error audio key %x %x", payload[0], payload[1])
            future.set_exception(AudioKeyError("audio key error"))
        else:
            error = AudioKeyError(f"unexpected packet type {cmd}")
            future.set_exception(error)
            raise error

    def request(self, track_id: bytes, file_id: bytes) -> Future[AudioKey]:
        """Send a key request; the returned future resolves to the key."""
        future: Future[AudioKey] = Future()
        with self._lock:
            seq = self._sequence
            self._sequence = (self._sequence + 1) & 0xFFFFFFFF
            self._pending[seq] = future

        payload = bytes(file_id) + bytes(track_id) + struct.pack(">IH", seq, 0)
        try:
            self._send_request(AudioKeyPacket.REQUEST_KEY, payload)
        except Exception:
            with self._lock:
                self._pending.pop(seq, None)
            raise
        return future