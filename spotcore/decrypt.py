"""Transparent AES-128-CTR decryption of audio streams."""

from __future__ import annotations

import io
from typing import BinaryIO

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .audio_key import AudioKey

AUDIO_AESIV = bytes.fromhex("72e067fbddcbcf77ebe8bc643f630d93")

_BLOCK = 16
_COUNTER_MOD = 1 << 128


class AudioDecrypt:
    """A readable, seekable stream that decrypts ``reader`` on the fly.

    With no key the underlying bytes pass through unaltered.
    """

    def __init__(self, key: AudioKey | None, reader: BinaryIO) -> None:
        self._key = key
        self._reader = reader
        self._position = 0
        self._decryptor = self._keystream_at(0)

    def _keystream_at(self, position: int):
        if self._key is None:
            return None
        block, skip = divmod(position, _BLOCK)
        counter = (int.from_bytes(AUDIO_AESIV, "big") + block) % _COUNTER_MOD
        decryptor = Cipher(
            algorithms.AES(self._key.data), modes.CTR(counter.to_bytes(_BLOCK, "big"))
        ).decryptor()
        if skip:
            decryptor.update(bytes(skip))
        return decryptor

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        if self._decryptor is not None:
            data = self._decryptor.update(data)
        self._position += len(data)
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        new_position = self._reader.seek(offset, whence)
        self._position = new_position
        self._decryptor = self._keystream_at(new_position)
        return new_position

    def tell(self) -> int:
        return self._position