"""Login credentials and decoding of stored credential blobs."""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import json
import struct
from dataclasses import dataclass

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AUTHENTICATION_USER_PASS = 0
AUTHENTICATION_STORED_SPOTIFY_CREDENTIALS = 1
AUTHENTICATION_STORED_FACEBOOK_CREDENTIALS = 2
AUTHENTICATION_SPOTIFY_TOKEN = 3
AUTHENTICATION_FACEBOOK_TOKEN = 4

_KNOWN_AUTH_TYPES = frozenset(
    {
        AUTHENTICATION_USER_PASS,
        AUTHENTICATION_STORED_SPOTIFY_CREDENTIALS,
        AUTHENTICATION_STORED_FACEBOOK_CREDENTIALS,
        AUTHENTICATION_SPOTIFY_TOKEN,
        AUTHENTICATION_FACEBOOK_TOKEN,
    }
)

_AES_BLOCK = 16


class AuthenticationError(ValueError):
    """Raised when credentials cannot be decoded."""


def _read_u8(stream: io.BytesIO) -> int:
    byte = stream.read(1)
    if not byte:
        raise AuthenticationError("unexpected end of credentials blob")
    return byte[0]


def _read_int(stream: io.BytesIO) -> int:
    lo = _read_u8(stream)
    if lo & 0x80 == 0:
        return lo
    hi = _read_u8(stream)
    return (lo & 0x7F) | (hi << 7)


def _read_bytes(stream: io.BytesIO) -> bytes:
    length = _read_int(stream)
    data = stream.read(length)
    if len(data) != length:
        raise AuthenticationError("unexpected end of credentials blob")
    return data


def _blob_key(username: str, device_id: bytes) -> bytes:
    secret = hashlib.sha1(device_id).digest()
    derived = hashlib.pbkdf2_hmac("sha1", secret, username.encode(), 0x100, 20)
    return hashlib.sha1(derived).digest() + struct.pack(">I", 20)


def _b64decode(value: str | bytes) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationError(f"invalid base64: {exc}") from exc


@dataclass
class Credentials:
    """The credentials used to log into the service."""

    username: str = ""
    auth_type: int = AUTHENTICATION_USER_PASS
    auth_data: bytes = b""

    @classmethod
    def with_password(cls, username: str, password: str) -> Credentials:
        """Credentials from a username and a plain password."""
        return cls(username, AUTHENTICATION_USER_PASS, password.encode())

    @classmethod
    def with_blob(
        cls, username: str, encrypted_blob: str | bytes, device_id: str | bytes
    ) -> Credentials:
        """Decode an encrypted credentials blob announced for ``device_id``."""
        if isinstance(device_id, str):
            device_id = device_id.encode()
        key = _blob_key(username, device_id)

        data = bytearray(_b64decode(encrypted_blob))
        whole = len(data) - len(data) % _AES_BLOCK
        decryptor = Cipher(algorithms.AES(key), modes.ECB()).decryptor()
        data[:whole] = decryptor.update(bytes(data[:whole])) + decryptor.finalize()

        length = len(data)
        if length < _AES_BLOCK:
            raise AuthenticationError("credentials blob too short")
        for i in range(length - _AES_BLOCK):
            data[length - i - 1] ^= data[length - i - 0x11]

        stream = io.BytesIO(bytes(data))
        _read_u8(stream)
        _read_bytes(stream)
        _read_u8(stream)
        auth_type = _read_int(stream)
        if auth_type not in _KNOWN_AUTH_TYPES:
            raise AuthenticationError(f"unknown authentication type {auth_type}")
        _read_u8(stream)
        auth_data = _read_bytes(stream)
        return cls(username, auth_type, auth_data)

    def to_json(self) -> str:
        """Serialise to the JSON form kept in the credentials cache."""
        return json.dumps(
            {
                "username": self.username,
                "auth_type": self.auth_type,
                "auth_data": base64.b64encode(self.auth_data).decode("ascii"),
            }
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> Credentials:
        """Parse the JSON form written by :meth:`to_json`."""
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as exc:
            raise AuthenticationError(f"invalid credentials JSON: {exc}") from exc
        if not isinstance(obj, dict):
            raise AuthenticationError("credentials JSON must be an object")

        username = obj.get("username")
        if not isinstance(username, str):
            raise AuthenticationError("missing or invalid field 'username'")

        auth_type = obj.get("auth_type")
        if isinstance(auth_type, bool) or not isinstance(auth_type, int):
            raise AuthenticationError("missing or invalid field 'auth_type'")
        if auth_type not in _KNOWN_AUTH_TYPES:
            raise AuthenticationError("Invalid enum value")

        encoded = obj.get("auth_data", obj.get("encoded_auth_blob"))
        if not isinstance(encoded, str):
            raise AuthenticationError("missing or invalid field 'auth_data'")

        return cls(username, auth_type, _b64decode(encoded))