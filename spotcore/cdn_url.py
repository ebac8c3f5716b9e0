"""Resolved CDN locations for audio files, with their expiry times."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Iterable
from urllib.parse import parse_qsl, urlsplit

log = logging.getLogger(__name__)

CDN_URL_EXPIRY_MARGIN_MS = 5 * 60 * 1000

_INTEGER = re.compile(r"[+-]?[0-9]+")


class CdnUrlError(Exception):
    """Raised when no usable CDN URL is available."""


@dataclass(frozen=True)
class MaybeExpiringUrl:
    """A URL and, if known, the time in epoch milliseconds after which it is invalid."""

    url: str
    expiry_ms: int | None = None


def _expiry_string(url: str) -> str | None:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"invalid CDN URL: {url!r}")
    pairs = parse_qsl(parts.query, keep_blank_values=True)

    token = next((value for key, value in pairs if key == "__token__"), None)
    if token is not None:
        start = token.find("exp=")
        if start < 0:
            return None
        rest = token[start + 4 :]
        return rest.split("~", 1)[0]

    expires = next((value for key, value in pairs if key == "Expires"), None)
    if expires is not None:
        if "~" in expires:
            return expires.split("~", 1)[0]
        return None

    if "?" in url:
        return parts.query.split("_", 1)[0]
    return None


def parse_storage_urls(
    is_cdn: bool, cdn_urls: Iterable[str], file_ids: Iterable[bytes]
) -> list[MaybeExpiringUrl]:
    """Build the URL list from a storage-resolve answer.

    ``is_cdn`` tells whether the answer points at CDN storage; ``file_ids``
    being non-empty marks the URLs as expiring.
    """
    if not is_cdn:
        raise CdnUrlError("resolved storage is not for CDN")

    is_expiring = bool(list(file_ids))
    result: list[MaybeExpiringUrl] = []
    for cdn_url in cdn_urls:
        expiry_str = _expiry_string(cdn_url)
        expiry: int | None = None
        if is_expiring:
            if expiry_str is None:
                log.warning("Unknown CDN URL format: %s", cdn_url)
            elif _INTEGER.fullmatch(expiry_str):
                expiry = int(expiry_str) * 1000 - CDN_URL_EXPIRY_MARGIN_MS
            else:
                log.warning(
                    "Cannot parse CDN URL expiry timestamp '%s' from '%s'",
                    expiry_str,
                    cdn_url,
                )
        result.append(MaybeExpiringUrl(cdn_url, expiry))
    return result


@dataclass
class CdnUrl:
    """The CDN locations resolved for one audio file."""

    file_id: bytes
    urls: list[MaybeExpiringUrl] = field(default_factory=list)

    def __init__(self, file_id: bytes, urls: Iterable[MaybeExpiringUrl] = ()) -> None:
        self.file_id = bytes(file_id)
        self.urls = list(urls)

    def try_get_url(self, now: int | None = None) -> str:
        """The first URL still valid at ``now`` (epoch milliseconds, default: current time)."""
        if not self.urls:
            raise CdnUrlError("no URLs resolved")
        if now is None:
            now = int(time.time() * 1000)
        for entry in self.urls:
            if entry.expiry_ms is None or now < entry.expiry_ms:
                return entry.url
        raise CdnUrlError("all URLs expired")