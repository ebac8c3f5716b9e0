"""Resolving access point, dealer and spclient addresses."""

from __future__ import annotations

import json
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

log = logging.getLogger(__name__)

APRESOLVE_URL = "https://apresolve.spotify.com/?type=accesspoint&type=dealer&type=spclient"

SocketAddress = tuple[str, int]

_PORT = re.compile(r"\+?[0-9]+")
_ENDPOINTS = ("accesspoint", "dealer", "spclient")


class ApResolveError(Exception):
    """Raised when no address can be resolved for an endpoint."""


@dataclass
class ApResolveData:
    """Address strings of the form ``host:port`` per endpoint."""

    accesspoint: list[str] = field(default_factory=list)
    dealer: list[str] = field(default_factory=list)
    spclient: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, body: str | bytes) -> ApResolveData:
        """Parse the resolver's JSON answer."""
        try:
            obj = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ApResolveError(f"invalid resolve response: {exc}") from exc
        if not isinstance(obj, dict):
            raise ApResolveError("resolve response must be an object")
        lists = {}
        for name in _ENDPOINTS:
            value = obj.get(name)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ApResolveError(f"missing or invalid field {name!r}")
            lists[name] = list(value)
        return cls(**lists)

    @classmethod
    def fallback(cls) -> ApResolveData:
        """Well-known addresses, only to be used when resolving fails."""
        return cls(
            accesspoint=["ap.spotify.com:443"],
            dealer=["dealer.spotify.com:443"],
            spclient=["spclient.wg.spotify.com:443"],
        )


@dataclass
class AccessPoints:
    """Queues of resolved addresses, in order of preference."""

    accesspoint: deque[SocketAddress] = field(default_factory=deque)
    dealer: deque[SocketAddress] = field(default_factory=deque)
    spclient: deque[SocketAddress] = field(default_factory=deque)

    def is_any_empty(self) -> bool:
        return not self.accesspoint or not self.dealer or not self.spclient


class ApResolver:
    """Hands out addresses, resolving them again once any endpoint runs out.

    ``fetch`` is called with the resolver URL and returns the response body.
    """

    def __init__(
        self,
        fetch: Callable[[str], bytes | str],
        proxy: str | None = None,
        ap_port: int | None = None,
    ) -> None:
        self._fetch = fetch
        self._proxy = proxy
        self._ap_port = ap_port
        self._lock = threading.Lock()
        self._data = AccessPoints()

    def port_config(self) -> int | None:
        """The only port to use, if a proxy or an explicit port is configured."""
        if self._proxy is not None or self._ap_port is not None:
            return self._ap_port if self._ap_port is not None else 443
        return None

    def process_ap_strings(self, data: list[str]) -> deque[SocketAddress]:
        """Parse ``host:port`` strings, dropping invalid ones and other ports."""
        filter_port = self.port_config()
        result: deque[SocketAddress] = deque()
        for entry in data:
            host, sep, port_text = entry.rpartition(":")
            if not sep or not _PORT.fullmatch(port_text):
                continue
            port = int(port_text)
            if port > 0xFFFF:
                continue
            if filter_port is not None and filter_port != port:
                continue
            result.append((host, port))
        return result

    def _to_access_points(self, resolved: ApResolveData) -> AccessPoints:
        return AccessPoints(
            accesspoint=self.process_ap_strings(resolved.accesspoint),
            dealer=self.process_ap_strings(resolved.dealer),
            spclient=self.process_ap_strings(resolved.spclient),
        )

    def try_apresolve(self) -> ApResolveData:
        """Query the resolver service."""
        return ApResolveData.from_json(self._fetch(APRESOLVE_URL))

    def _apresolve(self) -> None:
        error: Exception | None = None
        try:
            resolved = self.try_apresolve()
        except Exception as exc:  # any failure falls back to the defaults
            resolved, error = ApResolveData(), exc

        with self._lock:
            self._data = self._to_access_points(resolved)
            if self._data.is_any_empty():
                log.warning("Failed to resolve all access points, using fallbacks")
                if error is not None:
                    log.warning("Resolve access points error: %s", error)
                fallback = self._to_access_points(ApResolveData.fallback())
                self._data.accesspoint.extend(fallback.accesspoint)
                self._data.dealer.extend(fallback.dealer)
                self._data.spclient.extend(fallback.spclient)

    def resolve(self, endpoint: str) -> SocketAddress:
        """Take the most preferred address for ``endpoint``."""
        with self._lock:
            empty = self._data.is_any_empty()
        if empty:
            self._apresolve()

        with self._lock:
            if endpoint not in _ENDPOINTS:
                raise ApResolveError(
                    f"No implementation to resolve access point {endpoint}"
                )
            queue: deque[SocketAddress] = getattr(self._data, endpoint)
            if not queue:
                raise ApResolveError(f"No access point available for endpoint {endpoint}")
            return queue.popleft()