import json
from collections import deque

import pytest

from spotcore.apresolve import (
    APRESOLVE_URL,
    AccessPoints,
    ApResolveData,
    ApResolveError,
    ApResolver,
)

RESPONSE = {
    "accesspoint": ["ap-a.example.com:4070", "ap-b.example.com:443", "ap-c.example.com:80"],
    "dealer": ["dealer-a.example.com:443"],
    "spclient": ["spclient-a.example.com:443"],
}


def _fetcher(body):
    calls = []

    def fetch(url):
        calls.append(url)
        return body

    return fetch, calls


def _failing(url):
    raise OSError("network down")


def test_resolve_in_order_of_preference():
    fetch, calls = _fetcher(json.dumps(RESPONSE).encode())
    resolver = ApResolver(fetch)
    assert resolver.resolve("accesspoint") == ("ap-a.example.com", 4070)
    assert resolver.resolve("accesspoint") == ("ap-b.example.com", 443)
    assert calls == [APRESOLVE_URL]


def test_resolve_other_endpoints():
    fetch, _ = _fetcher(json.dumps(RESPONSE))
    resolver = ApResolver(fetch)
    assert resolver.resolve("dealer") == ("dealer-a.example.com", 443)
    assert resolver.resolve("spclient") == ("spclient-a.example.com", 443)


def test_port_filter_applies():
    fetch, _ = _fetcher(json.dumps(RESPONSE))
    resolver = ApResolver(fetch, ap_port=443)
    assert resolver.resolve("accesspoint") == ("ap-b.example.com", 443)


def test_port_config():
    assert ApResolver(_failing).port_config() is None
    assert ApResolver(_failing, proxy="http://localhost:8080").port_config() == 443
    assert ApResolver(_failing, ap_port=4070).port_config() == 4070


def test_fallback_on_fetch_failure():
    resolver = ApResolver(_failing)
    assert resolver.resolve("accesspoint") == ("ap.spotify.com", 443)
    assert resolver.resolve("dealer") == ("dealer.spotify.com", 443)
    assert resolver.resolve("spclient") == ("spclient.wg.spotify.com", 443)


def test_fallback_filtered_out_raises():
    resolver = ApResolver(_failing, ap_port=80)
    with pytest.raises(ApResolveError):
        resolver.resolve("accesspoint")


def test_unknown_endpoint():
    fetch, _ = _fetcher(json.dumps(RESPONSE))
    with pytest.raises(ApResolveError):
        ApResolver(fetch).resolve("nonsense")


def test_process_ap_strings_drops_invalid():
    resolver = ApResolver(_failing)
    result = resolver.process_ap_strings(
        ["host.example.com:abc", "noport", "host.example.com:99999", "good.example.com:443"]
    )
    assert result == deque([("good.example.com", 443)])


def test_from_json_rejects_missing_field():
    with pytest.raises(ApResolveError):
        ApResolveData.from_json('{"accesspoint": []}')
    with pytest.raises(ApResolveError):
        ApResolveData.from_json("not json")


def test_from_json_roundtrip():
    data = ApResolveData.from_json(json.dumps(RESPONSE))
    assert data.accesspoint == RESPONSE["accesspoint"]
    assert data.dealer == RESPONSE["dealer"]
    assert data.spclient == RESPONSE["spclient"]


def test_access_points_is_any_empty():
    assert AccessPoints().is_any_empty()
    full = AccessPoints(deque([("a", 1)]), deque([("b", 2)]), deque([("c", 3)]))
    assert not full.is_any_empty()