import pytest

from spotcore.cdn_url import (
    CDN_URL_EXPIRY_MARGIN_MS,
    CdnUrl,
    CdnUrlError,
    MaybeExpiringUrl,
    parse_storage_urls,
)

TIMESTAMP = 1688165560

SAMPLE_URLS = [
    f"https://audio-ak-spotify-com.akamaized.net/audio/foo?__token__=exp={TIMESTAMP}~hmac=4e661527574fab5793adb99cf04e1c2ce12294c71fe1d39ffbfabdcfe8ce3b41",
    f"https://audio-gm-off.spotifycdn.com/audio/foo?Expires={TIMESTAMP}~FullPath~hmac=IIZA28qptl8cuGLq15-SjHKHtLoxzpy_6r_JpAU4MfM=",
    f"https://audio4-fa.scdn.co/audio/foo?{TIMESTAMP}_0GKSyXjLaTW1BksFOyI4J7Tf9tZDbBUNNPu9Mt4mhH4=",
    "https://audio4-fa.scdn.co/foo?baz",
]


def test_maybe_expiring_urls():
    urls = parse_storage_urls(True, SAMPLE_URLS, [b"\x00"])
    assert len(urls) == 4
    assert urls[0].expiry_ms is not None
    assert urls[1].expiry_ms is not None
    assert urls[2].expiry_ms is not None
    assert urls[3].expiry_ms is None
    assert urls[0].expiry_ms == TIMESTAMP * 1000 - CDN_URL_EXPIRY_MARGIN_MS


def test_all_formats_give_same_expiry():
    urls = parse_storage_urls(True, SAMPLE_URLS[:3], [b"\x00"])
    assert urls[0].expiry_ms == urls[1].expiry_ms == urls[2].expiry_ms


def test_urls_kept_verbatim():
    urls = parse_storage_urls(True, SAMPLE_URLS, [b"\x00"])
    assert [u.url for u in urls] == SAMPLE_URLS


def test_not_expiring_without_file_ids():
    urls = parse_storage_urls(True, SAMPLE_URLS, [])
    assert all(u.expiry_ms is None for u in urls)


def test_non_cdn_storage_rejected():
    with pytest.raises(CdnUrlError):
        parse_storage_urls(False, SAMPLE_URLS, [b"\x00"])


def test_try_get_url_unresolved():
    with pytest.raises(CdnUrlError):
        CdnUrl(b"\x01" * 20).try_get_url()


def test_try_get_url_skips_expired():
    urls = parse_storage_urls(True, SAMPLE_URLS, [b"\x00"])
    cdn = CdnUrl(b"\x01" * 20, urls)
    before = TIMESTAMP * 1000 - CDN_URL_EXPIRY_MARGIN_MS - 1
    assert cdn.try_get_url(now=before) == SAMPLE_URLS[0]
    after = TIMESTAMP * 1000
    assert cdn.try_get_url(now=after) == SAMPLE_URLS[3]


def test_try_get_url_all_expired():
    cdn = CdnUrl(b"\x01", [MaybeExpiringUrl("https://example.com/a", 10)])
    with pytest.raises(CdnUrlError):
        cdn.try_get_url(now=10)
    assert cdn.try_get_url(now=9) == "https://example.com/a"