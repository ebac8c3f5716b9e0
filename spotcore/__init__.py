"""Building blocks for a streaming audio client: range sets, audio decryption,
configuration, audio keys, credentials, caching, CDN URLs, access-point
resolution, channels and ranged file fetching."""

__version__ = "0.1.0"