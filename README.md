# spotcore

Building blocks for a streaming audio client, written in plain Python.

## Modules

- `spotcore.range_set` provides `Range`, a half-open interval, and `RangeSet`, a sorted set of disjoint ranges. `RangeSet` supports `add_range`, `subtract_range`, `union`, `minus` and `intersection`. It also has `contained_length_from_value`, which reports how many consecutive positions are covered starting at a given value.
- `spotcore.decrypt` provides `AudioDecrypt`. It wraps a binary reader and decrypts AES-128-CTR audio as it is read, and it supports `seek` and `tell`. Without a key, the data passes through unchanged.
- `spotcore.config` provides `DeviceType` (an `IntEnum` with `parse` and display names) and the dataclasses `SessionConfig` and `ConnectConfig`, with their defaults.
- `spotcore.audio_key` provides `AudioKey` and `AudioKeyManager`. `AudioKeyManager.request` sends a key request through a callable you supply and returns a `concurrent.futures.Future`. `dispatch` resolves that future from a reply packet, matched by sequence number.
- `spotcore.authentication` provides `Credentials`. You can build them with `with_password`, or decode them from an encrypted, base64-encoded blob with `with_blob`. They convert to and from JSON with `to_json` and `from_json`.
- `spotcore.cache` provides `Cache`, which stores credentials, the volume and audio files on disk. It also provides `SizeLimiter`, which tracks file sizes and access times. When an audio size limit is set, the cache removes the least recently used files once the limit is exceeded.
- `spotcore.cdn_url` provides `parse_storage_urls`, which reads expiry times out of CDN URLs minus a five-minute margin, and `CdnUrl`. `CdnUrl.try_get_url` returns the first URL that has not expired.
- `spotcore.apresolve` provides `ApResolver`. It hands out access point, dealer and spclient addresses, resolves them again when any list runs empty, and uses fallback addresses when resolving fails.
- `spotcore.channel` provides `ChannelManager` and `Channel`. The manager routes packets to channels by a 16-bit id. A channel yields `HeaderEvent` and `DataEvent` items, which you can also read through `headers()` and `data()`.
- `spotcore.fetch` and `spotcore.receive` download a file in ranges into a temporary file, which you can read while the download runs.
  - `open_streaming` starts the download in background threads and returns an `AudioFileStreaming` reader.
  - The reader's `controller()` gives a `StreamLoaderController` for switching between stream and random-access modes and for fetching ranges ahead of time.

## Installing

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from spotcore.range_set import Range, RangeSet

downloaded = RangeSet()
downloaded.add_range(Range(0, 100))
downloaded.add_range(Range(100, 50))
print(downloaded)                                 # ([0, 149])
print(downloaded.contained_length_from_value(40)) # 110

missing = RangeSet([Range(0, 300)]).minus(downloaded)
print(missing)                                    # ([150, 299])
```

Reading encrypted audio:

```python
import io
from spotcore.audio_key import AudioKey
from spotcore.decrypt import AudioDecrypt

encrypted_bytes = bytes(8192)  # stands in for encrypted audio data
key = AudioKey(bytes(16))
stream = AudioDecrypt(key, io.BytesIO(encrypted_bytes))
stream.seek(1000, io.SEEK_SET)
chunk = stream.read(4096)
```

## What the package does not do

The package does no networking of its own. You supply the transport as callables:

- `ApResolver` takes a `fetch` function that returns the resolver's response body.
- `open_streaming` takes a `requester` that performs ranged requests and yields `RangeResponse` objects.
- `AudioKeyManager` takes a `send_request` function.

Incoming packets are passed to `dispatch` by the caller.

The package does not include any of the following:

- a session or login handshake
- protocol message definitions
- audio decoding or playback
- remote-control handling
- a command-line program