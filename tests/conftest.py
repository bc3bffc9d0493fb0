"""Shared fixtures: an in-memory fetch capability and encrypted stream builders."""

import threading
import time

import pytest

from vodstream.encryption.symmetric import aes_cbc_encrypt
from vodstream.errors import FetchError
from vodstream.keys.resolver import implicit_iv

BASE = "https://cdn.example.com/vod/episode-1/"
PLAYLIST_URI = BASE + "index.m3u8"
MPD_URI = BASE + "manifest.mpd"

KEY_A = bytes(range(16))
KEY_B = bytes(range(16, 32))


class FakeFetcher:
    """Fetch capability serving bytes from a dict, recording every call.

    ``fail(uri, times)`` makes the next ``times`` calls for ``uri`` raise
    FetchError; ``delays`` slows individual URIs down so completion order
    differs from launch order.
    """

    def __init__(self):
        self.resources = {}
        self.failures = {}
        self.delays = {}
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def fail(self, uri, times):
        self.failures[uri] = times

    def count(self, uri):
        with self._lock:
            return self.calls.count(uri)

    def __call__(self, locator, timeout=None):
        uri = locator.uri
        with self._lock:
            self.calls.append(uri)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            failing = self.failures.get(uri, 0) > 0
            if failing:
                self.failures[uri] -= 1
        try:
            if self.delays.get(uri):
                time.sleep(self.delays[uri])
            if failing:
                raise FetchError(f"simulated failure for {uri}")
            if uri not in self.resources:
                raise FetchError(f"404 Not Found: {uri}")
            data = self.resources[uri]
            if locator.byte_range is not None:
                data = data[locator.byte_range.offset:locator.byte_range.end]
            return data
        finally:
            with self._lock:
                self.active -= 1


def encrypt_segment(plaintext, key, sequence=None, iv=None):
    """Whole-segment AES-128-CBC, IV explicit or derived from the sequence number."""
    _, ciphertext = aes_cbc_encrypt(plaintext, key, iv if iv is not None else implicit_iv(sequence))
    return ciphertext


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def build_hls(fetcher):
    """Return a builder publishing an HLS media playlist and its segments on ``fetcher``.

    ``key_ids[i]`` names the key of segment i (None = clear); ``keys`` maps key
    ids to key bytes, served at ``keys/<id>.key``.
    """

    def build(plaintexts, key_ids=None, keys=None, media_sequence=0,
              explicit_iv=None, discontinuity_before=(), init_section=None):
        keys = keys or {}
        lines = [
            "#EXTM3U",
            "#EXT-X-VERSION:6",
            "#EXT-X-TARGETDURATION:6",
            f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}",
            "#EXT-X-PLAYLIST-TYPE:VOD",
        ]
        if init_section is not None:
            lines.append('#EXT-X-MAP:URI="init.mp4"')
            fetcher.resources[BASE + "init.mp4"] = init_section

        current = None
        for position, plaintext in enumerate(plaintexts):
            sequence = media_sequence + position
            key_id = key_ids[position] if key_ids else None
            if key_id != current:
                if key_id is None:
                    lines.append("#EXT-X-KEY:METHOD=NONE")
                else:
                    attrs = f'METHOD=AES-128,URI="keys/{key_id}.key"'
                    if explicit_iv is not None:
                        attrs += f",IV=0x{explicit_iv.hex()}"
                    lines.append(f"#EXT-X-KEY:{attrs}")
                    fetcher.resources[BASE + f"keys/{key_id}.key"] = keys[key_id]
                current = key_id
            if position in discontinuity_before:
                lines.append("#EXT-X-DISCONTINUITY")
            lines.append("#EXTINF:6.000,")
            lines.append(f"seg{sequence}.ts")
            if key_id is None:
                data = plaintext
            else:
                data = encrypt_segment(plaintext, keys[key_id], sequence, explicit_iv)
            fetcher.resources[BASE + f"seg{sequence}.ts"] = data
        lines.append("#EXT-X-ENDLIST")
        return "\n".join(lines) + "\n"

    return build


@pytest.fixture
def plaintexts():
    """Five segment payloads of different lengths (some block aligned)."""
    return [bytes([i]) * (1000 + 37 * i) for i in range(1, 5)] + [b"\x47" * 1504]
