"""
HLS media playlist parsing.

Wraps the ``m3u8`` library and converts a media playlist into a
StreamManifest. Only whole-segment AES-128 (CBC, PKCS#7) encryption is
supported; sample encryption and DRM key formats are rejected up front so
the caller never starts a download that cannot be decrypted.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import unquote_to_bytes, urljoin

import m3u8
from m3u8.parser import ParseError

from ..errors import ManifestMalformedError, UnsupportedFeatureError
from .model import ByteRange, KeyMethod, KeyRef, Locator, SegmentDescriptor, StreamManifest

SUPPORTED_KEYFORMATS = (None, "", "identity")


@dataclass(frozen=True)
class Variant:
    """One rendition listed by a master playlist."""

    uri: str
    bandwidth: int
    resolution: Optional[Tuple[int, int]] = None
    codecs: Optional[str] = None


def _load(text: str) -> m3u8.M3U8:
    if not text or not text.lstrip("\ufeff \t\r\n").startswith("#EXTM3U"):
        raise ManifestMalformedError("Not an HLS playlist (missing #EXTM3U header)")
    try:
        return m3u8.loads(text.lstrip("\ufeff"))
    except (ParseError, ValueError, TypeError, IndexError) as e:
        raise ManifestMalformedError(f"Unparsable HLS playlist: {e}") from e


def variants(text: str, base_uri: str) -> List[Variant]:
    """List the renditions of a master playlist, highest bandwidth first."""
    playlist = _load(text)
    if not playlist.is_variant:
        raise ManifestMalformedError("Not a master playlist")
    found = []
    for entry in playlist.playlists:
        info = entry.stream_info
        found.append(
            Variant(
                uri=urljoin(base_uri, entry.uri),
                bandwidth=int(info.bandwidth or 0),
                resolution=tuple(info.resolution) if info.resolution else None,
                codecs=info.codecs,
            )
        )
    found.sort(key=lambda v: (v.bandwidth, (v.resolution or (0, 0))), reverse=True)
    return found


def parse_iv(value: str) -> bytes:
    """Decode an ``IV=0x...`` attribute into 16 bytes, left-padding with zeros."""
    hexstr = value[2:] if value[:2].lower() == "0x" else value
    hexstr = hexstr.rjust(len(hexstr) + len(hexstr) % 2, "0")
    try:
        raw = bytes.fromhex(hexstr)
    except ValueError as e:
        raise ManifestMalformedError(f"Invalid IV: {value!r}") from e
    if not raw or len(raw) > 16:
        raise ManifestMalformedError(f"Invalid IV length: {len(raw)} (expected 16 bytes)")
    return raw.rjust(16, b"\x00")


def decode_data_uri(uri: str) -> bytes:
    """Return the payload of a ``data:`` key URI."""
    header, sep, payload = uri[len("data:"):].partition(",")
    if not sep:
        raise ManifestMalformedError("Malformed data: key URI")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ManifestMalformedError(f"Invalid base64 in data: key URI: {e}") from e
    return unquote_to_bytes(payload)


def _key_ref(key, base_uri: str) -> KeyRef:
    if key is None or not key.method or key.method.upper() == "NONE":
        return KeyRef.unencrypted()

    method = key.method.upper()
    if method != "AES-128":
        raise UnsupportedFeatureError(f"Unsupported encryption method: {key.method}")
    if key.keyformat not in SUPPORTED_KEYFORMATS:
        raise UnsupportedFeatureError(f"Unsupported key format: {key.keyformat}")
    if not key.uri:
        raise ManifestMalformedError("AES-128 key without URI")

    iv = parse_iv(key.iv) if key.iv else None
    if key.uri.startswith("data:"):
        material = decode_data_uri(key.uri)
        return KeyRef(KeyMethod.INLINE, identifier=key.uri, iv=iv, material=material)

    absolute = urljoin(base_uri, key.uri)
    return KeyRef(KeyMethod.URI, identifier=absolute, uri=absolute, iv=iv)


def _byte_range(value: Optional[str], uri: str, last_end: dict) -> Optional[ByteRange]:
    # EXT-X-BYTERANGE:<n>[@<o>]; a missing offset continues the previous range
    if not value:
        return None
    length, _, offset = str(value).partition("@")
    try:
        length_i = int(length)
        offset_i = int(offset) if offset else last_end.get(uri)
    except ValueError as e:
        raise ManifestMalformedError(f"Invalid byte range: {value!r}") from e
    if offset_i is None:
        raise ManifestMalformedError(f"Byte range without offset has no predecessor: {value!r}")
    byte_range = ByteRange(offset_i, length_i)
    last_end[uri] = byte_range.end
    return byte_range


def _init_locator(section, base_uri: str) -> Locator:
    uri = urljoin(base_uri, section.uri)
    return Locator(uri, _byte_range(section.byterange, uri, {}) if section.byterange else None)


def parse(text: str, base_uri: str) -> StreamManifest:
    """Parse an HLS media playlist into a StreamManifest.

    Args:
        text: Playlist text
        base_uri: URL the playlist was loaded from; relative segment, key and
            map URIs are resolved against it

    Returns:
        Validated StreamManifest

    Raises:
        ManifestMalformedError: If the playlist cannot be parsed or is empty
        UnsupportedFeatureError: For master playlists, sample encryption,
            DRM key formats or multiple initialization sections
    """
    playlist = _load(text)
    if playlist.is_variant:
        raise UnsupportedFeatureError(
            "Master playlist given; select a variant with hls.variants() first"
        )

    first_sequence = playlist.media_sequence or 0
    last_end: dict = {}
    initialization = None
    segments = []

    for position, seg in enumerate(playlist.segments):
        if not seg.uri:
            raise ManifestMalformedError(f"Segment {position} has no URI")
        uri = urljoin(base_uri, seg.uri)

        section = getattr(seg, "init_section", None)
        if section is not None and section.uri:
            locator = _init_locator(section, base_uri)
            if initialization is None:
                initialization = locator
            elif locator != initialization:
                raise UnsupportedFeatureError("Initialization section changes mid-stream")

        segments.append(
            SegmentDescriptor(
                sequence=first_sequence + position,
                locator=Locator(uri, _byte_range(seg.byterange, uri, last_end)),
                key=_key_ref(seg.key, base_uri),
                duration=float(seg.duration or 0.0),
                discontinuity=bool(seg.discontinuity),
            )
        )

    return StreamManifest(tuple(segments), initialization=initialization, source_format="hls")
