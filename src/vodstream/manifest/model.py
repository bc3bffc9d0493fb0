"""
Format-independent model of a segmented stream.

A StreamManifest is produced once by one of the format parsers (HLS or DASH)
and is immutable afterwards. Segment descriptors, key references and locators
are frozen dataclasses, so a manifest can be shared with worker threads
without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from ..errors import ManifestMalformedError


@dataclass(frozen=True)
class ByteRange:
    """A sub-range of a resource, in bytes."""

    offset: int
    length: int

    def __post_init__(self):
        if self.offset < 0 or self.length <= 0:
            raise ManifestMalformedError(
                f"Invalid byte range: offset={self.offset} length={self.length}"
            )

    @property
    def end(self) -> int:
        """Offset one past the last byte of the range."""
        return self.offset + self.length

    def header(self) -> str:
        """Render as an HTTP Range header value (inclusive end)."""
        return f"bytes={self.offset}-{self.end - 1}"


@dataclass(frozen=True)
class Locator:
    """Absolute URI of a resource, optionally restricted to a byte range."""

    uri: str
    byte_range: Optional[ByteRange] = None

    def __str__(self) -> str:
        if self.byte_range is None:
            return self.uri
        return f"{self.uri} [{self.byte_range.header()}]"


class CipherScheme(str, Enum):
    """Whole-segment cipher applied to encrypted segments."""

    AES_128 = "AES-128"
    NONE = "NONE"


class KeyMethod(str, Enum):
    """How the key for a segment is delivered."""

    INLINE = "inline"
    URI = "uri"
    NONE = "none"


@dataclass(frozen=True)
class KeyRef:
    """Reference to the key that decrypts one or more segments.

    ``identifier`` is the cache key: the absolute key URI for HLS, the
    default KID for DASH. ``iv`` is the explicit IV when the manifest
    declares one; otherwise the resolver derives it from the segment
    sequence number. ``material`` holds inline key bytes (HLS ``data:``
    URIs).
    """

    method: KeyMethod
    identifier: Optional[str] = None
    uri: Optional[str] = None
    iv: Optional[bytes] = field(default=None, repr=False)
    material: Optional[bytes] = field(default=None, repr=False)

    def __post_init__(self):
        if self.method is not KeyMethod.NONE and not self.identifier:
            raise ManifestMalformedError(f"{self.method.value} key without an identifier")
        if self.method is KeyMethod.URI and not self.uri:
            raise ManifestMalformedError("Key delivered by URI but no URI given")
        if self.iv is not None and len(self.iv) != 16:
            raise ManifestMalformedError(f"Invalid IV length: {len(self.iv)} (expected 16 bytes)")

    @classmethod
    def unencrypted(cls) -> "KeyRef":
        return _UNENCRYPTED

    @property
    def encrypted(self) -> bool:
        return self.method is not KeyMethod.NONE


_UNENCRYPTED = KeyRef(KeyMethod.NONE)


@dataclass(frozen=True)
class SegmentDescriptor:
    """One independently fetchable segment of the stream."""

    sequence: int
    locator: Locator
    key: KeyRef = _UNENCRYPTED
    duration: float = 0.0
    discontinuity: bool = False

    @property
    def length(self) -> Optional[int]:
        """Byte length when the locator is a byte range, else None (unbounded)."""
        if self.locator.byte_range is None:
            return None
        return self.locator.byte_range.length


@dataclass(frozen=True)
class StreamManifest:
    """Ordered, validated list of segments for a single rendition."""

    segments: Tuple[SegmentDescriptor, ...]
    initialization: Optional[Locator] = None
    source_format: str = "unknown"

    def __post_init__(self):
        object.__setattr__(self, "segments", tuple(self.segments))
        if not self.segments:
            raise ManifestMalformedError("Manifest contains no segments")
        previous = None
        for segment in self.segments:
            if previous is not None and segment.sequence <= previous:
                raise ManifestMalformedError(
                    f"Segment sequence numbers must strictly increase: "
                    f"{segment.sequence} follows {previous}"
                )
            previous = segment.sequence

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    @property
    def duration(self) -> float:
        """Total duration in seconds (informational)."""
        return sum(s.duration for s in self.segments)

    @property
    def key_refs(self) -> Tuple[KeyRef, ...]:
        """Distinct encrypted key references, in order of first use."""
        seen = {}
        for segment in self.segments:
            if segment.key.encrypted and segment.key.identifier not in seen:
                seen[segment.key.identifier] = segment.key
        return tuple(seen.values())

    @property
    def discontinuities(self) -> Tuple[int, ...]:
        """Sequence numbers of segments that follow a discontinuity."""
        return tuple(s.sequence for s in self.segments if s.discontinuity)
