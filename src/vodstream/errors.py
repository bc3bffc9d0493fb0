"""
Exception taxonomy for the stream decryption core.

Every error raised by this package derives from StreamError. Each family also
derives from the built-in exception callers would expect for the concern
(ValueError for bad data, IOError for transport problems), so code that only
knows about the built-ins keeps working.

- ManifestError: malformed or unsupported manifest, raised before any fetch
- KeyResolutionError: key material unavailable (retryable), malformed or
  missing from the caller-supplied keys (fatal)
- FetchError: network or timeout failure fetching a segment (retryable)
- DecryptError: invalid padding or short input (never retried)
"""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for all stream processing errors.

    The assembler fills in ``sequence`` with the segment that failed before
    the error reaches the consumer.
    """

    def __init__(self, message: str, sequence: Optional[int] = None):
        super().__init__(message)
        self.sequence = sequence


class ManifestError(StreamError, ValueError):
    """The manifest cannot be turned into a StreamManifest."""


class ManifestMalformedError(ManifestError):
    """Unparsable structure, zero segments or non-monotonic numbering."""


class UnsupportedFeatureError(ManifestError):
    """A format extension this package does not implement."""


class KeyResolutionError(StreamError):
    """Key material for a segment could not be produced."""


class KeyUnavailableError(KeyResolutionError, IOError):
    """Network or auth failure fetching a key. Retryable."""


class MalformedKeyError(KeyResolutionError, ValueError):
    """Key material of the wrong length. Fatal for the manifest."""


class MissingKeyError(KeyResolutionError, LookupError):
    """No key was supplied for an inline key identifier. Fatal."""


class FetchError(StreamError, IOError):
    """A segment, key or init section could not be fetched."""

    def __init__(self, message: str, locator=None, sequence: Optional[int] = None):
        super().__init__(message, sequence=sequence)
        self.locator = locator


class DecryptError(StreamError, ValueError):
    """A segment could not be decrypted. Never retried."""


class InvalidPaddingError(DecryptError):
    """Padding bytes are inconsistent: corrupted segment or wrong key."""


class ShortInputError(DecryptError):
    """Ciphertext length is not a positive multiple of the block size."""
