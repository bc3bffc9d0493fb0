"""
Key resolution for encrypted segments.

Maps a KeyRef from the manifest to the key bytes and IV that decrypt one
segment. Key material is cached per identifier in a KeyCache; concurrent
requests for an identifier that is still being fetched wait on the same
in-flight resolution instead of fetching again.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..encryption.symmetric import KEY_SIZE
from ..errors import (
    FetchError, KeyResolutionError, KeyUnavailableError, MalformedKeyError, MissingKeyError
)
from ..fetch.contract import Fetcher, fetch_once
from ..manifest.model import KeyMethod, KeyRef, Locator

LOGGER = logging.getLogger(__name__)


def implicit_iv(sequence: int) -> bytes:
    """IV for segments without an explicit one: big-endian 128-bit sequence number."""
    if sequence < 0:
        raise ValueError(f"Sequence number must not be negative: {sequence}")
    return sequence.to_bytes(16, "big")


def _wipe(buffer: bytearray) -> None:
    buffer[:] = bytes(len(buffer))


def _normalize(identifier: str) -> str:
    return identifier.replace("-", "").lower()


@dataclass(eq=False)
class ResolvedKey:
    """Key bytes and IV for one segment. Call wipe() once the segment is decrypted."""

    key: bytearray
    iv: bytes

    def wipe(self) -> None:
        _wipe(self.key)

    def __repr__(self) -> str:
        return f"ResolvedKey(iv={self.iv.hex()})"


class KeyCache:
    """Thread-safe key material cache with shared in-flight resolutions.

    Entries are futures. The first caller for an identifier becomes the
    owner and runs the loader; everyone else waits on the owner's future. A
    failed load is removed before the error propagates, so a later attempt
    starts a fresh load and no identifier stays in flight forever.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Future] = {}

    def get_or_load(self, identifier: str, loader: Callable[[], bytes]) -> bytearray:
        with self._lock:
            future = self._entries.get(identifier)
            owner = future is None
            if owner:
                future = Future()
                self._entries[identifier] = future

        if not owner:
            try:
                return future.result()
            except KeyResolutionError as e:
                # fresh instance per waiter; the assembler annotates errors per segment
                raise type(e)(str(e)) from e

        try:
            material = bytearray(loader())
        except BaseException as e:
            with self._lock:
                if self._entries.get(identifier) is future:
                    del self._entries[identifier]
            future.set_exception(e)
            raise
        future.set_result(material)
        return material

    def pending(self) -> List[str]:
        """Identifiers whose resolution is still in flight."""
        with self._lock:
            return [k for k, f in self._entries.items() if not f.done()]

    def __contains__(self, identifier: str) -> bool:
        with self._lock:
            future = self._entries.get(identifier)
        return future is not None and future.done() and future.exception() is None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Drop every entry and zero the cached key material."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for future in entries:
            if future.done() and future.exception() is None:
                _wipe(future.result())


class KeyResolver:
    """Resolve KeyRefs to ResolvedKeys through a KeyCache.

    Args:
        fetch: Fetch capability used for keys delivered by URI
        cache: Cache to use; a private one is created when omitted
        inline_keys: Key bytes (or hex strings) supplied by the caller, by
            key identifier; DASH KIDs match with or without dashes
        timeout: Timeout in seconds for each key fetch
    """

    def __init__(
        self,
        fetch: Fetcher,
        cache: Optional[KeyCache] = None,
        inline_keys: Optional[Mapping[str, Union[bytes, str]]] = None,
        timeout: Optional[float] = None,
    ):
        self.fetch = fetch
        self.cache = cache if cache is not None else KeyCache()
        self.timeout = timeout
        self.inline_keys: Dict[str, bytes] = {}
        for identifier, material in (inline_keys or {}).items():
            if isinstance(material, str):
                try:
                    material = bytes.fromhex(material)
                except ValueError as e:
                    raise MalformedKeyError(f"Inline key for {identifier!r} is not valid hex") from e
            self.inline_keys[_normalize(identifier)] = bytes(material)

    def resolve(self, key_ref: KeyRef, segment_index: int) -> Optional[ResolvedKey]:
        """Return the key and IV for a segment, or None when it is unencrypted.

        Raises:
            KeyUnavailableError: The key could not be fetched (retryable)
            MalformedKeyError: The key material has the wrong length
            MissingKeyError: No inline key was supplied for the identifier
        """
        if not key_ref.encrypted:
            return None
        material = self.cache.get_or_load(key_ref.identifier, lambda: self._load(key_ref))
        iv = key_ref.iv if key_ref.iv is not None else implicit_iv(segment_index)
        return ResolvedKey(bytearray(material), iv)

    def check(self, key_refs: Iterable[KeyRef]) -> None:
        """Raise MissingKeyError for the first inline key the caller did not supply."""
        for key_ref in key_refs:
            if (
                key_ref.method is KeyMethod.INLINE
                and key_ref.material is None
                and _normalize(key_ref.identifier) not in self.inline_keys
            ):
                raise MissingKeyError(f"No key supplied for {key_ref.identifier}")

    def _load(self, key_ref: KeyRef) -> bytes:
        if key_ref.method is KeyMethod.INLINE:
            material = key_ref.material
            if material is None:
                material = self.inline_keys.get(_normalize(key_ref.identifier))
            if material is None:
                raise MissingKeyError(f"No key supplied for {key_ref.identifier}")
        else:
            try:
                material = fetch_once(self.fetch, Locator(key_ref.uri), self.timeout)
            except FetchError as e:
                raise KeyUnavailableError(f"Failed to fetch key {key_ref.uri}: {e}") from e
            LOGGER.debug("Fetched key %s", key_ref.identifier)

        if len(material) != KEY_SIZE:
            raise MalformedKeyError(
                f"Invalid key length for {key_ref.identifier}: {len(material)} (expected {KEY_SIZE} bytes)"
            )
        return material
