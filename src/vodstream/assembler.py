"""
Stream assembly: fetch, resolve keys and decrypt segments concurrently, emit in order.

A StreamAssembler processes one StreamManifest. ``open()`` returns a
ChunkStream, a forward-only iterator that yields DecryptedChunk items (and
Discontinuity markers) strictly in manifest order while up to
``window_size`` segments are fetched and decrypted ahead on a thread pool.

Failure policy:
- fetch failures (timeouts included) and unavailable keys are retried with
  linear backoff, then abort the stream
- decrypt failures, malformed keys and missing inline keys abort the stream
  immediately
- the aborting error is raised from ``next()`` with ``sequence`` set; no
  partial segment is ever emitted
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

from .config import StreamConfig
from .encryption.decryptor import decrypt
from .errors import FetchError, KeyUnavailableError, StreamError
from .fetch.contract import Fetcher, fetch_once, retrying
from .keys.resolver import KeyCache, KeyResolver
from .manifest.model import Locator, SegmentDescriptor, StreamManifest

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecryptedChunk:
    """Plaintext of one segment (or of the initialization section)."""

    sequence: Optional[int]
    data: bytes
    initialization: bool = False


@dataclass(frozen=True)
class Discontinuity:
    """Out-of-band marker: the next chunk starts a new decoding context."""

    sequence: int


StreamItem = Union[DecryptedChunk, Discontinuity]


class StreamAssembler:
    """Drive fetch -> key resolution -> decrypt for every segment of a manifest.

    Args:
        manifest: Parsed manifest of the selected rendition
        fetch: Fetch capability for segments, keys and the init section
        config: Window size, retry and timeout settings
        key_resolver: Resolver to use; pass one built on a shared KeyCache to
            reuse keys across manifests. When omitted, a resolver with a
            private cache is created and the cache is wiped when the stream
            ends.
        inline_keys: Caller-supplied key bytes by identifier (DASH KIDs)
    """

    def __init__(
        self,
        manifest: StreamManifest,
        fetch: Fetcher,
        *,
        config: Optional[StreamConfig] = None,
        key_resolver: Optional[KeyResolver] = None,
        inline_keys: Optional[Mapping[str, bytes]] = None,
    ):
        self.manifest = manifest
        self.fetch = fetch
        self.config = config or StreamConfig()
        self.owns_key_cache = key_resolver is None
        self.key_resolver = key_resolver or KeyResolver(
            fetch, KeyCache(), inline_keys=inline_keys, timeout=self.config.fetch_timeout
        )
        self._opened = False

    def open(self) -> "ChunkStream":
        """Start processing. The output can be consumed once.

        Raises:
            MissingKeyError: An inline key of the manifest was not supplied;
                raised before anything is fetched
        """
        if self._opened:
            raise RuntimeError("StreamAssembler output is not restartable")
        self.key_resolver.check(self.manifest.key_refs)
        self._opened = True
        return ChunkStream(self)

    def __iter__(self) -> "ChunkStream":
        return self.open()

    def _retry(self, operation, cancelled, retry_on, describe):
        return retrying(
            operation,
            retries=self.config.fetch_retries,
            backoff=self.config.retry_backoff,
            cancelled=cancelled,
            retry_on=retry_on,
            describe=describe,
        )

    def fetch_initialization(self, locator: Locator, cancelled: Optional[threading.Event] = None) -> bytes:
        """Fetch the initialization section. It is never encrypted."""
        cancelled = cancelled or threading.Event()
        return self._retry(
            lambda: fetch_once(self.fetch, locator, self.config.fetch_timeout),
            cancelled,
            (FetchError,),
            f"fetch of initialization section {locator}",
        )

    def process_segment(
        self, segment: SegmentDescriptor, cancelled: Optional[threading.Event] = None
    ) -> bytes:
        """Fetch, resolve the key for and decrypt one segment.

        Runs on a worker thread when called by a ChunkStream; calling it
        directly processes the segment synchronously.
        """
        cancelled = cancelled or threading.Event()

        def fetch_segment() -> bytes:
            raw = fetch_once(self.fetch, segment.locator, self.config.fetch_timeout)
            if segment.length is not None and len(raw) != segment.length:
                raise FetchError(
                    f"Expected {segment.length} bytes for segment {segment.sequence}, got {len(raw)}",
                    locator=segment.locator,
                )
            return raw

        raw = self._retry(
            fetch_segment, cancelled, (FetchError,), f"fetch of segment {segment.sequence}"
        )
        key = self._retry(
            lambda: self.key_resolver.resolve(segment.key, segment.sequence),
            cancelled,
            (KeyUnavailableError,),
            f"key for segment {segment.sequence}",
        )
        try:
            return decrypt(raw, key)
        finally:
            if key is not None:
                key.wipe()


class ChunkStream:
    """Lazy, forward-only sequence of StreamItems for one manifest.

    ``next(stream)`` returns the next item in manifest order, raises
    StopIteration at the end, or raises the error that aborted the stream.
    ``cancel()`` (or leaving a ``with`` block) stops all outstanding work.
    Meant for a single consumer.
    """

    def __init__(self, assembler: StreamAssembler):
        self._assembler = assembler
        manifest = assembler.manifest
        self._jobs: List[Union[Locator, SegmentDescriptor]] = []
        if manifest.initialization is not None:
            self._jobs.append(manifest.initialization)
        self._jobs.extend(manifest.segments)

        self._window = assembler.config.window_size
        self._executor = ThreadPoolExecutor(max_workers=self._window, thread_name_prefix="vodstream")
        self._cancelled = threading.Event()
        self._futures: Dict[int, Future] = {}
        self._next_launch = 0
        self._next_emit = 0
        self._marker_sent = False
        self._closed = False
        self.bytes_emitted = 0

        LOGGER.info(
            "Streaming %d segments (%s, window=%d)",
            len(manifest.segments), manifest.source_format, self._window,
        )
        self._fill()

    def __iter__(self) -> "ChunkStream":
        return self

    def __enter__(self) -> "ChunkStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        """Number of launched segments not yet emitted."""
        return len(self._futures)

    def _run(self, job: Union[Locator, SegmentDescriptor]) -> bytes:
        if isinstance(job, Locator):
            return self._assembler.fetch_initialization(job, self._cancelled)
        return self._assembler.process_segment(job, self._cancelled)

    def _fill(self) -> None:
        while (
            not self._closed
            and self._next_launch < len(self._jobs)
            and self._next_launch - self._next_emit < self._window
        ):
            position = self._next_launch
            self._futures[position] = self._executor.submit(self._run, self._jobs[position])
            self._next_launch += 1

    def __next__(self) -> StreamItem:
        if self._closed:
            raise StopIteration
        if self._next_emit >= len(self._jobs):
            self._shutdown()
            raise StopIteration

        job = self._jobs[self._next_emit]
        segment = job if isinstance(job, SegmentDescriptor) else None

        if segment is not None and segment.discontinuity and not self._marker_sent:
            self._marker_sent = True
            return Discontinuity(segment.sequence)

        future = self._futures.pop(self._next_emit)
        try:
            data = future.result()
        except StreamError as e:
            if e.sequence is None and segment is not None:
                e.sequence = segment.sequence
            self._shutdown()
            raise
        except BaseException:
            self._shutdown()
            raise

        self._next_emit += 1
        self._marker_sent = False
        self.bytes_emitted += len(data)

        if segment is None:
            chunk = DecryptedChunk(None, data, initialization=True)
        else:
            chunk = DecryptedChunk(segment.sequence, data)
            LOGGER.debug("Emitting segment %d (%d bytes)", segment.sequence, len(data))

        if self._next_emit >= len(self._jobs):
            LOGGER.info("Stream complete: %d bytes", self.bytes_emitted)
            self._shutdown()
        else:
            self._fill()
        return chunk

    def cancel(self) -> None:
        """Stop the stream: no new fetches start and queued work is dropped.

        Fetches already running finish within their timeout; their results
        are discarded. Safe to call more than once.
        """
        if self._closed:
            return
        LOGGER.debug("Stream cancelled at position %d", self._next_emit)
        self._shutdown()

    close = cancel

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancelled.set()
        for future in self._futures.values():
            future.cancel()
        self._futures.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._assembler.owns_key_cache:
            self._assembler.key_resolver.cache.clear()
