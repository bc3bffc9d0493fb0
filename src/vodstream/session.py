"""
Playback session: parse + assemble with a configurable key-cache scope.

With ``key_cache_scope: manifest`` (the default) every stream gets a fresh
KeyCache that is wiped when the stream ends. With ``key_cache_scope:
session`` all streams opened through one session share a KeyCache, so a
refreshed live playlist that keeps the same key does not fetch it again.
The shared cache is wiped by ``close()``.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Union

from .assembler import ChunkStream, StreamAssembler
from .config import StreamConfig
from .fetch.contract import Fetcher
from .keys.resolver import KeyCache, KeyResolver
from .manifest import parser
from .manifest.model import StreamManifest

LOGGER = logging.getLogger(__name__)


class PlaybackSession:
    def __init__(
        self,
        fetch: Fetcher,
        config: Optional[StreamConfig] = None,
        inline_keys: Optional[Mapping[str, Union[bytes, str]]] = None,
    ):
        self.fetch = fetch
        self.config = config or StreamConfig()
        self.inline_keys = dict(inline_keys or {})
        self.key_cache = KeyCache() if self.config.key_cache_scope == "session" else None

    def parse(self, manifest_text: str, base_uri: str, representation_id: Optional[str] = None) -> StreamManifest:
        return parser.parse(
            manifest_text,
            base_uri,
            cipher_scheme=self.config.cipher_scheme,
            representation_id=representation_id,
        )

    def assemble(self, manifest: StreamManifest) -> ChunkStream:
        """Start streaming an already parsed manifest."""
        resolver = None
        if self.key_cache is not None:
            resolver = KeyResolver(
                self.fetch, self.key_cache, inline_keys=self.inline_keys, timeout=self.config.fetch_timeout
            )
        assembler = StreamAssembler(
            manifest,
            self.fetch,
            config=self.config,
            key_resolver=resolver,
            inline_keys=self.inline_keys,
        )
        return assembler.open()

    def open(self, manifest_text: str, base_uri: str, representation_id: Optional[str] = None) -> ChunkStream:
        """Parse manifest text and start streaming it.

        Raises:
            ManifestError: Before anything is fetched, if the manifest is
                malformed or uses an unsupported feature
        """
        manifest = self.parse(manifest_text, base_uri, representation_id=representation_id)
        LOGGER.debug("Parsed %s manifest from %s: %d segments", manifest.source_format, base_uri, len(manifest))
        return self.assemble(manifest)

    def close(self) -> None:
        if self.key_cache is not None:
            self.key_cache.clear()

    def __enter__(self) -> "PlaybackSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
