"""Entry point turning manifest text of either supported family into a StreamManifest."""

from __future__ import annotations

from typing import Optional

from ..errors import ManifestMalformedError
from . import dash, hls
from .model import CipherScheme, StreamManifest


def detect_format(text: str) -> str:
    """Return "hls" or "dash" for a manifest document."""
    head = (text or "").lstrip("\ufeff \t\r\n")
    if head.startswith("#EXTM3U"):
        return "hls"
    if head.startswith("<"):
        return "dash"
    raise ManifestMalformedError("Unrecognized manifest format")


def parse(
    raw_manifest_text: str,
    base_uri: str,
    *,
    cipher_scheme: Optional[CipherScheme] = None,
    representation_id: Optional[str] = None,
) -> StreamManifest:
    """Parse an HLS media playlist or a DASH MPD.

    ``representation_id`` only applies to DASH; HLS callers pick a variant
    playlist before parsing. ``cipher_scheme`` settles protection that the
    manifest declares ambiguously.
    """
    kind = detect_format(raw_manifest_text)
    if kind == "hls":
        return hls.parse(raw_manifest_text, base_uri)
    return dash.parse(
        raw_manifest_text,
        base_uri,
        representation_id=representation_id,
        cipher_scheme=cipher_scheme,
    )
