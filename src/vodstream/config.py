"""
Configuration for stream assembly.

Options can be given directly, from a mapping, or from a YAML file with a
top-level ``stream:`` section:

    stream:
      window_size: 6
      fetch_retries: 3
      fetch_timeout: 20
      retry_backoff: 0.5
      cipher_scheme: AES-128
      key_cache_scope: session

``load_config()`` without a path reads the file named by the
``VODSTREAM_CONFIG`` environment variable, or returns the defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .manifest.model import CipherScheme

CONFIG_ENV_VAR = "VODSTREAM_CONFIG"
KEY_CACHE_SCOPES = ("manifest", "session")


@dataclass(frozen=True)
class StreamConfig:
    window_size: int = 4
    fetch_retries: int = 3
    fetch_timeout: float = 30.0
    retry_backoff: float = 1.0
    cipher_scheme: Optional[CipherScheme] = None
    key_cache_scope: str = "manifest"

    def __post_init__(self):
        if isinstance(self.window_size, bool) or not isinstance(self.window_size, int) or self.window_size < 1:
            raise ValueError(f"window_size must be a positive integer, got {self.window_size!r}")
        if isinstance(self.fetch_retries, bool) or not isinstance(self.fetch_retries, int) or self.fetch_retries < 0:
            raise ValueError(f"fetch_retries must be a non-negative integer, got {self.fetch_retries!r}")
        if not isinstance(self.fetch_timeout, (int, float)) or self.fetch_timeout <= 0:
            raise ValueError(f"fetch_timeout must be a positive number of seconds, got {self.fetch_timeout!r}")
        if not isinstance(self.retry_backoff, (int, float)) or self.retry_backoff < 0:
            raise ValueError(f"retry_backoff must be a non-negative number of seconds, got {self.retry_backoff!r}")
        if self.cipher_scheme is not None and not isinstance(self.cipher_scheme, CipherScheme):
            try:
                object.__setattr__(self, "cipher_scheme", CipherScheme(str(self.cipher_scheme).upper()))
            except ValueError as e:
                choices = ", ".join(s.value for s in CipherScheme)
                raise ValueError(f"cipher_scheme must be one of {choices}, got {self.cipher_scheme!r}") from e
        if self.key_cache_scope not in KEY_CACHE_SCOPES:
            raise ValueError(
                f"key_cache_scope must be one of {', '.join(KEY_CACHE_SCOPES)}, got {self.key_cache_scope!r}"
            )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "StreamConfig":
        """Build a config from a mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown stream option(s): {', '.join(sorted(unknown))}")
        return cls(**dict(values))


def load_config(path: Optional[str] = None) -> StreamConfig:
    """Load a StreamConfig from YAML.

    Args:
        path: YAML file; falls back to $VODSTREAM_CONFIG, then to defaults

    Raises:
        ValueError: If the file is not valid YAML or holds invalid options
    """
    path = path or os.getenv(CONFIG_ENV_VAR)
    if not path:
        return StreamConfig()

    try:
        document = yaml.safe_load(Path(path).read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if document is None:
        return StreamConfig()
    if not isinstance(document, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    section = document.get("stream", {})
    if section is None:
        return StreamConfig()
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'stream' must be a mapping")
    return StreamConfig.from_mapping(section)
