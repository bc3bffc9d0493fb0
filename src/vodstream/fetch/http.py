"""
HTTP implementation of the fetch capability, backed by ``requests``.

The API client layer owns authentication; it hands over a ready
``requests.Session`` (cookies, tokens, headers already set) and this module
only performs GETs against segment, key and init-section URIs.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

import requests

from ..errors import FetchError
from ..manifest.model import Locator

LOGGER = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Accept": "*/*",
    "Connection": "keep-alive",
}


class HttpFetcher:
    """Callable fetcher: ``HttpFetcher(session)(locator, timeout) -> bytes``.

    Byte-range locators are requested with a Range header and must come
    back as 206 Partial Content of exactly the requested length; whole
    resources are checked against Content-Length when the server sends one.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        headers: Optional[Mapping[str, str]] = None,
        default_timeout: float = 30.0,
    ):
        self._owns_session = session is None
        self.session = session or requests.Session()
        if self._owns_session:
            self.session.headers.update(DEFAULT_HEADERS)
        if headers:
            self.session.headers.update(headers)
        self.default_timeout = default_timeout

    def __call__(self, locator: Locator, timeout: Optional[float] = None) -> bytes:
        headers = {}
        if locator.byte_range is not None:
            headers["Range"] = locator.byte_range.header()

        try:
            with self.session.get(
                locator.uri,
                headers=headers,
                timeout=timeout if timeout is not None else self.default_timeout,
                stream=True,
            ) as response:
                response.raise_for_status()
                expected = response.headers.get("content-length")
                if response.headers.get("content-encoding"):
                    # Content-Length counts the encoded body, content is decoded
                    expected = None
                data = response.content
                status = response.status_code
        except requests.Timeout as e:
            raise FetchError(f"Timed out fetching {locator}", locator=locator) from e
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch {locator}: {e}", locator=locator) from e

        if expected is not None and expected.isdigit() and len(data) != int(expected):
            raise FetchError(
                f"Incomplete download of {locator}: expected {expected} bytes, got {len(data)}",
                locator=locator,
            )
        if locator.byte_range is not None:
            if status != 206:
                raise FetchError(
                    f"Server ignored byte range for {locator} (status {status})", locator=locator
                )
            if len(data) != locator.byte_range.length:
                raise FetchError(
                    f"Byte range {locator.byte_range.header()} of {locator.uri} returned {len(data)} bytes",
                    locator=locator,
                )

        LOGGER.debug("Fetched %s (%d bytes)", locator, len(data))
        return data

    def close(self) -> None:
        """Close the session if this fetcher created it."""
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
