from __future__ import annotations

from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Union

from ..assembler import DecryptedChunk, StreamItem


def iter_bytes(items: Iterable[StreamItem]) -> Iterator[bytes]:
    """Yield the bytes of each chunk, skipping discontinuity markers."""
    for item in items:
        if isinstance(item, DecryptedChunk):
            yield item.data


def write_stream(items: Iterable[StreamItem], output: Union[str, Path, BinaryIO]) -> int:
    """Write a decrypted stream to a file path or binary file object.

    Returns the number of bytes written. A ChunkStream is closed afterwards,
    also when writing fails.
    """
    if isinstance(output, (str, Path)):
        with open(output, "wb") as fout:
            return write_stream(items, fout)

    written = 0
    try:
        for data in iter_bytes(items):
            output.write(data)
            written += len(data)
    finally:
        close = getattr(items, "close", None)
        if close is not None:
            close()
    return written

