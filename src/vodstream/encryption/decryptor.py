"""
Whole-segment decryption.

``decrypt`` is a pure function: the same raw bytes and key always give the
same plaintext or the same error. Unencrypted segments (no resolved key)
are returned as-is and never reach the cipher.
"""

from __future__ import annotations

from typing import Optional

from ..errors import DecryptError, InvalidPaddingError, ShortInputError
from ..keys.resolver import ResolvedKey
from .symmetric import BLOCK_SIZE, aes_cbc_decrypt_raw, pkcs7_unpad


def decrypt(raw: bytes, key: Optional[ResolvedKey]) -> bytes:
    """Decrypt one segment with AES-128-CBC and strip its PKCS7 padding.

    Args:
        raw: Segment bytes as fetched
        key: Resolved key and IV, or None for an unencrypted segment

    Returns:
        Plaintext segment bytes

    Raises:
        ShortInputError: If raw is empty or not a whole number of blocks
        InvalidPaddingError: If the final block does not carry valid padding
        DecryptError: If the cipher rejects the key material
    """
    if key is None:
        return raw

    if not raw or len(raw) % BLOCK_SIZE:
        raise ShortInputError(
            f"Encrypted segment length {len(raw)} is not a positive multiple of {BLOCK_SIZE}"
        )

    try:
        padded = aes_cbc_decrypt_raw(key.iv, raw, key.key)
    except ValueError as e:
        raise DecryptError(f"Cipher rejected key material: {e}") from e

    try:
        return pkcs7_unpad(padded)
    except ValueError as e:
        raise InvalidPaddingError("Invalid padding: corrupted segment or wrong key") from e
