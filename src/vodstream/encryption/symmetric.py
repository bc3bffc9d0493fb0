"""
Symmetric cipher primitives for segment decryption.

Wraps the cryptography library to offer the block cipher used by segmented
streams: AES-128 in CBC mode with PKCS7 padding. The encrypt side exists to
produce reference ciphertext (fixtures, round-trip checks); the stream core
only ever decrypts.
"""

from typing import Optional, Tuple
import os
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

BLOCK_SIZE = algorithms.AES.block_size // 8  # bytes
KEY_SIZE = 16  # AES-128


def generate_symmetric_key(key_size: int = 128) -> bytes:
    """Generate a random symmetric key.

    Args:
        key_size: Key size in bits (128, 192, or 256). Default 128.

    Returns:
        Random bytes of requested length
    """
    byte_size = key_size // 8
    return os.urandom(byte_size)


def aes_cbc_encrypt(plaintext: bytes, key: bytes,
                    iv: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """Encrypt plaintext using AES-CBC with PKCS7 padding.

    CBC mode requires padding for block alignment.

    Args:
        plaintext: Data to encrypt
        key: AES key (16 bytes for AES-128)
        iv: 128-bit IV; a random one is generated when omitted

    Returns:
        Tuple of (IV, ciphertext)
    """
    if iv is None:
        iv = os.urandom(BLOCK_SIZE)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded_data = padder.update(plaintext) + padder.finalize()

    cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    encryptor = cipher.encryptor()
    ciphertext = encryptor.update(padded_data) + encryptor.finalize()
    return iv, ciphertext


def aes_cbc_decrypt_raw(iv: bytes, ciphertext: bytes, key: bytes) -> bytes:
    """Decrypt AES-CBC data without touching the padding.

    Args:
        iv: IV used during encryption
        ciphertext: Encrypted data, a whole number of blocks
        key: Same key used during encryption

    Returns:
        Padded plaintext
    """
    cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    decryptor = cipher.decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()


def pkcs7_unpad(padded: bytes) -> bytes:
    """Strip PKCS7 padding.

    Raises:
        ValueError: If the padding bytes are inconsistent
    """
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()
