"""Tests for the AES-CBC primitives and the segment decryptor."""

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from vodstream.encryption import decryptor
from vodstream.encryption.decryptor import decrypt
from vodstream.encryption.symmetric import (
    BLOCK_SIZE, generate_symmetric_key, aes_cbc_encrypt,
    aes_cbc_decrypt_raw, pkcs7_unpad
)
from vodstream.errors import DecryptError, InvalidPaddingError, ShortInputError
from vodstream.keys.resolver import ResolvedKey, implicit_iv


def _raw_cbc(blocks, key, iv):
    """Encrypt block-aligned data without adding padding."""
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(blocks) + encryptor.finalize()


class TestSymmetricEncryption:
    """Test the AES-128-CBC primitives."""

    def test_aes_cbc_roundtrip(self):
        """Test AES-CBC encryption and decryption roundtrip."""
        key = generate_symmetric_key(128)
        plaintext = b"CBC mode test with padding"

        iv, ciphertext = aes_cbc_encrypt(plaintext, key)

        assert len(iv) == 16
        assert len(ciphertext) % 16 == 0
        assert ciphertext != plaintext

        decrypted = pkcs7_unpad(aes_cbc_decrypt_raw(iv, ciphertext, key))
        assert decrypted == plaintext

    def test_aes_cbc_explicit_iv_is_deterministic(self):
        """Test that a fixed IV gives the same ciphertext every time."""
        key = bytes(range(16))
        iv = implicit_iv(7)

        assert aes_cbc_encrypt(b"segment", key, iv) == aes_cbc_encrypt(b"segment", key, iv)

    def test_block_aligned_plaintext_gets_full_padding_block(self):
        """Test that aligned plaintext still carries one padding block."""
        key = bytes(range(16))
        plaintext = b"A" * 32

        iv, ciphertext = aes_cbc_encrypt(plaintext, key)

        assert len(ciphertext) == 48
        padded = aes_cbc_decrypt_raw(iv, ciphertext, key)
        assert padded[-16:] == bytes([16]) * 16
        assert pkcs7_unpad(padded) == plaintext

    def test_key_generation(self):
        """Test symmetric key sizes."""
        assert len(generate_symmetric_key()) == 16
        for key_size in [128, 192, 256]:
            assert len(generate_symmetric_key(key_size)) == key_size // 8

    def test_block_size(self):
        assert BLOCK_SIZE == 16


class TestSegmentDecryptor:
    """Test whole-segment decryption."""

    def setup_method(self):
        self.key = bytes(range(16))
        self.iv = implicit_iv(3)

    def resolved(self):
        return ResolvedKey(bytearray(self.key), self.iv)

    @pytest.mark.parametrize("size", [0, 1, 15, 16, 17, 188 * 7, 4096])
    def test_decrypt_roundtrip(self, size):
        """Test decrypt(encrypt(P)) == P for several payload sizes."""
        plaintext = bytes(i % 251 for i in range(size))
        _, ciphertext = aes_cbc_encrypt(plaintext, self.key, self.iv)

        assert decrypt(ciphertext, self.resolved()) == plaintext

    def test_decrypt_is_idempotent(self):
        """Test that decrypting the same bytes twice gives the same plaintext."""
        _, ciphertext = aes_cbc_encrypt(b"repeatable" * 50, self.key, self.iv)

        assert decrypt(ciphertext, self.resolved()) == decrypt(ciphertext, self.resolved())

    def test_unencrypted_segment_passes_through(self, monkeypatch):
        """Test that segments without a key never reach the cipher."""
        def fail(*args):
            raise AssertionError("cipher must not run for clear segments")

        monkeypatch.setattr(decryptor, "aes_cbc_decrypt_raw", fail)

        raw = b"\x47clear transport stream bytes"
        assert decrypt(raw, None) is raw

    @pytest.mark.parametrize("size", [0, 1, 15, 17, 33])
    def test_short_input(self, size):
        """Test that non block-aligned or empty input raises ShortInputError."""
        with pytest.raises(ShortInputError):
            decrypt(b"\x00" * size, self.resolved())

    def test_zero_padding_byte_is_invalid(self):
        """Test that a final byte of 0x00 is rejected."""
        ciphertext = _raw_cbc(b"B" * 31 + b"\x00", self.key, self.iv)

        with pytest.raises(InvalidPaddingError):
            decrypt(ciphertext, self.resolved())

    def test_padding_longer_than_block_is_invalid(self):
        """Test that a padding value above the block size is rejected."""
        ciphertext = _raw_cbc(b"B" * 15 + b"\x11" * 17, self.key, self.iv)

        with pytest.raises(InvalidPaddingError):
            decrypt(ciphertext, self.resolved())

    def test_inconsistent_padding_is_invalid(self):
        """Test that padding bytes must all carry the same value."""
        ciphertext = _raw_cbc(b"B" * 28 + b"\x04\x04\x03\x04", self.key, self.iv)

        with pytest.raises(InvalidPaddingError):
            decrypt(ciphertext, self.resolved())

    def test_invalid_padding_is_a_decrypt_error(self):
        assert issubclass(InvalidPaddingError, DecryptError)
        assert issubclass(ShortInputError, DecryptError)

    def test_wrong_key_length_raises_decrypt_error(self):
        """Test that the cipher rejecting the key surfaces as DecryptError."""
        _, ciphertext = aes_cbc_encrypt(b"data", self.key, self.iv)

        with pytest.raises(DecryptError):
            decrypt(ciphertext, ResolvedKey(bytearray(5), self.iv))

    def test_wrong_iv_only_garbles_first_block(self):
        """Test CBC behavior with the wrong IV: later blocks are intact."""
        plaintext = b"0123456789abcdef" * 4
        _, ciphertext = aes_cbc_encrypt(plaintext, self.key, self.iv)

        garbled = decrypt(ciphertext, ResolvedKey(bytearray(self.key), implicit_iv(4)))

        assert garbled[16:] == plaintext[16:]
        assert garbled[:16] != plaintext[:16]
