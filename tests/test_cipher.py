"""
Content Cipher Tests

Test Coverage:
- File encryption/decryption and plaintext hashing
- Byte-range decryption at arbitrary offsets
- Key/IV validation
"""

import hashlib
import io

import pytest

from reelnet.core import ALGORITHM, ContentCipher


@pytest.fixture
def cipher():
    # Small chunks so range decryption crosses chunk boundaries
    return ContentCipher(chunk_size=100)


@pytest.fixture
def plaintext():
    return bytes((i * 7) % 251 for i in range(5000))


class TestFileEncryption:
    """Test whole-file encryption."""

    def test_encrypt_decrypt_file(self, cipher, plaintext, tmp_path):
        source = tmp_path / "plain.bin"
        source.write_bytes(plaintext)
        key = cipher.generate_key()

        result = cipher.encrypt_file(source, tmp_path / "blob.enc", key)

        assert result.size == len(plaintext)
        assert result.algorithm == ALGORITHM
        assert len(bytes.fromhex(result.iv)) == 16
        assert (tmp_path / "blob.enc").read_bytes() != plaintext

        cipher.decrypt_file(tmp_path / "blob.enc", tmp_path / "out.bin", key, result.iv)
        assert (tmp_path / "out.bin").read_bytes() == plaintext

    def test_hash_is_of_plaintext(self, cipher, plaintext, tmp_path):
        source = tmp_path / "plain.bin"
        source.write_bytes(plaintext)

        first = cipher.encrypt_file(source, tmp_path / "a.enc", cipher.generate_key())
        second = cipher.encrypt_file(source, tmp_path / "b.enc", cipher.generate_key())

        expected = "0x" + hashlib.sha256(plaintext).hexdigest()
        assert first.hash == expected
        assert second.hash == expected
        assert cipher.hash_file(source) == expected

    def test_missing_source(self, cipher, tmp_path):
        with pytest.raises(FileNotFoundError):
            cipher.encrypt_file(tmp_path / "nope.bin", tmp_path / "out.enc", cipher.generate_key())

    def test_hex_key_and_iv_accepted(self, cipher):
        key = cipher.generate_key()
        iv = cipher.generate_iv()

        encrypted = cipher.encrypt_bytes(b"hello reel", key.hex(), "0x" + iv.hex())
        assert cipher.decrypt_bytes(encrypted, key, iv) == b"hello reel"

    def test_rejects_bad_key_length(self, cipher):
        with pytest.raises(ValueError):
            cipher.encrypt_bytes(b"data", b"short", cipher.generate_iv())
        with pytest.raises(ValueError):
            cipher.encrypt_bytes(b"data", cipher.generate_key(), b"\x00" * 8)


class TestRangeDecryption:
    """Test CTR random access."""

    @pytest.fixture
    def encrypted(self, cipher, plaintext):
        key = cipher.generate_key()
        iv = cipher.generate_iv()
        return key, iv, cipher.encrypt_bytes(plaintext, key, iv)

    @pytest.mark.parametrize("start,end", [(0, 15), (5, 37), (16, 16), (1234, 4321), (4990, 4999)])
    def test_range_matches_plaintext(self, cipher, plaintext, encrypted, start, end):
        key, iv, blob = encrypted
        chunks = cipher.iter_decrypt_range(io.BytesIO(blob), key, iv, start, end)
        assert b"".join(chunks) == plaintext[start:end + 1]

    def test_open_ended_range(self, cipher, plaintext, encrypted):
        key, iv, blob = encrypted
        chunks = cipher.iter_decrypt_range(io.BytesIO(blob), key, iv, 333)
        assert b"".join(chunks) == plaintext[333:]

    def test_end_past_file(self, cipher, plaintext, encrypted):
        key, iv, blob = encrypted
        chunks = cipher.iter_decrypt_range(io.BytesIO(blob), key, iv, 4900, 99999)
        assert b"".join(chunks) == plaintext[4900:]

    def test_counter_carry(self, cipher, plaintext):
        # Low 32 bits of the counter overflow inside the range
        key = cipher.generate_key()
        iv = b"\x00" * 11 + b"\x01" + b"\xff" * 4
        blob = cipher.encrypt_bytes(plaintext, key, iv)

        chunks = cipher.iter_decrypt_range(io.BytesIO(blob), key, iv, 40, 200)
        assert b"".join(chunks) == plaintext[40:201]

    def test_invalid_range(self, cipher, encrypted):
        key, iv, blob = encrypted
        with pytest.raises(ValueError):
            list(cipher.iter_decrypt_range(io.BytesIO(blob), key, iv, -1, 10))
        with pytest.raises(ValueError):
            list(cipher.iter_decrypt_range(io.BytesIO(blob), key, iv, 10, 5))
