"""
Content cipher: streaming AES-256-CTR encryption with content hashing.

Every ingested or mirrored item gets a random 32-byte key and 16-byte IV.
The SHA-256 content hash is computed over the *plaintext* while it streams
into the cipher, so the hash identifies the content independently of the key.

CTR mode gives confidentiality only. There is no authentication tag, so
tampered ciphertext decrypts to garbage without being detected. The mode is
kept for format compatibility with blobs already on the network.

Because CTR keystream blocks are addressable, a decrypted byte range can be
produced without decrypting from the start (``iter_decrypt_range``).
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)


ALGORITHM = "AES-256-CTR"
KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE = 16
CHUNK_SIZE = 64 * 1024


@dataclass
class EncryptionResult:
    """Outcome of encrypting one item."""

    iv: str  # Hex
    size: int  # Plaintext bytes
    hash: str  # "0x" + SHA-256 hex of the plaintext
    algorithm: str = ALGORITHM


def _as_bytes(value: Union[bytes, str], size: int, label: str) -> bytes:
    raw = bytes.fromhex(value[2:] if value.startswith("0x") else value) if isinstance(value, str) else bytes(value)
    if len(raw) != size:
        raise ValueError(f"{label} must be {size} bytes, got {len(raw)}")
    return raw


class ContentCipher:
    """
    Streaming AES-256-CTR cipher.

    Keys and IVs are accepted as raw bytes or hex strings.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size

    @staticmethod
    def generate_key() -> bytes:
        return os.urandom(KEY_SIZE)

    @staticmethod
    def generate_iv() -> bytes:
        return os.urandom(IV_SIZE)

    @staticmethod
    def _cipher(key: Union[bytes, str], iv: Union[bytes, str]) -> Cipher:
        return Cipher(
            algorithms.AES(_as_bytes(key, KEY_SIZE, "Key")),
            modes.CTR(_as_bytes(iv, IV_SIZE, "IV"))
        )

    def encrypt_stream(
        self,
        chunks: Iterable[bytes],
        key: Union[bytes, str],
        iv: Union[bytes, str],
        hasher=None
    ) -> Iterator[bytes]:
        """
        Encrypt a plaintext chunk stream.

        Each plaintext chunk updates ``hasher`` (if given) before it enters
        the cipher.
        """
        encryptor = self._cipher(key, iv).encryptor()
        for chunk in chunks:
            if hasher is not None:
                hasher.update(chunk)
            if chunk:
                yield encryptor.update(chunk)
        tail = encryptor.finalize()
        if tail:
            yield tail

    def iter_decrypt(
        self,
        chunks: Iterable[bytes],
        key: Union[bytes, str],
        iv: Union[bytes, str]
    ) -> Iterator[bytes]:
        """Decrypt a ciphertext chunk stream from offset 0."""
        decryptor = self._cipher(key, iv).decryptor()
        for chunk in chunks:
            if chunk:
                yield decryptor.update(chunk)
        tail = decryptor.finalize()
        if tail:
            yield tail

    def iter_decrypt_range(
        self,
        fileobj: BinaryIO,
        key: Union[bytes, str],
        iv: Union[bytes, str],
        start: int,
        end: Optional[int] = None
    ) -> Iterator[bytes]:
        """
        Decrypt bytes ``start..end`` (inclusive) of an encrypted file.

        The counter block for ``start`` is ``iv + start // 16`` (mod 2**128);
        the first ``start % 16`` keystream bytes of that block are discarded.
        """
        if start < 0 or (end is not None and end < start):
            raise ValueError(f"Invalid byte range {start}-{end}")

        iv_int = int.from_bytes(_as_bytes(iv, IV_SIZE, "IV"), "big")
        block_index, skip = divmod(start, BLOCK_SIZE)
        counter = ((iv_int + block_index) % (1 << 128)).to_bytes(IV_SIZE, "big")
        decryptor = self._cipher(key, counter).decryptor()

        fileobj.seek(block_index * BLOCK_SIZE)
        remaining = None if end is None else end - start + 1
        first = True

        while remaining is None or remaining > 0:
            chunk = fileobj.read(self.chunk_size)
            if not chunk:
                break
            plain = decryptor.update(chunk)
            if first:
                plain = plain[skip:]
                first = False
            if remaining is not None:
                plain = plain[:remaining]
                remaining -= len(plain)
            if plain:
                yield plain

    def _read_chunks(self, fileobj: BinaryIO) -> Iterator[bytes]:
        while True:
            chunk = fileobj.read(self.chunk_size)
            if not chunk:
                break
            yield chunk

    def encrypt_file(
        self,
        source: Union[str, Path],
        dest: Union[str, Path],
        key: Union[bytes, str],
        iv: Optional[Union[bytes, str]] = None
    ) -> EncryptionResult:
        """
        Encrypt ``source`` into ``dest``, hashing the plaintext on the way.

        Raises:
            FileNotFoundError: If ``source`` does not exist
        """
        source = Path(source)
        if not source.exists():
            raise FileNotFoundError(f"Source file not found: {source}")

        iv_bytes = _as_bytes(iv, IV_SIZE, "IV") if iv is not None else self.generate_iv()
        hasher = hashlib.sha256()
        size = 0

        with open(source, "rb") as src, open(dest, "wb") as out:
            for block in self.encrypt_stream(self._read_chunks(src), key, iv_bytes, hasher):
                out.write(block)
                size += len(block)

        logger.debug(f"Encrypted {source.name}: {size} bytes")
        return EncryptionResult(iv=iv_bytes.hex(), size=size, hash="0x" + hasher.hexdigest())

    def decrypt_file(
        self,
        source: Union[str, Path],
        dest: Union[str, Path],
        key: Union[bytes, str],
        iv: Union[bytes, str]
    ) -> int:
        size = 0
        with open(source, "rb") as src, open(dest, "wb") as out:
            for block in self.iter_decrypt(self._read_chunks(src), key, iv):
                out.write(block)
                size += len(block)
        return size

    def hash_file(self, path: Union[str, Path]) -> str:
        """``0x``-prefixed SHA-256 of a file."""
        hasher = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in self._read_chunks(f):
                hasher.update(chunk)
        return "0x" + hasher.hexdigest()

    def encrypt_bytes(self, data: bytes, key: Union[bytes, str], iv: Union[bytes, str]) -> bytes:
        return b"".join(self.encrypt_stream([data], key, iv))

    def decrypt_bytes(self, data: bytes, key: Union[bytes, str], iv: Union[bytes, str]) -> bytes:
        return b"".join(self.iter_decrypt([data], key, iv))
