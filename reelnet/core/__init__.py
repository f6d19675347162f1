"""Core primitives."""

from .cipher import ALGORITHM, ContentCipher, EncryptionResult

__all__ = ["ALGORITHM", "ContentCipher", "EncryptionResult"]
