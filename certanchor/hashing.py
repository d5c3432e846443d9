"""Content hashing for certificate anchoring."""

import hashlib
import re

from .errors import ValidationError

_HEX_DIGEST = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def digest(data: bytes) -> str:
    """Compute the SHA-256 digest of a blob.

    Args:
        data: Raw certificate bytes (may be empty)

    Returns:
        64-character lowercase hex digest
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"digest expects bytes, got {type(data).__name__}")
    return hashlib.sha256(data).hexdigest()


def is_digest(text) -> bool:
    return isinstance(text, str) and bool(_HEX_DIGEST.match(text.strip()))


def normalize_digest(text) -> str:
    """Return the canonical form of a user-supplied digest.

    Accepts an optional ``0x`` prefix and either case.

    Raises:
        ValidationError: If the text is not a 256-bit hex digest
    """
    if not is_digest(text):
        raise ValidationError("hash must be a 64-character hex SHA-256 digest")
    cleaned = text.strip().lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    return cleaned
