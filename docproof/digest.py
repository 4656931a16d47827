"""
Digest validation — the only gate between client input and the record store.

A digest is the hex SHA-256 of a document: exactly 64 hex characters.
Uppercase input is accepted and normalised to lowercase so the same document
always maps to the same index key.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any

_DIGEST_RE = re.compile(r"[0-9a-fA-F]{64}")


class InvalidDigest(ValueError):
    """Input is not a 64-character hex SHA-256 digest."""


def is_valid_digest(value: Any) -> bool:
    return isinstance(value, str) and _DIGEST_RE.fullmatch(value) is not None


def validate_digest(value: Any) -> str:
    """Return the normalised (lowercase) digest. Raises InvalidDigest."""
    if not is_valid_digest(value):
        shown = value if isinstance(value, str) else type(value).__name__
        raise InvalidDigest(
            f"Invalid digest: must be 64 hex chars, got {shown!r}"
        )
    return value.lower()


def digest_file(path: str | Path) -> str:
    """SHA-256 a file in chunks. Used by ``docproof hash``."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()
