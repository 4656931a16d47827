"""
Status — read-only client view of a document record.
"""

from __future__ import annotations

from typing import Any

from docproof.anchor import build_op_return_hex
from docproof.digest import validate_digest


class NotFound(LookupError):
    """No record exists for the digest."""


class StatusService:
    def __init__(self, store: Any, network: str) -> None:
        self._store = store
        self._network = network

    def status(self, digest: str) -> dict[str, Any]:
        """Project a record for clients. Raises InvalidDigest or NotFound."""
        digest = validate_digest(digest)
        record = self._store.find_by_digest(digest)
        if record is None:
            raise NotFound(f"No document registered for {digest}")

        return {
            "success": True,
            "digest": record.digest,
            "pending": record.pending,
            "payment_address": record.address,
            "price": record.price,
            "network": self._network,
            "timestamp": record.timestamp,
            "txstamp": record.txstamp,
            "blockstamp": record.blockstamp,
            "tx": record.tx,
            "op_return": build_op_return_hex(record.digest),
            "state": record.state,
        }
