"""
Registration — turn a digest into a payment quote.

A digest is registered at most once. Re-registering returns the original
address and price. A new registration allocates an address and subscribes
its payment webhooks *before* anything is written, so a gateway failure
leaves no record behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from docproof.digest import validate_digest
from docproof.records import DocumentRecord
from docproof.store import RecordStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    digest: str
    address: str
    price: int
    created: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": "true",
            "digest": self.digest,
            "price": self.price,
            "pay_address": self.address,
        }


class Registrar:
    """Creates document records.

    Usage:
        registrar = Registrar(store, gateway, price=50_000)
        reg = registrar.register("ab" * 32)
    """

    def __init__(self, store: Any, gateway: Any, price: int) -> None:
        self._store = store
        self._gateway = gateway
        self._price = price

    def register(self, digest: str) -> Registration:
        """Register a digest. Raises InvalidDigest, GatewayUnavailable or RecordStoreError."""
        digest = validate_digest(digest)

        existing = self._store.find_by_digest(digest)
        if existing is not None:
            return Registration(digest, existing.address, existing.price, created=False)

        address, hooks = self._gateway.open_payment_address()

        record = DocumentRecord(
            digest=digest,
            address=address,
            price=self._price,
            hooks=hooks,
        )
        try:
            winner = self._store.create(record)
        except RecordStoreError:
            self._gateway.unsubscribe(hooks)
            raise
        if winner is not None:
            # Lost a race with a concurrent registration of the same digest
            self._gateway.unsubscribe(hooks)
            existing = self._store.get_record(winner)
            price = existing.price if existing else self._price
            return Registration(digest, winner, price, created=False)

        logger.info("Registered %s -> %s (%d sats)", digest[:16], address, self._price)
        return Registration(digest, address, self._price)
