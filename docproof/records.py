"""
Document records — the persistent state of one digest's registration,
payment, and anchoring progress.

States (derived from which fields are set, never stored):
    awaiting_payment → paid → anchoring → anchored → confirmed
                                 │
                                 ▼
                              paid (claim released on broadcast failure)

Every transition is "set field X only if X is unset", so duplicated or
reordered webhook deliveries cannot move a record backwards.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

AWAITING_PAYMENT = "awaiting_payment"
PAID = "paid"
ANCHORING = "anchoring"
ANCHORED = "anchored"
CONFIRMED = "confirmed"


class RecordError(Exception):
    """Invalid record operation."""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class DocumentRecord:
    """One registered digest, keyed in the store by its payment address."""

    def __init__(
        self,
        digest: str,
        address: str,
        price: int,
        pending: bool = True,
        timestamp: str = "",
        txstamp: str | None = None,
        blockstamp: str | None = None,
        tx: str | None = None,
        payment_tx: str | None = None,
        paid: int = 0,
        anchor_claim: str | None = None,
        hooks: list[str] | None = None,
    ) -> None:
        self.digest = digest
        self.address = address
        self.price = price
        self.pending = pending
        self.timestamp = timestamp or utcnow()
        self.txstamp = txstamp
        self.blockstamp = blockstamp
        self.tx = tx
        self.payment_tx = payment_tx
        self.paid = paid
        self.anchor_claim = anchor_claim
        self.hooks = list(hooks or [])

    @property
    def state(self) -> str:
        if self.blockstamp:
            return CONFIRMED
        if self.tx:
            return ANCHORED
        if self.anchor_claim:
            return ANCHORING
        if self.txstamp:
            return PAID
        return AWAITING_PAYMENT

    def claim_is_live(self, ttl_secs: int, now: datetime | None = None) -> bool:
        """True while an anchoring attempt holds the record.

        A claim older than ``ttl_secs`` belongs to a worker that died
        mid-broadcast and may be taken over.
        """
        if not self.anchor_claim:
            return False
        try:
            claimed = datetime.fromisoformat(self.anchor_claim)
        except (ValueError, TypeError):
            return False
        now = now or datetime.now(timezone.utc)
        return now - claimed < timedelta(seconds=ttl_secs)

    # Guarded transitions. Each returns True if the record changed.

    def mark_paid(self, payment_tx: str, paid: int, when: str | None = None) -> bool:
        if self.txstamp:
            return False
        self.txstamp = when or utcnow()
        self.payment_tx = payment_tx
        self.paid = paid
        return True

    def set_anchor_tx(self, txid: str) -> bool:
        if self.tx:
            return False
        if not txid:
            raise RecordError("Anchor txid cannot be empty")
        self.tx = txid
        self.anchor_claim = None
        return True

    def mark_confirmed(self, when: str | None = None) -> bool:
        if self.blockstamp:
            return False
        if not self.tx:
            raise RecordError(
                f"Record {self.address} has no anchor tx; cannot confirm"
            )
        self.blockstamp = when or utcnow()
        self.pending = False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "digest": self.digest,
            "address": self.address,
            "price": self.price,
            "pending": self.pending,
            "timestamp": self.timestamp,
            "txstamp": self.txstamp,
            "blockstamp": self.blockstamp,
            "tx": self.tx,
            "payment_tx": self.payment_tx,
            "paid": self.paid,
            "anchor_claim": self.anchor_claim,
            "hooks": list(self.hooks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentRecord:
        return cls(
            digest=data["digest"],
            address=data["address"],
            price=int(data.get("price", 0)),
            pending=bool(data.get("pending", True)),
            timestamp=data.get("timestamp", ""),
            txstamp=data.get("txstamp") or None,
            blockstamp=data.get("blockstamp") or None,
            tx=data.get("tx") or None,
            payment_tx=data.get("payment_tx") or None,
            paid=int(data.get("paid") or 0),
            anchor_claim=data.get("anchor_claim") or None,
            hooks=data.get("hooks") or [],
        )
