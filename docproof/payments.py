"""
Payment Monitor — reacts to "unconfirmed-tx" callbacks for payment addresses.

A payment qualifies when the outputs paying the record's address add up to
at least the quoted price. The first qualifying payment stamps ``txstamp``;
every later delivery, duplicate or not, is a no-op. Unknown addresses and
underpayments are no-ops too: the explorer retries whatever we reject, so
only a bad secret or an unreadable body is an error.
"""

from __future__ import annotations

import logging
from typing import Any

from docproof.anchor import amount_paid
from docproof.records import DocumentRecord
from docproof.webhooks import parse_tx_payload, require_secret

logger = logging.getLogger(__name__)


class PaymentMonitor:
    def __init__(self, store: Any, feed: Any, secret: str) -> None:
        self._store = store
        self._feed = feed
        self._secret = secret

    def on_unconfirmed_payment(self, address: str, secret: str, payload: Any) -> bool:
        """Handle an unconfirmed-tx callback. Returns True if the record changed.

        Raises Unauthorized before touching the store, MalformedPayload for
        bodies that are not transaction objects.
        """
        require_secret(secret, self._secret)
        tx = parse_tx_payload(payload)
        return self.observe_payment(address, tx)

    def observe_payment(self, address: str, tx: dict[str, Any]) -> bool:
        """Record ``tx`` as the payment for ``address`` if it qualifies."""
        record = self._store.get_record(address)
        if record is None:
            logger.debug("Payment callback for unknown address %s ignored", address)
            return False

        paid = amount_paid(tx, address)
        if paid < record.price:
            logger.info(
                "Underpayment on %s: tx %s pays %d of %d sats",
                address, tx["hash"][:16], paid, record.price,
            )
            return False

        def stamp(rec: DocumentRecord) -> bool:
            return rec.mark_paid(tx["hash"], paid)

        record, changed = self._store.update(address, stamp)
        if changed:
            logger.info(
                "Payment seen for %s: tx %s (%d sats)",
                record.digest[:16], tx["hash"][:16], paid,
            )
            self._feed.push_unconfirmed(record)
        return changed
