"""
Anchor Engine — turns a confirmed payment into exactly one anchoring
transaction, and a confirmed anchoring transaction into a final record.

Anchoring runs in three steps so no lock is held across network I/O:

    1. claim   — atomically: tx unset and no live claim → set anchor_claim
    2. anchor  — build, sign, broadcast (gateway, no lock held)
    3. commit  — atomically: set tx, clear the claim

A failed broadcast releases the claim, leaving the record as it was before
step 1, so the next duplicate callback (or the reconciler) can try again.
An anchor that reached the network without being committed is adopted from
the chain instead of rebuilt.
Concurrent callbacks for the same address find the claim taken and back off.
"""

from __future__ import annotations

import logging
from typing import Any

from docproof import DEFAULT_CLAIM_TTL_SECS, DEFAULT_REQUIRED_CONFIRMATIONS
from docproof.anchor import amount_paid, is_anchor_tx, spent_outputs
from docproof.gateway import BroadcastFailed, GatewayError
from docproof.records import DocumentRecord, utcnow
from docproof.webhooks import confirmations, parse_tx_payload, require_secret

logger = logging.getLogger(__name__)


class AnchorEngine:
    def __init__(
        self,
        store: Any,
        gateway: Any,
        feed: Any,
        secret: str,
        claim_ttl: int = DEFAULT_CLAIM_TTL_SECS,
        required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._feed = feed
        self._secret = secret
        self._claim_ttl = claim_ttl
        self._required_confirmations = required_confirmations

    # ------------------------------------------------------------------
    # Webhook entry points
    # ------------------------------------------------------------------

    def on_confirmed_payment(self, address: str, secret: str, payload: Any) -> str | None:
        """Handle a confirmed-tx callback for a payment address.

        Returns the anchoring txid when this call broadcast one, else None.
        Raises Unauthorized, MalformedPayload, BroadcastFailed or
        GatewayUnavailable.
        """
        require_secret(secret, self._secret)
        tx = parse_tx_payload(payload)
        return self.anchor_payment(address, tx)

    def on_anchor_confirmed(self, address: str, secret: str, payload: Any) -> bool:
        """Handle a tx-confirmation callback for an anchoring transaction."""
        require_secret(secret, self._secret)
        tx = parse_tx_payload(payload)
        return self.confirm_anchor(address, tx)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def anchor_payment(self, address: str, tx: dict[str, Any]) -> str | None:
        record = self._store.get_record(address)
        if record is None:
            logger.debug("Confirmed callback for unknown address %s ignored", address)
            return None

        # The address-scoped confirmed-tx hook also fires for the anchoring
        # transaction, since it spends from the payment address.
        if record.tx and tx["hash"] == record.tx:
            self.confirm_anchor(address, tx)
            return None

        if record.tx:
            logger.debug("Record %s already anchored in %s", address, record.tx[:16])
            return None

        if is_anchor_tx(tx, record.digest, address):
            self.adopt_anchor(address, tx)
            return None

        paid = amount_paid(tx, address)
        if paid < record.price:
            logger.info(
                "Confirmed tx %s pays %d of %d sats to %s; not anchoring",
                tx["hash"][:16], paid, record.price, address,
            )
            return None

        claim_stamp = utcnow()
        newly_paid = False

        def claim(rec: DocumentRecord) -> bool:
            nonlocal newly_paid
            if rec.tx or rec.claim_is_live(self._claim_ttl):
                return False
            newly_paid = rec.mark_paid(tx["hash"], paid)
            rec.anchor_claim = claim_stamp
            return True

        record, claimed = self._store.update(address, claim)
        if not claimed:
            logger.debug("Anchoring of %s already in progress or done", address)
            return None
        if newly_paid:
            self._feed.push_unconfirmed(record)

        try:
            txid = self._gateway.anchor(record.digest, tx, address)
        except BroadcastFailed as e:
            self._release_claim(address, claim_stamp)
            # Rejected as a double-spend when an earlier attempt got through
            if self._adopt_from_history(address, record.digest):
                return None
            logger.warning("Anchoring %s failed: %s", record.digest[:16], e)
            raise
        except GatewayError as e:
            self._release_claim(address, claim_stamp)
            logger.warning("Anchoring %s failed: %s", record.digest[:16], e)
            raise

        record, committed = self._store.update(address, lambda rec: rec.set_anchor_tx(txid))
        if not committed:
            # Our claim expired and another worker anchored first; both txs
            # spend the same payment outputs, so only one can confirm.
            logger.warning(
                "Record %s already anchored in %s; discarding %s",
                address, record.tx[:16], txid[:16],
            )
            return None
        logger.info("Anchored %s in tx %s", record.digest[:16], txid)

        self._watch_anchor(address, txid)
        return txid

    def adopt_anchor(self, address: str, tx: dict[str, Any]) -> bool:
        """Record an anchoring tx found on-chain but never committed.

        This happens when a broadcast timed out after reaching the network, or
        the process died between broadcast and commit. Rebuilding would only
        double-spend the payment outputs, so the existing tx is taken as the
        anchor. Returns True if the record changed.
        """
        funding = spent_outputs(tx, address)
        newly_paid = False

        def adopt(rec: DocumentRecord) -> bool:
            nonlocal newly_paid
            if rec.tx:
                return False
            if funding and not rec.txstamp:
                newly_paid = rec.mark_paid(funding[0][0], sum(v for _h, v in funding))
            return rec.set_anchor_tx(tx["hash"])

        record, adopted = self._store.update(address, adopt)
        if not adopted:
            return False
        logger.info("Adopted on-chain anchor %s for %s", tx["hash"][:16], record.digest[:16])
        if newly_paid:
            self._feed.push_unconfirmed(record)

        if not self.confirm_anchor(address, tx):
            self._watch_anchor(address, tx["hash"])
        return True

    def _adopt_from_history(self, address: str, digest: str) -> bool:
        try:
            history = self._gateway.address_history(address)
        except GatewayError as e:
            logger.warning("Address history for %s unavailable: %s", address, e)
            return False
        for tx in history:
            if is_anchor_tx(tx, digest, address):
                return self.adopt_anchor(address, tx)
        return False

    def _release_claim(self, address: str, claim_stamp: str) -> None:
        def release(rec: DocumentRecord) -> bool:
            if rec.anchor_claim != claim_stamp:
                return False
            rec.anchor_claim = None
            return True

        self._store.update(address, release)

    def _watch_anchor(self, address: str, txid: str) -> None:
        try:
            hook_id = self._gateway.watch_anchor(address, txid)
        except GatewayError as e:
            # The reconciler polls anchored records, so this is not fatal
            logger.warning("Could not subscribe confirmation hook for %s: %s", txid[:16], e)
            return

        def remember(rec: DocumentRecord) -> bool:
            if hook_id in rec.hooks:
                return False
            rec.hooks.append(hook_id)
            return True

        self._store.update(address, remember)

    def confirm_anchor(self, address: str, tx: dict[str, Any]) -> bool:
        """Finalize a record whose anchoring tx reached the confirmation depth."""
        record = self._store.get_record(address)
        if record is None or not record.tx:
            logger.debug("Anchor confirmation for %s ignored: nothing anchored", address)
            return False
        if tx.get("hash") != record.tx:
            logger.info(
                "Anchor confirmation for %s names tx %s, expected %s; ignored",
                address, str(tx.get("hash"))[:16], record.tx[:16],
            )
            return False
        if confirmations(tx) < self._required_confirmations:
            logger.debug("Anchor tx %s has too few confirmations", record.tx[:16])
            return False

        def finalize(rec: DocumentRecord) -> bool:
            if rec.tx != tx["hash"]:
                return False
            return rec.mark_confirmed()

        record, changed = self._store.update(address, finalize)
        if changed:
            logger.info("Anchor for %s confirmed (tx %s)", record.digest[:16], record.tx[:16])
            self._feed.push_confirmed(record)
        return changed
