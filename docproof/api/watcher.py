"""
Reconciler — background daemon thread that catches what webhooks missed.

Poll loop, over every pending record:
    1. Anchored but unconfirmed: look the anchor tx up, finalize once deep enough
    2. Not anchored: adopt an anchor already on-chain, else find the oldest
       qualifying confirmed payment and drive the same transitions the
       webhooks would

Webhooks are the fast path; this is the retry path after a failed broadcast,
a lost callback, or a crash between claim and commit.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from docproof import API_POLL_INTERVAL_SECS, DEFAULT_CLAIM_TTL_SECS, DEFAULT_REQUIRED_CONFIRMATIONS
from docproof.anchor import amount_paid, is_anchor_tx
from docproof.gateway import GatewayError
from docproof.records import DocumentRecord
from docproof.webhooks import confirmations

logger = logging.getLogger(__name__)


class Reconciler:
    """Usage:
        reconciler = Reconciler(store, gateway, monitor, engine)
        reconciler.start()
        # ... later ...
        reconciler.stop()
    """

    def __init__(
        self,
        store: Any,
        gateway: Any,
        monitor: Any,
        engine: Any,
        poll_interval: int = API_POLL_INTERVAL_SECS,
        required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS,
        claim_ttl: int = DEFAULT_CLAIM_TTL_SECS,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._monitor = monitor
        self._engine = engine
        self._poll_interval = poll_interval
        self._required_confirmations = required_confirmations
        self._claim_ttl = claim_ttl
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="docproof-reconciler", daemon=True
        )
        self._thread.start()
        logger.info("Reconciler started (poll interval: %ds)", self._poll_interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Reconciler stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self._poll_interval):
            try:
                self.reconcile()
            except Exception:
                logger.exception("Reconciler poll error")

    def reconcile(self) -> None:
        """One pass over all pending records."""
        for record in self._store.pending_records():
            if self._stop_event.is_set():
                return
            try:
                if record.tx:
                    self._check_anchor(record)
                else:
                    self._check_payment(record)
            except GatewayError as e:
                logger.warning("Reconcile of %s deferred: %s", record.address, e)
            except Exception:
                logger.exception("Failed to reconcile %s", record.address)

    def _check_anchor(self, record: DocumentRecord) -> None:
        tx = self._gateway.get_tx(record.tx)
        if tx is None:
            logger.warning(
                "Anchor tx %s for %s unknown to the explorer",
                record.tx[:16], record.address,
            )
            return
        if confirmations(tx) >= self._required_confirmations:
            self._engine.confirm_anchor(record.address, tx)

    def _check_payment(self, record: DocumentRecord) -> None:
        if record.claim_is_live(self._claim_ttl):
            return

        # Explorer lists newest first; the oldest qualifying payment wins
        history = list(reversed(self._gateway.address_history(record.address)))

        for tx in history:
            if is_anchor_tx(tx, record.digest, record.address):
                self._engine.adopt_anchor(record.address, tx)
                return

        for tx in history:
            if not tx.get("hash") or amount_paid(tx, record.address) < record.price:
                continue
            if not record.txstamp:
                self._monitor.observe_payment(record.address, tx)
            if confirmations(tx) >= self._required_confirmations:
                self._engine.anchor_payment(record.address, tx)
            return
