"""
Blockchain Gateway — the narrow capability set the state machine needs.

    allocate address · subscribe webhooks · build + broadcast anchor ·
    fetch address history · look up a transaction

Composed from the Bitcoin Core wallet (addresses, signing) and the
BlockCypher explorer (hooks, push, history). Every failure surfaces as one
of two exceptions:

    GatewayUnavailable — transient; nothing was done, try again later
    BroadcastFailed    — the network refused the anchoring transaction
"""

from __future__ import annotations

import logging
from typing import Any

from docproof import WEBHOOK_ANCHORED, WEBHOOK_CONFIRMED, WEBHOOK_UNCONFIRMED
from docproof.anchor import BitcoinRPC, BitcoinRPCError, build_anchor_tx
from docproof.explorer import BlockCypher, ExplorerError

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for blockchain gateway failures."""


class GatewayUnavailable(GatewayError):
    """Transient failure talking to the wallet or explorer."""


class BroadcastFailed(GatewayError):
    """The anchoring transaction could not be built or was rejected."""


class BlockchainGateway:
    """Wallet + explorer behind one interface.

    Usage:
        gateway = BlockchainGateway(rpc, explorer, public_url, secret)
        address, hooks = gateway.open_payment_address()
    """

    def __init__(
        self,
        rpc: BitcoinRPC,
        explorer: BlockCypher,
        public_url: str,
        secret: str,
        anchor_fee: int,
        treasury_address: str = "",
        required_confirmations: int = 1,
    ) -> None:
        self.rpc = rpc
        self.explorer = explorer
        self._public_url = public_url.rstrip("/")
        self._secret = secret
        self._anchor_fee = anchor_fee
        self._treasury_address = treasury_address
        self._required_confirmations = required_confirmations

    @classmethod
    def from_settings(cls, settings: Any, secret: str) -> BlockchainGateway:
        return cls(
            rpc=BitcoinRPC.from_settings(settings),
            explorer=BlockCypher.from_settings(settings),
            public_url=settings.public_url,
            secret=secret,
            anchor_fee=settings.anchor_fee,
            treasury_address=settings.treasury_address,
            required_confirmations=settings.required_confirmations,
        )

    def callback_url(self, route: str, address: str) -> str:
        return f"{self._public_url}/{route}/{self._secret}/{address}"

    # ------------------------------------------------------------------
    # Registration side
    # ------------------------------------------------------------------

    def allocate_address(self) -> str:
        try:
            return self.rpc.call("getnewaddress", "docproof", "legacy")
        except BitcoinRPCError as e:
            raise GatewayUnavailable(f"Address allocation failed: {e}") from e

    def subscribe(self, event: str, route: str, address: str, **kwargs: Any) -> str:
        """Register one webhook. Returns the hook id."""
        try:
            hook = self.explorer.create_hook(
                event, self.callback_url(route, address), **kwargs
            )
        except ExplorerError as e:
            raise GatewayUnavailable(f"Webhook subscription ({event}) failed: {e}") from e
        hook_id = (hook or {}).get("id")
        if not hook_id:
            raise GatewayUnavailable(f"Webhook subscription ({event}) returned no id")
        return hook_id

    def unsubscribe(self, hook_ids: list[str]) -> None:
        """Best-effort hook removal; failures are logged, not raised."""
        for hook_id in hook_ids:
            try:
                self.explorer.delete_hook(hook_id)
            except ExplorerError as e:
                logger.warning("Failed to delete hook %s: %s", hook_id, e)

    def watch_payments(self, address: str) -> list[str]:
        """Subscribe unconfirmed-tx and confirmed-tx hooks for ``address``.

        All or nothing: if the second subscription fails the first is
        removed before GatewayUnavailable propagates.
        """
        hooks: list[str] = []
        try:
            hooks.append(self.subscribe("unconfirmed-tx", WEBHOOK_UNCONFIRMED, address, address=address))
            hooks.append(self.subscribe("confirmed-tx", WEBHOOK_CONFIRMED, address, address=address))
        except GatewayUnavailable:
            self.unsubscribe(hooks)
            raise
        return hooks

    def open_payment_address(self) -> tuple[str, list[str]]:
        """Allocate a fresh address and subscribe its payment hooks."""
        address = self.allocate_address()
        return address, self.watch_payments(address)

    # ------------------------------------------------------------------
    # Anchoring side
    # ------------------------------------------------------------------

    def _change_address(self) -> str:
        if self._treasury_address:
            return self._treasury_address
        try:
            return self.rpc.call("getrawchangeaddress", "legacy")
        except BitcoinRPCError as e:
            raise GatewayUnavailable(f"Change address allocation failed: {e}") from e

    def anchor(self, digest: str, payment_tx: dict[str, Any], address: str) -> str:
        """Build, sign and broadcast the anchoring transaction. Returns its txid."""
        change_address = self._change_address()
        try:
            signed_hex = build_anchor_tx(
                self.rpc, digest, payment_tx, address, self._anchor_fee, change_address,
            )
        except BitcoinRPCError as e:
            raise BroadcastFailed(f"Could not build anchor tx: {e}") from e
        return self.broadcast(signed_hex)

    def broadcast(self, tx_hex: str) -> str:
        try:
            return self.explorer.push_tx(tx_hex)
        except ExplorerError as e:
            if e.is_rejection:
                raise BroadcastFailed(f"Anchor tx rejected: {e}") from e
            raise GatewayUnavailable(f"Broadcast failed: {e}") from e

    def watch_anchor(self, address: str, txid: str) -> str:
        """Subscribe a tx-confirmation hook for the anchoring transaction."""
        return self.subscribe(
            "tx-confirmation", WEBHOOK_ANCHORED, address,
            tx_hash=txid, confirmations=self._required_confirmations,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def address_history(self, address: str) -> list[dict[str, Any]]:
        try:
            data = self.explorer.address_full(address)
        except ExplorerError as e:
            raise GatewayUnavailable(f"Address lookup failed: {e}") from e
        return list((data or {}).get("txs") or [])

    def get_tx(self, txid: str) -> dict[str, Any] | None:
        """Look a transaction up. Returns None if the explorer does not know it."""
        try:
            return self.explorer.get_tx(txid)
        except ExplorerError as e:
            if e.status == 404:
                return None
            raise GatewayUnavailable(f"Transaction lookup failed: {e}") from e

    def chain_info(self) -> dict[str, Any]:
        try:
            return self.explorer.chain_info()
        except ExplorerError as e:
            raise GatewayUnavailable(f"Chain info failed: {e}") from e
