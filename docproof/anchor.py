"""
Anchoring transactions — OP_RETURN encoding and wallet-side construction.

On-chain format:
    OP_RETURN <push 40 bytes> "DOCPROOF" <sha256 digest>
    script hex: 6a28 444f4350524f4f46 <64 hex chars>

The anchoring transaction spends exactly the outputs of the client's payment
to the record's address. Because its inputs are fixed by the payment, a
rebuilt and rebroadcast anchor can only conflict with an earlier one, never
add a second anchor alongside it.

Signing is delegated to a Bitcoin Core wallet over JSON-RPC (stdlib urllib).
"""

from __future__ import annotations

import hmac
import json
import urllib.error
import urllib.request
from base64 import b64encode
from typing import Any

from docproof import ANCHOR_MARKER_HEX, ANCHOR_PAYLOAD_SIZE, DUST_LIMIT_SATS
from docproof.digest import is_valid_digest, validate_digest

# OP_RETURN opcode
_OP_RETURN = "6a"

_SATS_PER_BTC = 100_000_000


class BitcoinRPCError(Exception):
    """Error communicating with or returned by Bitcoin JSON-RPC."""


class BitcoinRPC:
    """Minimal Bitcoin Core JSON-RPC client.

    Usage:
        rpc = BitcoinRPC("http://127.0.0.1:18332", "user", "pass")
        address = rpc.call("getnewaddress", "docproof", "legacy")
    """

    def __init__(
        self, url: str, user: str = "", password: str = "", timeout: int = 30,
    ) -> None:
        if not url:
            raise ValueError("Bitcoin RPC URL cannot be empty")
        self.url = url
        self._user = user
        self._password = password
        self._timeout = timeout
        self._id_counter = 0

    @classmethod
    def from_settings(cls, settings: Any) -> BitcoinRPC:
        if not settings.rpc_url:
            raise BitcoinRPCError(
                "rpc_url not set. Set BITCOIN_RPC_URL or rpc_url in docproof.toml "
                "(e.g. http://127.0.0.1:18332 for testnet)."
            )
        return cls(settings.rpc_url, settings.rpc_user, settings.rpc_password)

    def call(self, method: str, *params: Any) -> Any:
        """Execute a JSON-RPC call. Returns the 'result' field.

        Raises BitcoinRPCError on transport or RPC-level errors.
        """
        self._id_counter += 1
        payload = json.dumps({
            "jsonrpc": "1.0",
            "id": self._id_counter,
            "method": method,
            "params": list(params),
        }).encode()

        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        if self._user or self._password:
            creds = b64encode(f"{self._user}:{self._password}".encode()).decode()
            req.add_header("Authorization", f"Basic {creds}")

        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                body = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            # Bitcoin Core reports RPC errors as HTTP 500 with a JSON body
            try:
                body = json.loads(e.read().decode())
            except ValueError:
                raise BitcoinRPCError(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise BitcoinRPCError(f"Connection failed: {e.reason}") from e
        except (OSError, ValueError) as e:
            raise BitcoinRPCError(f"RPC call {method} failed: {e}") from e

        if body.get("error"):
            err = body["error"]
            msg = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise BitcoinRPCError(f"RPC error ({method}): {msg}")

        return body.get("result")


def build_op_return_hex(digest: str) -> str:
    """Build the OP_RETURN scriptPubKey hex for a digest anchor.

    The push opcode for 40 bytes is 0x28 (single-byte push).
    """
    digest = validate_digest(digest)
    data_hex = ANCHOR_MARKER_HEX + digest  # 16 + 64 = 80 hex chars = 40 bytes
    push_len = format(ANCHOR_PAYLOAD_SIZE, "02x")  # "28"
    return _OP_RETURN + push_len + data_hex


def anchor_data_hex(digest: str) -> str:
    """The raw 40-byte payload, as Bitcoin Core's ``{"data": ...}`` output wants it."""
    return ANCHOR_MARKER_HEX + validate_digest(digest)


def parse_op_return(script_hex: str) -> str | None:
    """Extract the digest from a DOCPROOF OP_RETURN script, or None."""
    if not isinstance(script_hex, str):
        return None

    script = script_hex.lower().strip()
    expected_prefix = _OP_RETURN + format(ANCHOR_PAYLOAD_SIZE, "02x") + ANCHOR_MARKER_HEX
    if not script.startswith(expected_prefix):
        return None

    digest = script[len(expected_prefix):]
    if not is_valid_digest(digest):
        return None
    return digest


def tx_anchors_digest(tx: dict[str, Any], digest: str) -> bool:
    """True if an explorer tx object carries a DOCPROOF output for ``digest``."""
    for output in tx.get("outputs") or []:
        found = parse_op_return(output.get("script", ""))
        if found is not None and hmac.compare_digest(found, digest.lower()):
            return True
    return False


def spent_outputs(tx: dict[str, Any], address: str) -> list[tuple[str, int]]:
    """(previous tx hash, satoshis) for every input of ``tx`` spending from ``address``."""
    result = []
    for inp in tx.get("inputs") or []:
        if address in (inp.get("addresses") or []):
            try:
                value = int(inp.get("output_value", 0))
            except (TypeError, ValueError):
                value = 0
            result.append((inp.get("prev_hash") or "", value))
    return result


def is_anchor_tx(tx: dict[str, Any], digest: str, address: str) -> bool:
    """True if ``tx`` spends from ``address`` and carries the DOCPROOF output for ``digest``.

    Only our own anchoring transaction spends the payment address, so this
    recognises an anchor that reached the network without being recorded.
    """
    return bool(spent_outputs(tx, address)) and tx_anchors_digest(tx, digest)


def payment_outputs(tx: dict[str, Any], address: str) -> list[tuple[int, int]]:
    """(vout index, satoshis) for every output of ``tx`` paying ``address``."""
    result = []
    for index, output in enumerate(tx.get("outputs") or []):
        if address in (output.get("addresses") or []):
            try:
                value = int(output.get("value", 0))
            except (TypeError, ValueError):
                continue
            result.append((index, value))
    return result


def amount_paid(tx: dict[str, Any], address: str) -> int:
    """Total satoshis ``tx`` pays to ``address``."""
    return sum(value for _index, value in payment_outputs(tx, address))


def sats_to_btc(sats: int) -> str:
    """Format satoshis as an exact 8-decimal BTC string for RPC amounts."""
    whole, frac = divmod(int(sats), _SATS_PER_BTC)
    return f"{whole}.{frac:08d}"


def build_anchor_tx(
    rpc: BitcoinRPC,
    digest: str,
    payment_tx: dict[str, Any],
    address: str,
    fee_sats: int,
    change_address: str,
) -> str:
    """Create and wallet-sign the anchoring transaction. Returns signed hex.

    Inputs: every output of ``payment_tx`` paying ``address``.
    Outputs: the DOCPROOF OP_RETURN, plus change to ``change_address`` when
    the remainder after ``fee_sats`` is above dust (otherwise it all goes
    to the miner).
    """
    outputs = payment_outputs(payment_tx, address)
    if not outputs:
        raise BitcoinRPCError(
            f"Payment tx {payment_tx.get('hash', '?')} has no outputs to {address}"
        )

    total = sum(value for _index, value in outputs)
    if total <= fee_sats:
        raise BitcoinRPCError(
            f"Payment of {total} sats cannot cover anchor fee of {fee_sats} sats"
        )

    inputs = [{"txid": payment_tx["hash"], "vout": index} for index, _value in outputs]
    tx_outputs: list[dict[str, str]] = [{"data": anchor_data_hex(digest)}]
    change = total - fee_sats
    if change > DUST_LIMIT_SATS:
        tx_outputs.append({change_address: sats_to_btc(change)})

    raw_tx = rpc.call("createrawtransaction", inputs, tx_outputs)

    signed = rpc.call("signrawtransactionwithwallet", raw_tx)
    if not signed.get("complete"):
        raise BitcoinRPCError("Transaction signing incomplete — check wallet")
    return signed["hex"]
