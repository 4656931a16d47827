"""
Tests for the docproof building blocks — digest validation, OP_RETURN codec,
anchor transaction construction, wallet RPC, explorer client, gateway,
record model, record store, and configuration.

All tests use mocks — no Bitcoin node or explorer required.
"""

from __future__ import annotations

import io
import json
import os
import stat
import urllib.error
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call, patch

import pytest

from docproof import ANCHOR_MARKER_HEX, ANCHOR_PAYLOAD_SIZE, LATEST_CONFIRMED_KEY
from docproof.anchor import (
    BitcoinRPC,
    BitcoinRPCError,
    amount_paid,
    anchor_data_hex,
    build_anchor_tx,
    build_op_return_hex,
    is_anchor_tx,
    parse_op_return,
    payment_outputs,
    sats_to_btc,
    spent_outputs,
    tx_anchors_digest,
)
from docproof.config import (
    DEFAULT_CONFIG,
    ConfigError,
    Settings,
    load_settings,
    load_webhook_secret,
)
from docproof.digest import InvalidDigest, digest_file, is_valid_digest, validate_digest
from docproof.explorer import BlockCypher, ExplorerError, redact_url
from docproof.gateway import BlockchainGateway, BroadcastFailed, GatewayUnavailable
from docproof.records import (
    ANCHORED,
    ANCHORING,
    AWAITING_PAYMENT,
    CONFIRMED,
    PAID,
    DocumentRecord,
    RecordError,
)
from docproof.store import RecordStore, RecordStoreError, map_key

DIGEST = "8d1321a1d31f5603be10bab6a11b58009c03658e1a29248656db7a7e4f86d814"
ADDRESS = "mvJr4KkwYnfkvHCnbp9Zz3Q8yoQPHdeRZZ"
OTHER_ADDRESS = "n4VQ5YdHf7hLQ2gWQYYrcxoE5B7nWuDFNF"
PAYMENT_TXID = "1f" * 32
ANCHOR_TXID = "8226119494e53ef6c4c709ae9f547b6503a0775068a995ea4abb464de1137a10"


def payment_tx(value=50_000, address=ADDRESS, tx_hash=PAYMENT_TXID):
    return {
        "hash": tx_hash,
        "confirmations": 0,
        "outputs": [
            {"value": 99_000, "addresses": [OTHER_ADDRESS], "script_type": "pay-to-pubkey-hash"},
            {"value": value, "addresses": [address], "script_type": "pay-to-pubkey-hash"},
        ],
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_store(tmp_path):
    """RecordStore rooted in a temp directory."""
    return RecordStore(root=tmp_path / "data")


@pytest.fixture
def mock_rpc():
    rpc = MagicMock(spec=BitcoinRPC)
    rpc.url = "http://127.0.0.1:18332"
    return rpc


@pytest.fixture
def mock_explorer():
    return MagicMock(spec=BlockCypher)


@pytest.fixture
def gateway(mock_rpc, mock_explorer):
    return BlockchainGateway(
        mock_rpc,
        mock_explorer,
        public_url="https://docproof.example/",
        secret="s3cret",
        anchor_fee=10_000,
        treasury_address=OTHER_ADDRESS,
    )


def _urlopen_response(payload):
    """A context-manager mock standing in for urlopen()'s response."""
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode() if payload is not None else b""
    cm = MagicMock()
    cm.__enter__.return_value = resp
    return cm


def _http_error(code, payload):
    return urllib.error.HTTPError(
        "https://api.blockcypher.com", code, "error", {},
        io.BytesIO(json.dumps(payload).encode()),
    )


# ---------------------------------------------------------------------------
# TestDigest
# ---------------------------------------------------------------------------

class TestDigest:

    def test_valid(self):
        assert is_valid_digest("a" * 64)
        assert validate_digest(DIGEST) == DIGEST

    def test_uppercase_normalised(self):
        assert validate_digest(DIGEST.upper()) == DIGEST

    @pytest.mark.parametrize("value", [
        "invalid",
        "a" * 63,
        "a" * 65,
        "g" * 64,
        "a" * 64 + "\n",
        " " + "a" * 63,
        "",
        None,
        64,
        ["a" * 64],
    ])
    def test_invalid(self, value):
        assert not is_valid_digest(value)
        with pytest.raises(InvalidDigest):
            validate_digest(value)

    def test_invalid_digest_is_value_error(self):
        assert issubclass(InvalidDigest, ValueError)

    def test_digest_file(self, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_bytes(b"hello")
        assert digest_file(path) == (
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        )


# ---------------------------------------------------------------------------
# TestOpReturn
# ---------------------------------------------------------------------------

class TestOpReturn:

    def test_known_script(self):
        """Byte-exact DOCPROOF script for a known digest."""
        assert build_op_return_hex(DIGEST) == (
            "6a28444f4350524f4f46"
            "8d1321a1d31f5603be10bab6a11b58009c03658e1a29248656db7a7e4f86d814"
        )

    def test_length(self):
        script = build_op_return_hex(DIGEST)
        # OP_RETURN + push byte + 40 bytes of data
        assert len(script) == 2 + 2 + ANCHOR_PAYLOAD_SIZE * 2

    def test_data_hex(self):
        assert anchor_data_hex(DIGEST) == ANCHOR_MARKER_HEX + DIGEST

    def test_rejects_bad_digest(self):
        with pytest.raises(InvalidDigest):
            build_op_return_hex("nope")

    def test_parse_roundtrip(self):
        assert parse_op_return(build_op_return_hex(DIGEST)) == DIGEST

    def test_parse_uppercase_script(self):
        assert parse_op_return(build_op_return_hex(DIGEST).upper()) == DIGEST

    @pytest.mark.parametrize("script", [
        "",
        "76a914aabb88ac",
        "6a24" + "50464d33" + DIGEST,  # different marker
        "6a28444f4350524f4f46" + DIGEST[:-2],  # truncated
        "6a28444f4350524f4f46" + DIGEST + "00",  # trailing bytes
    ])
    def test_parse_rejects(self, script):
        assert parse_op_return(script) is None

    def test_parse_non_string(self):
        assert parse_op_return(None) is None

    def test_tx_anchors_digest(self):
        tx = {"outputs": [
            {"script": "76a914aabb88ac"},
            {"script": build_op_return_hex(DIGEST)},
        ]}
        assert tx_anchors_digest(tx, DIGEST)
        assert not tx_anchors_digest(tx, "b" * 64)
        assert not tx_anchors_digest({}, DIGEST)

    def test_marker_hex(self):
        assert ANCHOR_MARKER_HEX == "444f4350524f4f46"

    def test_spent_outputs(self):
        tx = {"inputs": [
            {"prev_hash": PAYMENT_TXID, "output_value": 50_000, "addresses": [ADDRESS]},
            {"prev_hash": "2f" * 32, "output_value": 7_000, "addresses": [OTHER_ADDRESS]},
            {"prev_hash": "3f" * 32, "output_value": "junk", "addresses": [ADDRESS]},
            {"prev_hash": "4f" * 32, "addresses": None},
        ]}
        assert spent_outputs(tx, ADDRESS) == [(PAYMENT_TXID, 50_000), ("3f" * 32, 0)]
        assert spent_outputs({}, ADDRESS) == []

    def test_is_anchor_tx(self):
        tx = {
            "hash": ANCHOR_TXID,
            "inputs": [{"prev_hash": PAYMENT_TXID, "output_value": 50_000, "addresses": [ADDRESS]}],
            "outputs": [{"script": build_op_return_hex(DIGEST), "addresses": None}],
        }
        assert is_anchor_tx(tx, DIGEST, ADDRESS)
        assert not is_anchor_tx(tx, "b" * 64, ADDRESS)
        # Same marker, but not spending from the payment address
        assert not is_anchor_tx(tx, DIGEST, OTHER_ADDRESS)
        assert not is_anchor_tx({**tx, "inputs": []}, DIGEST, ADDRESS)
        assert not is_anchor_tx(payment_tx(), DIGEST, ADDRESS)


# ---------------------------------------------------------------------------
# TestPaymentOutputs
# ---------------------------------------------------------------------------

class TestPaymentOutputs:

    def test_single_output(self):
        assert payment_outputs(payment_tx(), ADDRESS) == [(1, 50_000)]
        assert amount_paid(payment_tx(), ADDRESS) == 50_000

    def test_multiple_outputs_summed(self):
        tx = payment_tx(30_000)
        tx["outputs"].append({"value": 25_000, "addresses": [ADDRESS]})
        assert amount_paid(tx, ADDRESS) == 55_000
        assert [i for i, _ in payment_outputs(tx, ADDRESS)] == [1, 2]

    def test_unrelated_address(self):
        assert amount_paid(payment_tx(), "mxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx") == 0

    def test_null_addresses(self):
        tx = {"outputs": [{"value": 0, "addresses": None, "script": "6a00"}]}
        assert amount_paid(tx, ADDRESS) == 0

    def test_sats_to_btc(self):
        assert sats_to_btc(40_000) == "0.00040000"
        assert sats_to_btc(123_456_789) == "1.23456789"
        assert sats_to_btc(0) == "0.00000000"


# ---------------------------------------------------------------------------
# TestBuildAnchorTx
# ---------------------------------------------------------------------------

class TestBuildAnchorTx:

    def test_spends_payment_outputs(self, mock_rpc):
        mock_rpc.call.side_effect = [
            "raw_hex",                                    # createrawtransaction
            {"hex": "signed_hex", "complete": True},      # signrawtransactionwithwallet
        ]
        signed = build_anchor_tx(
            mock_rpc, DIGEST, payment_tx(), ADDRESS, 10_000, OTHER_ADDRESS,
        )
        assert signed == "signed_hex"
        assert mock_rpc.call.call_args_list == [
            call(
                "createrawtransaction",
                [{"txid": PAYMENT_TXID, "vout": 1}],
                [{"data": ANCHOR_MARKER_HEX + DIGEST}, {OTHER_ADDRESS: "0.00040000"}],
            ),
            call("signrawtransactionwithwallet", "raw_hex"),
        ]

    def test_dust_change_dropped(self, mock_rpc):
        mock_rpc.call.side_effect = ["raw_hex", {"hex": "signed", "complete": True}]
        build_anchor_tx(mock_rpc, DIGEST, payment_tx(10_500), ADDRESS, 10_000, OTHER_ADDRESS)
        outputs = mock_rpc.call.call_args_list[0].args[2]
        assert outputs == [{"data": ANCHOR_MARKER_HEX + DIGEST}]

    def test_payment_below_fee(self, mock_rpc):
        with pytest.raises(BitcoinRPCError, match="cannot cover"):
            build_anchor_tx(mock_rpc, DIGEST, payment_tx(5_000), ADDRESS, 10_000, OTHER_ADDRESS)
        mock_rpc.call.assert_not_called()

    def test_no_outputs_to_address(self, mock_rpc):
        with pytest.raises(BitcoinRPCError, match="no outputs"):
            build_anchor_tx(mock_rpc, DIGEST, payment_tx(address=OTHER_ADDRESS), ADDRESS, 10_000, OTHER_ADDRESS)

    def test_incomplete_signature(self, mock_rpc):
        mock_rpc.call.side_effect = ["raw_hex", {"hex": "partial", "complete": False}]
        with pytest.raises(BitcoinRPCError, match="signing incomplete"):
            build_anchor_tx(mock_rpc, DIGEST, payment_tx(), ADDRESS, 10_000, OTHER_ADDRESS)

    def test_deterministic_inputs(self, mock_rpc):
        """Rebuilding for the same payment spends the same coins."""
        mock_rpc.call.side_effect = [
            "raw1", {"hex": "s1", "complete": True},
            "raw2", {"hex": "s2", "complete": True},
        ]
        build_anchor_tx(mock_rpc, DIGEST, payment_tx(), ADDRESS, 10_000, OTHER_ADDRESS)
        build_anchor_tx(mock_rpc, DIGEST, payment_tx(), ADDRESS, 10_000, OTHER_ADDRESS)
        first, _, second, _ = mock_rpc.call.call_args_list
        assert first.args[1] == second.args[1]


# ---------------------------------------------------------------------------
# TestBitcoinRPC
# ---------------------------------------------------------------------------

class TestBitcoinRPC:

    def test_empty_url(self):
        with pytest.raises(ValueError):
            BitcoinRPC("")

    def test_call_returns_result(self):
        rpc = BitcoinRPC("http://127.0.0.1:18332", "user", "pass")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response({"result": "mvaddr", "error": None})
            assert rpc.call("getnewaddress") == "mvaddr"
            req = urlopen.call_args.args[0]
            assert req.get_header("Authorization").startswith("Basic ")
            assert json.loads(req.data)["method"] == "getnewaddress"

    def test_rpc_error(self):
        rpc = BitcoinRPC("http://127.0.0.1:18332")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response(
                {"result": None, "error": {"code": -4, "message": "Wallet locked"}}
            )
            with pytest.raises(BitcoinRPCError, match="Wallet locked"):
                rpc.call("getnewaddress")

    def test_http_500_json_error(self):
        rpc = BitcoinRPC("http://127.0.0.1:18332")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.side_effect = _http_error(500, {"result": None, "error": {"message": "bad"}})
            with pytest.raises(BitcoinRPCError, match="bad"):
                rpc.call("createrawtransaction")

    def test_connection_refused(self):
        rpc = BitcoinRPC("http://127.0.0.1:18332")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.side_effect = urllib.error.URLError("refused")
            with pytest.raises(BitcoinRPCError, match="Connection failed"):
                rpc.call("getnewaddress")

    def test_from_settings_requires_url(self, tmp_path):
        settings = Settings(**{**DEFAULT_CONFIG, "data_dir": str(tmp_path)})
        with pytest.raises(BitcoinRPCError, match="rpc_url"):
            BitcoinRPC.from_settings(settings)


# ---------------------------------------------------------------------------
# TestBlockCypher
# ---------------------------------------------------------------------------

class TestBlockCypher:

    def test_url_carries_token(self):
        explorer = BlockCypher(token="tok", network="test3")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response({"name": "BTC.test3", "height": 100})
            assert explorer.chain_info()["height"] == 100
            req = urlopen.call_args.args[0]
            assert req.full_url == "https://api.blockcypher.com/v1/btc/test3/?token=tok"
            assert req.get_method() == "GET"

    def test_create_hook(self):
        explorer = BlockCypher(token="tok", network="test3")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response({"id": "hook-1"})
            hook = explorer.create_hook("unconfirmed-tx", "https://x/unconfirmed/s/a", address=ADDRESS)
            assert hook["id"] == "hook-1"
            body = json.loads(urlopen.call_args.args[0].data)
            assert body == {
                "event": "unconfirmed-tx",
                "url": "https://x/unconfirmed/s/a",
                "address": ADDRESS,
                "token": "tok",
            }

    def test_push_tx(self):
        explorer = BlockCypher(token="tok", network="test3")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response({"tx": {"hash": ANCHOR_TXID}})
            assert explorer.push_tx("0100") == ANCHOR_TXID
            req = urlopen.call_args.args[0]
            assert req.full_url.endswith("/txs/push?token=tok")
            assert json.loads(req.data) == {"tx": "0100"}

    def test_push_tx_missing_hash(self):
        explorer = BlockCypher()
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response({"error": "?"})
            with pytest.raises(ExplorerError, match="no tx hash"):
                explorer.push_tx("0100")

    def test_address_full_query(self):
        explorer = BlockCypher(token="tok", network="test3")
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response({"address": ADDRESS, "txs": []})
            explorer.address_full(ADDRESS)
            url = urlopen.call_args.args[0].full_url
            assert f"/addrs/{ADDRESS}/full?" in url
            assert "limit=50" in url and "txlimit=2000" in url

    def test_http_error_carries_status(self):
        explorer = BlockCypher()
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.side_effect = _http_error(400, {"error": "tx rejected"})
            with pytest.raises(ExplorerError) as exc:
                explorer.push_tx("0100")
        assert exc.value.status == 400
        assert exc.value.is_rejection
        assert "tx rejected" in str(exc.value)

    def test_transport_error(self):
        explorer = BlockCypher()
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.side_effect = urllib.error.URLError("timed out")
            with pytest.raises(ExplorerError) as exc:
                explorer.chain_info()
        assert exc.value.status == 0
        assert not exc.value.is_rejection

    def test_delete_hook_empty_body(self):
        explorer = BlockCypher()
        with patch("urllib.request.urlopen") as urlopen:
            urlopen.return_value = _urlopen_response(None)
            assert explorer.delete_hook("hook-1") is None
            assert urlopen.call_args.args[0].get_method() == "DELETE"

    def test_redact_url(self):
        url = "https://docproof.example/confirmed/s3cret/" + ADDRESS
        assert redact_url(url) == "https://docproof.example/confirmed/<secret>/" + ADDRESS
        assert "s3cret" not in redact_url("POST /anchored/s3cret/abc HTTP/1.1")


# ---------------------------------------------------------------------------
# TestGateway
# ---------------------------------------------------------------------------

class TestGateway:

    def test_callback_url(self, gateway):
        assert gateway.callback_url("unconfirmed", ADDRESS) == (
            f"https://docproof.example/unconfirmed/s3cret/{ADDRESS}"
        )

    def test_open_payment_address(self, gateway, mock_rpc, mock_explorer):
        mock_rpc.call.return_value = ADDRESS
        mock_explorer.create_hook.side_effect = [{"id": "h1"}, {"id": "h2"}]

        address, hooks = gateway.open_payment_address()

        assert address == ADDRESS
        assert hooks == ["h1", "h2"]
        mock_rpc.call.assert_called_once_with("getnewaddress", "docproof", "legacy")
        events = [c.args[0] for c in mock_explorer.create_hook.call_args_list]
        assert events == ["unconfirmed-tx", "confirmed-tx"]
        urls = [c.args[1] for c in mock_explorer.create_hook.call_args_list]
        assert urls[1] == f"https://docproof.example/confirmed/s3cret/{ADDRESS}"

    def test_address_allocation_failure(self, gateway, mock_rpc, mock_explorer):
        mock_rpc.call.side_effect = BitcoinRPCError("Connection failed")
        with pytest.raises(GatewayUnavailable):
            gateway.open_payment_address()
        mock_explorer.create_hook.assert_not_called()

    def test_second_hook_failure_rolls_back(self, gateway, mock_rpc, mock_explorer):
        mock_rpc.call.return_value = ADDRESS
        mock_explorer.create_hook.side_effect = [{"id": "h1"}, ExplorerError("HTTP 429", 429)]

        with pytest.raises(GatewayUnavailable):
            gateway.open_payment_address()
        mock_explorer.delete_hook.assert_called_once_with("h1")

    def test_hook_without_id(self, gateway, mock_explorer):
        mock_explorer.create_hook.return_value = {}
        with pytest.raises(GatewayUnavailable, match="no id"):
            gateway.subscribe("unconfirmed-tx", "unconfirmed", ADDRESS, address=ADDRESS)

    def test_unsubscribe_swallows_errors(self, gateway, mock_explorer):
        mock_explorer.delete_hook.side_effect = ExplorerError("gone", 404)
        gateway.unsubscribe(["h1", "h2"])
        assert mock_explorer.delete_hook.call_count == 2

    def test_anchor_success(self, gateway, mock_rpc, mock_explorer):
        mock_rpc.call.side_effect = ["raw", {"hex": "signed", "complete": True}]
        mock_explorer.push_tx.return_value = ANCHOR_TXID

        assert gateway.anchor(DIGEST, payment_tx(), ADDRESS) == ANCHOR_TXID
        mock_explorer.push_tx.assert_called_once_with("signed")
        # treasury address configured: no wallet change address needed
        assert mock_rpc.call.call_args_list[0].args[2][1] == {OTHER_ADDRESS: "0.00040000"}

    def test_anchor_uses_wallet_change_without_treasury(self, mock_rpc, mock_explorer):
        gw = BlockchainGateway(mock_rpc, mock_explorer, "https://x", "s", anchor_fee=10_000)
        mock_rpc.call.side_effect = [
            "mchange00000000000000000000000000",
            "raw", {"hex": "signed", "complete": True},
        ]
        mock_explorer.push_tx.return_value = ANCHOR_TXID
        gw.anchor(DIGEST, payment_tx(), ADDRESS)
        assert mock_rpc.call.call_args_list[0] == call("getrawchangeaddress", "legacy")

    def test_anchor_build_failure(self, gateway, mock_rpc, mock_explorer):
        mock_rpc.call.side_effect = BitcoinRPCError("Wallet locked")
        with pytest.raises(BroadcastFailed):
            gateway.anchor(DIGEST, payment_tx(), ADDRESS)
        mock_explorer.push_tx.assert_not_called()

    def test_broadcast_rejected(self, gateway, mock_explorer):
        mock_explorer.push_tx.side_effect = ExplorerError("HTTP 400 missing inputs", 400)
        with pytest.raises(BroadcastFailed):
            gateway.broadcast("0100")

    def test_broadcast_unreachable(self, gateway, mock_explorer):
        mock_explorer.push_tx.side_effect = ExplorerError("connection failed")
        with pytest.raises(GatewayUnavailable):
            gateway.broadcast("0100")

    def test_watch_anchor(self, gateway, mock_explorer):
        mock_explorer.create_hook.return_value = {"id": "h3"}
        assert gateway.watch_anchor(ADDRESS, ANCHOR_TXID) == "h3"
        args, kwargs = mock_explorer.create_hook.call_args
        assert args == ("tx-confirmation", f"https://docproof.example/anchored/s3cret/{ADDRESS}")
        assert kwargs == {"tx_hash": ANCHOR_TXID, "confirmations": 1}

    def test_address_history(self, gateway, mock_explorer):
        mock_explorer.address_full.return_value = {"txs": [payment_tx()]}
        assert gateway.address_history(ADDRESS) == [payment_tx()]

    def test_get_tx_not_found(self, gateway, mock_explorer):
        mock_explorer.get_tx.side_effect = ExplorerError("HTTP 404", 404)
        assert gateway.get_tx(ANCHOR_TXID) is None

    def test_get_tx_unavailable(self, gateway, mock_explorer):
        mock_explorer.get_tx.side_effect = ExplorerError("HTTP 503", 503)
        with pytest.raises(GatewayUnavailable):
            gateway.get_tx(ANCHOR_TXID)


# ---------------------------------------------------------------------------
# TestDocumentRecord
# ---------------------------------------------------------------------------

class TestDocumentRecord:

    def _record(self, **kwargs):
        return DocumentRecord(digest=DIGEST, address=ADDRESS, price=50_000, **kwargs)

    def test_defaults(self):
        rec = self._record()
        assert rec.pending is True
        assert rec.timestamp
        assert rec.txstamp is None and rec.tx is None and rec.blockstamp is None
        assert rec.state == AWAITING_PAYMENT

    def test_happy_path_states(self):
        rec = self._record()
        assert rec.mark_paid(PAYMENT_TXID, 50_000)
        assert rec.state == PAID
        rec.anchor_claim = "2099-01-01T00:00:00+00:00"
        assert rec.state == ANCHORING
        assert rec.set_anchor_tx(ANCHOR_TXID)
        assert rec.anchor_claim is None
        assert rec.state == ANCHORED
        assert rec.mark_confirmed()
        assert rec.state == CONFIRMED
        assert rec.pending is False

    def test_mark_paid_once(self):
        rec = self._record()
        rec.mark_paid(PAYMENT_TXID, 50_000, when="2024-01-01T00:00:00+00:00")
        assert not rec.mark_paid("2f" * 32, 60_000, when="2024-02-02T00:00:00+00:00")
        assert rec.txstamp == "2024-01-01T00:00:00+00:00"
        assert rec.payment_tx == PAYMENT_TXID

    def test_set_anchor_tx_once(self):
        rec = self._record()
        rec.set_anchor_tx(ANCHOR_TXID)
        assert not rec.set_anchor_tx("ff" * 32)
        assert rec.tx == ANCHOR_TXID

    def test_confirm_requires_tx(self):
        with pytest.raises(RecordError, match="no anchor tx"):
            self._record().mark_confirmed()

    def test_confirm_once(self):
        rec = self._record(tx=ANCHOR_TXID)
        rec.mark_confirmed(when="2024-01-01T00:00:00+00:00")
        assert not rec.mark_confirmed(when="2025-01-01T00:00:00+00:00")
        assert rec.blockstamp == "2024-01-01T00:00:00+00:00"

    def test_claim_liveness(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        rec = self._record(anchor_claim=now.isoformat())
        assert rec.claim_is_live(300, now=now + timedelta(seconds=10))
        assert not rec.claim_is_live(300, now=now + timedelta(seconds=301))
        assert not self._record().claim_is_live(300)
        assert not self._record(anchor_claim="garbage").claim_is_live(300)

    def test_dict_roundtrip(self):
        rec = self._record(hooks=["h1"])
        rec.mark_paid(PAYMENT_TXID, 51_000)
        again = DocumentRecord.from_dict(json.loads(json.dumps(rec.to_dict())))
        assert again.to_dict() == rec.to_dict()

    def test_from_dict_empty_strings_are_unset(self):
        rec = DocumentRecord.from_dict({
            "digest": DIGEST, "address": ADDRESS, "price": 1,
            "txstamp": "", "tx": "", "blockstamp": "",
        })
        assert rec.txstamp is None and rec.tx is None and rec.blockstamp is None


# ---------------------------------------------------------------------------
# TestRecordStore
# ---------------------------------------------------------------------------

class TestRecordStore:

    def _record(self, digest=DIGEST, address=ADDRESS):
        return DocumentRecord(digest=digest, address=address, price=50_000)

    def test_create_and_lookup(self, tmp_store):
        assert tmp_store.create(self._record()) is None
        assert tmp_store.address_for(DIGEST) == ADDRESS
        assert tmp_store.get(map_key(DIGEST)) == ADDRESS
        assert tmp_store.find_by_digest(DIGEST).address == ADDRESS

    def test_create_twice_returns_existing(self, tmp_store):
        tmp_store.create(self._record())
        assert tmp_store.create(self._record(address=OTHER_ADDRESS)) == ADDRESS
        assert tmp_store.get_record(OTHER_ADDRESS) is None
        assert tmp_store.count() == 1

    def test_persistence(self, tmp_path):
        store1 = RecordStore(root=tmp_path)
        store1.create(self._record())
        store2 = RecordStore(root=tmp_path)
        assert store2.find_by_digest(DIGEST).address == ADDRESS

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "records.json").write_text("{not json")
        with pytest.raises(RecordStoreError):
            RecordStore(root=tmp_path)

    def test_update_writes_only_on_change(self, tmp_store):
        tmp_store.create(self._record())
        rec, changed = tmp_store.update(ADDRESS, lambda r: r.mark_paid(PAYMENT_TXID, 50_000))
        assert changed and rec.txstamp
        rec2, changed2 = tmp_store.update(ADDRESS, lambda r: r.mark_paid("2f" * 32, 1))
        assert not changed2
        assert rec2.payment_tx == PAYMENT_TXID

    def test_update_missing(self, tmp_store):
        mutate = MagicMock()
        assert tmp_store.update(ADDRESS, mutate) == (None, False)
        mutate.assert_not_called()

    def test_get_returns_copies(self, tmp_store):
        tmp_store.put(LATEST_CONFIRMED_KEY, [{"digest": DIGEST}])
        items = tmp_store.get(LATEST_CONFIRMED_KEY)
        items.append({"digest": "x"})
        assert len(tmp_store.get(LATEST_CONFIRMED_KEY)) == 1

    def test_reserved_keys_are_not_records(self, tmp_store):
        tmp_store.create(self._record())
        tmp_store.put(LATEST_CONFIRMED_KEY, [])
        assert tmp_store.get_record(LATEST_CONFIRMED_KEY) is None
        assert tmp_store.get_record(map_key(DIGEST)) is None
        assert [r.address for r in tmp_store.records()] == [ADDRESS]

    def test_pending_records(self, tmp_store):
        tmp_store.create(self._record())
        done = self._record(digest="b" * 64, address=OTHER_ADDRESS)
        done.tx = ANCHOR_TXID
        done.mark_confirmed()
        tmp_store.create(done)
        assert [r.address for r in tmp_store.pending_records()] == [ADDRESS]

    def test_delete(self, tmp_store):
        tmp_store.put("k", 1)
        tmp_store.delete("k")
        tmp_store.delete("k")
        assert tmp_store.get("k") is None

    def test_modify(self, tmp_store):
        tmp_store.modify("counter", lambda v: (v or 0) + 1)
        assert tmp_store.modify("counter", lambda v: (v or 0) + 1) == 2

    def test_failed_write_keeps_memory_and_disk_in_step(self, tmp_store):
        tmp_store.put("k", 1)
        with patch.object(RecordStore, "_persist", side_effect=OSError("disk full")):
            with pytest.raises(RecordStoreError, match="disk full"):
                tmp_store.put("k", 2)
            with pytest.raises(RecordStoreError):
                tmp_store.delete("k")
        assert tmp_store.get("k") == 1
        assert RecordStore(root=tmp_store.root).get("k") == 1

    def test_failed_create_leaves_no_mapping(self, tmp_store):
        with patch.object(RecordStore, "_persist", side_effect=OSError("read-only")):
            with pytest.raises(RecordStoreError):
                tmp_store.create(self._record())
        assert tmp_store.address_for(DIGEST) is None
        assert tmp_store.get_record(ADDRESS) is None
        # The digest can still be registered once the disk recovers
        assert tmp_store.create(self._record()) is None

    def test_failed_update_leaves_record_unchanged(self, tmp_store):
        tmp_store.create(self._record())
        with patch.object(RecordStore, "_persist", side_effect=OSError("disk full")):
            with pytest.raises(RecordStoreError):
                tmp_store.update(ADDRESS, lambda r: r.mark_paid(PAYMENT_TXID, 50_000))
        record = tmp_store.get_record(ADDRESS)
        assert record.txstamp is None
        assert record.state == AWAITING_PAYMENT


# ---------------------------------------------------------------------------
# TestConfig
# ---------------------------------------------------------------------------

_ENV_VARS = [
    "DOCPROOF_CONFIG", "DOCPROOF_HOST", "DOCPROOF_PORT", "DOCPROOF_PUBLIC_URL",
    "DOCPROOF_DATA_DIR", "DOCPROOF_COIN", "DOCPROOF_NETWORK", "DOCPROOF_DOCUMENT_PRICE",
    "DOCPROOF_ANCHOR_FEE", "DOCPROOF_TREASURY_ADDRESS", "DOCPROOF_FEED_SIZE",
    "DOCPROOF_POLL_INTERVAL", "DOCPROOF_ANCHOR_CLAIM_TTL", "DOCPROOF_REQUIRED_CONFIRMATIONS",
    "BLOCKCYPHER_TOKEN",
    "BITCOIN_RPC_URL", "BITCOIN_RPC_USER", "BITCOIN_RPC_PASS", "DOCPROOF_WEBHOOK_SECRET",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:

    def test_toml_file(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text(
            'network = "main"\n'
            "document_price = 60000\n"
            'public_url = "https://docproof.example/"\n'
            f'data_dir = "{tmp_path}"\n'
        )
        settings = load_settings(path)
        assert settings.network == "main"
        assert settings.network_name == "mainnet"
        assert settings.document_price == 60_000
        assert settings.public_url == "https://docproof.example"
        assert settings.data_path == tmp_path

    def test_env_overrides_file(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text("document_price = 60000\n")
        clean_env.setenv("DOCPROOF_DOCUMENT_PRICE", "70000")
        clean_env.setenv("BLOCKCYPHER_TOKEN", "tok")
        settings = load_settings(path)
        assert settings.document_price == 70_000
        assert settings.blockcypher_token == "tok"

    def test_unknown_keys_ignored(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text('bogus = 1\nnetwork = "test3"\n')
        assert load_settings(path).network_name == "testnet"

    def test_missing_explicit_file(self, tmp_path, clean_env):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "nope.toml")

    def test_bad_toml(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text("this is = = not toml")
        with pytest.raises(ConfigError, match="Failed to load"):
            load_settings(path)

    def test_bad_integer(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text("")
        clean_env.setenv("DOCPROOF_PORT", "eighty")
        with pytest.raises(ConfigError, match="port"):
            load_settings(path)

    def test_claim_ttl_from_env(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text("anchor_claim_ttl = 120\n")
        assert load_settings(path).anchor_claim_ttl == 120
        clean_env.setenv("DOCPROOF_ANCHOR_CLAIM_TTL", "900")
        assert load_settings(path).anchor_claim_ttl == 900

    def test_claim_ttl_must_be_positive(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text("anchor_claim_ttl = 0\n")
        with pytest.raises(ConfigError, match="anchor_claim_ttl"):
            load_settings(path)

    def test_price_must_cover_fee(self, tmp_path, clean_env):
        path = tmp_path / "docproof.toml"
        path.write_text("document_price = 10000\nanchor_fee = 10000\n")
        with pytest.raises(ConfigError, match="must cover"):
            load_settings(path)

    def test_webhook_secret_generated_once(self, tmp_path, clean_env):
        first = load_webhook_secret(tmp_path)
        assert len(first) >= 32
        secret_file = tmp_path / "webhook_secret"
        assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600
        assert load_webhook_secret(tmp_path) == first

    def test_webhook_secret_from_env(self, tmp_path, clean_env):
        clean_env.setenv("DOCPROOF_WEBHOOK_SECRET", "from-env")
        assert load_webhook_secret(tmp_path) == "from-env"
        assert not (tmp_path / "webhook_secret").exists()

    def test_webhook_secret_no_create(self, tmp_path, clean_env):
        assert load_webhook_secret(tmp_path, create=False) == ""
