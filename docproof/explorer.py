"""
BlockCypher explorer client — webhooks, transaction push, address history.

Endpoints (all under https://api.blockcypher.com/v1/<coin>/<chain>, ?token=):
    GET    /                       chain info
    POST   /hooks                  subscribe a webhook
    DELETE /hooks/<id>             unsubscribe
    POST   /txs/push               broadcast a signed transaction
    GET    /txs/<hash>             transaction lookup
    GET    /addrs/<addr>/full      full address history

Uses stdlib urllib, like the wallet RPC client.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from docproof import (
    ADDRESS_HISTORY_LIMIT,
    ADDRESS_HISTORY_TXLIMIT,
    BLOCKCYPHER_API_URL,
    EXPLORER_TIMEOUT_SECS,
)

logger = logging.getLogger(__name__)

# Hook URLs embed the webhook secret; never let one reach a log line
_SECRET_SEGMENT_RE = re.compile(r"/(unconfirmed|confirmed|anchored)/[^/]+/")


def redact_url(url: str) -> str:
    return _SECRET_SEGMENT_RE.sub(r"/\1/<secret>/", url)


class ExplorerError(Exception):
    """Error communicating with or returned by the explorer.

    ``status`` is the HTTP status code, or 0 for transport failures.
    """

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_rejection(self) -> bool:
        """The explorer answered and refused (4xx), as opposed to being unreachable."""
        return 400 <= self.status < 500


class BlockCypher:
    """Minimal BlockCypher REST client.

    Usage:
        explorer = BlockCypher(token="...", coin="btc", network="test3")
        hook = explorer.create_hook("unconfirmed-tx", url, address=addr)
    """

    def __init__(
        self,
        token: str = "",
        coin: str = "btc",
        network: str = "main",
        base_url: str = BLOCKCYPHER_API_URL,
        timeout: int = EXPLORER_TIMEOUT_SECS,
    ) -> None:
        self.token = token
        self.coin = coin
        self.network = network
        self.base_url = f"{base_url.rstrip('/')}/{coin}/{network}"
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Any) -> BlockCypher:
        return cls(
            token=settings.blockcypher_token,
            coin=settings.coin,
            network=settings.network,
        )

    def _url(self, path: str, **query: Any) -> str:
        params = dict(query)
        if self.token:
            params["token"] = self.token
        url = self.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        return url

    def request(
        self, method: str, path: str, body: Any = None, **query: Any,
    ) -> Any:
        """Perform one API call. Returns decoded JSON (None for empty bodies).

        Raises ExplorerError on transport errors and non-2xx responses.
        """
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(
            self._url(path, **query),
            data=data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            detail = ""
            try:
                err_body = json.loads(e.read().decode())
                detail = err_body.get("error", "") if isinstance(err_body, dict) else ""
            except ValueError:
                pass
            raise ExplorerError(
                f"{method} {path}: HTTP {e.code} {detail or e.reason}", status=e.code,
            ) from e
        except urllib.error.URLError as e:
            raise ExplorerError(f"{method} {path}: connection failed: {e.reason}") from e
        except OSError as e:
            raise ExplorerError(f"{method} {path}: {e}") from e

        if not raw:
            return None
        try:
            return json.loads(raw.decode())
        except ValueError as e:
            raise ExplorerError(f"{method} {path}: invalid JSON response") from e

    def chain_info(self) -> dict[str, Any]:
        return self.request("GET", "/")

    def create_hook(
        self,
        event: str,
        url: str,
        address: str | None = None,
        tx_hash: str | None = None,
        confirmations: int | None = None,
    ) -> dict[str, Any]:
        """Subscribe a webhook. Returns the hook object (with its ``id``)."""
        body: dict[str, Any] = {"event": event, "url": url}
        if address:
            body["address"] = address
        if tx_hash:
            body["hash"] = tx_hash
        if confirmations is not None:
            body["confirmations"] = confirmations
        if self.token:
            body["token"] = self.token
        hook = self.request("POST", "/hooks", body)
        logger.debug("Created %s hook %s -> %s", event, hook.get("id"), redact_url(url))
        return hook

    def delete_hook(self, hook_id: str) -> None:
        self.request("DELETE", f"/hooks/{urllib.parse.quote(hook_id)}")

    def push_tx(self, tx_hex: str) -> str:
        """Broadcast a signed transaction. Returns its hash."""
        result = self.request("POST", "/txs/push", {"tx": tx_hex})
        try:
            return result["tx"]["hash"]
        except (KeyError, TypeError) as e:
            raise ExplorerError("txs/push: response carries no tx hash") from e

    def get_tx(self, tx_hash: str) -> dict[str, Any]:
        return self.request("GET", f"/txs/{urllib.parse.quote(tx_hash)}")

    def address_full(self, address: str) -> dict[str, Any]:
        return self.request(
            "GET",
            f"/addrs/{urllib.parse.quote(address)}/full",
            limit=ADDRESS_HISTORY_LIMIT,
            txlimit=ADDRESS_HISTORY_TXLIMIT,
        )
