"""
Webhook callback authentication and payload parsing.

The explorer calls back on URLs of the form /<route>/<secret>/<address>.
The secret path segment is the only credential, so it is compared in
constant time (hmac.compare_digest) and an empty configured secret denies
everything.
"""

from __future__ import annotations

import hmac
from typing import Any


class Unauthorized(Exception):
    """Webhook secret missing or wrong."""


class MalformedPayload(ValueError):
    """Webhook body is not an explorer transaction object."""


def check_secret(presented: str, expected: str) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def require_secret(presented: str, expected: str) -> None:
    if not check_secret(presented, expected):
        raise Unauthorized("Invalid webhook secret")


def parse_tx_payload(payload: Any) -> dict[str, Any]:
    """Validate the shape of an explorer tx object. Returns it unchanged."""
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook payload must be a JSON object")
    tx_hash = payload.get("hash")
    if not isinstance(tx_hash, str) or not tx_hash:
        raise MalformedPayload("Webhook payload has no transaction hash")
    outputs = payload.get("outputs")
    if not isinstance(outputs, list):
        raise MalformedPayload("Webhook payload has no outputs list")
    for output in outputs:
        if not isinstance(output, dict):
            raise MalformedPayload("Webhook payload outputs must be objects")
    return payload


def confirmations(tx: dict[str, Any]) -> int:
    try:
        return int(tx.get("confirmations") or 0)
    except (TypeError, ValueError):
        return 0
