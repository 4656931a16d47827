"""
Request handlers for the docproof API.

Each handler is a pure function: (request_data, dependencies) → (status_code, body).
No HTTP plumbing — that lives in server.py.
"""

from __future__ import annotations

import json
import logging
import urllib.parse
from typing import Any

from docproof import WEBHOOK_ANCHORED, WEBHOOK_CONFIRMED, WEBHOOK_UNCONFIRMED
from docproof.digest import InvalidDigest
from docproof.gateway import BroadcastFailed, GatewayUnavailable
from docproof.status import NotFound
from docproof.store import RecordStoreError
from docproof.webhooks import MalformedPayload, Unauthorized

logger = logging.getLogger(__name__)

_INVALID_DIGEST = {"reason": "Invalid digest field"}


def parse_digest_field(body: bytes, content_type: str) -> str | None:
    """Pull the digest out of a form (``d=...``) or JSON body."""
    if not body:
        return None
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        return None

    if "json" in (content_type or "") or text.lstrip().startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        value = data.get("d", data.get("digest"))
    else:
        form = urllib.parse.parse_qs(text, keep_blank_values=True)
        values = form.get("d") or form.get("digest") or []
        value = values[0] if values else None
    return value if isinstance(value, str) else None


def handle_register(
    body: bytes,
    content_type: str,
    registrar: Any,
) -> tuple[int, dict]:
    """POST /api/v1/register — quote a price and payment address for a digest."""
    digest = parse_digest_field(body, content_type)
    if digest is None:
        return 400, dict(_INVALID_DIGEST)

    try:
        registration = registrar.register(digest)
    except InvalidDigest:
        return 400, dict(_INVALID_DIGEST)
    except GatewayUnavailable as e:
        logger.warning("Registration failed: %s", e)
        return 502, {"reason": "Blockchain gateway unavailable, try again later"}
    except RecordStoreError as e:
        logger.error("Registration could not be stored: %s", e)
        return 503, {"reason": "Storage unavailable, try again later"}

    return 200, registration.to_dict()


def handle_status(
    body: bytes,
    content_type: str,
    status_service: Any,
) -> tuple[int, dict]:
    """POST /api/v1/status — client-facing view of a registered digest."""
    digest = parse_digest_field(body, content_type)
    if digest is None:
        return 400, dict(_INVALID_DIGEST)

    try:
        return 200, status_service.status(digest)
    except InvalidDigest:
        return 400, dict(_INVALID_DIGEST)
    except NotFound:
        return 404, {"success": False, "reason": "Document not found"}


def handle_webhook(
    route: str,
    secret: str,
    address: str,
    body: bytes,
    monitor: Any,
    engine: Any,
) -> tuple[int, dict]:
    """POST /<route>/<secret>/<address> — explorer callbacks.

    Acknowledged with 200 whenever the call is authentic and well formed,
    whether or not it changed anything.
    """
    try:
        payload = json.loads(body.decode("utf-8")) if body else None
    except (UnicodeDecodeError, ValueError):
        payload = None  # rejected after the secret check

    try:
        if route == WEBHOOK_UNCONFIRMED:
            monitor.on_unconfirmed_payment(address, secret, payload)
        elif route == WEBHOOK_CONFIRMED:
            engine.on_confirmed_payment(address, secret, payload)
        elif route == WEBHOOK_ANCHORED:
            engine.on_anchor_confirmed(address, secret, payload)
        else:
            return 404, {"error": "Not found"}
    except Unauthorized:
        logger.warning("Rejected %s webhook with bad secret for %s", route, address)
        return 401, {"error": "Unauthorized"}
    except MalformedPayload as e:
        return 400, {"error": str(e)}
    except (BroadcastFailed, GatewayUnavailable) as e:
        # Non-2xx makes the explorer redeliver, which retries the anchor
        logger.error("Anchoring for %s did not complete: %s", address, e)
        return 502, {"error": "Anchoring deferred"}
    except RecordStoreError as e:
        logger.error("Webhook for %s could not be stored: %s", address, e)
        return 503, {"error": "Storage unavailable"}

    return 200, {"success": True}


def handle_latest(kind: str, feed: Any) -> tuple[int, list | dict]:
    """GET /api/internal/latest/<kind> — recent activity feed."""
    if kind == "unconfirmed":
        return 200, feed.latest_unconfirmed()
    if kind == "confirmed":
        return 200, feed.latest_confirmed()
    return 404, {"error": "Not found"}


def handle_health(gateway: Any, store: Any, network: str) -> tuple[int, dict]:
    """GET /api/internal/health — explorer reachability and record counts."""
    result: dict[str, Any] = {"service": "docproof", "healthy": True, "network": network}

    try:
        info = gateway.chain_info()
        result["chain"] = {
            "connected": True,
            "name": info.get("name", "unknown"),
            "height": info.get("height", 0),
        }
    except GatewayUnavailable:
        result["chain"] = {"connected": False}
        result["healthy"] = False

    try:
        records = list(store.records())
        by_state: dict[str, int] = {}
        for record in records:
            by_state[record.state] = by_state.get(record.state, 0) + 1
        result["records"] = {"total": len(records), "by_state": by_state}
    except Exception:
        logger.exception("Health check could not read the record store")
        result["records"] = {"total": "unavailable"}
        result["healthy"] = False

    return 200, result
