"""
HTTP server for the docproof API.

Uses stdlib http.server (threaded, one thread per request).
Routes requests to handler functions in handlers.py.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from docproof import API_MAX_BODY_BYTES
from docproof.api.handlers import (
    handle_health,
    handle_latest,
    handle_register,
    handle_status,
    handle_webhook,
)
from docproof.api.watcher import Reconciler
from docproof.config import Settings, load_webhook_secret
from docproof.engine import AnchorEngine
from docproof.explorer import redact_url
from docproof.feed import FeedService
from docproof.gateway import BlockchainGateway
from docproof.payments import PaymentMonitor
from docproof.registration import Registrar
from docproof.status import StatusService
from docproof.store import RecordStore

logger = logging.getLogger(__name__)

# Route patterns
_WEBHOOK_RE = re.compile(r"^/(unconfirmed|confirmed|anchored)/([^/]+)/([A-Za-z0-9]{20,100})$")
_LATEST_RE = re.compile(r"^/api/internal/latest/(unconfirmed|confirmed)$")


@dataclass
class Services:
    """Everything a request handler may need, wired once at startup."""

    settings: Settings
    store: RecordStore
    gateway: BlockchainGateway
    feed: FeedService
    registrar: Registrar
    monitor: PaymentMonitor
    engine: AnchorEngine
    status: StatusService

    def reconciler(self) -> Reconciler:
        return Reconciler(
            self.store,
            self.gateway,
            self.monitor,
            self.engine,
            poll_interval=self.settings.poll_interval,
            required_confirmations=self.settings.required_confirmations,
            claim_ttl=self.settings.anchor_claim_ttl,
        )


def build_services(
    settings: Settings,
    secret: str | None = None,
    store: RecordStore | None = None,
    gateway: Any = None,
) -> Services:
    """Wire the state machine together from settings."""
    if secret is None:
        secret = load_webhook_secret(settings.data_path)
    if store is None:
        store = RecordStore(root=settings.data_path)
    if gateway is None:
        gateway = BlockchainGateway.from_settings(settings, secret)

    feed = FeedService(store, size=settings.feed_size)
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        feed=feed,
        registrar=Registrar(store, gateway, price=settings.document_price),
        monitor=PaymentMonitor(store, feed, secret),
        engine=AnchorEngine(
            store,
            gateway,
            feed,
            secret,
            claim_ttl=settings.anchor_claim_ttl,
            required_confirmations=settings.required_confirmations,
        ),
        status=StatusService(store, settings.network_name),
    )


class DocproofHandler(BaseHTTPRequestHandler):
    """HTTP request handler. Services are attached to the server instance."""

    def log_message(self, format: str, *args: Any) -> None:
        # Request lines carry the webhook secret in the path
        logger.debug(redact_url(format % args))

    def _send_json(self, status: int, data: dict | list) -> None:
        body = json.dumps(data).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_body(self) -> bytes | None:
        """Read the request body. Returns None if it exceeds the size limit."""
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            return b""
        if length > API_MAX_BODY_BYTES:
            return None
        if length <= 0:
            return b""
        return self.rfile.read(length)

    def do_GET(self) -> None:
        path = self.path.split("?")[0]
        services: Services = self.server.services  # type: ignore[attr-defined]

        m = _LATEST_RE.match(path)
        if m:
            code, data = handle_latest(m.group(1), services.feed)
            self._send_json(code, data)
            return

        if path == "/api/internal/health":
            code, data = handle_health(
                services.gateway, services.store, services.settings.network_name
            )
            self._send_json(code, data)
            return

        self._send_json(404, {"error": "Not found"})

    def do_POST(self) -> None:
        path = self.path.split("?")[0]
        services: Services = self.server.services  # type: ignore[attr-defined]

        body = self._read_body()
        if body is None:
            self.close_connection = True
            self._send_json(413, {"error": f"Payload too large (max {API_MAX_BODY_BYTES} bytes)"})
            return
        content_type = self.headers.get("Content-Type", "")

        if path == "/api/v1/register":
            code, data = handle_register(body, content_type, services.registrar)
            self._send_json(code, data)
            return

        if path == "/api/v1/status":
            code, data = handle_status(body, content_type, services.status)
            self._send_json(code, data)
            return

        m = _WEBHOOK_RE.match(path)
        if m:
            route, secret, address = m.groups()
            code, data = handle_webhook(
                route, secret, address, body, services.monitor, services.engine
            )
            self._send_json(code, data)
            return

        self._send_json(404, {"error": "Not found"})


class DocproofServer(ThreadingHTTPServer):
    """ThreadingHTTPServer subclass that carries the wired services."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], services: Services) -> None:
        super().__init__(address, DocproofHandler)
        self.services = services


def run_api(
    settings: Settings,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Start the docproof API server and reconciler (blocking)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    services = build_services(settings)
    host = host or settings.host
    port = port or settings.port
    server = DocproofServer((host, port), services)

    reconciler = services.reconciler()
    reconciler.start()

    print(f"docproof API listening on http://{host}:{port} ({settings.network_name})")
    print(f"  POST /api/v1/register                — quote price + payment address")
    print(f"  POST /api/v1/status                  — document status")
    print(f"  POST /unconfirmed|confirmed|anchored — explorer webhooks")
    print(f"  GET  /api/internal/latest/<kind>     — activity feeds")
    print(f"  GET  /api/internal/health            — service health")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        reconciler.stop()
        server.server_close()
