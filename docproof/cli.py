"""
docproof CLI — run the anchoring service and talk to it.

Commands:
  docproof serve    - Start the API server and reconciler (foreground)
  docproof hash     - Print the SHA-256 digest of a file
  docproof register - Register a digest (or file) with a running server
  docproof status   - Show the status of a registered digest
  docproof latest   - Show the latest unconfirmed / confirmed feed
  docproof health   - Show service health
  docproof secret   - Create (if needed) and locate the webhook secret
"""

from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.parse
import urllib.request
from typing import Any


def _load_settings(args: argparse.Namespace):
    from docproof.config import ConfigError, load_settings

    try:
        return load_settings(getattr(args, "config", None))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _server_url(args: argparse.Namespace) -> str:
    if getattr(args, "url", None):
        return args.url.rstrip("/")
    settings = _load_settings(args)
    return f"http://{settings.host}:{settings.port}"


def _request(url: str, data: dict[str, str] | None = None) -> tuple[int, Any]:
    """GET (or form POST when ``data`` is given). Returns (status, JSON body)."""
    body = urllib.parse.urlencode(data).encode() if data is not None else None
    req = urllib.request.Request(url, data=body, method="POST" if body else "GET")
    if body:
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            return resp.status, json.loads(resp.read().decode())
    except urllib.error.HTTPError as e:
        try:
            return e.code, json.loads(e.read().decode())
        except ValueError:
            return e.code, {"reason": e.reason}
    except urllib.error.URLError as e:
        print(f"Error: Cannot reach docproof at {url}: {e.reason}", file=sys.stderr)
        sys.exit(1)


def _digest_arg(args: argparse.Namespace) -> str:
    from docproof.digest import digest_file

    if getattr(args, "file", None):
        try:
            return digest_file(args.file)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    return args.digest


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the API server in the foreground."""
    from docproof.api import run_api

    settings = _load_settings(args)
    run_api(settings, host=args.host, port=args.port)


def cmd_hash(args: argparse.Namespace) -> None:
    from docproof.digest import digest_file

    try:
        print(digest_file(args.path))
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_register(args: argparse.Namespace) -> None:
    """Register a digest and print the payment request."""
    digest = _digest_arg(args)
    code, data = _request(f"{_server_url(args)}/api/v1/register", {"d": digest})
    if code != 200:
        print(f"Error: {data.get('reason', data)}", file=sys.stderr)
        sys.exit(1)

    print(f"Registered {data['digest']}")
    print(f"  pay:     {data['price']} sats")
    print(f"  to:      {data['pay_address']}")


def cmd_status(args: argparse.Namespace) -> None:
    digest = _digest_arg(args)
    code, data = _request(f"{_server_url(args)}/api/v1/status", {"d": digest})
    if code == 404:
        print(f"Not registered: {digest}", file=sys.stderr)
        sys.exit(1)
    if code != 200:
        print(f"Error: {data.get('reason', data)}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(data, indent=2))
        return

    print(f"{data['digest']}  [{data.get('state', '?')}] on {data['network']}")
    print(f"  address:    {data['payment_address']} ({data['price']} sats)")
    print(f"  registered: {data['timestamp']}")
    print(f"  paid:       {data['txstamp'] or '-'}")
    print(f"  anchor tx:  {data.get('tx') or '-'}")
    print(f"  op_return:  {data.get('op_return', '-')}")
    print(f"  confirmed:  {data['blockstamp'] or '-'}")


def cmd_latest(args: argparse.Namespace) -> None:
    code, data = _request(f"{_server_url(args)}/api/internal/latest/{args.kind}")
    if code != 200:
        print(f"Error: {data}", file=sys.stderr)
        sys.exit(1)

    if not data:
        print(f"No {args.kind} documents yet.")
        return
    for entry in data:
        tx = entry.get("tx") or ""
        print(f"  {entry.get('timestamp', '')[:19]}  {entry['digest']}  tx={tx[:12]}")


def cmd_health(args: argparse.Namespace) -> None:
    url = f"{_server_url(args)}/api/internal/health"
    _code, data = _request(url)

    print(f"docproof — {url}")
    print(f"  healthy: {'yes' if data.get('healthy') else 'NO'}")
    chain = data.get("chain", {})
    if chain.get("connected"):
        print(f"  chain:   {chain.get('name', '?')} height {chain.get('height', '?')}")
    else:
        print(f"  chain:   NOT CONNECTED")
    records = data.get("records", {})
    by_state = records.get("by_state") or {}
    parts = [f"{k}={v}" for k, v in sorted(by_state.items())]
    print(f"  records: {records.get('total', '?')}" + (f" ({', '.join(parts)})" if parts else ""))


def cmd_secret(args: argparse.Namespace) -> None:
    """Make sure a webhook secret exists. Prints it only with --show."""
    from docproof.config import load_webhook_secret

    settings = _load_settings(args)
    secret = load_webhook_secret(settings.data_path)
    print(f"Webhook secret stored in {settings.data_path / 'webhook_secret'}")
    if args.show:
        print(secret)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="docproof",
        description="docproof — pay-per-use proof of existence on Bitcoin.",
    )
    from docproof import __version__
    parser.add_argument("--version", action="version", version=f"docproof {__version__}")
    parser.add_argument("--config", help="Path to docproof.toml (or set DOCPROOF_CONFIG)")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Start the API server (foreground)")
    p_serve.add_argument("--port", type=int, help="Listen port (default: from config)")
    p_serve.add_argument("--host", help="Bind address (default: from config)")

    p_hash = sub.add_parser("hash", help="Print the SHA-256 digest of a file")
    p_hash.add_argument("path", help="File to hash")

    for name, help_text in (
        ("register", "Register a digest with a running server"),
        ("status", "Show the status of a registered digest"),
    ):
        p = sub.add_parser(name, help=help_text)
        target = p.add_mutually_exclusive_group(required=True)
        target.add_argument("digest", nargs="?", help="64-char hex SHA-256 digest")
        target.add_argument("-f", "--file", help="Hash this file and use its digest")
        p.add_argument("--url", help="Server base URL (default: from config)")
        if name == "status":
            p.add_argument("--json", action="store_true", help="Print the raw JSON view")

    p_latest = sub.add_parser("latest", help="Show a recent activity feed")
    p_latest.add_argument("kind", choices=["unconfirmed", "confirmed"])
    p_latest.add_argument("--url", help="Server base URL (default: from config)")

    p_health = sub.add_parser("health", help="Show service health")
    p_health.add_argument("--url", help="Server base URL (default: from config)")

    p_secret = sub.add_parser("secret", help="Create/locate the webhook secret")
    p_secret.add_argument("--show", action="store_true", help="Print the secret itself")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    commands = {
        "serve": cmd_serve,
        "hash": cmd_hash,
        "register": cmd_register,
        "status": cmd_status,
        "latest": cmd_latest,
        "health": cmd_health,
        "secret": cmd_secret,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
