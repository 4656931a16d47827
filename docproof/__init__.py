"""
docproof — pay-per-use proof of existence anchored to Bitcoin via OP_RETURN.

Architecture:
    L1 (Bitcoin):  OP_RETURN = "DOCPROOF" (8 bytes) + SHA-256 digest (32 bytes) = 40 bytes
    Records:       ~/.docproof/records.json (digest index, document records, feeds)
    Bridge:        BlockCypher webhooks drive payment detection and anchoring
"""

__version__ = "0.1.0"

ANCHOR_MARKER_BYTES = b"DOCPROOF"
ANCHOR_MARKER_HEX = ANCHOR_MARKER_BYTES.hex()  # "444f4350524f4f46"
ANCHOR_PAYLOAD_SIZE = 40  # 8 (marker) + 32 (SHA-256)

# Bitcoin dust threshold for a P2PKH output, in satoshis
DUST_LIMIT_SATS = 546

# Store keys
MAP_PREFIX = "map-"
LATEST_UNCONFIRMED_KEY = "latest-unconfirmed"
LATEST_CONFIRMED_KEY = "latest-confirmed"

# Service defaults
API_DEFAULT_PORT = 8080
API_DEFAULT_HOST = "127.0.0.1"
API_MAX_BODY_BYTES = 256 * 1024  # webhook payloads are full tx objects
API_POLL_INTERVAL_SECS = 60
DEFAULT_DOCUMENT_PRICE_SATS = 50_000
DEFAULT_ANCHOR_FEE_SATS = 10_000
DEFAULT_FEED_SIZE = 20
DEFAULT_CLAIM_TTL_SECS = 300
DEFAULT_REQUIRED_CONFIRMATIONS = 1

# Explorer constants
BLOCKCYPHER_API_URL = "https://api.blockcypher.com/v1"
EXPLORER_TIMEOUT_SECS = 30
ADDRESS_HISTORY_LIMIT = 50
ADDRESS_HISTORY_TXLIMIT = 2000

# Webhook routes (path prefixes)
WEBHOOK_UNCONFIRMED = "unconfirmed"
WEBHOOK_CONFIRMED = "confirmed"
WEBHOOK_ANCHORED = "anchored"
