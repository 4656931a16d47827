"""
Activity feeds — the two bounded "latest" lists.

    latest-unconfirmed  ← first qualifying payment seen for a digest
    latest-confirmed    ← anchoring transaction confirmed

Most recent first; once ``size`` entries are held the oldest is evicted.
"""

from __future__ import annotations

from typing import Any

from docproof import DEFAULT_FEED_SIZE, LATEST_CONFIRMED_KEY, LATEST_UNCONFIRMED_KEY
from docproof.records import DocumentRecord, utcnow


class FeedService:
    def __init__(self, store: Any, size: int = DEFAULT_FEED_SIZE) -> None:
        self._store = store
        self.size = size

    def _push(self, key: str, entry: dict[str, Any]) -> None:
        def prepend(current: Any) -> list[dict[str, Any]]:
            items = current if isinstance(current, list) else []
            items = [e for e in items if e.get("digest") != entry["digest"]]
            return ([entry] + items)[: self.size]

        self._store.modify(key, prepend)

    def push_unconfirmed(self, record: DocumentRecord) -> None:
        self._push(LATEST_UNCONFIRMED_KEY, {
            "digest": record.digest,
            "tx": record.payment_tx,
            "timestamp": record.txstamp or utcnow(),
        })

    def push_confirmed(self, record: DocumentRecord) -> None:
        self._push(LATEST_CONFIRMED_KEY, {
            "digest": record.digest,
            "tx": record.tx,
            "timestamp": record.blockstamp or utcnow(),
        })

    def _read(self, key: str) -> list[dict[str, Any]]:
        items = self._store.get(key)
        return items if isinstance(items, list) else []

    def latest_unconfirmed(self) -> list[dict[str, Any]]:
        return self._read(LATEST_UNCONFIRMED_KEY)

    def latest_confirmed(self) -> list[dict[str, Any]]:
        return self._read(LATEST_CONFIRMED_KEY)
