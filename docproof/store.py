"""
Record Store — key-value persistence for digests, document records and feeds.

Storage layout (single JSON object, ~/.docproof/records.json):
    map-<digest>         → payment address
    <address>            → serialized DocumentRecord
    latest-unconfirmed   → JSON array (feed)
    latest-confirmed     → JSON array (feed)

All writes are atomic (temp file + os.replace) for crash safety.
Read-modify-write goes through ``update()``, which holds the store lock only
for the read, the pure mutation callback, and the write. Callers must never
do network I/O inside a mutation callback.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

from docproof import LATEST_CONFIRMED_KEY, LATEST_UNCONFIRMED_KEY, MAP_PREFIX
from docproof.records import DocumentRecord

_DEFAULT_ROOT = Path.home() / ".docproof"

_RESERVED_KEYS = {LATEST_UNCONFIRMED_KEY, LATEST_CONFIRMED_KEY}


class RecordStoreError(Exception):
    """Error in record store operations."""


def map_key(digest: str) -> str:
    return f"{MAP_PREFIX}{digest}"


class RecordStore:
    """Thread-safe JSON key-value store with per-key atomic updates.

    Usage:
        store = RecordStore(root=tmp_path)
        store.batch({"map-" + digest: address, address: record.to_dict()})
        store.update(address, lambda rec: rec.mark_paid(txid, 50_000))
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self._path = self.root / "records.json"
        self._lock = threading.RLock()
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.is_file():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise RecordStoreError(f"Cannot read {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise RecordStoreError(f"Corrupt store file: {self._path}")
        self._data = data

    def _persist(self, data: dict[str, Any]) -> None:
        """Atomically write ``data`` to disk (temp + os.replace)."""
        self.root.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.root), suffix=".tmp", prefix=".records_"
        )
        try:
            os.write(fd, content.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _write(self, changes: dict[str, Any], removals: tuple[str, ...] = ()) -> None:
        """Persist a changed copy, then swap it in. Memory never runs ahead of disk."""
        data = dict(self._data)
        data.update(changes)
        for key in removals:
            data.pop(key, None)
        try:
            self._persist(data)
        except OSError as e:
            raise RecordStoreError(f"Cannot write {self._path}: {e}") from e
        self._data = data

    # ------------------------------------------------------------------
    # Raw key-value access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self._data.get(key, default)
            # Hand out copies so callers cannot mutate shared state
            return json.loads(json.dumps(value)) if value is not None else default

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._write({key: value})

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                self._write({}, removals=(key,))

    def batch(self, items: dict[str, Any]) -> None:
        """Write several keys in one atomic file replace."""
        with self._lock:
            self._write(items)

    def put_if_absent(self, items: dict[str, Any], guard_key: str) -> Any:
        """Write ``items`` only if ``guard_key`` is unset.

        Returns None on success, or the existing value of ``guard_key``
        when another writer got there first.
        """
        with self._lock:
            existing = self._data.get(guard_key)
            if existing is not None:
                return existing
            self._write(items)
            return None

    def modify(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Atomic read-modify-write of a raw value. ``fn`` returns the new value."""
        with self._lock:
            new_value = fn(self.get(key))
            self._write({key: new_value})
            return new_value

    # ------------------------------------------------------------------
    # Document records
    # ------------------------------------------------------------------

    def address_for(self, digest: str) -> str | None:
        return self.get(map_key(digest))

    def get_record(self, address: str) -> DocumentRecord | None:
        if not address or address.startswith(MAP_PREFIX) or address in _RESERVED_KEYS:
            return None
        data = self.get(address)
        if not isinstance(data, dict):
            return None
        try:
            return DocumentRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RecordStoreError(f"Corrupt record for {address}: {e}") from e

    def find_by_digest(self, digest: str) -> DocumentRecord | None:
        address = self.address_for(digest)
        if not address:
            return None
        return self.get_record(address)

    def create(self, record: DocumentRecord) -> str | None:
        """Persist the digest index and record together.

        Returns None if created, or the already-mapped address if the digest
        was registered concurrently.
        """
        key = map_key(record.digest)
        return self.put_if_absent(
            {key: record.address, record.address: record.to_dict()},
            guard_key=key,
        )

    def update(
        self,
        address: str,
        mutate: Callable[[DocumentRecord], bool],
    ) -> tuple[DocumentRecord | None, bool]:
        """Serialized read-modify-write of one record.

        ``mutate`` changes the record in place and returns True if it changed
        anything. Only changed records are written back. Returns the
        resulting record (None if absent) and whether it changed.
        """
        with self._lock:
            record = self.get_record(address)
            if record is None:
                return None, False
            changed = mutate(record)
            if changed:
                self._write({address: record.to_dict()})
            return record, bool(changed)

    def records(self) -> Iterator[DocumentRecord]:
        """Iterate a snapshot of all document records."""
        with self._lock:
            keys = [
                k for k in self._data
                if not k.startswith(MAP_PREFIX) and k not in _RESERVED_KEYS
            ]
        for key in keys:
            record = self.get_record(key)
            if record is not None:
                yield record

    def pending_records(self) -> list[DocumentRecord]:
        return [r for r in self.records() if r.pending]

    def count(self) -> int:
        return sum(1 for _ in self.records())
