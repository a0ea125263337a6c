"""
Record and audit stores.

Both stores sit on an ordered key-value region keyed by integer ID. Values
are written through a versioned codec with a per-region size limit.
Neither store exposes update or delete.

Audit entries are additionally hash-chained: every stored envelope carries
the hash of its entry, the previous entry hash, and the chained hash, so
an exported trail can be checked offline.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .db import Database
from .errors import CorruptDataError, StorageError
from .logging_config import audit_log
from .models import AuditEntry, Record
from .util import canonicalize, chain_entry_hash, sha256_hex

CODEC_VERSION = 1
RECORD_MAX_SIZE = 8192
AUDIT_ENTRY_MAX_SIZE = 4096


# ============================================================
# Ordered key-value regions
# ============================================================

class OrderedKeyValueStore(ABC):
    """Durable mapping from integer key to bytes, iterated in key order."""

    name: str = "region"

    @abstractmethod
    def insert(self, key: int, value: bytes) -> None:
        """Insert a new key. Existing keys are never overwritten."""
        pass

    @abstractmethod
    def get(self, key: int) -> Optional[bytes]:
        pass

    @abstractmethod
    def iterate(self) -> Iterator[Tuple[int, bytes]]:
        """Yield (key, value) pairs in ascending key order."""
        pass

    @abstractmethod
    def last(self) -> Optional[Tuple[int, bytes]]:
        """Entry with the greatest key, if any."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class SqliteRegion(OrderedKeyValueStore):
    """Region stored as one `(id INTEGER PRIMARY KEY, body BLOB)` table."""

    def __init__(self, db: Database, table: str):
        self._db = db
        self._table = table
        self.name = table

    def insert(self, key: int, value: bytes) -> None:
        try:
            with self._db.transaction() as conn:
                conn.execute(f"INSERT INTO {self._table}(id, body) VALUES(?,?)", (key, value))
        except sqlite3.IntegrityError as e:
            raise StorageError(f"{self._table}: key {key} already exists") from e

    def get(self, key: int) -> Optional[bytes]:
        cur = self._db.connection().execute(f"SELECT body FROM {self._table} WHERE id=?", (key,))
        row = cur.fetchone()
        return bytes(row["body"]) if row else None

    def iterate(self) -> Iterator[Tuple[int, bytes]]:
        cur = self._db.connection().execute(f"SELECT id, body FROM {self._table} ORDER BY id ASC")
        for row in cur.fetchall():
            yield row["id"], bytes(row["body"])

    def last(self) -> Optional[Tuple[int, bytes]]:
        cur = self._db.connection().execute(
            f"SELECT id, body FROM {self._table} ORDER BY id DESC LIMIT 1"
        )
        row = cur.fetchone()
        return (row["id"], bytes(row["body"])) if row else None

    def __len__(self) -> int:
        cur = self._db.connection().execute(f"SELECT COUNT(*) AS cnt FROM {self._table}")
        return cur.fetchone()["cnt"]


class InMemoryRegion(OrderedKeyValueStore):
    """Process-local region; contents are lost on exit."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._data: Dict[int, bytes] = {}
        self._lock = threading.RLock()

    def insert(self, key: int, value: bytes) -> None:
        with self._lock:
            if key in self._data:
                raise StorageError(f"{self.name}: key {key} already exists")
            self._data[key] = bytes(value)

    def get(self, key: int) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def iterate(self) -> Iterator[Tuple[int, bytes]]:
        with self._lock:
            items = sorted(self._data.items())
        yield from items

    def last(self) -> Optional[Tuple[int, bytes]]:
        with self._lock:
            if not self._data:
                return None
            key = max(self._data)
            return key, self._data[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ============================================================
# Versioned codec
# ============================================================

class VersionedCodec:
    """
    Encodes dicts as one version byte followed by canonical JSON.

    Encoding enforces the region's maximum value size. Any value that
    cannot be decoded is reported as corruption.
    """

    def __init__(self, region_name: str, max_size: int, version: int = CODEC_VERSION):
        self._region = region_name
        self._max_size = max_size
        self._version = version

    def encode(self, obj: Dict[str, Any]) -> bytes:
        data = bytes([self._version]) + canonicalize(obj)
        if len(data) > self._max_size:
            raise StorageError(
                f"{self._region}: encoded value is {len(data)} bytes, limit is {self._max_size}"
            )
        return data

    def fits(self, obj: Dict[str, Any]) -> bool:
        return 1 + len(canonicalize(obj)) <= self._max_size

    def decode(self, key: int, data: bytes) -> Dict[str, Any]:
        if not data or data[0] != self._version:
            self._corrupt(key, f"unsupported codec version {data[:1].hex() or 'none'}")
        try:
            obj = json.loads(data[1:].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._corrupt(key, f"undecodable body: {e}")
        if not isinstance(obj, dict):
            self._corrupt(key, "body is not an object")
        return obj

    def _corrupt(self, key: int, reason: str) -> None:
        audit_log.storage_corruption(self._region, key, reason)
        raise CorruptDataError(f"{self._region}: corrupt value at key {key}: {reason}")

    def model(self, key: int, model_cls, obj: Dict[str, Any]):
        """Validate a decoded dict into a model; mismatches are corruption."""
        try:
            return model_cls.model_validate(obj)
        except PydanticValidationError as e:
            self._corrupt(key, f"schema mismatch: {e.error_count()} error(s)")


# ============================================================
# Record Store
# ============================================================

class RecordStore:
    """Durable mapping from record ID to finalized, signed record."""

    def __init__(self, region: OrderedKeyValueStore):
        self._region = region
        self._codec = VersionedCodec(region.name, RECORD_MAX_SIZE)

    def insert(self, record: Record) -> None:
        if not record.signature:
            raise StorageError("refusing to store an unsigned record")
        self._region.insert(record.id, self._codec.encode(record.model_dump(mode="json")))

    def fits(self, record: Record) -> bool:
        """True if `record` is within the region size limit once encoded."""
        return self._codec.fits(record.model_dump(mode="json"))

    def _decode(self, key: int, data: bytes) -> Record:
        return self._codec.model(key, Record, self._codec.decode(key, data))

    def get(self, record_id: int) -> Optional[Record]:
        data = self._region.get(record_id)
        if data is None:
            return None
        return self._decode(record_id, data)

    def list(self) -> List[Record]:
        return [self._decode(k, v) for k, v in self._region.iterate()]

    def count(self) -> int:
        return len(self._region)

    def max_id(self) -> int:
        last = self._region.last()
        return last[0] if last else 0


# ============================================================
# Audit Store
# ============================================================

class AuditStore:
    """Append-only, hash-chained mapping from audit ID to audit entry."""

    def __init__(self, region: OrderedKeyValueStore):
        self._region = region
        self._codec = VersionedCodec(region.name, AUDIT_ENTRY_MAX_SIZE)

    def _envelopes(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        for key, data in self._region.iterate():
            yield key, self._codec.decode(key, data)

    def _entry(self, key: int, envelope: Dict[str, Any]) -> AuditEntry:
        return self._codec.model(key, AuditEntry, envelope.get("entry"))

    def latest_entry_hash(self) -> Optional[str]:
        """Hash of the most recent entry for chain linking."""
        last = self._region.last()
        if last is None:
            return None
        return self._codec.decode(last[0], last[1]).get("entry_hash")

    def append(self, entry: AuditEntry) -> Dict[str, Any]:
        """
        Append an entry and link it into the hash chain.

        Returns:
            The stored envelope (entry, payload_hash, prev_entry_hash, entry_hash)
        """
        body = entry.model_dump(mode="json")
        payload_hash = sha256_hex(canonicalize(body))
        prev = self.latest_entry_hash()
        envelope = {
            "entry": body,
            "payload_hash": payload_hash,
            "prev_entry_hash": prev,
            "entry_hash": chain_entry_hash(prev, payload_hash),
        }
        self._region.insert(entry.id, self._codec.encode(envelope))
        return envelope

    def fits(self, entry: AuditEntry) -> bool:
        """True if `entry` and its chain hashes fit the region size limit."""
        placeholder = "0" * 64
        return self._codec.fits({
            "entry": entry.model_dump(mode="json"),
            "payload_hash": placeholder,
            "prev_entry_hash": placeholder,
            "entry_hash": placeholder,
        })

    def get(self, audit_id: int) -> Optional[AuditEntry]:
        data = self._region.get(audit_id)
        if data is None:
            return None
        return self._entry(audit_id, self._codec.decode(audit_id, data))

    def list(self) -> List[AuditEntry]:
        return [self._entry(k, env) for k, env in self._envelopes()]

    def list_by_record(self, record_id: int) -> List[AuditEntry]:
        return [e for e in self.list() if e.record_id == record_id]

    def count(self) -> int:
        return len(self._region)

    def max_id(self) -> int:
        last = self._region.last()
        return last[0] if last else 0

    def chain(self) -> List[Dict[str, Any]]:
        """Export the full trail with its chain hashes."""
        rows = []
        for key, env in self._envelopes():
            rows.append({
                "id": key,
                "entry": env.get("entry"),
                "payload_hash": env.get("payload_hash"),
                "prev_entry_hash": env.get("prev_entry_hash"),
                "entry_hash": env.get("entry_hash"),
            })
        return rows

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Recompute every link of the chain.

        Returns:
            (True, None) if intact, otherwise (False, first broken audit ID)
        """
        return verify_chain_rows(self.chain())

    def proof(self) -> Dict[str, Any]:
        rows = self.chain()
        ok, broken_at = verify_chain_rows(rows)
        return {
            "entries": len(rows),
            "head_entry_hash": rows[-1]["entry_hash"] if rows else None,
            "chain_valid": ok,
            "broken_at": broken_at,
        }


def verify_chain_rows(rows: List[Dict[str, Any]]) -> Tuple[bool, Optional[int]]:
    """Check exported chain rows in order; see AuditStore.chain()."""
    prev = None
    for row in rows:
        payload_hash = sha256_hex(canonicalize(row["entry"]))
        if row["payload_hash"] != payload_hash or row["prev_entry_hash"] != prev:
            return False, row["id"]
        if row["entry_hash"] != chain_entry_hash(prev, payload_hash):
            return False, row["id"]
        prev = row["entry_hash"]
    return True, None


def open_stores(db: Database) -> Tuple[RecordStore, AuditStore]:
    """Initialize the schema and return stores bound to `db`."""
    db.init_schema()
    return RecordStore(SqliteRegion(db, "records")), AuditStore(SqliteRegion(db, "audit_entries"))
