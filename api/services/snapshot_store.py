"""
PayPal Checkout Backoffice -- Snapshot Store

Key-value store for process-level snapshots keyed by capture ID:
  - latest capture event per capture     (event ingest)
  - latest refund event per capture      (event ingest)
  - highest refunded total ever observed (reconciliation engine)

Snapshots are a cache, not a system of record. PayPal's report and lookup
APIs stay authoritative, so losing a snapshot only costs freshness.

Two backends:
  InMemorySnapshotStore -- default. Bounded (oldest evicted first) and
                           TTL-expired so a long-running process cannot
                           grow without limit.
  MySQLSnapshotStore    -- survives restarts. One JSON document per key.

Writes are last-write-wins by arrival. Each snapshot is a complete
document, so concurrent duplicate writes never need merging.

MySQL tables (one per store name, created on first use by
database.ensure_snapshot_table): capture_event_snapshots,
refund_event_snapshots, refund_observations.
"""

import collections
import datetime
import json
import logging
import time
from abc import ABC, abstractmethod

import config

logger = logging.getLogger("backoffice.snapshots")

_MYSQL_TABLE_NAMES = {
  "capture_events": "capture_event_snapshots",
  "refund_events": "refund_event_snapshots",
  "refund_observations": "refund_observations",
}


class SnapshotStoreInterface(ABC):
  """Abstract key-value store for snapshots."""

  @abstractmethod
  def get(self, key):
    """Return the snapshot dict for key, or None."""
    ...

  @abstractmethod
  def put(self, key, snapshot):
    """Store snapshot (a JSON-serializable dict) under key, replacing any previous one."""
    ...

  @abstractmethod
  def list_values(self):
    """Return all live snapshots, oldest write first."""
    ...


class InMemorySnapshotStore(SnapshotStoreInterface):
  """Bounded, TTL-expiring in-process store."""

  def __init__(self, max_entries=None, ttl_seconds=None, clock=time.monotonic):
    self.max_entries = max_entries or config.SNAPSHOT_STORE_MAX_ENTRIES
    self.ttl_seconds = ttl_seconds or config.SNAPSHOT_STORE_TTL_SECONDS
    self._clock = clock
    # key -> (stored_at, snapshot); insertion order == write order
    self._entries = collections.OrderedDict()

  def _is_expired(self, stored_at):
    return self._clock() - stored_at > self.ttl_seconds

  def get(self, key):
    entry = self._entries.get(key)
    if entry is None:
      return None
    stored_at, snapshot = entry
    if self._is_expired(stored_at):
      self._entries.pop(key, None)
      return None
    return dict(snapshot)

  def put(self, key, snapshot):
    self._entries.pop(key, None)
    self._entries[key] = (self._clock(), dict(snapshot))
    while len(self._entries) > self.max_entries:
      evicted_key, _ = self._entries.popitem(last=False)
      logger.info("Snapshot store full (max=%d); evicted key=%s", self.max_entries, evicted_key)

  def list_values(self):
    # Entries are in write order, so expired ones sit at the head
    while self._entries:
      oldest_key = next(iter(self._entries))
      stored_at, _ = self._entries[oldest_key]
      if not self._is_expired(stored_at):
        break
      self._entries.popitem(last=False)
    return [dict(snapshot) for _, snapshot in self._entries.values()]

  def __len__(self):
    return len(self._entries)


def _get_database():
  """Lazy import to allow unit testing without live DB."""
  import database
  return database


def _json_default(value):
  if isinstance(value, (datetime.datetime, datetime.date)):
    return value.isoformat()
  raise TypeError(f"Not JSON serializable: {type(value).__name__}")


class MySQLSnapshotStore(SnapshotStoreInterface):
  """Durable store: one JSON document per key, REPLACE INTO = last write wins."""

  def __init__(self, store_name, ttl_seconds=None):
    if store_name not in _MYSQL_TABLE_NAMES:
      raise ValueError(f"Unknown snapshot store: {store_name}")
    # Table names come from the allowlist above, never from input
    self.table_name = _MYSQL_TABLE_NAMES[store_name]
    self.ttl_seconds = ttl_seconds or config.SNAPSHOT_STORE_TTL_SECONDS
    self._table_ready = False

  def _database(self):
    db = _get_database()
    if not self._table_ready:
      db.ensure_snapshot_table(self.table_name)
      self._table_ready = True
    return db

  def _oldest_live_timestamp(self):
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None) - datetime.timedelta(
      seconds=self.ttl_seconds
    )

  def get(self, key):
    db = self._database()
    row = db.execute_query_returning_one_row(
      f"SELECT snapshot_json FROM {self.table_name} "
      "WHERE snapshot_key = %s AND updated_at >= %s",
      (key, self._oldest_live_timestamp()),
    )
    if row is None:
      return None
    return json.loads(row["snapshot_json"])

  def put(self, key, snapshot):
    db = self._database()
    db.execute_insert_or_update(
      f"REPLACE INTO {self.table_name} (snapshot_key, snapshot_json, updated_at) "
      "VALUES (%s, %s, UTC_TIMESTAMP())",
      (key, json.dumps(snapshot, default=_json_default)),
    )

  def list_values(self):
    db = self._database()
    rows = db.execute_query_returning_all_rows(
      f"SELECT snapshot_json FROM {self.table_name} "
      "WHERE updated_at >= %s ORDER BY updated_at ASC",
      (self._oldest_live_timestamp(),),
    )
    return [json.loads(row["snapshot_json"]) for row in rows]


def build_snapshot_store(store_name):
  """Build the configured snapshot store backend for store_name."""
  if config.SNAPSHOT_STORE_BACKEND == "mysql":
    logger.info("Using MySQL snapshot store for %s", store_name)
    return MySQLSnapshotStore(store_name)
  return InMemorySnapshotStore()
