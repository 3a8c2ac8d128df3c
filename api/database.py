"""
PayPal Checkout Backoffice -- MySQL access for the durable snapshot store

Uses mysql-connector-python with a connection pool for concurrent requests.
Only MySQLSnapshotStore talks to this module; with the default in-memory
snapshot store no connection is ever opened.
"""

import contextlib
import logging

import mysql.connector
from mysql.connector import pooling

import config

logger = logging.getLogger("backoffice.database")

_connection_pool = None

# Table names are interpolated into SQL; only these are ever created or queried
SNAPSHOT_TABLE_NAMES = ("capture_event_snapshots", "refund_event_snapshots", "refund_observations")

_SNAPSHOT_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table_name} (
  snapshot_key  VARCHAR(64) NOT NULL PRIMARY KEY,
  snapshot_json JSON NOT NULL,
  updated_at    DATETIME NOT NULL,
  KEY idx_updated_at (updated_at)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
"""


def get_connection_pool():
  """Get or create the MySQL connection pool (lazy init)."""
  global _connection_pool
  if _connection_pool is None:
    _connection_pool = pooling.MySQLConnectionPool(
      pool_name="backoffice_snapshot_pool",
      pool_size=5,
      pool_reset_session=True,
      host=config.MYSQL_HOST,
      port=config.MYSQL_PORT,
      user=config.MYSQL_USER,
      password=config.MYSQL_PASSWORD,
      database=config.MYSQL_DATABASE,
      charset="utf8mb4",
      collation="utf8mb4_unicode_ci",
      autocommit=False,
    )
    logger.info("MySQL pool ready: %s@%s:%d/%s",
                config.MYSQL_USER, config.MYSQL_HOST, config.MYSQL_PORT, config.MYSQL_DATABASE)
  return _connection_pool


@contextlib.contextmanager
def _pooled_cursor(dictionary=False, commit=False):
  """Borrow a pooled connection and cursor; commit or roll back on the way out."""
  connection = get_connection_pool().get_connection()
  cursor = connection.cursor(dictionary=dictionary)
  try:
    yield cursor
    if commit:
      connection.commit()
  except mysql.connector.Error:
    if commit:
      connection.rollback()
    raise
  finally:
    cursor.close()
    connection.close()


def execute_query_returning_one_row(query, params=None):
  """Execute a SELECT query and return a single row as dict, or None."""
  with _pooled_cursor(dictionary=True) as cursor:
    cursor.execute(query, params)
    return cursor.fetchone()


def execute_query_returning_all_rows(query, params=None):
  """Execute a SELECT query and return all rows as list of dicts."""
  with _pooled_cursor(dictionary=True) as cursor:
    cursor.execute(query, params)
    return cursor.fetchall()


def execute_insert_or_update(query, params=None):
  """Execute a REPLACE/UPDATE/DELETE and commit. Returns affected row count."""
  with _pooled_cursor(commit=True) as cursor:
    cursor.execute(query, params)
    return cursor.rowcount


def ensure_snapshot_table(table_name):
  """CREATE TABLE IF NOT EXISTS for one snapshot table."""
  if table_name not in SNAPSHOT_TABLE_NAMES:
    raise ValueError(f"Unknown snapshot table: {table_name}")
  with _pooled_cursor(commit=True) as cursor:
    cursor.execute(_SNAPSHOT_TABLE_DDL.format(table_name=table_name))


def ping():
  """True when the pool can hand out a working connection."""
  row = execute_query_returning_one_row("SELECT 1 AS alive")
  return bool(row and row.get("alive") == 1)
