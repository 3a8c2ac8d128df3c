"""
PayPal Checkout Backoffice -- Console Projection

Builds the operator console: sale rows and refund rows from the reporting
feed, backfilled with webhook snapshots the feed has not caught up to yet,
each sale row joined with its reconciled RefundState and an "actionable"
flag that drives the refund buttons.

Refund rows are read-only. Their reference id (order_id in the normalized
feed) points back at the original sale's capture.
"""

import asyncio
import datetime
import logging

import config
from services.event_ingest_service import get_event_ingest_service
from services.payment_errors import ReconciliationUnavailableError, UpstreamError, ValidationError
from services.paypal_payment_provider import get_processor_gateway, parse_timestamp
from services.reconciliation_service import get_refund_reconciliation_engine

logger = logging.getLogger("backoffice.console")

FLOW_SALE = "SALE"
FLOW_REFUND = "REFUND"

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def clamp_row_limit(raw_limit):
  """Positive int capped at CONSOLE_MAX_ROW_LIMIT; anything unusable -> default."""
  try:
    limit = int(raw_limit)
  except (TypeError, ValueError):
    return config.CONSOLE_DEFAULT_ROW_LIMIT
  if limit <= 0:
    return config.CONSOLE_DEFAULT_ROW_LIMIT
  return min(limit, config.CONSOLE_MAX_ROW_LIMIT)


def _sort_timestamp(row):
  return parse_timestamp(row.get("created_at")) or _EPOCH


def _feed_row(transaction):
  amount_cents = transaction.get("amount_cents")
  is_refund = amount_cents is not None and amount_cents < 0
  return {
    "kind": FLOW_REFUND if is_refund else FLOW_SALE,
    "order_id": transaction.get("order_id"),
    "capture_id": transaction.get("capture_id"),
    # sale capture id a refund row belongs to
    "refunded_capture_id": transaction.get("order_id") if is_refund else None,
    "amount_cents": amount_cents,
    "currency": transaction.get("currency") or config.DEFAULT_CURRENCY,
    "status": transaction.get("status"),
    "created_at": transaction.get("created_at"),
    "payer_email": transaction.get("payer_email"),
    "from_event": False,
  }


def _capture_snapshot_row(snapshot):
  return {
    "kind": FLOW_SALE,
    "order_id": snapshot.get("order_id"),
    "capture_id": snapshot.get("capture_id"),
    "refunded_capture_id": None,
    "amount_cents": snapshot.get("amount_cents"),
    "currency": snapshot.get("currency") or config.DEFAULT_CURRENCY,
    "status": snapshot.get("status") or "COMPLETED",
    "created_at": snapshot.get("created_at") or snapshot.get("updated_at"),
    "payer_email": None,
    "from_event": True,
  }


def _refund_snapshot_row(snapshot):
  return {
    "kind": FLOW_REFUND,
    "order_id": snapshot.get("order_id"),
    "capture_id": snapshot.get("capture_id"),
    "refunded_capture_id": snapshot.get("capture_id"),
    "amount_cents": -abs(snapshot["total_cents"]),
    "currency": snapshot.get("currency") or config.DEFAULT_CURRENCY,
    "status": snapshot.get("status") or "REFUNDED",
    "created_at": snapshot.get("updated_at"),
    "payer_email": None,
    "from_event": True,
  }


def merge_event_snapshots(rows, capture_snapshots, refund_snapshots):
  """Append webhook-only captures and refunds the reporting feed does not show yet."""
  merged_rows = list(rows)
  known_capture_ids = {row["capture_id"] for row in rows if row["capture_id"]}
  refunded_capture_ids = {
    row["refunded_capture_id"] or row["capture_id"]
    for row in rows
    if row["kind"] == FLOW_REFUND
  }

  for snapshot in capture_snapshots:
    capture_id = snapshot.get("capture_id")
    if capture_id and capture_id not in known_capture_ids:
      merged_rows.append(_capture_snapshot_row(snapshot))
      known_capture_ids.add(capture_id)

  for snapshot in refund_snapshots:
    capture_id = snapshot.get("capture_id")
    if capture_id and snapshot.get("total_cents") and capture_id not in refunded_capture_ids:
      merged_rows.append(_refund_snapshot_row(snapshot))
      refunded_capture_ids.add(capture_id)

  return merged_rows


def build_refund_map(rows):
  """Reporting-feed refund rows grouped by the sale they refund."""
  refund_map = {}
  for row in rows:
    if row["kind"] != FLOW_REFUND or row["from_event"]:
      continue
    key = row["refunded_capture_id"] or row["capture_id"]
    if not key:
      continue
    refund_map.setdefault(key, []).append(row)
  return refund_map


def select_rows(rows, flow_filter, limit):
  """Filter by flow, newest first (stable for equal timestamps), then cut to limit."""
  if flow_filter == FLOW_REFUND:
    selected = [row for row in rows if row["amount_cents"] is not None and row["amount_cents"] < 0]
  else:
    selected = [
      row for row in rows
      if (row["amount_cents"] is not None and row["amount_cents"] > 0)
      or (row["from_event"] and row["kind"] == FLOW_SALE)
    ]
  selected.sort(key=_sort_timestamp, reverse=True)
  return selected[:limit]


class ConsoleProjectionService:

  def __init__(self, gateway, engine, event_ingest):
    self.gateway = gateway
    self.engine = engine
    self.event_ingest = event_ingest

  async def _load_feed_rows(self, start_time, end_time):
    try:
      report = await self.gateway.list_transactions(
        start_time=start_time,
        end_time=end_time,
        page_size=config.TRANSACTION_REPORT_MAX_PAGE_SIZE,
      )
    except UpstreamError as feed_error:
      logger.warning(
        "Transaction report unavailable (%s, debug_id=%s); console shows webhook data only",
        feed_error.message, feed_error.debug_id,
      )
      return []
    return [_feed_row(transaction) for transaction in report["transactions"]]

  async def _reconcile_row(self, row, refund_map):
    capture_id = row["capture_id"]
    feed_refunds = refund_map.get(capture_id) or refund_map.get(row["order_id"]) or []
    feed_fallback = {
      "refunded_cents": sum(abs(refund["amount_cents"]) for refund in feed_refunds) if feed_refunds else None,
      "gross_amount_cents": row["amount_cents"] if row["amount_cents"] and row["amount_cents"] > 0 else None,
      "currency": row["currency"],
      "order_id": row["order_id"],
    }
    try:
      return await self.engine.reconcile(capture_id, feed_fallback=feed_fallback), True
    except ReconciliationUnavailableError as unavailable:
      logger.warning("Console row %s not reconciled: %s", capture_id, unavailable.message)
      return unavailable.refund_state, False

  async def list_rows(self, flow_filter=FLOW_SALE, limit=None, start_time=None, end_time=None):
    """
    Console rows for one flow, newest first.

    Row: {row_id, kind, order_id, capture_id, amount_cents, currency, status,
          created_at, payer_email, from_event, refund_state, pending, mismatch,
          actionable}

    pending is set while a refund we issued is not yet visible upstream;
    mismatch is set when the refund sources disagree with the processor.
    """
    flow_filter = (flow_filter or FLOW_SALE).upper()
    if flow_filter not in (FLOW_SALE, FLOW_REFUND):
      raise ValidationError(f"filter must be {FLOW_SALE} or {FLOW_REFUND}")
    limit = clamp_row_limit(limit if limit is not None else config.CONSOLE_DEFAULT_ROW_LIMIT)

    feed_rows = await self._load_feed_rows(start_time, end_time)
    rows = merge_event_snapshots(
      feed_rows,
      self.event_ingest.list_capture_snapshots(),
      self.event_ingest.list_refund_snapshots(),
    )
    refund_map = build_refund_map(rows)
    selected = select_rows(rows, flow_filter, limit)

    reconcilable = [row for row in selected if row["kind"] == FLOW_SALE and row["capture_id"]]
    results = await asyncio.gather(*(self._reconcile_row(row, refund_map) for row in reconcilable))
    reconciled = {id(row): result for row, result in zip(reconcilable, results)}

    console_rows = []
    for index, row in enumerate(selected):
      refund_state, is_reconciled = reconciled.get(id(row), (None, False))
      if refund_state is not None and not is_reconciled:
        refund_state = dict(refund_state, degraded=True)

      remaining_cents = (refund_state or {}).get("remaining_cents")
      console_rows.append({
        "row_id": f"row-{index}-{row['capture_id'] or row['order_id'] or 'tx'}",
        "kind": row["kind"],
        "order_id": row["order_id"],
        "capture_id": row["capture_id"],
        "amount_cents": row["amount_cents"],
        "currency": row["currency"],
        "status": row["status"],
        "created_at": row["created_at"],
        "payer_email": row["payer_email"],
        "from_event": row["from_event"],
        "refund_state": refund_state,
        "pending": bool(refund_state and refund_state.get("pending")),
        "mismatch": bool(refund_state and refund_state.get("mismatch")),
        "actionable": bool(
          is_reconciled
          and row["kind"] == FLOW_SALE
          and row["capture_id"]
          and remaining_cents is not None
          and remaining_cents > 0
        ),
      })

    logger.info("Console projection: filter=%s, rows=%d", flow_filter, len(console_rows))
    return console_rows


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_console_projection_singleton = None


def get_console_projection_service():
  """Get the console projection service singleton."""
  global _console_projection_singleton
  if _console_projection_singleton is None:
    _console_projection_singleton = ConsoleProjectionService(
      gateway=get_processor_gateway(),
      engine=get_refund_reconciliation_engine(),
      event_ingest=get_event_ingest_service(),
    )
  return _console_projection_singleton
