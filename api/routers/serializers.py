"""
PayPal Checkout Backoffice -- JSON shapes for the HTTP surface

Services work in snake_case and integer cents. The browser checkout and
the operator console speak camelCase and decimal strings ("50.00"), the
same field names PayPal's own JS SDK callbacks use (orderID, captureId).
"""

from services.amount_service import format_cents


def serialize_capture(capture):
  return {
    "captureId": capture.get("capture_id"),
    "orderID": capture.get("order_id"),
    "status": capture.get("status"),
    "amount": format_cents(capture.get("amount_cents")),
    "currency": capture.get("currency"),
    "createTime": capture.get("created_at"),
    "payerEmail": capture.get("payer_email"),
    "debugId": capture.get("debug_id"),
    "raw": capture.get("raw"),
  }


def serialize_refund(refund):
  serialized = {
    "refundId": refund.get("refund_id"),
    "captureId": refund.get("capture_id"),
    "amount": format_cents(refund.get("amount_cents")),
    "currency": refund.get("currency"),
    "status": refund.get("status"),
    "createTime": refund.get("created_at"),
  }
  if refund.get("optimistic"):
    serialized["optimistic"] = True
  return serialized


def serialize_transaction(transaction):
  return {
    "orderID": transaction.get("order_id"),
    "captureId": transaction.get("capture_id"),
    "status": transaction.get("status"),
    "amount": format_cents(transaction.get("amount_cents")),
    "currency": transaction.get("currency"),
    "createTime": transaction.get("created_at"),
    "payerEmail": transaction.get("payer_email"),
    "eventCode": transaction.get("event_code"),
  }


def serialize_refund_state(refund_state):
  if refund_state is None:
    return None
  return {
    "captureId": refund_state.get("capture_id"),
    "orderID": refund_state.get("order_id"),
    "currency": refund_state.get("currency"),
    "grossAmount": format_cents(refund_state.get("gross_amount_cents")),
    "totalRefunded": format_cents(refund_state.get("total_refunded_cents")),
    "remaining": format_cents(refund_state.get("remaining_cents")),
    "status": refund_state.get("status"),
    "captureStatus": refund_state.get("capture_status"),
    "refunds": [serialize_refund(refund) for refund in refund_state.get("refunds") or []],
    "sources": refund_state.get("sources") or [],
    "degraded": bool(refund_state.get("degraded")),
    "upstreamErrors": refund_state.get("upstream_errors") or [],
    "sourceTotals": {
      name: format_cents(total_cents)
      for name, total_cents in (refund_state.get("source_totals") or {}).items()
    },
    "processorTotal": format_cents(refund_state.get("processor_total_cents")),
    "pending": bool(refund_state.get("pending")),
    "mismatch": bool(refund_state.get("mismatch")),
  }


def serialize_console_row(row):
  return {
    "rowId": row["row_id"],
    "kind": row["kind"],
    "orderID": row["order_id"],
    "captureId": row["capture_id"],
    "amount": format_cents(row["amount_cents"]),
    "currency": row["currency"],
    "status": row["status"],
    "createTime": row["created_at"],
    "payerEmail": row["payer_email"],
    "fromEvent": row["from_event"],
    "refundState": serialize_refund_state(row["refund_state"]),
    "pending": row["pending"],
    "mismatch": row["mismatch"],
    "actionable": row["actionable"],
  }


def serialize_capture_snapshot(snapshot):
  if snapshot is None:
    return None
  return {
    "captureId": snapshot.get("capture_id"),
    "orderID": snapshot.get("order_id"),
    "status": snapshot.get("status"),
    "amount": format_cents(snapshot.get("amount_cents")),
    "currency": snapshot.get("currency"),
    "createdAt": snapshot.get("created_at"),
    "updatedAt": snapshot.get("updated_at"),
    "eventId": snapshot.get("event_id"),
  }


def serialize_refund_snapshot(snapshot):
  if snapshot is None:
    return None
  return {
    "captureId": snapshot.get("capture_id"),
    "orderID": snapshot.get("order_id"),
    "total": format_cents(snapshot.get("total_cents")),
    "currency": snapshot.get("currency"),
    "status": snapshot.get("status"),
    "refundId": snapshot.get("refund_id"),
    "totalSource": snapshot.get("total_source"),
    "degraded": bool(snapshot.get("degraded")),
    "updatedAt": snapshot.get("updated_at"),
    "eventId": snapshot.get("event_id"),
  }
