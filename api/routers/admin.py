"""
PayPal Checkout Backoffice -- Operator Router

Everything the staff console needs. All endpoints require the admin key
(see services/admin_auth_dependency.py) when one is configured.

  GET  /api/admin/transactions?start&end&pageSize  -- reporting feed (lags minutes)
  GET  /api/admin/captures/{id}                    -- live capture lookup
  GET  /api/admin/captures/{id}/refunds            -- itemized refunds
  GET  /api/admin/captures/{id}/refund-state       -- reconciled RefundState
  GET  /api/admin/refunds/{id}                     -- refund lookup
  POST /api/admin/refunds                          -- issue refund (through the gate)
  GET  /api/admin/console?filter&limit&start&end   -- console rows
  GET  /api/admin/webhooks/captures(/{id})         -- capture event snapshots
  GET  /api/admin/webhooks/refunds(/{id})          -- refund event snapshots
"""

import logging

from fastapi import APIRouter, Request

from routers.responses import (
  _backoffice_error_response,
  _read_json_object,
  _success_response,
)
from routers.serializers import (
  serialize_capture,
  serialize_capture_snapshot,
  serialize_console_row,
  serialize_refund,
  serialize_refund_snapshot,
  serialize_refund_state,
  serialize_transaction,
)
from services.admin_auth_dependency import require_admin_api_key
from services.console_projection_service import get_console_projection_service
from services.event_ingest_service import get_event_ingest_service
from services.payment_errors import (
  BackofficeError,
  ProcessorNotFoundError,
  ReconciliationUnavailableError,
  ValidationError,
)
from services.paypal_payment_provider import get_processor_gateway, parse_timestamp
from services.reconciliation_service import get_refund_reconciliation_engine
from services.refund_gate_service import get_refund_gate

logger = logging.getLogger("backoffice.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _parse_optional_timestamp(raw_value, field_name):
  if raw_value is None or raw_value == "":
    return None
  parsed = parse_timestamp(raw_value)
  if parsed is None:
    raise ValidationError(f"'{field_name}' must be an ISO-8601 timestamp")
  return parsed


# =========================================================================
# Reporting feed
# =========================================================================

@router.get("/transactions")
async def list_reported_transactions(request: Request, start: str = None, end: str = None, pageSize: str = None):
  """Reporting feed rows; refunds have negative amounts. Defaults to the last 30 days."""
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  try:
    report = await get_processor_gateway().list_transactions(
      start_time=_parse_optional_timestamp(start, "start"),
      end_time=_parse_optional_timestamp(end, "end"),
      page_size=pageSize,
    )
  except BackofficeError as report_error:
    return _backoffice_error_response(report_error)

  transactions = [serialize_transaction(transaction) for transaction in report["transactions"]]
  return _success_response({
    "transactions": transactions,
    "count": len(transactions),
    "debugId": report["debug_id"],
  })


# =========================================================================
# Captures
# =========================================================================

@router.get("/captures/{capture_id}")
async def get_capture_details(capture_id: str, request: Request):
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  try:
    capture = await get_processor_gateway().get_capture(capture_id)
  except BackofficeError as capture_error:
    return _backoffice_error_response(capture_error)

  return _success_response({"capture": serialize_capture(capture)})


@router.get("/captures/{capture_id}/refunds")
async def list_capture_refunds(capture_id: str, request: Request):
  """
  Itemized refunds plus the capture's own status and amount.

  A capture PayPal cannot see yet answers with an empty list, not 404.
  """
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  gateway = get_processor_gateway()
  try:
    capture = await gateway.get_capture(capture_id)
  except ProcessorNotFoundError:
    return _success_response({
      "refunds": [],
      "captureStatus": None,
      "captureAmount": None,
      "captureCurrency": None,
    })
  except BackofficeError as capture_error:
    return _backoffice_error_response(capture_error)

  try:
    refunds = await gateway.list_capture_refunds(capture_id, capture=capture)
  except BackofficeError as refund_list_error:
    return _backoffice_error_response(refund_list_error)

  capture_view = serialize_capture(capture)
  return _success_response({
    "refunds": [serialize_refund(refund) for refund in refunds],
    "captureStatus": capture_view["status"],
    "captureAmount": capture_view["amount"],
    "captureCurrency": capture_view["currency"],
  })


@router.get("/captures/{capture_id}/refund-state")
async def get_capture_refund_state(capture_id: str, request: Request):
  """Reconciled refund totals and remaining refundable balance for one capture."""
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  try:
    refund_state = await get_refund_reconciliation_engine().reconcile(capture_id)
  except ReconciliationUnavailableError as unavailable:
    return _backoffice_error_response(unavailable)

  return _success_response({"refundState": serialize_refund_state(refund_state)})


# =========================================================================
# Refunds
# =========================================================================

@router.get("/refunds/{refund_id}")
async def get_refund_details(refund_id: str, request: Request):
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  try:
    refund = await get_processor_gateway().get_refund(refund_id)
  except BackofficeError as refund_error:
    return _backoffice_error_response(refund_error)

  return _success_response({"refund": serialize_refund(refund), "debugId": refund.get("debug_id")})


@router.post("/refunds")
async def issue_capture_refund(request: Request):
  """
  Issue a full or partial refund.

  Request body (JSON):
    {"captureId": "...", "amount": "5.00", "noteToPayer": "..."}
  Leave "amount" out (or "") for a full refund of the remaining balance.

  Errors come back verbatim, with PayPal's debug id when PayPal rejected it.
  """
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  try:
    body = await _read_json_object(request)
    if "amount" in body and body["amount"] is None:
      raise ValidationError(
        "Amount cannot be null. Leave empty for full refund or provide a value > 0."
      )
    result = await get_refund_gate().request_refund(
      body.get("captureId"),
      requested_amount=body.get("amount"),
      note_to_payer=body.get("noteToPayer"),
    )
  except BackofficeError as refund_error:
    logger.warning(
      "Refund request rejected: code=%s, message=%s",
      refund_error.error_code, refund_error.message,
    )
    return _backoffice_error_response(refund_error)

  refund = result["refund"]
  return _success_response({
    "refundId": refund["refund_id"],
    "refund": serialize_refund(refund),
    "refundState": serialize_refund_state(result["refund_state"]),
    "debugId": refund.get("debug_id"),
  })


# =========================================================================
# Console
# =========================================================================

@router.get("/console")
async def list_console_rows(
  request: Request, filter: str = "SALE", limit: str = None, start: str = None, end: str = None,
):
  """Sale or refund rows, newest first, each sale row with its RefundState."""
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error

  try:
    rows = await get_console_projection_service().list_rows(
      flow_filter=filter,
      limit=limit,
      start_time=_parse_optional_timestamp(start, "start"),
      end_time=_parse_optional_timestamp(end, "end"),
    )
  except BackofficeError as console_error:
    return _backoffice_error_response(console_error)

  return _success_response({
    "filter": filter.upper(),
    "rows": [serialize_console_row(row) for row in rows],
    "count": len(rows),
  })


# =========================================================================
# Webhook snapshots
# =========================================================================

@router.get("/webhooks/captures")
async def list_capture_event_snapshots(request: Request):
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error
  snapshots = get_event_ingest_service().list_capture_snapshots()
  return _success_response([serialize_capture_snapshot(snapshot) for snapshot in snapshots])


@router.get("/webhooks/captures/{capture_id}")
async def get_capture_event_snapshot(capture_id: str, request: Request):
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error
  snapshot = get_event_ingest_service().get_capture_snapshot(capture_id)
  return _success_response(serialize_capture_snapshot(snapshot))


@router.get("/webhooks/refunds")
async def list_refund_event_snapshots(request: Request):
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error
  snapshots = get_event_ingest_service().list_refund_snapshots()
  return _success_response([serialize_refund_snapshot(snapshot) for snapshot in snapshots])


@router.get("/webhooks/refunds/{capture_id}")
async def get_refund_event_snapshot(capture_id: str, request: Request):
  auth_error = require_admin_api_key(request)
  if auth_error is not None:
    return auth_error
  snapshot = get_event_ingest_service().get_refund_snapshot(capture_id)
  return _success_response(serialize_refund_snapshot(snapshot))
