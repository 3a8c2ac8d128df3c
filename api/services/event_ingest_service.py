"""
PayPal Checkout Backoffice -- Event Ingest Service

Turns signed PayPal webhook notifications into two snapshot tables keyed
by capture ID:

  capture slot: latest PAYMENT.CAPTURE.COMPLETED / DENIED for the capture
  refund slot:  latest refund total for the capture, from
                PAYMENT.CAPTURE.REFUNDED / PARTIALLY_REFUNDED

Rules:
  - Nothing is stored until the signature has been verified by PayPal.
    Unsigned, unverifiable and malformed notifications are acknowledged
    (so PayPal does not retry-storm us) and dropped.
  - A refund event resource is a single Refund object, i.e. one
    increment, not a running total. The cumulative total therefore comes
    from the capture's itemized refund list, fetched on every refund
    event. The stored total is never lowered: a lagging list or a lone
    increment cannot erase a larger total seen earlier.
  - If that follow-up lookup fails, a degraded snapshot is stored from
    the event payload alone rather than dropping the event.
"""

import datetime
import json
import logging

from services.amount_service import parse_processor_amount_to_cents
from services.payment_errors import (
  ProcessorNotFoundError,
  SignatureUnverifiedError,
  UpstreamError,
)
from services.paypal_payment_provider import (
  get_processor_gateway,
  has_webhook_transmission_headers,
)
from services.snapshot_store import build_snapshot_store

logger = logging.getLogger("backoffice.webhooks")

CAPTURE_EVENT_TYPES = frozenset({
  "PAYMENT.CAPTURE.COMPLETED",
  "PAYMENT.CAPTURE.DENIED",
})

REFUND_EVENT_TYPES = frozenset({
  "PAYMENT.CAPTURE.REFUNDED",
  "PAYMENT.CAPTURE.PARTIALLY_REFUNDED",
})

# Capture statuses; a refund resource carries refund statuses (COMPLETED, PENDING, ...)
_REFUNDED_CAPTURE_STATUSES = ("REFUNDED", "PARTIALLY_REFUNDED")


def _utc_now_iso():
  return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _resource_amount_cents(resource):
  """Absolute amount of an event resource, in cents, or None."""
  amount = resource.get("amount") or {}
  raw_value = amount.get("value")
  if raw_value is None:
    breakdown = resource.get("seller_receivable_breakdown") or resource.get("seller_payable_breakdown") or {}
    raw_value = (breakdown.get("gross_amount") or {}).get("value")
  cents = parse_processor_amount_to_cents(raw_value)
  return abs(cents) if cents is not None else None


def _resource_currency(resource):
  amount = resource.get("amount") or {}
  if amount.get("currency_code"):
    return amount["currency_code"]
  breakdown = resource.get("seller_receivable_breakdown") or resource.get("seller_payable_breakdown") or {}
  return (breakdown.get("gross_amount") or {}).get("currency_code")


def _related_ids(resource):
  return (resource.get("supplementary_data") or {}).get("related_ids") or {}


def resolve_refunded_capture_id(resource):
  """
  Find the capture a refund notification is about.

  Refund resources point at their capture through related_ids or the
  "up" link; a capture resource (status REFUNDED / PARTIALLY_REFUNDED)
  is the capture itself.
  """
  related_capture_id = _related_ids(resource).get("capture_id")
  if related_capture_id:
    return related_capture_id

  for link in resource.get("links") or []:
    if isinstance(link, dict) and link.get("rel") == "up" and link.get("href"):
      return link["href"].rstrip("/").rsplit("/", 1)[-1]

  if resource.get("capture_id"):
    return resource["capture_id"]

  if (resource.get("status") or "").upper() in _REFUNDED_CAPTURE_STATUSES:
    return resource.get("id")

  return None


class EventIngestService:
  """Verifies PayPal notifications and maintains capture/refund snapshots."""

  def __init__(self, gateway, capture_store, refund_store):
    self.gateway = gateway
    self.capture_store = capture_store
    self.refund_store = refund_store

  # -----------------------------------------------------------------------
  # Ingest
  # -----------------------------------------------------------------------

  async def _verify_and_parse(self, raw_body, headers):
    """
    Verify the signature on the untouched body, then parse it.

    Raises SignatureUnverifiedError for unsigned or unverified input.
    Returns the event dict, or None when the body is not a JSON object.
    WebhookMisconfiguredError from the gateway propagates.
    """
    if not has_webhook_transmission_headers(headers):
      raise SignatureUnverifiedError(
        "PayPal transmission headers missing", details={"outcome": "signature_missing"},
      )

    is_signature_valid = await self.gateway.verify_event_signature(headers, raw_body)
    if not is_signature_valid:
      raise SignatureUnverifiedError(
        "PayPal signature verification failed", details={"outcome": "signature_invalid"},
      )

    try:
      event = json.loads(raw_body)
    except (TypeError, ValueError):
      return None
    return event if isinstance(event, dict) else None

  async def ingest(self, raw_body, headers):
    """
    Process one webhook delivery.

    Always "accepted" -- the caller answers 200 -- unless the gateway
    raises WebhookMisconfiguredError.

    Returns: {"accepted": True, "outcome": "...", "event_type": ..., "capture_id": ...}
    """
    try:
      event = await self._verify_and_parse(raw_body, headers)
    except SignatureUnverifiedError as unverified:
      outcome = unverified.details["outcome"]
      logger.warning("PayPal webhook dropped: %s (%s)", unverified.message, outcome)
      return {"accepted": True, "outcome": outcome, "event_type": None, "capture_id": None}

    if event is None:
      logger.error("PayPal webhook: verified but body is not a JSON object")
      return {"accepted": True, "outcome": "invalid_json", "event_type": None, "capture_id": None}

    event_type = event.get("event_type", "")
    event_id = event.get("id", "")
    resource = event.get("resource") or {}

    logger.info("PayPal webhook received: event_type=%s, event_id=%s", event_type, event_id)

    if event_type in CAPTURE_EVENT_TYPES:
      return self._store_capture_event(event_type, event_id, resource)

    if event_type in REFUND_EVENT_TYPES:
      return await self._store_refund_event(event_type, event_id, resource)

    logger.info("PayPal webhook: unhandled event_type=%s (ignoring)", event_type)
    return {"accepted": True, "outcome": "ignored", "event_type": event_type, "capture_id": None}

  def _store_capture_event(self, event_type, event_id, resource):
    capture_id = resource.get("id")
    if not capture_id:
      logger.warning("%s: no capture id in resource (event_id=%s)", event_type, event_id)
      return {"accepted": True, "outcome": "missing_capture_id", "event_type": event_type, "capture_id": None}

    now = _utc_now_iso()
    status = (resource.get("status") or event_type.rsplit(".", 1)[-1]).upper()
    snapshot = {
      "capture_id": capture_id,
      "order_id": _related_ids(resource).get("order_id"),
      "status": status,
      "amount_cents": _resource_amount_cents(resource),
      "currency": _resource_currency(resource) or "USD",
      "created_at": resource.get("create_time") or now,
      "updated_at": now,
      "event_id": event_id,
    }
    self.capture_store.put(capture_id, snapshot)

    logger.info("%s: stored capture snapshot capture_id=%s, status=%s", event_type, capture_id, status)
    return {"accepted": True, "outcome": "capture_stored", "event_type": event_type, "capture_id": capture_id}

  async def _store_refund_event(self, event_type, event_id, resource):
    capture_id = resolve_refunded_capture_id(resource)
    if not capture_id:
      logger.warning("%s: cannot resolve capture id (event_id=%s)", event_type, event_id)
      return {"accepted": True, "outcome": "missing_capture_id", "event_type": event_type, "capture_id": None}

    resource_is_capture = resource.get("id") == capture_id
    refund_id = None if resource_is_capture else resource.get("id")
    # a capture resource carries the gross amount, not a refund amount
    event_amount_cents = None if resource_is_capture else _resource_amount_cents(resource)
    event_currency = _resource_currency(resource) or "USD"
    if event_type == "PAYMENT.CAPTURE.PARTIALLY_REFUNDED":
      event_status = "PARTIALLY_REFUNDED"
    else:
      event_status = (resource.get("status") or "").upper() or None

    previous_snapshot = self.refund_store.get(capture_id) or {}
    previous_total_cents = previous_snapshot.get("total_cents") or 0
    now = _utc_now_iso()

    try:
      detail = await self._resolve_refund_detail(capture_id, refund_id, event_amount_cents)
    except UpstreamError as follow_up_error:
      # Event payload only. For a refund resource the amount is one
      # increment, so it can only ever be a lower bound.
      snapshot = {
        "capture_id": capture_id,
        "order_id": _related_ids(resource).get("order_id") or previous_snapshot.get("order_id"),
        "total_cents": max(previous_total_cents, event_amount_cents or 0),
        "currency": event_currency,
        "status": event_status,
        "refund_id": refund_id,
        "total_source": "event_payload",
        "degraded": True,
        "updated_at": now,
        "event_id": event_id,
      }
      self.refund_store.put(capture_id, snapshot)
      logger.warning(
        "%s: fallback refund snapshot for capture_id=%s (lookup failed: %s, debug_id=%s)",
        event_type, capture_id, follow_up_error.message, follow_up_error.debug_id,
      )
      return {
        "accepted": True, "outcome": "refund_stored_degraded",
        "event_type": event_type, "capture_id": capture_id,
      }

    capture = detail["capture"] or {}
    snapshot = {
      "capture_id": capture_id,
      "order_id": capture.get("order_id") or _related_ids(resource).get("order_id") or previous_snapshot.get("order_id"),
      "total_cents": max(previous_total_cents, detail["total_cents"]),
      "currency": capture.get("currency") or detail["currency"] or event_currency,
      "status": capture.get("status") or event_status,
      "refund_id": refund_id,
      "total_source": detail["total_source"],
      "degraded": False,
      "updated_at": now,
      "event_id": event_id,
    }
    self.refund_store.put(capture_id, snapshot)

    logger.info(
      "%s: stored refund snapshot capture_id=%s, total_cents=%s, source=%s",
      event_type, capture_id, snapshot["total_cents"], detail["total_source"],
    )
    return {"accepted": True, "outcome": "refund_stored", "event_type": event_type, "capture_id": capture_id}

  async def _resolve_refund_detail(self, capture_id, refund_id, event_amount_cents):
    """
    Cumulative refunded total for a capture, straight from PayPal.

    The itemized refund list is the base. The refund this event announces
    is one increment: when the list does not contain it yet, its amount
    (from the event, else a refund lookup) is added on top; when it does,
    the event amount can only act as a floor.
    Raises UpstreamError when the capture or refund list lookup fails.
    """
    try:
      capture = await self.gateway.get_capture(capture_id)
    except ProcessorNotFoundError:
      capture = None

    refunds = []
    if capture is not None:
      refunds = await self.gateway.list_capture_refunds(capture_id, capture=capture)

    itemized_total_cents = sum(refund["amount_cents"] for refund in refunds)
    itemized_refund_ids = {refund.get("refund_id") for refund in refunds}
    currency = refunds[0]["currency"] if refunds else None
    total_cents = itemized_total_cents
    total_source = "itemized_refunds"

    refund_missing_from_list = bool(refund_id) and refund_id not in itemized_refund_ids
    increment_cents = event_amount_cents or 0
    increment_source = "event_payload"
    if refund_missing_from_list and increment_cents <= 0:
      try:
        refund = await self.gateway.get_refund(refund_id)
        increment_cents = refund["amount_cents"] or 0
        currency = currency or refund["currency"]
        increment_source = "refund_lookup"
      except UpstreamError as refund_lookup_error:
        logger.info("Refund lookup for refund_id=%s failed: %s", refund_id, refund_lookup_error.message)

    if increment_cents > 0 and refund_missing_from_list:
      # refund list lags behind the event
      total_cents = itemized_total_cents + increment_cents
      total_source = f"itemized_refunds+{increment_source}" if refunds else increment_source
    elif increment_cents > total_cents:
      total_cents = increment_cents
      total_source = increment_source

    if capture is not None and capture.get("status") == "REFUNDED" and capture.get("amount_cents"):
      # Terminal status can show up before the refund list does
      if total_cents < capture["amount_cents"]:
        total_cents = capture["amount_cents"]
        total_source = "capture_status"

    return {
      "capture": capture,
      "total_cents": total_cents,
      "currency": currency,
      "total_source": total_source,
    }

  # -----------------------------------------------------------------------
  # Snapshot reads
  # -----------------------------------------------------------------------

  def get_capture_snapshot(self, capture_id):
    return self.capture_store.get(capture_id)

  def get_refund_snapshot(self, capture_id):
    return self.refund_store.get(capture_id)

  def list_capture_snapshots(self):
    return self.capture_store.list_values()

  def list_refund_snapshots(self):
    return self.refund_store.list_values()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_event_ingest_singleton = None


def get_event_ingest_service():
  """Get the event ingest service singleton."""
  global _event_ingest_singleton
  if _event_ingest_singleton is None:
    _event_ingest_singleton = EventIngestService(
      gateway=get_processor_gateway(),
      capture_store=build_snapshot_store("capture_events"),
      refund_store=build_snapshot_store("refund_events"),
    )
  return _event_ingest_singleton
