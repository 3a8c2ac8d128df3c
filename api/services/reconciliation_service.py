"""
PayPal Checkout Backoffice -- Refund Reconciliation Engine

Answers one question per capture: how much has been refunded, and how
much is still refundable?

Three independent, lagging views are merged:
  1. live lookups     -- capture details + itemized refund list (replication
                         lag, occasional 404 for fresh captures)
  2. event snapshots  -- what PayPal webhooks told us (async, may be missing)
  3. reporting feed   -- negative rows from the transaction report (minutes
                         of lag); the caller hands in the per-capture sum

Merge rule: MAXIMUM WINS. A stale or empty source can never lower the
refunded total below something another source (or an earlier call, or a
refund we just issued) has already shown. The maximum is commutative, so
the order sources answer in does not matter and lookups can run
concurrently.

RefundState (a plain dict, never persisted):
  {
    "capture_id", "order_id", "currency",
    "gross_amount_cents":   int or None (unknown),
    "total_refunded_cents": int,
    "remaining_cents":      max(0, gross - total), None when gross unknown,
    "status":               NOT_REFUNDED | PARTIALLY_REFUNDED | REFUNDED | UNKNOWN,
    "capture_status":       live PayPal capture status, if known,
    "refunds":              itemized RefundRecords (+ optimistic ones),
    "sources":              which sources contributed (diagnostics only),
    "source_totals":        {"itemized", "event_snapshot", "report", "observed",
                             "optimistic"} cents per source, None if it had nothing,
    "processor_total_cents": what PayPal's own lookups show, None if unreachable,
    "pending":              refunds known here that PayPal does not show yet,
    "mismatch":             a secondary source disagrees with PayPal's total,
    "degraded":             True if any upstream lookup failed,
    "upstream_errors":      [{"operation", "message", "http_status", "debug_id"}],
  }
"""

import datetime
import logging

import config
from services.event_ingest_service import get_event_ingest_service
from services.payment_errors import (
  ProcessorNotFoundError,
  ReconciliationUnavailableError,
  UpstreamError,
)
from services.paypal_payment_provider import get_processor_gateway
from services.snapshot_store import build_snapshot_store

logger = logging.getLogger("backoffice.reconciliation")

STATUS_NOT_REFUNDED = "NOT_REFUNDED"
STATUS_PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
STATUS_REFUNDED = "REFUNDED"
STATUS_UNKNOWN = "UNKNOWN"

_EXPLICIT_REFUND_STATUSES = (STATUS_REFUNDED, STATUS_PARTIALLY_REFUNDED)


def classify_refund_status(total_refunded_cents, gross_amount_cents):
  """Label a refunded total against the gross amount, with one cent of slack."""
  tolerance = config.AMOUNT_TOLERANCE_CENTS
  if total_refunded_cents <= tolerance:
    return STATUS_NOT_REFUNDED
  if gross_amount_cents is None:
    return STATUS_UNKNOWN
  if total_refunded_cents >= gross_amount_cents - tolerance:
    return STATUS_REFUNDED
  return STATUS_PARTIALLY_REFUNDED


def compute_remaining_cents(gross_amount_cents, total_refunded_cents):
  if gross_amount_cents is None:
    return None
  return max(0, gross_amount_cents - total_refunded_cents)


def _processor_total_cents(refund_list_answered, reported_total_cents, capture_status, gross_amount_cents):
  """What PayPal itself shows as refunded right now; None when it could not be asked."""
  if capture_status == STATUS_REFUNDED and gross_amount_cents is not None:
    return max(reported_total_cents, gross_amount_cents)
  if refund_list_answered:
    return reported_total_cents
  return None


def is_refund_pending(total_refunded_cents, processor_total_cents):
  """
  True when refunds we know about (issued here, webhooks, the report)
  are not reflected in PayPal's own itemized view yet.
  """
  tolerance = config.AMOUNT_TOLERANCE_CENTS
  if total_refunded_cents <= tolerance:
    return False
  if processor_total_cents is None:
    return True
  return total_refunded_cents > processor_total_cents + tolerance


def has_source_mismatch(source_totals, processor_total_cents):
  """True when a secondary source disagrees with PayPal's own total by more than a cent."""
  if processor_total_cents is None:
    return False
  for source_name in ("event_snapshot", "report", "observed"):
    source_total_cents = source_totals.get(source_name)
    if source_total_cents is None:
      continue
    if abs(source_total_cents - processor_total_cents) > config.AMOUNT_TOLERANCE_CENTS:
      return True
  return False


def _describe_upstream_error(operation, upstream_error):
  return {
    "operation": operation,
    "message": upstream_error.message,
    "http_status": upstream_error.http_status,
    "debug_id": upstream_error.debug_id,
  }


class RefundReconciliationEngine:
  """Merges live lookups, event snapshots and the reporting feed into a RefundState."""

  def __init__(self, gateway, event_ingest, observed_store):
    self.gateway = gateway
    self.event_ingest = event_ingest
    # capture_id -> highest refunded total observed so far + optimistic refunds
    self.observed_store = observed_store

  # -----------------------------------------------------------------------
  # Source readers -- each one degrades instead of raising
  # -----------------------------------------------------------------------

  async def _read_live_sources(self, capture_id, upstream_errors):
    """
    Capture lookup then itemized refund list.

    Returns (capture or None, refunds list, refund_list_answered).
    """
    try:
      capture = await self.gateway.get_capture(capture_id)
    except ProcessorNotFoundError:
      logger.info("Capture %s not visible at PayPal yet; using other sources", capture_id)
      return None, [], False
    except UpstreamError as capture_error:
      logger.warning(
        "Capture lookup failed for %s: %s (debug_id=%s)",
        capture_id, capture_error.message, capture_error.debug_id,
      )
      upstream_errors.append(_describe_upstream_error("get_capture", capture_error))
      return None, [], False

    try:
      refunds = await self.gateway.list_capture_refunds(capture_id, capture=capture)
    except ProcessorNotFoundError:
      return capture, [], True
    except UpstreamError as refund_list_error:
      logger.warning(
        "Refund list failed for %s: %s (debug_id=%s)",
        capture_id, refund_list_error.message, refund_list_error.debug_id,
      )
      upstream_errors.append(_describe_upstream_error("list_capture_refunds", refund_list_error))
      return capture, [], False

    return capture, refunds, True

  def _read_snapshot(self, reader, capture_id, upstream_errors):
    try:
      return reader(capture_id)
    except Exception as snapshot_error:
      logger.warning("Snapshot read failed for %s: %s", capture_id, snapshot_error)
      upstream_errors.append({
        "operation": "snapshot_read",
        "message": str(snapshot_error),
        "http_status": None,
        "debug_id": None,
      })
      return None

  # -----------------------------------------------------------------------
  # Reconcile
  # -----------------------------------------------------------------------

  async def reconcile(self, capture_id, feed_fallback=None):
    """
    Build the RefundState for one capture.

    feed_fallback (optional), from the reporting feed:
      {"refunded_cents", "gross_amount_cents", "currency", "order_id"}

    Raises ReconciliationUnavailableError (carrying the partial state)
    only when lookups failed and no source produced any refund evidence.
    """
    feed_fallback = feed_fallback or {}
    upstream_errors = []
    sources = []

    capture, itemized_refunds, refund_list_answered = await self._read_live_sources(
      capture_id, upstream_errors,
    )
    refund_snapshot = self._read_snapshot(self.event_ingest.get_refund_snapshot, capture_id, upstream_errors)
    capture_snapshot = self._read_snapshot(self.event_ingest.get_capture_snapshot, capture_id, upstream_errors)
    observed = self.observed_store.get(capture_id) or {}

    capture = capture or {}
    refund_snapshot = refund_snapshot or {}
    capture_snapshot = capture_snapshot or {}

    gross_amount_cents = (
      capture.get("amount_cents")
      or feed_fallback.get("gross_amount_cents")
      or capture_snapshot.get("amount_cents")
      or observed.get("gross_amount_cents")
    )
    currency = (
      capture.get("currency")
      or feed_fallback.get("currency")
      or refund_snapshot.get("currency")
      or capture_snapshot.get("currency")
      or observed.get("currency")
      or config.DEFAULT_CURRENCY
    )
    capture_status = capture.get("status")

    # 1. itemized refunds
    if capture:
      sources.append("live_capture")
    reported_total_cents = sum(refund["amount_cents"] for refund in itemized_refunds)
    if itemized_refunds:
      sources.append("itemized_refunds")

    # 2. terminal status can be visible before the refund list is
    if not itemized_refunds and capture_status == STATUS_REFUNDED and capture.get("amount_cents"):
      reported_total_cents = capture["amount_cents"]
      sources.append("capture_status")

    candidate_cents = reported_total_cents

    # 3. event snapshot
    snapshot_total_cents = refund_snapshot.get("total_cents")
    if snapshot_total_cents is not None:
      sources.append("event_snapshot")
      candidate_cents = max(candidate_cents, snapshot_total_cents)

    # 4. reporting feed
    feed_refunded_cents = feed_fallback.get("refunded_cents")
    if feed_refunded_cents is not None:
      sources.append("report")
      candidate_cents = max(candidate_cents, abs(feed_refunded_cents))

    # Never below what was already observed (earlier calls, refunds just issued)
    observed_total_cents = observed.get("total_refunded_cents") or 0
    if observed_total_cents > candidate_cents:
      sources.append("observed")
      candidate_cents = observed_total_cents

    # 5. status, with explicit statuses from the most authoritative source
    total_refunded_cents = candidate_cents
    status = classify_refund_status(total_refunded_cents, gross_amount_cents)

    explicit_status = None
    if capture_status in _EXPLICIT_REFUND_STATUSES:
      explicit_status = capture_status
    elif refund_snapshot.get("status") in _EXPLICIT_REFUND_STATUSES:
      explicit_status = refund_snapshot["status"]
    if observed.get("terminal"):
      explicit_status = STATUS_REFUNDED

    if explicit_status == STATUS_REFUNDED:
      status = STATUS_REFUNDED
      if gross_amount_cents is not None:
        total_refunded_cents = max(total_refunded_cents, gross_amount_cents)
    elif explicit_status == STATUS_PARTIALLY_REFUNDED and status in (STATUS_NOT_REFUNDED, STATUS_UNKNOWN):
      status = STATUS_PARTIALLY_REFUNDED

    remaining_cents = compute_remaining_cents(gross_amount_cents, total_refunded_cents)
    if remaining_cents is None and status == STATUS_REFUNDED:
      remaining_cents = 0

    itemized_refund_ids = {refund.get("refund_id") for refund in itemized_refunds}
    optimistic_refunds = [
      dict(refund, optimistic=True)
      for refund in observed.get("issued_refunds") or []
      if refund.get("refund_id") not in itemized_refund_ids
    ]

    source_totals = {
      "itemized": sum(refund["amount_cents"] for refund in itemized_refunds) if refund_list_answered else None,
      "event_snapshot": snapshot_total_cents,
      "report": abs(feed_refunded_cents) if feed_refunded_cents is not None else None,
      # only when the high-water mark is above every live source
      "observed": observed_total_cents if "observed" in sources else None,
      "optimistic": sum(refund.get("amount_cents") or 0 for refund in optimistic_refunds),
    }
    processor_total_cents = _processor_total_cents(
      refund_list_answered, reported_total_cents, capture_status, gross_amount_cents,
    )

    refund_state = {
      "capture_id": capture_id,
      "order_id": (
        capture.get("order_id")
        or feed_fallback.get("order_id")
        or capture_snapshot.get("order_id")
        or refund_snapshot.get("order_id")
      ),
      "currency": currency,
      "gross_amount_cents": gross_amount_cents,
      "total_refunded_cents": total_refunded_cents,
      "remaining_cents": remaining_cents,
      "status": status,
      "capture_status": capture_status,
      "refunds": list(itemized_refunds) + optimistic_refunds,
      "sources": sources,
      "source_totals": source_totals,
      "processor_total_cents": processor_total_cents,
      "pending": is_refund_pending(total_refunded_cents, processor_total_cents),
      "mismatch": has_source_mismatch(source_totals, processor_total_cents),
      "degraded": bool(upstream_errors),
      "upstream_errors": upstream_errors,
    }

    has_refund_evidence = (
      refund_list_answered
      or capture_status in _EXPLICIT_REFUND_STATUSES
      or snapshot_total_cents is not None
      or feed_refunded_cents is not None
      or bool(observed)
    )
    if upstream_errors and not has_refund_evidence:
      logger.error("No refund source answered for capture %s", capture_id)
      raise ReconciliationUnavailableError(
        f"No refund data source is currently available for capture {capture_id}",
        refund_state=refund_state,
      )

    if upstream_errors:
      logger.warning(
        "Degraded reconciliation for %s: sources=%s, errors=%d",
        capture_id, sources, len(upstream_errors),
      )

    self._remember_observation(refund_state)
    return refund_state

  # -----------------------------------------------------------------------
  # High-water mark and optimistic updates
  # -----------------------------------------------------------------------

  def _remember_observation(self, refund_state, issued_refund=None, terminal=False):
    """
    Raise the stored high-water mark for a capture; never lower it.

    No await between the read and the write, so concurrent reconciliations
    in the same event loop cannot interleave here.
    """
    capture_id = refund_state["capture_id"]
    observed = self.observed_store.get(capture_id) or {}
    observed_total_cents = observed.get("total_refunded_cents") or 0
    new_total_cents = refund_state["total_refunded_cents"]

    if new_total_cents <= observed_total_cents and issued_refund is None and not terminal:
      return
    if new_total_cents <= 0 and not terminal:
      return

    issued_refunds = list(observed.get("issued_refunds") or [])
    if issued_refund is not None:
      issued_refunds.append(issued_refund)

    self.observed_store.put(capture_id, {
      "capture_id": capture_id,
      "total_refunded_cents": max(observed_total_cents, new_total_cents),
      "gross_amount_cents": refund_state.get("gross_amount_cents") or observed.get("gross_amount_cents"),
      "currency": refund_state.get("currency") or observed.get("currency"),
      "terminal": bool(terminal or observed.get("terminal")),
      "issued_refunds": issued_refunds,
      "updated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    })

  def record_issued_refund(self, capture_id, refund_record, prior_state):
    """
    Fold a refund we just issued into this capture's view immediately,
    before webhooks or the report catch up.

    Returns the updated RefundState.
    """
    amount_cents = refund_record.get("amount_cents") or 0
    if amount_cents <= 0 and prior_state.get("remaining_cents"):
      # Full refund without an amount in the response: it took the remainder
      amount_cents = prior_state["remaining_cents"]

    total_refunded_cents = prior_state["total_refunded_cents"] + amount_cents
    gross_amount_cents = prior_state.get("gross_amount_cents")
    status = classify_refund_status(total_refunded_cents, gross_amount_cents)

    optimistic_record = {
      "refund_id": refund_record.get("refund_id"),
      "capture_id": capture_id,
      "amount_cents": amount_cents,
      "currency": refund_record.get("currency") or prior_state.get("currency"),
      "status": refund_record.get("status"),
      "created_at": refund_record.get("created_at"),
    }

    updated_state = dict(prior_state)
    updated_state.update({
      "total_refunded_cents": total_refunded_cents,
      "remaining_cents": compute_remaining_cents(gross_amount_cents, total_refunded_cents),
      "status": status,
      "refunds": list(prior_state.get("refunds") or []) + [dict(optimistic_record, optimistic=True)],
      "sources": list(prior_state.get("sources") or []) + ["issued_refund"],
      "source_totals": dict(
        prior_state.get("source_totals") or {},
        optimistic=((prior_state.get("source_totals") or {}).get("optimistic") or 0) + amount_cents,
      ),
      "pending": is_refund_pending(total_refunded_cents, prior_state.get("processor_total_cents")),
    })
    self._remember_observation(updated_state, issued_refund=optimistic_record)

    logger.info(
      "Optimistic refund folded in: capture_id=%s, refund_id=%s, total_refunded_cents=%d",
      capture_id, refund_record.get("refund_id"), total_refunded_cents,
    )
    return updated_state

  def mark_capture_terminal(self, capture_id, prior_state):
    """PayPal said the capture is fully refunded: remember that, whatever we believed."""
    gross_amount_cents = prior_state.get("gross_amount_cents")
    total_refunded_cents = prior_state.get("total_refunded_cents") or 0
    if gross_amount_cents is not None:
      total_refunded_cents = max(total_refunded_cents, gross_amount_cents)

    updated_state = dict(prior_state)
    updated_state.update({
      "total_refunded_cents": total_refunded_cents,
      "remaining_cents": 0,
      "status": STATUS_REFUNDED,
      "pending": is_refund_pending(total_refunded_cents, prior_state.get("processor_total_cents")),
    })
    self._remember_observation(updated_state, terminal=True)

    logger.warning("Capture %s marked fully refunded after PayPal rejection", capture_id)
    return updated_state


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_reconciliation_engine_singleton = None


def get_refund_reconciliation_engine():
  """Get the refund reconciliation engine singleton."""
  global _reconciliation_engine_singleton
  if _reconciliation_engine_singleton is None:
    _reconciliation_engine_singleton = RefundReconciliationEngine(
      gateway=get_processor_gateway(),
      event_ingest=get_event_ingest_service(),
      observed_store=build_snapshot_store("refund_observations"),
    )
  return _reconciliation_engine_singleton
