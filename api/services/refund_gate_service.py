"""
PayPal Checkout Backoffice -- Refund Gate

The only path that issues refunds. Every request is checked against a
freshly reconciled RefundState before PayPal is called:

  state REFUNDED or nothing remaining  -> AlreadyFullyRefundedError (409)
  requested > remaining                -> ExceedsRemainingError (409)
  otherwise                            -> PayPal refund, then optimistic update

Requests for the same capture are serialized with a per-capture lock, so
two operators clicking at once cannot both pass the remaining check
against the same stale state. Different captures never wait on each other.
"""

import asyncio
import contextlib
import logging

from services.amount_service import format_cents, parse_amount_input_to_cents
from services.payment_errors import (
  AlreadyFullyRefundedError,
  ExceedsRemainingError,
  ValidationError,
)
from services.paypal_payment_provider import get_processor_gateway
from services.reconciliation_service import (
  STATUS_REFUNDED,
  get_refund_reconciliation_engine,
)

logger = logging.getLogger("backoffice.refunds")


class RefundGate:

  def __init__(self, gateway, engine):
    self.gateway = gateway
    self.engine = engine
    # capture_id -> {"lock", "users"}; only captures with a refund in flight
    self._capture_locks = {}

  @contextlib.asynccontextmanager
  async def _capture_lock(self, capture_id):
    """Hold the lock for one capture; its entry is dropped once nobody holds or awaits it."""
    entry = self._capture_locks.get(capture_id)
    if entry is None:
      entry = {"lock": asyncio.Lock(), "users": 0}
      self._capture_locks[capture_id] = entry
    entry["users"] += 1
    try:
      async with entry["lock"]:
        yield
    finally:
      entry["users"] -= 1
      if entry["users"] == 0:
        self._capture_locks.pop(capture_id, None)

  async def request_refund(self, capture_id, requested_amount=None, note_to_payer=None):
    """
    Refund requested_amount (decimal string) of a capture, or the full
    remaining balance when requested_amount is None or empty.

    Returns {"refund": RefundRecord, "refund_state": RefundState after the refund}.
    """
    capture_id = (capture_id or "").strip() if isinstance(capture_id, str) else capture_id
    if not capture_id:
      raise ValidationError("captureId is required")

    requested_cents = None
    if requested_amount is not None and str(requested_amount).strip() != "":
      requested_cents = parse_amount_input_to_cents(requested_amount)

    async with self._capture_lock(capture_id):
      refund_state = await self.engine.reconcile(capture_id)
      remaining_cents = refund_state["remaining_cents"]

      if refund_state["status"] == STATUS_REFUNDED or remaining_cents == 0:
        logger.info("Refund rejected locally: capture %s already fully refunded", capture_id)
        raise AlreadyFullyRefundedError(
          f"Capture {capture_id} has already been fully refunded",
        )

      if requested_cents is not None and remaining_cents is not None and requested_cents > remaining_cents:
        logger.info(
          "Refund rejected locally: capture_id=%s, requested_cents=%d, remaining_cents=%d",
          capture_id, requested_cents, remaining_cents,
        )
        raise ExceedsRemainingError(
          f"Requested {format_cents(requested_cents)} exceeds the remaining "
          f"refundable {format_cents(remaining_cents)}",
          requested_cents=requested_cents,
          remaining_cents=remaining_cents,
        )

      try:
        refund = await self.gateway.issue_refund(
          capture_id,
          amount_cents=requested_cents,
          currency=refund_state["currency"],
          note_to_payer=note_to_payer,
        )
      except AlreadyFullyRefundedError:
        # PayPal knows better than our lagging view; remember it
        self.engine.mark_capture_terminal(capture_id, refund_state)
        raise

      updated_state = self.engine.record_issued_refund(capture_id, refund, refund_state)

    logger.info(
      "Refund issued: capture_id=%s, refund_id=%s, amount_cents=%s, remaining_cents=%s",
      capture_id, refund.get("refund_id"), refund.get("amount_cents"), updated_state["remaining_cents"],
    )
    return {"refund": refund, "refund_state": updated_state}


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_refund_gate_singleton = None


def get_refund_gate():
  """Get the refund gate singleton."""
  global _refund_gate_singleton
  if _refund_gate_singleton is None:
    _refund_gate_singleton = RefundGate(
      gateway=get_processor_gateway(),
      engine=get_refund_reconciliation_engine(),
    )
  return _refund_gate_singleton
