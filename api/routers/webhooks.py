"""
PayPal Checkout Backoffice -- Webhook Router

Receives PayPal event notifications.

PayPal webhook: POST /api/webhooks/paypal
  Events: subscribe to All Events (we filter by event_type in code)

Security:
  - Every webhook is signature-verified using PayPal's verification API
    against the raw, unparsed request body
  - Unsigned or unverified deliveries are acknowledged and dropped
  - All webhook processing is idempotent (safe to receive duplicates)

Event types we handle (see services/event_ingest_service.py):
  PAYMENT.CAPTURE.COMPLETED           -- capture snapshot
  PAYMENT.CAPTURE.DENIED              -- capture snapshot
  PAYMENT.CAPTURE.REFUNDED            -- refund snapshot
  PAYMENT.CAPTURE.PARTIALLY_REFUNDED  -- refund snapshot

Always answers 200 (PayPal retries on non-200, which amplifies any
attack) except when this server cannot verify signatures at all.
"""

import logging

from fastapi import APIRouter, Request

from routers.responses import _backoffice_error_response, _success_response
from services.event_ingest_service import get_event_ingest_service
from services.payment_errors import WebhookMisconfiguredError

logger = logging.getLogger("backoffice.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/paypal")
async def receive_paypal_webhook(request: Request):
  """
  Receive and process one PayPal webhook delivery.

  Response (200): {"ok": true, "data": {"accepted": true, "outcome": "...",
                                        "event_type": ..., "capture_id": ...}}
  """
  # -- Read raw body for signature verification --
  raw_body = await request.body()
  headers_dict = dict(request.headers)

  try:
    ingest_result = await get_event_ingest_service().ingest(raw_body, headers_dict)
  except WebhookMisconfiguredError as misconfigured:
    logger.critical("PayPal webhook cannot be verified: %s", misconfigured.message)
    return _backoffice_error_response(misconfigured)
  except Exception as processing_error:
    logger.error("PayPal webhook processing error: %s", processing_error)
    ingest_result = {
      "accepted": True,
      "outcome": "processing_error",
      "event_type": None,
      "capture_id": None,
    }

  # Always return 200 to acknowledge receipt
  return _success_response(ingest_result)
