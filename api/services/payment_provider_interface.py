"""
PayPal Checkout Backoffice -- Processor Gateway Interface

Abstract base class for the payment processor gateway. Event ingest,
reconciliation and the refund gate only talk to this interface, never to
raw processor payloads: every method returns already-normalized dicts
with amounts in integer cents.

Every method may raise UpstreamError (or one of its subclasses
ProcessorNotFoundError, AlreadyFullyRefundedError, UpstreamTimeoutError).
"""

from abc import ABC, abstractmethod


class ProcessorGatewayInterface(ABC):
  """Abstract base for payment processor gateways."""

  @abstractmethod
  async def create_order(self, currency, amount, buyer_info=None, sku=None, item_name=None):
    """
    Create a CAPTURE-intent order for the client-side button / card fields.

    Args:
      currency: ISO currency code.
      amount: Item total as a decimal string ("10.00").
      buyer_info: Optional contact/shipping dict. Forwarded as the shipping
        address only when minimally complete; otherwise silently dropped.

    Returns: {"order_id": "...", "status": "CREATED", "debug_id": "...", "raw": {...}}
    """
    ...

  @abstractmethod
  async def get_order(self, order_id):
    """Returns: {"order_id", "status", "shipping", "address", "debug_id", "raw"}"""
    ...

  @abstractmethod
  async def patch_order_amount(self, order_id, item_total_cents, shipping_cents, currency):
    """
    Replace the order's amount breakdown. Total is item + shipping exactly.

    Returns: {"ok": True, "debug_id": "..."}
    """
    ...

  @abstractmethod
  async def capture_order(self, order_id):
    """Returns: {"status": "COMPLETED", "capture_id": "...", "debug_id", "raw"}"""
    ...

  @abstractmethod
  async def get_capture(self, capture_id):
    """
    Look up one capture.

    Raises ProcessorNotFoundError when the processor does not know the
    capture (yet) -- callers treat that as benign.

    Returns a Capture dict:
      {"capture_id", "order_id", "status", "amount_cents", "currency",
       "created_at", "payer_email", "links", "debug_id", "raw"}
    """
    ...

  @abstractmethod
  async def list_capture_refunds(self, capture_id, capture=None):
    """
    Itemized refunds for a capture, as a list of RefundRecord dicts:
      {"refund_id", "capture_id", "amount_cents", "currency", "status", "created_at"}

    Empty list (not an error) when the capture has no refund sub-resource.
    """
    ...

  @abstractmethod
  async def get_refund(self, refund_id):
    """Returns one RefundRecord dict."""
    ...

  @abstractmethod
  async def issue_refund(self, capture_id, amount_cents=None, currency=None, note_to_payer=None):
    """
    Refund a capture. amount_cents=None requests a full refund.

    Raises AlreadyFullyRefundedError when the processor reports the
    capture is already fully refunded.

    Returns a RefundRecord dict (plus "debug_id" and "raw").
    """
    ...

  @abstractmethod
  async def list_transactions(self, start_time=None, end_time=None, page_size=None):
    """
    Lagging transaction report. Each normalized row:
      {"order_id", "capture_id", "status", "amount_cents" (signed, refunds < 0),
       "currency", "created_at", "payer_email", "event_code"}

    Returns: {"transactions": [...], "debug_id": "..."}
    """
    ...

  @abstractmethod
  async def verify_event_signature(self, headers, raw_body):
    """
    Verify that a webhook payload was genuinely sent by the processor.

    Args:
      headers: HTTP headers from the webhook request (dict).
      raw_body: Raw request body bytes, untouched.

    Returns: True if signature is valid, False otherwise.
    Raises WebhookMisconfiguredError only when verification cannot be
    attempted because server-side configuration is missing.
    """
    ...
