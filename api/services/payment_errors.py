"""
PayPal Checkout Backoffice -- Error Taxonomy

Every failure the backoffice can report is one of these classes. Each
carries the HTTP status and error code the routers put in the standard
error envelope, so routers never have to guess.

  ValidationError                 400  bad operator/buyer input
  ProcessorNotFoundError          404  processor said 404 (capture not visible yet)
  UpstreamError                   502  any other non-2xx from the processor
  AlreadyFullyRefundedError       409  processor (or local state) says nothing left
  UpstreamTimeoutError            504  bounded wait exceeded, retryable
  SignatureUnverifiedError        200  webhook only, never escapes as an HTTP error
  WebhookMisconfiguredError       500  webhook id / credentials missing server-side
  ExceedsRemainingError           409  local refund gate rejection
  ReconciliationUnavailableError  503  every refund data source failed
"""


class BackofficeError(Exception):
  """Base for all backoffice errors."""

  http_status_code = 500
  error_code = "INTERNAL_ERROR"
  # the same request may succeed if the operator sends it again
  retryable = False

  def __init__(self, message, details=None):
    super().__init__(message)
    self.message = message
    self.details = details

  def to_error_payload(self):
    """Body of the "error" member of the standard response envelope."""
    return {
      "code": self.error_code,
      "message": self.message,
      "debug_id": None,
      "http_status": None,
      "retryable": self.retryable,
      "details": self.details,
    }


class ValidationError(BackofficeError):
  http_status_code = 400
  error_code = "VALIDATION_ERROR"


class UpstreamError(BackofficeError):
  """
  Non-2xx response (or transport failure) from the payment processor.

  http_status is None when no response was received at all.
  debug_id is PayPal's paypal-debug-id header, needed for support escalation.
  """

  error_code = "UPSTREAM_ERROR"

  def __init__(self, message, http_status=None, debug_id=None, raw_body=None):
    super().__init__(message, details=raw_body)
    self.http_status = http_status
    self.debug_id = debug_id
    self.raw_body = raw_body

  @property
  def http_status_code(self):
    # Processor 4xx answers are the operator's business (bad amount, bad id);
    # everything else is a gateway failure on our side.
    if self.http_status is not None and 400 <= self.http_status < 500:
      return self.http_status
    return 502

  def to_error_payload(self):
    payload = super().to_error_payload()
    payload["debug_id"] = self.debug_id
    payload["http_status"] = self.http_status
    return payload


class ProcessorNotFoundError(UpstreamError):
  error_code = "NOT_FOUND"

  @property
  def http_status_code(self):
    return 404


class AlreadyFullyRefundedError(UpstreamError):
  error_code = "ALREADY_FULLY_REFUNDED"

  @property
  def http_status_code(self):
    return 409


class UpstreamTimeoutError(UpstreamError):
  error_code = "UPSTREAM_TIMEOUT"
  retryable = True

  @property
  def http_status_code(self):
    return 504


class SignatureUnverifiedError(BackofficeError):
  http_status_code = 200
  error_code = "SIGNATURE_UNVERIFIED"


class WebhookMisconfiguredError(BackofficeError):
  http_status_code = 500
  error_code = "WEBHOOK_MISCONFIGURED"


class ExceedsRemainingError(BackofficeError):
  http_status_code = 409
  error_code = "EXCEEDS_REMAINING"

  def __init__(self, message, requested_cents, remaining_cents):
    super().__init__(
      message,
      details={"requested_cents": requested_cents, "remaining_cents": remaining_cents},
    )
    self.requested_cents = requested_cents
    self.remaining_cents = remaining_cents


class ReconciliationUnavailableError(BackofficeError):
  """Raised instead of fabricating a zero when no refund source answered."""

  http_status_code = 503
  error_code = "RECONCILIATION_UNAVAILABLE"

  def __init__(self, message, refund_state=None):
    super().__init__(message, details={"refund_state": refund_state})
    self.refund_state = refund_state
