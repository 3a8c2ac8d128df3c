"""
PayPal Checkout Backoffice -- PayPal Processor Gateway

PayPal REST API integration using direct HTTP calls via httpx.
No heavy SDK dependency.

Endpoints used:
  POST  /v1/oauth2/token                           -- get bearer token
  POST  /v2/checkout/orders                        -- create order
  GET   /v2/checkout/orders/{id}                   -- fetch order (shipping)
  PATCH /v2/checkout/orders/{id}                   -- replace amount breakdown
  POST  /v2/checkout/orders/{id}/capture           -- capture payment
  GET   /v2/payments/captures/{id}                 -- capture lookup
  GET   <capture "refund" link>                    -- itemized refunds
  POST  /v2/payments/captures/{id}/refund          -- refund
  GET   /v2/payments/refunds/{id}                  -- refund lookup
  GET   /v1/reporting/transactions                 -- transaction report (lags minutes)
  POST  /v1/notifications/verify-webhook-signature -- verify webhook

Everything returned from this module is normalized: amounts in integer
cents, snake_case keys, no raw PayPal shapes above this layer except
under a "raw" key kept for diagnostics.
"""

import datetime
import json
import logging
import time

import httpx

import config
from services.amount_service import format_cents, parse_processor_amount_to_cents
from services.payment_errors import (
  AlreadyFullyRefundedError,
  ProcessorNotFoundError,
  UpstreamError,
  UpstreamTimeoutError,
  WebhookMisconfiguredError,
)
from services.payment_provider_interface import ProcessorGatewayInterface

logger = logging.getLogger("backoffice.paypal")

# PATCH path must match the reference_id set in create_order
_PURCHASE_UNIT_REFERENCE_ID = "default"

# Refund-list responses with these statuses mean "nothing itemized yet"
_EMPTY_REFUND_LIST_HTTP_STATUSES = (400, 404, 422)

_WEBHOOK_TRANSMISSION_HEADERS = (
  "paypal-transmission-id",
  "paypal-transmission-time",
  "paypal-transmission-sig",
  "paypal-cert-url",
)


# ---------------------------------------------------------------------------
# Payload helpers (pure functions, unit-tested directly)
# ---------------------------------------------------------------------------

def _clean_text(value, uppercase=False):
  if value is None:
    return None
  text = str(value).strip()
  if not text:
    return None
  return text.upper() if uppercase else text


def normalize_buyer_info(buyer_info):
  """
  Normalize checkout-form buyer info into PayPal shipping/payer fields.

  The shipping address is only kept when minimally complete (street line,
  city, 2-letter region, postal code, country). A partial address is
  dropped silently -- the order is still created, just without shipping.

  Returns: {"full_name", "email", "shipping_address"} or None.
  """
  if not isinstance(buyer_info, dict):
    return None

  address_input = buyer_info.get("address") or {}
  if not isinstance(address_input, dict):
    address_input = {}

  shipping_address = {
    "address_line_1": _clean_text(address_input.get("address_line_1")),
    "address_line_2": _clean_text(address_input.get("address_line_2")),
    "admin_area_2": _clean_text(address_input.get("admin_area_2")),  # city
    "admin_area_1": _clean_text(address_input.get("admin_area_1"), uppercase=True),  # state
    "postal_code": _clean_text(address_input.get("postal_code")),
    "country_code": _clean_text(address_input.get("country_code"), uppercase=True),
  }

  has_minimal_address = all(
    shipping_address[field]
    for field in ("address_line_1", "admin_area_2", "admin_area_1", "postal_code", "country_code")
  )
  region = shipping_address["admin_area_1"] or ""
  if len(region) != 2:
    has_minimal_address = False

  return {
    "full_name": _clean_text(buyer_info.get("fullName") or buyer_info.get("full_name")),
    "email": _clean_text(buyer_info.get("email")),
    "shipping_address": (
      {key: value for key, value in shipping_address.items() if value}
      if has_minimal_address else None
    ),
  }


def _find_link_href(links, rel):
  """Find the href of a HATEOAS link by rel."""
  for link in links or []:
    if isinstance(link, dict) and link.get("rel") == rel:
      return link.get("href")
  return None


def _last_path_segment(url):
  if not url:
    return None
  return url.rstrip("/").rsplit("/", 1)[-1] or None


def normalize_capture(capture_data, capture_id=None):
  """Normalize a /v2/payments/captures/{id} payload into a Capture dict."""
  capture_data = capture_data or {}
  amount = capture_data.get("amount") or {}
  related_ids = (capture_data.get("supplementary_data") or {}).get("related_ids") or {}
  amount_cents = parse_processor_amount_to_cents(amount.get("value"))

  return {
    "capture_id": capture_data.get("id") or capture_id,
    "order_id": related_ids.get("order_id"),
    "status": (capture_data.get("status") or "UNKNOWN").upper(),
    "amount_cents": abs(amount_cents) if amount_cents is not None else None,
    "currency": amount.get("currency_code"),
    "created_at": capture_data.get("create_time") or capture_data.get("update_time"),
    "payer_email": capture_data.get("payer_email"),
    "links": capture_data.get("links") or [],
    "raw": capture_data,
  }


def normalize_refund(refund_data, capture_id=None):
  """
  Normalize one PayPal refund object into a RefundRecord dict.

  Amounts are always positive: a refund's magnitude, not a negative capture.
  """
  refund_data = refund_data or {}
  amount = refund_data.get("amount") or {}
  amount_cents = parse_processor_amount_to_cents(amount.get("value"))
  related_ids = (refund_data.get("supplementary_data") or {}).get("related_ids") or {}

  return {
    "refund_id": refund_data.get("id"),
    "capture_id": (
      capture_id
      or related_ids.get("capture_id")
      or _last_path_segment(_find_link_href(refund_data.get("links"), "up"))
    ),
    "amount_cents": abs(amount_cents) if amount_cents is not None else 0,
    "currency": amount.get("currency_code"),
    "status": (refund_data.get("status") or "UNKNOWN").upper(),
    "created_at": refund_data.get("create_time") or refund_data.get("update_time"),
  }


def normalize_refund_list_payload(payload, capture_id=None):
  """
  Normalize the refund-list response into a list of RefundRecord dicts.

  PayPal answers this differently depending on path and API version. The
  accepted shapes are exactly:
    - a bare list of refund objects
    - {"refunds": [...]}
    - {"items": [...]}
    - a single refund object ({"id": ..., "amount": {...}})
  Anything else is treated as "no itemized refunds".
  """
  if isinstance(payload, list):
    raw_refunds = payload
  elif isinstance(payload, dict):
    if isinstance(payload.get("refunds"), list):
      raw_refunds = payload["refunds"]
    elif isinstance(payload.get("items"), list):
      raw_refunds = payload["items"]
    elif payload.get("id") and isinstance(payload.get("amount"), dict):
      raw_refunds = [payload]
    else:
      raw_refunds = []
  else:
    raw_refunds = []

  return [
    normalize_refund(refund_data, capture_id)
    for refund_data in raw_refunds
    if isinstance(refund_data, dict)
  ]


def normalize_transaction_detail(transaction_detail):
  """Normalize one /v1/reporting/transactions row. Refund rows have amount_cents < 0."""
  info = transaction_detail.get("transaction_info") or {}
  payer = transaction_detail.get("payer_info") or {}
  amount = info.get("transaction_amount") or {}

  return {
    # For refund rows paypal_reference_id points back at the original sale
    "order_id": info.get("paypal_reference_id"),
    "capture_id": info.get("transaction_id"),
    "status": info.get("transaction_status"),
    "amount_cents": parse_processor_amount_to_cents(amount.get("value")),
    "currency": amount.get("currency_code"),
    "created_at": info.get("transaction_initiation_date"),
    "payer_email": payer.get("email_address"),
    "event_code": info.get("transaction_event_code"),
  }


def parse_timestamp(value):
  """Parse an ISO-8601 string (or datetime) into an aware UTC datetime. None if unparseable."""
  if value is None or value == "":
    return None
  if isinstance(value, datetime.datetime):
    parsed = value
  else:
    text = str(value).strip()
    if text.endswith("Z"):
      text = text[:-1] + "+00:00"
    try:
      parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
      return None
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=datetime.timezone.utc)
  return parsed.astimezone(datetime.timezone.utc)


def format_reporting_timestamp(value):
  """PayPal reporting wants YYYY-MM-DDTHH:MM:SSZ (no milliseconds)."""
  return parse_timestamp(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def has_webhook_transmission_headers(headers):
  header_map = {k.lower(): v for k, v in (headers or {}).items()}
  return all(header_map.get(name) for name in _WEBHOOK_TRANSMISSION_HEADERS)


def _response_json_or_empty(response):
  try:
    return response.json()
  except ValueError:
    return {}


def _has_error_issue(error_body, issue_name):
  if not isinstance(error_body, dict):
    return False
  for detail in error_body.get("details") or []:
    if isinstance(detail, dict) and detail.get("issue") == issue_name:
      return True
  return False


def _build_upstream_error(http_status, debug_id, error_body, operation):
  """Map a non-2xx PayPal response onto the error taxonomy."""
  if isinstance(error_body, dict):
    debug_id = debug_id or error_body.get("debug_id")

  if http_status == 404:
    return ProcessorNotFoundError(
      f"PayPal {operation}: resource not found",
      http_status=http_status, debug_id=debug_id, raw_body=error_body,
    )
  if _has_error_issue(error_body, "CAPTURE_FULLY_REFUNDED"):
    return AlreadyFullyRefundedError(
      "Capture has already been fully refunded",
      http_status=http_status, debug_id=debug_id, raw_body=error_body,
    )
  return UpstreamError(
    f"PayPal {operation} error: HTTP {http_status}",
    http_status=http_status, debug_id=debug_id, raw_body=error_body,
  )


class PayPalProcessorGateway(ProcessorGatewayInterface):
  """PayPal REST API gateway."""

  def __init__(self, transport=None):
    self.api_base_url = config.PAYPAL_API_BASE_URL
    self.client_id = config.PAYPAL_CLIENT_ID
    self.secret_key = config.PAYPAL_SECRET_KEY
    self.webhook_id = config.PAYPAL_WEBHOOK_ID
    self.timeout_seconds = config.PAYPAL_HTTP_TIMEOUT_SECONDS
    # Tests pass an httpx.MockTransport; production uses the default transport.
    self.transport = transport
    self._cached_oauth_token = None
    self._cached_oauth_token_expires_at = 0

  def _http_client(self):
    return httpx.AsyncClient(
      timeout=httpx.Timeout(self.timeout_seconds),
      transport=self.transport,
    )

  # -----------------------------------------------------------------------
  # OAuth2 bearer token
  # -----------------------------------------------------------------------

  async def _get_access_token(self):
    """
    Get a PayPal OAuth2 bearer token. Caches until near expiry.
    Uses client_credentials grant with HTTP Basic auth.
    """
    now = time.time()
    refresh_margin = config.PAYPAL_TOKEN_REFRESH_MARGIN_SECONDS
    if self._cached_oauth_token and now < self._cached_oauth_token_expires_at - refresh_margin:
      return self._cached_oauth_token

    try:
      async with self._http_client() as http_client:
        response = await http_client.post(
          f"{self.api_base_url}/v1/oauth2/token",
          auth=(self.client_id, self.secret_key),
          data={"grant_type": "client_credentials"},
          headers={"Accept": "application/json"},
        )
    except httpx.TimeoutException as timeout_error:
      raise UpstreamTimeoutError(
        f"PayPal token request timed out after {self.timeout_seconds}s"
      ) from timeout_error
    except httpx.HTTPError as transport_error:
      raise UpstreamError(f"PayPal token request failed: {transport_error}") from transport_error

    token_data = _response_json_or_empty(response)
    if not response.is_success:
      logger.error(
        "PayPal token request failed: status=%s, debug_id=%s",
        response.status_code, response.headers.get("paypal-debug-id"),
      )
      raise _build_upstream_error(
        response.status_code, response.headers.get("paypal-debug-id"), token_data, "token",
      )

    self._cached_oauth_token = token_data["access_token"]
    self._cached_oauth_token_expires_at = now + token_data.get("expires_in", 3600)

    logger.info("PayPal OAuth2 token refreshed (expires_in=%s)", token_data.get("expires_in"))
    return self._cached_oauth_token

  async def _auth_headers(self):
    """Get Authorization headers for PayPal API calls."""
    token = await self._get_access_token()
    return {
      "Authorization": f"Bearer {token}",
      "Content-Type": "application/json",
    }

  async def _send(self, method, path_or_url, operation, json_body=None, params=None, extra_headers=None):
    """
    Send one authenticated request. Returns (data, debug_id).

    path_or_url is either an API path ("/v2/...") or an absolute HATEOAS href.
    """
    if path_or_url.startswith("http"):
      url = path_or_url
    else:
      url = f"{self.api_base_url}{path_or_url}"

    headers = await self._auth_headers()
    if extra_headers:
      headers.update(extra_headers)

    try:
      async with self._http_client() as http_client:
        response = await http_client.request(
          method, url, json=json_body, params=params, headers=headers,
        )
    except httpx.TimeoutException as timeout_error:
      logger.warning("PayPal %s timed out after %ss", operation, self.timeout_seconds)
      raise UpstreamTimeoutError(
        f"PayPal {operation} timed out after {self.timeout_seconds}s"
      ) from timeout_error
    except httpx.HTTPError as transport_error:
      logger.error("PayPal %s transport failure: %s", operation, transport_error)
      raise UpstreamError(f"PayPal {operation} failed: {transport_error}") from transport_error

    debug_id = response.headers.get("paypal-debug-id")
    data = _response_json_or_empty(response)

    if not response.is_success:
      logger.warning(
        "PayPal %s failed: status=%s, debug_id=%s",
        operation, response.status_code, debug_id,
      )
      raise _build_upstream_error(response.status_code, debug_id, data, operation)

    return data, debug_id

  # -----------------------------------------------------------------------
  # Order lifecycle
  # -----------------------------------------------------------------------

  async def create_order(self, currency, amount, buyer_info=None, sku=None, item_name=None):
    """
    Create a PayPal order (intent CAPTURE).

    amount is the item total; shipping is added later via patch_order_amount.
    """
    buyer = normalize_buyer_info(buyer_info)

    item = {
      "name": (item_name or config.DEFAULT_ITEM_NAME)[:127],  # PayPal max 127 chars
      "quantity": "1",
      "unit_amount": {"currency_code": currency, "value": amount},
    }
    if sku:
      item["sku"] = str(sku)[:127]

    purchase_unit = {
      "reference_id": _PURCHASE_UNIT_REFERENCE_ID,
      "amount": {
        "currency_code": currency,
        "value": amount,
        "breakdown": {
          "item_total": {"currency_code": currency, "value": amount},
        },
      },
      "items": [item],
    }

    if buyer and buyer["shipping_address"]:
      shipping = {"address": buyer["shipping_address"]}
      if buyer["full_name"]:
        shipping["name"] = {"full_name": buyer["full_name"]}
      purchase_unit["shipping"] = shipping

    order_payload = {"intent": "CAPTURE", "purchase_units": [purchase_unit]}

    # PayPal may ignore/override this in some flows
    if buyer and buyer["email"]:
      order_payload["payer"] = {"email_address": buyer["email"]}

    order_data, debug_id = await self._send(
      "POST", "/v2/checkout/orders", "create order", json_body=order_payload,
    )

    logger.info(
      "PayPal order created: order_id=%s, amount=%s %s, shipping=%s",
      order_data.get("id"), amount, currency, bool(purchase_unit.get("shipping")),
    )

    return {
      "order_id": order_data.get("id"),
      "status": order_data.get("status", "CREATED"),
      "debug_id": debug_id,
      "raw": order_data,
    }

  async def get_order(self, order_id):
    order_data, debug_id = await self._send("GET", f"/v2/checkout/orders/{order_id}", "get order")

    purchase_units = order_data.get("purchase_units") or [{}]
    shipping = purchase_units[0].get("shipping")

    return {
      "order_id": order_data.get("id") or order_id,
      "status": order_data.get("status"),
      "shipping": shipping,
      "address": (shipping or {}).get("address"),
      "debug_id": debug_id,
      "raw": order_data,
    }

  async def patch_order_amount(self, order_id, item_total_cents, shipping_cents, currency):
    """
    Replace the order amount with item_total + shipping.

    IMPORTANT: PayPal rejects the patch unless total == sum of breakdown,
    so the total is computed here in cents, never by the caller.
    """
    patch_body = [{
      "op": "replace",
      "path": f"/purchase_units/@reference_id=='{_PURCHASE_UNIT_REFERENCE_ID}'/amount",
      "value": {
        "currency_code": currency,
        "value": format_cents(item_total_cents + shipping_cents),
        "breakdown": {
          "item_total": {"currency_code": currency, "value": format_cents(item_total_cents)},
          "shipping": {"currency_code": currency, "value": format_cents(shipping_cents)},
        },
      },
    }]

    _, debug_id = await self._send(
      "PATCH", f"/v2/checkout/orders/{order_id}", "patch order", json_body=patch_body,
    )

    logger.info(
      "PayPal order amount replaced: order_id=%s, item_total_cents=%d, shipping_cents=%d",
      order_id, item_total_cents, shipping_cents,
    )
    return {"ok": True, "debug_id": debug_id}

  async def capture_order(self, order_id):
    """Capture (finalize) a buyer-approved order."""
    capture_data, debug_id = await self._send(
      "POST",
      f"/v2/checkout/orders/{order_id}/capture",
      "capture order",
      json_body={},
      extra_headers={
        "Prefer": "return=representation",
        "PayPal-Request-Id": f"capture-{order_id}",  # idempotency key
      },
    )

    capture_id = None
    for purchase_unit in capture_data.get("purchase_units", []):
      captures = (purchase_unit.get("payments") or {}).get("captures") or []
      if captures:
        capture_id = captures[0].get("id")
        break

    logger.info(
      "PayPal payment captured: order_id=%s, capture_id=%s, status=%s",
      order_id, capture_id, capture_data.get("status"),
    )

    return {
      "status": capture_data.get("status", "UNKNOWN"),
      "capture_id": capture_id,
      "debug_id": debug_id,
      "raw": capture_data,
    }

  # -----------------------------------------------------------------------
  # Captures and refunds
  # -----------------------------------------------------------------------

  async def get_capture(self, capture_id):
    capture_data, debug_id = await self._send(
      "GET", f"/v2/payments/captures/{capture_id}", "get capture",
    )
    capture = normalize_capture(capture_data, capture_id)
    capture["debug_id"] = debug_id
    return capture

  async def list_capture_refunds(self, capture_id, capture=None):
    """
    Itemized refunds for a capture.

    Replication lag is normal here: a capture that is not visible yet, a
    capture without a refund link, and a refund list answering 400/404/422
    all mean "nothing itemized yet" and return [].
    """
    if capture is None:
      try:
        capture = await self.get_capture(capture_id)
      except ProcessorNotFoundError:
        return []

    refund_link = _find_link_href(capture.get("links"), "refund")
    if not refund_link:
      return []

    try:
      refunds_data, _ = await self._send("GET", refund_link, "list capture refunds")
    except UpstreamError as refund_list_error:
      if refund_list_error.http_status in _EMPTY_REFUND_LIST_HTTP_STATUSES:
        logger.info(
          "PayPal refund list for capture_id=%s answered %s; treating as empty",
          capture_id, refund_list_error.http_status,
        )
        return []
      raise

    return normalize_refund_list_payload(refunds_data, capture_id)

  async def get_refund(self, refund_id):
    refund_data, debug_id = await self._send(
      "GET", f"/v2/payments/refunds/{refund_id}", "get refund",
    )
    refund = normalize_refund(refund_data)
    refund["debug_id"] = debug_id
    refund["raw"] = refund_data
    return refund

  async def issue_refund(self, capture_id, amount_cents=None, currency=None, note_to_payer=None):
    """
    Refund a previously captured payment.
    If amount_cents is None, PayPal refunds the whole remaining balance.
    """
    refund_payload = {}
    if amount_cents is not None:
      refund_payload["amount"] = {
        "currency_code": currency or config.DEFAULT_CURRENCY,
        "value": format_cents(amount_cents),
      }
    if note_to_payer:
      refund_payload["note_to_payer"] = note_to_payer[:255]  # PayPal max

    refund_data, debug_id = await self._send(
      "POST",
      f"/v2/payments/captures/{capture_id}/refund",
      "refund",
      json_body=refund_payload,
      extra_headers={"Prefer": "return=representation"},
    )

    refund = normalize_refund(refund_data, capture_id)
    refund["debug_id"] = debug_id
    refund["raw"] = refund_data

    logger.info(
      "PayPal refund issued: capture_id=%s, refund_id=%s, amount_cents=%s, status=%s, debug_id=%s",
      capture_id, refund["refund_id"], refund["amount_cents"], refund["status"], debug_id,
    )
    return refund

  # -----------------------------------------------------------------------
  # Transaction reporting feed
  # -----------------------------------------------------------------------

  async def list_transactions(self, start_time=None, end_time=None, page_size=None):
    now = datetime.datetime.now(datetime.timezone.utc)
    end_time = parse_timestamp(end_time) or now
    start_time = parse_timestamp(start_time) or (
      end_time - datetime.timedelta(days=config.TRANSACTION_REPORT_DEFAULT_WINDOW_DAYS)
    )

    try:
      page_size = int(page_size or config.TRANSACTION_REPORT_DEFAULT_PAGE_SIZE)
    except (TypeError, ValueError):
      page_size = config.TRANSACTION_REPORT_DEFAULT_PAGE_SIZE
    page_size = max(1, min(page_size, config.TRANSACTION_REPORT_MAX_PAGE_SIZE))

    report_data, debug_id = await self._send(
      "GET",
      "/v1/reporting/transactions",
      "transaction report",
      params={
        "start_date": format_reporting_timestamp(start_time),
        "end_date": format_reporting_timestamp(end_time),
        "page_size": str(page_size),
        "fields": "transaction_info,payer_info",
      },
    )

    transactions = [
      normalize_transaction_detail(detail)
      for detail in report_data.get("transaction_details") or []
      if isinstance(detail, dict)
    ]
    return {"transactions": transactions, "debug_id": debug_id}

  # -----------------------------------------------------------------------
  # Verify webhook signature
  # -----------------------------------------------------------------------

  async def verify_event_signature(self, headers, raw_body):
    """
    Verify a PayPal webhook signature using PayPal's verification API.

    Recoverable problems (missing headers, bad JSON, PayPal unreachable)
    return False. Only missing server-side configuration raises.
    """
    header_map = {k.lower(): v for k, v in (headers or {}).items()}

    if not has_webhook_transmission_headers(header_map):
      logger.warning("PayPal webhook missing required transmission headers")
      return False

    if not self.webhook_id or not self.client_id or not self.secret_key:
      raise WebhookMisconfiguredError(
        "PayPal webhook id or API credentials are not configured on this server"
      )

    try:
      webhook_event = json.loads(raw_body)
    except (TypeError, ValueError):
      logger.warning("PayPal webhook body is not valid JSON; cannot verify")
      return False

    verification_payload = {
      "auth_algo": header_map.get("paypal-auth-algo", "SHA256withRSA"),
      "cert_url": header_map["paypal-cert-url"],
      "transmission_id": header_map["paypal-transmission-id"],
      "transmission_sig": header_map["paypal-transmission-sig"],
      "transmission_time": header_map["paypal-transmission-time"],
      "webhook_id": self.webhook_id,
      "webhook_event": webhook_event,
    }

    try:
      result, _ = await self._send(
        "POST",
        "/v1/notifications/verify-webhook-signature",
        "verify webhook signature",
        json_body=verification_payload,
      )
    except UpstreamError as verification_error:
      logger.error("PayPal webhook signature verification error: %s", verification_error)
      return False

    verification_status = result.get("verification_status", "")
    is_valid = verification_status == "SUCCESS"

    if not is_valid:
      logger.warning(
        "PayPal webhook signature verification failed: status=%s, transmission_id=%s",
        verification_status, header_map["paypal-transmission-id"],
      )

    return is_valid


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_processor_gateway_singleton = None


def get_processor_gateway():
  """Get the PayPal processor gateway singleton."""
  global _processor_gateway_singleton
  if _processor_gateway_singleton is None:
    _processor_gateway_singleton = PayPalProcessorGateway()
  return _processor_gateway_singleton
