"""
PayPal Checkout Backoffice -- Checkout Order Router

Called back by the hosted PayPal button / card fields running in the
buyer's browser:

  POST  /api/orders               -- create order (createOrder callback)
  GET   /api/orders/{id}          -- fetch order (shipping address entered at PayPal)
  PATCH /api/orders/{id}          -- set final amount: item total + shipping
  POST  /api/orders/{id}/capture  -- capture (onApprove callback)

Shipping fee lookup happens in the browser; this router only insists
that itemTotal + shippingValue reaches PayPal as an exact breakdown.
"""

import logging

from fastapi import APIRouter, Request

import config
from routers.responses import (
  _backoffice_error_response,
  _error_response,
  _read_json_object,
  _success_response,
)
from services.amount_service import (
  format_cents,
  normalize_currency_code,
  parse_amount_input_to_cents,
)
from services.payment_errors import BackofficeError
from services.paypal_payment_provider import get_processor_gateway

logger = logging.getLogger("backoffice.orders")

router = APIRouter(prefix="/api/orders", tags=["orders"])


# =========================================================================
# POST /api/orders
# =========================================================================

@router.post("")
async def create_checkout_order(request: Request):
  """
  Create a PayPal order for the selected product.

  Request body (JSON):
    {
      "currency": "USD",
      "amount": "10.00",
      "sku": "TSHIRT-01",
      "name": "T-Shirt",
      "buyerInfo": {                      (optional)
        "fullName": "...", "email": "...",
        "address": {"address_line_1", "admin_area_2", "admin_area_1",
                    "postal_code", "country_code"}
      }
    }

  Response (201): {"orderID", "status", "debugId", "meta": {"sku", "name"}}
  """
  try:
    body = await _read_json_object(request)
    currency = normalize_currency_code(body.get("currency"), default=config.DEFAULT_CURRENCY)
    amount_cents = parse_amount_input_to_cents(body.get("amount", config.DEFAULT_ORDER_AMOUNT))

    order = await get_processor_gateway().create_order(
      currency,
      format_cents(amount_cents),
      buyer_info=body.get("buyerInfo"),
      sku=body.get("sku"),
      item_name=body.get("name"),
    )
  except BackofficeError as order_error:
    logger.warning("Create order failed: %s", order_error.message)
    return _backoffice_error_response(order_error)

  return _success_response(
    {
      "orderID": order["order_id"],
      "status": order["status"],
      "debugId": order["debug_id"],
      "meta": {"sku": body.get("sku"), "name": body.get("name")},
    },
    http_status_code=201,
  )


# =========================================================================
# GET /api/orders/{order_id}
# =========================================================================

@router.get("/{order_id}")
async def get_checkout_order(order_id: str):
  """Fetch an order, mainly for the shipping address the buyer picked at PayPal."""
  try:
    order = await get_processor_gateway().get_order(order_id)
  except BackofficeError as order_error:
    return _backoffice_error_response(order_error)

  return _success_response({
    "orderID": order["order_id"],
    "status": order["status"],
    "shipping": order["shipping"],
    "address": order["address"],
    "debugId": order["debug_id"],
  })


# =========================================================================
# PATCH /api/orders/{order_id}
# =========================================================================

@router.patch("/{order_id}")
async def patch_checkout_order_amount(order_id: str, request: Request):
  """
  Replace the order amount with itemTotal + shippingValue.

  Request body (JSON):
    {"currency": "USD", "itemTotal": "10.00", "shippingValue": "4.99"}
  """
  try:
    body = await _read_json_object(request)
  except BackofficeError as body_error:
    return _backoffice_error_response(body_error)

  item_total = body.get("itemTotal")
  shipping_value = body.get("shippingValue")
  if item_total in (None, "") or shipping_value in (None, ""):
    return _error_response(
      400, "VALIDATION_ERROR",
      'Missing itemTotal or shippingValue. Example: { "itemTotal":"10.00", "shippingValue":"4.99" }',
    )

  try:
    currency = normalize_currency_code(body.get("currency"), default=config.DEFAULT_CURRENCY)
    item_total_cents = parse_amount_input_to_cents(item_total, field_name="itemTotal")
    shipping_cents = parse_amount_input_to_cents(
      shipping_value, field_name="shippingValue", allow_zero=True,
    )
    result = await get_processor_gateway().patch_order_amount(
      order_id, item_total_cents, shipping_cents, currency,
    )
  except BackofficeError as patch_error:
    logger.warning("Patch order %s failed: %s", order_id, patch_error.message)
    return _backoffice_error_response(patch_error)

  return _success_response({
    "orderID": order_id,
    "itemTotal": format_cents(item_total_cents),
    "shippingValue": format_cents(shipping_cents),
    "total": format_cents(item_total_cents + shipping_cents),
    "currency": currency,
    "debugId": result["debug_id"],
  })


# =========================================================================
# POST /api/orders/{order_id}/capture
# =========================================================================

@router.post("/{order_id}/capture")
async def capture_checkout_order(order_id: str):
  """Capture a buyer-approved order. Response: {"status", "captureId", "debugId"}"""
  try:
    capture = await get_processor_gateway().capture_order(order_id)
  except BackofficeError as capture_error:
    logger.warning("Capture of order %s failed: %s", order_id, capture_error.message)
    return _backoffice_error_response(capture_error)

  return _success_response({
    "orderID": order_id,
    "status": capture["status"],
    "captureId": capture["capture_id"],
    "debugId": capture["debug_id"],
  })
