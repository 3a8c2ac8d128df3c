"""
PayPal Checkout Backoffice -- Response Envelope

Every JSON endpoint answers with the same envelope:
  {"ok": true,  "data": {...}, "error": null}
  {"ok": false, "data": null,  "error": {"code", "message", ...}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from services.payment_errors import ValidationError


def _error_response(http_status_code, error_code, error_message):
  """Build a standard error envelope."""
  return JSONResponse(
    status_code=http_status_code,
    content={
      "ok": False,
      "data": None,
      "error": {"code": error_code, "message": error_message},
    },
  )


def _success_response(data, http_status_code=200):
  """Build a standard success envelope."""
  return JSONResponse(
    status_code=http_status_code,
    content={"ok": True, "data": data, "error": None},
  )


def _backoffice_error_response(backoffice_error):
  """Envelope for any BackofficeError; processor debug ids pass through."""
  return JSONResponse(
    status_code=backoffice_error.http_status_code,
    content={"ok": False, "data": None, "error": backoffice_error.to_error_payload()},
  )


async def _read_json_object(request: Request):
  """Parse the request body as a JSON object or raise ValidationError."""
  try:
    body = await request.json()
  except Exception:
    raise ValidationError("Request body must be valid JSON")
  if not isinstance(body, dict):
    raise ValidationError("Request body must be a JSON object")
  return body
