"""
PayPal Checkout Backoffice -- Admin Authentication

Guards the operator endpoints (/api/admin/*) with a shared API key.

Accepted credentials (either one):
  Authorization: Bearer <ADMIN_API_KEY>
  X-Admin-Key: <ADMIN_API_KEY>

An empty ADMIN_API_KEY disables the check entirely (local development).
"""

import hmac
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

import config

logger = logging.getLogger("backoffice.admin_auth")


def extract_presented_admin_key(request):
  """Return the admin key presented on the request, or None."""
  auth_header = request.headers.get("authorization", "")
  if auth_header.lower().startswith("bearer "):
    token_string = auth_header[7:].strip()
    if token_string:
      return token_string

  header_key = request.headers.get("x-admin-key", "").strip()
  return header_key or None


def require_admin_api_key(request: Request):
  """
  Check the admin key on a request.

  Returns None when the request may proceed, or a 401 JSONResponse.

  Usage in a router:
    @router.get("/something")
    async def my_endpoint(request: Request):
      auth_error = require_admin_api_key(request)
      if auth_error is not None:
        return auth_error
      ...
  """
  expected_key = config.ADMIN_API_KEY
  if not expected_key:
    return None

  presented_key = extract_presented_admin_key(request)
  if presented_key and hmac.compare_digest(presented_key.encode(), expected_key.encode()):
    return None

  logger.warning("Rejected admin request to %s: missing or wrong admin key", request.url.path)
  return JSONResponse(
    status_code=401,
    content={
      "ok": False,
      "data": None,
      "error": {
        "code": "UNAUTHORIZED",
        "message": "Valid admin API key is required "
                   "(Authorization: Bearer <key> or X-Admin-Key header).",
      },
    },
  )
