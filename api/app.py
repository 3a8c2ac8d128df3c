"""
PayPal Checkout Backoffice API

Checkout callbacks for the hosted PayPal button / card fields, PayPal
webhook ingest, and the staff console's refund reconciliation.
Port 3001.

Endpoints:
  /api/health                             -- health check
  /api/orders                             -- create / fetch / patch / capture orders
  /api/webhooks/paypal                    -- PayPal event notifications
  /api/admin/transactions                 -- reporting feed
  /api/admin/captures/{id}(/refunds|/refund-state)
  /api/admin/refunds(/{id})               -- issue / look up refunds
  /api/admin/console                      -- operator console rows
  /api/admin/webhooks/...                 -- webhook snapshot reads
  /api/docs                               -- Swagger UI documentation

Run with:
    uvicorn app:app --host 127.0.0.1 --port 3001
"""

import datetime
import logging

from fastapi import FastAPI
from pydantic import BaseModel

import config
from routers import admin, orders, webhooks

# --- Logging ---
logging.basicConfig(
  level=logging.INFO,
  format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("backoffice.api")

# --- FastAPI app ---
app = FastAPI(
  title="PayPal Checkout Backoffice API",
  description="Checkout order flow, PayPal webhook ingest and refund reconciliation "
              "for the staff console.",
  version=config.API_VERSION,
  docs_url="/api/docs",
  redoc_url="/api/redoc",
  openapi_url="/api/openapi.json",
)

# --- Register routers ---
app.include_router(orders.router)
app.include_router(admin.router)
app.include_router(webhooks.router)


# --- Health ---

class HealthResponse(BaseModel):
  status: str
  service: str
  version: str
  timestamp: str
  snapshot_store: str


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
  """Health check endpoint for monitoring and load balancers."""
  if config.SNAPSHOT_STORE_BACKEND == "mysql":
    try:
      import database
      if database.ping():
        snapshot_store_status = "mysql: connected"
      else:
        snapshot_store_status = "mysql: error"
    except Exception as db_error:
      snapshot_store_status = f"mysql: error: {db_error}"
  else:
    snapshot_store_status = "memory"

  return HealthResponse(
    status="healthy",
    service="paypal-checkout-backoffice",
    version=config.API_VERSION,
    timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
    snapshot_store=snapshot_store_status,
  )


if __name__ == "__main__":
  import uvicorn
  logger.info("Starting PayPal Checkout Backoffice API on %s:%d", config.API_HOST, config.API_PORT)
  uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
