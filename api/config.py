"""
PayPal Checkout Backoffice -- Configuration

All configuration values with sensible defaults.
Override via environment variables or the systemd unit / .env file.
"""

import os

# --- PayPal REST API ---
# SECURITY: No hardcoded defaults -- must be set via environment variable or systemd unit
PAYPAL_CLIENT_ID = os.environ.get("BACKOFFICE_PAYPAL_CLIENT_ID", "")
PAYPAL_SECRET_KEY = os.environ.get("BACKOFFICE_PAYPAL_SECRET_KEY", "")
PAYPAL_API_BASE_URL = os.environ.get("BACKOFFICE_PAYPAL_API_URL", "https://api-m.sandbox.paypal.com")
# Empty means webhook signature verification is misconfigured on this server
PAYPAL_WEBHOOK_ID = os.environ.get("BACKOFFICE_PAYPAL_WEBHOOK_ID", "")

# Every processor call is bounded; exceeding this raises UpstreamTimeoutError
PAYPAL_HTTP_TIMEOUT_SECONDS = float(os.environ.get("BACKOFFICE_PAYPAL_TIMEOUT_SECONDS", "10"))
PAYPAL_TOKEN_REFRESH_MARGIN_SECONDS = 60

# --- Transaction reporting feed ---
TRANSACTION_REPORT_DEFAULT_WINDOW_DAYS = 30
TRANSACTION_REPORT_DEFAULT_PAGE_SIZE = 200
TRANSACTION_REPORT_MAX_PAGE_SIZE = 500  # PayPal max

# --- Operator console ---
CONSOLE_DEFAULT_ROW_LIMIT = 5
CONSOLE_MAX_ROW_LIMIT = 500

# Amounts are integer cents. One cent is the rounding slack used when
# labelling a capture as not / fully refunded.
AMOUNT_TOLERANCE_CENTS = 1

# --- Checkout defaults ---
DEFAULT_CURRENCY = "USD"
DEFAULT_ORDER_AMOUNT = "10.00"
DEFAULT_ITEM_NAME = "Demo Item"

# --- Event snapshot store ---
# "memory" (process lifetime) or "mysql" (survives restarts)
SNAPSHOT_STORE_BACKEND = os.environ.get("BACKOFFICE_SNAPSHOT_STORE", "memory")
SNAPSHOT_STORE_MAX_ENTRIES = int(os.environ.get("BACKOFFICE_SNAPSHOT_MAX_ENTRIES", "10000"))
SNAPSHOT_STORE_TTL_SECONDS = int(os.environ.get("BACKOFFICE_SNAPSHOT_TTL_SECONDS", str(7 * 24 * 3600)))

# --- MySQL Database (durable snapshot store only) ---
MYSQL_HOST = os.environ.get("BACKOFFICE_DB_HOST", "127.0.0.1")
MYSQL_PORT = int(os.environ.get("BACKOFFICE_DB_PORT", "3306"))
MYSQL_USER = os.environ.get("BACKOFFICE_DB_USER", "backoffice")
# SECURITY: No hardcoded default -- must be set via environment variable or systemd unit
MYSQL_PASSWORD = os.environ.get("BACKOFFICE_DB_PASSWORD", "")
MYSQL_DATABASE = os.environ.get("BACKOFFICE_DB_NAME", "backoffice")

# --- Operator access ---
# Shared key for /api/admin/*. Empty disables the check (local development only).
ADMIN_API_KEY = os.environ.get("BACKOFFICE_ADMIN_API_KEY", "")

# --- API Settings ---
API_VERSION = "0.3.0"
API_HOST = os.environ.get("BACKOFFICE_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("BACKOFFICE_API_PORT", "3001"))
