"""
PayPal Checkout Backoffice -- Amount Handling

All money inside the backoffice is integer cents paired with a currency
code. Decimal strings ("50.00") only exist at the edges: request bodies,
processor payloads, JSON responses.

Two parsers on purpose:
  - parse_amount_input_to_cents: strict, for operator/buyer input.
    Raises ValidationError.
  - parse_processor_amount_to_cents: lenient, for processor payloads.
    Returns None for missing/garbled values; never raises.
"""

import re
from decimal import Decimal, InvalidOperation

from services.payment_errors import ValidationError

# Positive decimal, at most two fraction digits. No sign, no exponent.
_AMOUNT_INPUT_PATTERN = re.compile(r"^\d+(\.\d{1,2})?$")

_CURRENCY_CODE_PATTERN = re.compile(r"^[A-Z]{3}$")


def parse_amount_input_to_cents(raw_amount, field_name="amount", allow_zero=False):
  """
  Parse a user-supplied amount ("5", "5.5", "5.00", 5, 5.5) into cents.

  Raises ValidationError unless the value is a positive decimal with at
  most two fraction digits. allow_zero admits "0.00" (shipping fees).
  """
  if raw_amount is None or isinstance(raw_amount, bool):
    raise ValidationError(f"'{field_name}' is required")

  amount_text = str(raw_amount).strip()
  if not _AMOUNT_INPUT_PATTERN.match(amount_text):
    raise ValidationError(f"Invalid '{field_name}' format. Use e.g. 5.00")

  cents = int(Decimal(amount_text) * 100)
  if cents <= 0 and not allow_zero:
    raise ValidationError(f"'{field_name}' must be > 0")
  return cents


def parse_processor_amount_to_cents(raw_value):
  """
  Parse an amount value from a processor payload into signed cents.

  Reporting rows carry negative values for refunds, so the sign is kept.
  Returns None when the value is missing or not a number.
  """
  if raw_value is None or raw_value == "":
    return None
  try:
    amount = Decimal(str(raw_value).strip())
  except InvalidOperation:
    return None
  if not amount.is_finite():
    return None
  return int((amount * 100).to_integral_value())


def format_cents(cents):
  """Render cents as the processor's decimal string: 5000 -> "50.00", -250 -> "-2.50"."""
  if cents is None:
    return None
  sign = "-" if cents < 0 else ""
  whole, fraction = divmod(abs(int(cents)), 100)
  return f"{sign}{whole}.{fraction:02d}"


def normalize_currency_code(raw_currency, default="USD"):
  """Uppercase a 3-letter ISO currency code; ValidationError when malformed."""
  if raw_currency is None or raw_currency == "":
    return default
  currency_code = str(raw_currency).strip().upper()
  if not _CURRENCY_CODE_PATTERN.match(currency_code):
    raise ValidationError("'currency' must be a 3-letter ISO currency code")
  return currency_code
