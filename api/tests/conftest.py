"""
Shared fixtures: an in-process fake of the PayPal gateway and the
services wired to it with in-memory snapshot stores.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.event_ingest_service import EventIngestService  # noqa: E402
from services.payment_errors import ProcessorNotFoundError  # noqa: E402
from services.payment_provider_interface import ProcessorGatewayInterface  # noqa: E402
from services.reconciliation_service import RefundReconciliationEngine  # noqa: E402
from services.refund_gate_service import RefundGate  # noqa: E402
from services.snapshot_store import InMemorySnapshotStore  # noqa: E402


def make_capture(capture_id, amount_cents, status="COMPLETED", order_id=None, currency="USD",
                 created_at="2026-01-10T12:00:00Z"):
  return {
    "capture_id": capture_id,
    "order_id": order_id,
    "status": status,
    "amount_cents": amount_cents,
    "currency": currency,
    "created_at": created_at,
    "payer_email": None,
    "links": [],
    "raw": {},
  }


def make_refund(refund_id, capture_id, amount_cents, currency="USD", status="COMPLETED"):
  return {
    "refund_id": refund_id,
    "capture_id": capture_id,
    "amount_cents": amount_cents,
    "currency": currency,
    "status": status,
    "created_at": "2026-01-11T12:00:00Z",
  }


class FakeProcessorGateway(ProcessorGatewayInterface):
  """
  Scriptable stand-in for PayPalProcessorGateway.

  captures / refund_lists values may be an Exception instance to raise.
  An unknown capture id answers ProcessorNotFoundError, like PayPal's 404.
  """

  def __init__(self):
    self.captures = {}
    self.refund_lists = {}
    self.refunds = {}
    self.transactions = []
    self.transactions_error = None
    self.signature_valid = True
    self.issue_refund_error = None
    # False simulates PayPal's replication lag after a refund
    self.reflect_issued_refunds = False
    self.issued_refunds = []
    self.calls = []

  def _lookup(self, table, key):
    value = table.get(key)
    if isinstance(value, Exception):
      raise value
    return value

  async def create_order(self, currency, amount, buyer_info=None, sku=None, item_name=None):
    self.calls.append(("create_order", currency, amount))
    return {"order_id": "ORDER-1", "status": "CREATED", "debug_id": "dbg-create", "raw": {}}

  async def get_order(self, order_id):
    self.calls.append(("get_order", order_id))
    address = {"address_line_1": "1 Main St", "country_code": "US"}
    return {
      "order_id": order_id, "status": "APPROVED",
      "shipping": {"address": address}, "address": address,
      "debug_id": "dbg-order", "raw": {},
    }

  async def patch_order_amount(self, order_id, item_total_cents, shipping_cents, currency):
    self.calls.append(("patch_order_amount", order_id, item_total_cents, shipping_cents, currency))
    return {"ok": True, "debug_id": "dbg-patch"}

  async def capture_order(self, order_id):
    self.calls.append(("capture_order", order_id))
    return {"status": "COMPLETED", "capture_id": "CAP-NEW", "debug_id": "dbg-capture", "raw": {}}

  async def get_capture(self, capture_id):
    self.calls.append(("get_capture", capture_id))
    capture = self._lookup(self.captures, capture_id)
    if capture is None:
      raise ProcessorNotFoundError("PayPal get capture: resource not found", http_status=404)
    return dict(capture)

  async def list_capture_refunds(self, capture_id, capture=None):
    self.calls.append(("list_capture_refunds", capture_id))
    refunds = self._lookup(self.refund_lists, capture_id)
    return [dict(refund) for refund in refunds or []]

  async def get_refund(self, refund_id):
    self.calls.append(("get_refund", refund_id))
    refund = self._lookup(self.refunds, refund_id)
    if refund is None:
      raise ProcessorNotFoundError("PayPal get refund: resource not found", http_status=404)
    return dict(refund)

  async def issue_refund(self, capture_id, amount_cents=None, currency=None, note_to_payer=None):
    self.calls.append(("issue_refund", capture_id, amount_cents))
    if self.issue_refund_error is not None:
      raise self.issue_refund_error

    if amount_cents is None:
      capture = self.captures.get(capture_id) or {}
      already_refunded = sum(r["amount_cents"] for r in self.refund_lists.get(capture_id) or [])
      amount_cents = (capture.get("amount_cents") or 0) - already_refunded

    refund = make_refund(f"REF-{len(self.issued_refunds) + 1}", capture_id, amount_cents, currency or "USD")
    refund["debug_id"] = "dbg-refund"
    self.issued_refunds.append(refund)
    if self.reflect_issued_refunds:
      self.refund_lists.setdefault(capture_id, []).append(dict(refund))
    return dict(refund)

  async def list_transactions(self, start_time=None, end_time=None, page_size=None):
    self.calls.append(("list_transactions", page_size))
    if self.transactions_error is not None:
      raise self.transactions_error
    return {"transactions": [dict(t) for t in self.transactions], "debug_id": "dbg-report"}

  async def verify_event_signature(self, headers, raw_body):
    self.calls.append(("verify_event_signature",))
    return self.signature_valid

  def call_names(self):
    return [call[0] for call in self.calls]


@pytest.fixture
def fake_gateway():
  return FakeProcessorGateway()


@pytest.fixture
def event_ingest(fake_gateway):
  return EventIngestService(
    gateway=fake_gateway,
    capture_store=InMemorySnapshotStore(),
    refund_store=InMemorySnapshotStore(),
  )


@pytest.fixture
def engine(fake_gateway, event_ingest):
  return RefundReconciliationEngine(
    gateway=fake_gateway,
    event_ingest=event_ingest,
    observed_store=InMemorySnapshotStore(),
  )


@pytest.fixture
def refund_gate(fake_gateway, engine):
  return RefundGate(gateway=fake_gateway, engine=engine)
