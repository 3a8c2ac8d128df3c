"""
PayPal Checkout Backoffice -- Tests for the Refund Reconciliation Engine

Covers:
  - The worked scenarios (no refunds, itemized, terminal status, webhook ahead)
  - remaining = max(0, gross - total), never negative
  - Maximum-wins merge: order independence and monotonic totals
  - Idempotence for identical upstream answers
  - 404 fallback to feed / snapshot data, degraded and unavailable states
  - Optimistic fold-in of issued refunds and terminal marking
"""

import asyncio

import pytest

from conftest import make_capture, make_refund
from services.payment_errors import ReconciliationUnavailableError, UpstreamError
from services.reconciliation_service import (
  STATUS_NOT_REFUNDED,
  STATUS_PARTIALLY_REFUNDED,
  STATUS_REFUNDED,
  STATUS_UNKNOWN,
  classify_refund_status,
  compute_remaining_cents,
  has_source_mismatch,
  is_refund_pending,
)
from services.snapshot_store import InMemorySnapshotStore


def _put_refund_snapshot(event_ingest, capture_id, total_cents, status=None):
  event_ingest.refund_store.put(capture_id, {
    "capture_id": capture_id,
    "total_cents": total_cents,
    "currency": "USD",
    "status": status,
  })


# ===========================================================================
# Test: status labelling
# ===========================================================================

class TestClassifyRefundStatus:

  def test_zero_is_not_refunded(self):
    assert classify_refund_status(0, 5000) == STATUS_NOT_REFUNDED

  def test_one_cent_is_within_tolerance(self):
    assert classify_refund_status(1, 5000) == STATUS_NOT_REFUNDED

  def test_partial(self):
    assert classify_refund_status(2000, 5000) == STATUS_PARTIALLY_REFUNDED

  def test_one_cent_short_of_gross_is_refunded(self):
    assert classify_refund_status(4999, 5000) == STATUS_REFUNDED

  def test_unknown_gross_with_refunds_is_unknown(self):
    assert classify_refund_status(2000, None) == STATUS_UNKNOWN

  def test_remaining_never_negative(self):
    assert compute_remaining_cents(5000, 7000) == 0
    assert compute_remaining_cents(5000, 2000) == 3000
    assert compute_remaining_cents(None, 2000) is None


# ===========================================================================
# Test: worked scenarios
# ===========================================================================

class TestReconciliationScenarios:

  def test_no_refunds_anywhere(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)

    state = asyncio.run(engine.reconcile("C1"))

    assert state["gross_amount_cents"] == 5000
    assert state["total_refunded_cents"] == 0
    assert state["remaining_cents"] == 5000
    assert state["status"] == STATUS_NOT_REFUNDED
    assert state["degraded"] is False

  def test_itemized_refund_without_snapshot(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 2000)]

    state = asyncio.run(engine.reconcile("C1"))

    assert state["total_refunded_cents"] == 2000
    assert state["status"] == STATUS_PARTIALLY_REFUNDED
    assert state["remaining_cents"] == 3000
    assert [refund["refund_id"] for refund in state["refunds"]] == ["R1"]
    assert "itemized_refunds" in state["sources"]

  def test_terminal_status_before_refund_list(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000, status="REFUNDED")

    state = asyncio.run(engine.reconcile("C1"))

    assert state["total_refunded_cents"] == 5000
    assert state["status"] == STATUS_REFUNDED
    assert state["remaining_cents"] == 0
    assert "capture_status" in state["sources"]

  def test_webhook_snapshot_ahead_of_itemized_list(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 2000)]
    _put_refund_snapshot(event_ingest, "C1", 5000)

    state = asyncio.run(engine.reconcile("C1"))

    assert state["total_refunded_cents"] == 5000
    assert state["status"] == STATUS_REFUNDED
    assert state["remaining_cents"] == 0
    assert "event_snapshot" in state["sources"]

  def test_feed_fallback_folds_in(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)

    state = asyncio.run(engine.reconcile("C1", feed_fallback={"refunded_cents": 1500}))

    assert state["total_refunded_cents"] == 1500
    assert state["remaining_cents"] == 3500
    assert "report" in state["sources"]

  def test_refunds_beyond_gross_leave_zero_remaining(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 3000), make_refund("R2", "C1", 3000)]

    state = asyncio.run(engine.reconcile("C1"))

    assert state["total_refunded_cents"] == 6000
    assert state["remaining_cents"] == 0


# ===========================================================================
# Test: explicit status overrides
# ===========================================================================

class TestExplicitStatusOverride:

  def test_partially_refunded_lifts_not_refunded(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000, status="PARTIALLY_REFUNDED")

    state = asyncio.run(engine.reconcile("C1"))

    assert state["status"] == STATUS_PARTIALLY_REFUNDED
    assert state["remaining_cents"] == 5000

  def test_partially_refunded_never_downgrades_refunded(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000, status="PARTIALLY_REFUNDED")
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 5000)]

    state = asyncio.run(engine.reconcile("C1"))

    assert state["status"] == STATUS_REFUNDED

  def test_refund_snapshot_status_refunded_forces_full_total(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    _put_refund_snapshot(event_ingest, "C1", 2000, status="REFUNDED")

    state = asyncio.run(engine.reconcile("C1"))

    assert state["status"] == STATUS_REFUNDED
    assert state["total_refunded_cents"] == 5000
    assert state["remaining_cents"] == 0


# ===========================================================================
# Test: maximum wins
# ===========================================================================

class TestMaximumWins:

  def test_order_of_sources_does_not_matter(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    _put_refund_snapshot(event_ingest, "C1", 3000)
    snapshot_high = asyncio.run(engine.reconcile("C1", feed_fallback={"refunded_cents": 2000}))

    fake_gateway.captures["C2"] = make_capture("C2", 5000)
    _put_refund_snapshot(event_ingest, "C2", 2000)
    feed_high = asyncio.run(engine.reconcile("C2", feed_fallback={"refunded_cents": 3000}))

    assert snapshot_high["total_refunded_cents"] == feed_high["total_refunded_cents"] == 3000

  def test_transient_empty_list_does_not_erase_prior_refund(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 3000)]
    first = asyncio.run(engine.reconcile("C1"))

    fake_gateway.refund_lists["C1"] = []
    second = asyncio.run(engine.reconcile("C1"))

    assert first["total_refunded_cents"] == 3000
    assert second["total_refunded_cents"] == 3000
    assert second["remaining_cents"] == 2000
    assert "observed" in second["sources"]

  def test_total_is_monotonic_over_a_sequence_of_observations(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 10000)
    observations = [
      ("list", 1000),
      ("snapshot", 2500),
      ("list", 0),
      ("feed", 2000),
      ("list", 4000),
      ("snapshot", 1000),
      ("feed", 0),
    ]
    previous_total = 0
    previous_remaining = 10000
    for source, cents in observations:
      fake_gateway.refund_lists["C1"] = []
      event_ingest.refund_store = InMemorySnapshotStore()
      feed_fallback = None
      if source == "list":
        fake_gateway.refund_lists["C1"] = [make_refund("R", "C1", cents)] if cents else []
      elif source == "snapshot":
        _put_refund_snapshot(event_ingest, "C1", cents)
      else:
        feed_fallback = {"refunded_cents": cents}

      state = asyncio.run(engine.reconcile("C1", feed_fallback=feed_fallback))

      assert state["total_refunded_cents"] >= previous_total
      assert state["remaining_cents"] <= previous_remaining
      previous_total = state["total_refunded_cents"]
      previous_remaining = state["remaining_cents"]

    assert previous_total == 4000


# ===========================================================================
# Test: idempotence
# ===========================================================================

class TestIdempotence:

  @pytest.mark.parametrize("refund_amounts", [[], [2000], [1000, 1500]])
  def test_identical_answers_identical_state(self, fake_gateway, engine, refund_amounts):
    fake_gateway.captures["C1"] = make_capture("C1", 5000, order_id="O1")
    fake_gateway.refund_lists["C1"] = [
      make_refund(f"R{index}", "C1", cents) for index, cents in enumerate(refund_amounts)
    ]

    first = asyncio.run(engine.reconcile("C1"))
    second = asyncio.run(engine.reconcile("C1"))

    assert first == second


# ===========================================================================
# Test: failures
# ===========================================================================

class TestReconciliationFailures:

  def test_not_found_capture_falls_back_to_feed(self, engine):
    state = asyncio.run(engine.reconcile(
      "C404",
      feed_fallback={"refunded_cents": 1500, "gross_amount_cents": 5000, "currency": "USD"},
    ))

    assert state["total_refunded_cents"] == 1500
    assert state["remaining_cents"] == 3500
    assert state["status"] == STATUS_PARTIALLY_REFUNDED
    assert state["degraded"] is False

  def test_not_found_capture_without_any_data(self, engine):
    state = asyncio.run(engine.reconcile("C404"))

    assert state["total_refunded_cents"] == 0
    assert state["gross_amount_cents"] is None
    assert state["remaining_cents"] is None
    assert state["status"] == STATUS_NOT_REFUNDED

  def test_gross_from_capture_event_snapshot(self, event_ingest, engine):
    event_ingest.capture_store.put("C1", {"capture_id": "C1", "amount_cents": 5000, "currency": "EUR"})

    state = asyncio.run(engine.reconcile("C1"))

    assert state["gross_amount_cents"] == 5000
    assert state["currency"] == "EUR"
    assert state["remaining_cents"] == 5000

  def test_every_source_failing_raises_unavailable(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = UpstreamError("PayPal get capture error: HTTP 500", http_status=500, debug_id="dbg-1")

    with pytest.raises(ReconciliationUnavailableError) as raised:
      asyncio.run(engine.reconcile("C1"))

    partial_state = raised.value.refund_state
    assert partial_state["degraded"] is True
    assert partial_state["upstream_errors"][0]["debug_id"] == "dbg-1"

  def test_refund_list_failure_without_other_evidence_raises(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = UpstreamError("boom", http_status=503)

    with pytest.raises(ReconciliationUnavailableError):
      asyncio.run(engine.reconcile("C1"))

  def test_upstream_error_with_snapshot_returns_degraded_state(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = UpstreamError("boom", http_status=502)
    event_ingest.capture_store.put("C1", {"capture_id": "C1", "amount_cents": 5000, "currency": "USD"})
    _put_refund_snapshot(event_ingest, "C1", 1000)

    state = asyncio.run(engine.reconcile("C1"))

    assert state["degraded"] is True
    assert state["total_refunded_cents"] == 1000
    assert state["remaining_cents"] == 4000
    assert state["upstream_errors"][0]["operation"] == "get_capture"


# ===========================================================================
# Test: optimistic updates
# ===========================================================================

class TestOptimisticUpdates:

  def test_issued_refund_visible_before_processor_catches_up(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    prior_state = asyncio.run(engine.reconcile("C1"))

    updated = engine.record_issued_refund("C1", make_refund("REF-1", "C1", 2000), prior_state)
    assert updated["total_refunded_cents"] == 2000
    assert updated["remaining_cents"] == 3000

    # Refund list still empty: replication lag
    state = asyncio.run(engine.reconcile("C1"))
    assert state["total_refunded_cents"] == 2000
    assert state["remaining_cents"] == 3000
    assert any(refund.get("optimistic") for refund in state["refunds"])

  def test_optimistic_refund_not_duplicated_once_itemized(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    prior_state = asyncio.run(engine.reconcile("C1"))
    engine.record_issued_refund("C1", make_refund("REF-1", "C1", 2000), prior_state)

    fake_gateway.refund_lists["C1"] = [make_refund("REF-1", "C1", 2000)]
    state = asyncio.run(engine.reconcile("C1"))

    assert state["total_refunded_cents"] == 2000
    assert [refund["refund_id"] for refund in state["refunds"]] == ["REF-1"]

  def test_full_refund_without_amount_takes_remaining(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    prior_state = asyncio.run(engine.reconcile("C1"))

    refund_record = make_refund("REF-1", "C1", 0)
    updated = engine.record_issued_refund("C1", refund_record, prior_state)

    assert updated["total_refunded_cents"] == 5000
    assert updated["status"] == STATUS_REFUNDED

  def test_marked_terminal_capture_stays_refunded(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    prior_state = asyncio.run(engine.reconcile("C1"))

    engine.mark_capture_terminal("C1", prior_state)
    state = asyncio.run(engine.reconcile("C1"))

    assert state["status"] == STATUS_REFUNDED
    assert state["remaining_cents"] == 0
    assert state["total_refunded_cents"] == 5000


# ===========================================================================
# Test: per-source totals and discrepancy flags
# ===========================================================================

class TestSourceDiagnostics:

  def test_pending_ignores_one_cent_and_unknown_processor_without_refunds(self):
    assert is_refund_pending(1, 0) is False
    assert is_refund_pending(0, None) is False
    assert is_refund_pending(500, None) is True
    assert is_refund_pending(2001, 2000) is False
    assert is_refund_pending(2002, 2000) is True

  def test_mismatch_uses_one_cent_tolerance(self):
    assert has_source_mismatch({"event_snapshot": 2001, "itemized": 2000}, 2000) is False
    assert has_source_mismatch({"event_snapshot": 2002}, 2000) is True
    assert has_source_mismatch({"report": 1500}, None) is False

  def test_sources_in_agreement(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 2000)]
    _put_refund_snapshot(event_ingest, "C1", 2000)

    state = asyncio.run(engine.reconcile("C1", feed_fallback={"refunded_cents": -2000}))

    assert state["source_totals"] == {
      "itemized": 2000,
      "event_snapshot": 2000,
      "report": 2000,
      "observed": None,
      "optimistic": 0,
    }
    assert state["processor_total_cents"] == 2000
    assert state["pending"] is False
    assert state["mismatch"] is False

  def test_snapshot_ahead_of_itemized_list_is_flagged(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    fake_gateway.refund_lists["C1"] = [make_refund("R1", "C1", 2000)]
    _put_refund_snapshot(event_ingest, "C1", 3500)

    state = asyncio.run(engine.reconcile("C1"))

    assert state["source_totals"]["itemized"] == 2000
    assert state["source_totals"]["event_snapshot"] == 3500
    assert state["processor_total_cents"] == 2000
    assert state["pending"] is True
    assert state["mismatch"] is True

  def test_issued_refund_pending_until_listed(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000)
    prior_state = asyncio.run(engine.reconcile("C1"))
    assert prior_state["pending"] is False

    updated = engine.record_issued_refund("C1", make_refund("REF-1", "C1", 2000), prior_state)
    assert updated["pending"] is True
    assert updated["source_totals"]["optimistic"] == 2000

    lagging = asyncio.run(engine.reconcile("C1"))
    assert lagging["source_totals"]["observed"] == 2000
    assert lagging["source_totals"]["optimistic"] == 2000
    assert lagging["pending"] is True

    fake_gateway.refund_lists["C1"] = [make_refund("REF-1", "C1", 2000)]
    settled = asyncio.run(engine.reconcile("C1"))
    assert settled["source_totals"]["observed"] is None
    assert settled["source_totals"]["optimistic"] == 0
    assert settled["pending"] is False
    assert settled["mismatch"] is False

  def test_terminal_capture_status_counts_as_processor_total(self, fake_gateway, engine):
    fake_gateway.captures["C1"] = make_capture("C1", 5000, status="REFUNDED")

    state = asyncio.run(engine.reconcile("C1"))

    assert state["source_totals"]["itemized"] == 0
    assert state["processor_total_cents"] == 5000
    assert state["pending"] is False

  def test_unreachable_processor_leaves_snapshot_refund_pending(self, fake_gateway, event_ingest, engine):
    fake_gateway.captures["C1"] = UpstreamError("boom", http_status=502)
    event_ingest.capture_store.put("C1", {"capture_id": "C1", "amount_cents": 5000, "currency": "USD"})
    _put_refund_snapshot(event_ingest, "C1", 1000)

    state = asyncio.run(engine.reconcile("C1"))

    assert state["source_totals"]["itemized"] is None
    assert state["processor_total_cents"] is None
    assert state["pending"] is True
    assert state["mismatch"] is False
