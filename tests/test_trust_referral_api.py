"""
Tests for the Trust & Referral API layer: envelopes, audit rows, the
version registry, and error handling.
"""

import threading
from datetime import datetime, timedelta

import pytest

from api.algorithm_registry import (
    deprecate_version,
    get_current_version,
    list_versions,
    register_version,
)
from api.audit_log import TrustAuditLogEntry
from api.response_envelope import error_envelope, success_envelope
from api.trust_referral_api import TrustReferralAPI
from engine.trust_graph_manager import TrustGraphManager
from models.base import init_db
from models.trust_graph import ComputedTrustScore


@pytest.fixture
def db_session():
    Session = init_db("sqlite:///:memory:")
    session = Session()
    yield session
    session.close()


@pytest.fixture
def api(db_session):
    """anchor -> a -> b, b silent."""
    manager = TrustGraphManager(db_session)
    for node_id in ("anchor", "a", "b", "c"):
        manager.add_node(node_id)
    manager.set_allocations("anchor", {"a": 1.0})
    manager.set_allocations("a", {"b": 1.0})
    return TrustReferralAPI(db_session, caller_identity="test-harness")


# -----------------------------------------------------------------------
#  Trust scores
# -----------------------------------------------------------------------

def test_compute_trust_scores_envelope(api, db_session):
    resp = api.compute_trust_scores()

    assert resp.ok
    assert resp.api_version == "1.0.0"
    assert resp.diagnostics == []
    assert "anchor" in resp.explanation
    scores = resp.data["scores"]
    assert [s["node_id"] for s in scores[:3]] == ["anchor", "a", "b"]
    assert scores[0]["display_score"] == 100

    audit = db_session.get(TrustAuditLogEntry, resp.audit_id)
    assert audit.operation == "compute_trust_scores"
    assert audit.status == "success"
    assert audit.caller_identity == "test-harness"


def test_non_converged_run_reports_a_diagnostic(api):
    api.update_allocations("b", {"a": 1.0}, recompute=False)
    resp = api.compute_trust_scores(max_iterations=3)

    assert resp.ok
    assert resp.data["converged"] is False
    assert any("did not converge" in d for d in resp.diagnostics)


def test_update_allocations_recomputes_with_user_update_label(api, db_session):
    resp = api.update_allocations("b", {"c": 1.0})

    assert resp.ok
    assert resp.data["allocations"] == {"c": pytest.approx(1.0)}
    assert resp.data["scores"]["triggered_by"] == "user_update"
    assert db_session.query(ComputedTrustScore).count() == 4


def test_update_allocations_without_recompute(api, db_session):
    resp = api.update_allocations("b", {}, recompute=False)

    assert resp.ok
    assert "scores" not in resp.data
    assert "only the anchor" in resp.explanation
    assert db_session.query(ComputedTrustScore).count() == 0


def test_invalid_allocation_returns_error_envelope(api, db_session):
    resp = api.update_allocations("a", {"b": 0.4})

    assert resp.status == "error"
    assert resp.data is None
    assert "sum to 1.0" in resp.explanation

    audit = db_session.get(TrustAuditLogEntry, resp.audit_id)
    assert audit.status == "error"
    assert "sum to 1.0" in audit.error_detail
    # The stored row is untouched.
    assert TrustGraphManager(db_session).get_allocations("a") == {"b": pytest.approx(1.0)}


def test_compute_decoupled_scores(api):
    resp = api.compute_decoupled_scores(workers=1)

    assert resp.ok
    assert resp.data["solver"] == "decoupled"
    assert all(s["display_score"] is None for s in resp.data["scores"])


def test_compare_solvers(api):
    api.update_allocations("b", {"a": 1.0}, recompute=False)
    resp = api.compare_solvers("a", {"a": 1.0}, workers=1)

    assert resp.ok
    assert abs(resp.data["standard_delta"]) > 0.1
    assert resp.data["decoupled_delta"] == pytest.approx(0.0, abs=1e-12)


def test_missing_anchor_is_an_error(api):
    resp = api.compute_trust_scores(anchor_id="nobody")

    assert resp.status == "error"
    assert "nobody" in resp.explanation


# -----------------------------------------------------------------------
#  Referrals
# -----------------------------------------------------------------------

def test_referral_flow_to_payment(api):
    assert api.forward_job("job-1", "a", "b").ok
    assert api.forward_job("job-1", "b", "c").ok

    created = api.create_referral("job-1", "cand-1", "c")
    assert created.ok
    assert created.data["chain_path"] == ["a", "b", "c"]
    assert created.data["status"] == "PENDING"

    referral_id = created.data["referral_id"]
    assert api.payment_splits(referral_id).status == "error"

    assert api.update_referral_status(referral_id, "HIRED").data["status"] == "HIRED"
    paid = api.payment_splits(referral_id)

    assert paid.ok
    assert [s["amount"] for s in paid.data["payment"]] == [816, 1837, 7347]
    assert paid.data["total_paid"] == 10000


def test_self_forward_returns_error_envelope(api):
    resp = api.forward_job("job-1", "a", "a")

    assert resp.status == "error"
    assert "yourself" in resp.explanation


def test_duplicate_forward_returns_same_row(api):
    first = api.forward_job("job-1", "a", "b")
    second = api.forward_job("job-1", "a", "b")

    assert first.data["forward_id"] == second.data["forward_id"]


# -----------------------------------------------------------------------
#  Audit log
# -----------------------------------------------------------------------

def test_query_audit_log_filters(api):
    api.compute_trust_scores()
    api.forward_job("job-1", "a", "a")
    api.forward_job("job-1", "a", "b")

    forwards = api.query_audit_log(operation="forward_job")
    errors = api.query_audit_log(status="error")

    assert len(forwards) == 2
    assert len(errors) == 1
    assert errors[0]["request_payload"]["to_node_id"] == "a"
    assert errors[0]["response_payload"] is None


# -----------------------------------------------------------------------
#  Registry and envelopes
# -----------------------------------------------------------------------

@pytest.mark.parametrize(
    "operation",
    [
        "update_allocations",
        "compute_trust_scores",
        "compute_decoupled_scores",
        "compare_solvers",
        "forward_job",
        "create_referral",
        "update_referral_status",
        "payment_splits",
    ],
)
def test_every_operation_has_an_active_version(operation):
    assert get_current_version(operation).version == "1.0.0"


def test_unknown_operation_raises():
    with pytest.raises(KeyError):
        get_current_version("no_such_operation")


def test_register_and_deprecate_versions():
    op = "test_registry_operation"
    register_version(op, "1.0.0", "first")
    register_version(op, "2.0.0", "scheduled", effective_from=datetime.utcnow() + timedelta(days=1))

    assert get_current_version(op).version == "1.0.0"
    assert len(list_versions(op)) == 2

    deprecate_version(op, "1.0.0")
    with pytest.raises(RuntimeError):
        get_current_version(op)


def test_envelope_serialisation():
    ok = success_envelope("op", "1.0.0", {"x": 1}, "done", "audit-1", diagnostics=["note"]).to_dict()
    err = error_envelope("op", "1.0.0", "boom", "audit-2").to_dict()

    assert ok["status"] == "ok"
    assert ok["diagnostics"] == ["note"]
    assert err["status"] == "error"
    assert err["explanation"] == "boom"
    assert err["data"] is None


def test_failed_recompute_keeps_the_previous_allocation_row(db_session):
    manager = TrustGraphManager(db_session)
    for node_id in ("x", "y", "z"):
        manager.add_node(node_id)
    manager.set_allocations("x", {"z": 1.0})
    api = TrustReferralAPI(db_session)

    # No anchor node exists, so the recompute fails after the row was staged.
    resp = api.update_allocations("x", {"y": 1.0})

    assert resp.status == "error"
    assert "anchor" in resp.explanation
    assert manager.get_allocations("x") == {"z": pytest.approx(1.0)}
    assert db_session.query(ComputedTrustScore).count() == 0


def test_cancelled_recompute_keeps_the_previous_allocation_row(api, db_session, monkeypatch):
    cancel = threading.Event()
    cancel.set()
    compute_and_store = api._trust.compute_and_store
    monkeypatch.setattr(
        api._trust, "compute_and_store", lambda **kwargs: compute_and_store(cancel_event=cancel, **kwargs)
    )

    resp = api.update_allocations("a", {"c": 1.0})

    assert resp.status == "error"
    assert TrustGraphManager(db_session).get_allocations("a") == {"b": pytest.approx(1.0)}


def test_audit_rows_carry_run_and_referral_ids(api):
    scores = api.compute_trust_scores()
    api.update_allocations("b", {"c": 1.0})
    created = api.create_referral("job-1", "cand-1", "b")
    referral_id = created.data["referral_id"]
    api.update_referral_status(referral_id, "HIRED")
    api.payment_splits(referral_id)
    api.update_referral_status(referral_id, "ON_HOLD")

    by_run = api.query_audit_log(run_id=scores.data["run_id"])
    assert [e["operation"] for e in by_run] == ["compute_trust_scores"]

    recompute = api.query_audit_log(operation="update_allocations")[0]
    assert recompute["run_id"] is not None
    assert recompute["run_id"] != scores.data["run_id"]

    history = api.query_audit_log(referral_id=referral_id)
    assert sorted(e["operation"] for e in history) == [
        "create_referral",
        "payment_splits",
        "update_referral_status",
        "update_referral_status",
    ]
    assert {e["status"] for e in history} == {"success", "error"}
