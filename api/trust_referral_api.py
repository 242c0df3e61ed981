"""
Trust & Referral API Layer
==========================
Audited facade over the trust and referral engines. Every public method:

  1. resolves the active algorithm version for its operation;
  2. delegates to the engines;
  3. builds an envelope with the structured result, a short explanation
     and any diagnostics;
  4. writes a TrustAuditLogEntry and commits it.

Failures never escape as exceptions: the session is rolled back, the error
is audited, and an error envelope is returned.

Operations
~~~~~~~~~~
  - ``update_allocations``       replace a node's allocation row, then recompute.
  - ``compute_trust_scores``     anchored EigenTrust run, stored atomically.
  - ``compute_decoupled_scores`` self-allocation invariant run, stored atomically.
  - ``compare_solvers``          how a node's own score moves under both solvers
                                 when its row changes.
  - ``forward_job``              record a forward (idempotent).
  - ``create_referral``          create a referral with its frozen chain.
  - ``update_referral_status``   move a referral through the hiring pipeline.
  - ``payment_splits``           payout split for a hired referral.
"""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from engine._logger import logger
from engine.contracts import ScoreTable, SolverParameters
from engine.decoupled_solver import compare_solvers
from engine.referral_chain_engine import ReferralChainEngine
from engine.trust_computation_engine import TrustComputationEngine
from engine.trust_graph_manager import TrustGraphManager

from api.audit_log import AuditLogger
from api.algorithm_registry import get_current_version
from api.response_envelope import ApiResponse, success_envelope, error_envelope

# (data, explanation, diagnostics)
ActionResult = Tuple[Any, str, List[str]]


class TrustReferralAPI:
    def __init__(self, session: Session, caller_identity: Optional[str] = None):
        self.session = session
        self.caller_identity = caller_identity

        self._graph = TrustGraphManager(session)
        self._trust = TrustComputationEngine(session)
        self._referrals = ReferralChainEngine(session)
        self._audit = AuditLogger(session)

    def _run(self, op: str, request_payload: Dict[str, Any], action: Callable[[], ActionResult]) -> ApiResponse:
        ver = get_current_version(op)
        t0 = time.perf_counter()
        try:
            data, explanation, diagnostics = action()
        except Exception as exc:
            self.session.rollback()
            duration = (time.perf_counter() - t0) * 1000
            audit = self._audit.log(
                operation=op,
                algorithm_version=ver.version,
                request_payload=request_payload,
                response_payload=None,
                duration_ms=duration,
                caller_identity=self.caller_identity,
                status="error",
                error_detail=str(exc),
                referral_id=request_payload.get("referral_id"),
            )
            self.session.commit()
            logger.warning("api_operation_failed", operation=op, error=str(exc), error_type=type(exc).__name__)
            return error_envelope(
                operation=op,
                api_version=ver.version,
                error_message=str(exc),
                audit_id=audit.id,
            )

        duration = (time.perf_counter() - t0) * 1000
        audit = self._audit.log(
            operation=op,
            algorithm_version=ver.version,
            request_payload=request_payload,
            response_payload=data,
            duration_ms=duration,
            caller_identity=self.caller_identity,
            run_id=_ledger_run_id(data),
            referral_id=_ledger_referral_id(data, request_payload),
        )
        self.session.commit()
        return success_envelope(
            operation=op,
            api_version=ver.version,
            data=data,
            explanation=explanation,
            audit_id=audit.id,
            diagnostics=diagnostics,
        )

    # =====================================================================
    #  Trust graph
    # =====================================================================
    def update_allocations(
        self,
        giver_id: str,
        allocations: Mapping[str, float],
        recompute: bool = True,
    ) -> ApiResponse:
        """
        Replaces *giver_id*'s whole allocation row. With *recompute* the
        scores are recomputed straight away, labelled ``user_update``; the
        row and the new score set commit together, and a failed recompute
        leaves the old row in place.
        """
        request_payload = {"giver_id": giver_id, "allocations": dict(allocations), "recompute": recompute}

        def action() -> ActionResult:
            rows = self._graph.set_allocations(giver_id, dict(allocations), commit=not recompute)
            data: Dict[str, Any] = {
                "giver_id": giver_id,
                "allocations": {row.receiver_id: row.proportion for row in rows},
            }
            diagnostics: List[str] = []
            explanation = f"Replaced the allocation row of {giver_id} with {len(rows)} edge(s)."
            if not rows:
                explanation += " The node now trusts only the anchor."

            if recompute:
                table = self._trust.compute_and_store(params=SolverParameters.from_settings(trigger_label="user_update"))
                data["scores"] = table.to_dict()
                diagnostics.extend(_run_diagnostics(table))
                explanation += f" Scores recomputed over {len(table.records)} node(s)."
            return data, explanation, diagnostics

        return self._run("update_allocations", request_payload, action)

    def compute_trust_scores(
        self,
        anchor_id: Optional[str] = None,
        decay_factor: Optional[float] = None,
        max_iterations: Optional[int] = None,
        convergence_threshold: Optional[float] = None,
        trigger_label: str = "manual",
        deadline_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApiResponse:
        request_payload = {
            "anchor_id": anchor_id,
            "decay_factor": decay_factor,
            "max_iterations": max_iterations,
            "convergence_threshold": convergence_threshold,
            "trigger_label": trigger_label,
            "deadline_seconds": deadline_seconds,
        }

        def action() -> ActionResult:
            params = SolverParameters.from_settings(
                decay_factor=decay_factor,
                max_iterations=max_iterations,
                convergence_threshold=convergence_threshold,
                trigger_label=trigger_label,
            )
            table = self._trust.compute_and_store(
                anchor_id=anchor_id,
                params=params,
                deadline_seconds=deadline_seconds,
                cancel_event=cancel_event,
            )
            explanation = (
                f"Ranked {len(table.records)} node(s) by anchored EigenTrust in "
                f"{table.iterations} iteration(s); the anchor {table.anchor_id} is pinned at 100."
            )
            return table.to_dict(), explanation, _run_diagnostics(table)

        return self._run("compute_trust_scores", request_payload, action)

    def compute_decoupled_scores(
        self,
        anchor_id: Optional[str] = None,
        decay_factor: Optional[float] = None,
        max_iterations: Optional[int] = None,
        convergence_threshold: Optional[float] = None,
        pretrust: Optional[Mapping[str, float]] = None,
        workers: Optional[int] = None,
        trigger_label: str = "manual",
        deadline_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApiResponse:
        request_payload = {
            "anchor_id": anchor_id,
            "decay_factor": decay_factor,
            "max_iterations": max_iterations,
            "convergence_threshold": convergence_threshold,
            "pretrust": dict(pretrust) if pretrust is not None else None,
            "workers": workers,
            "trigger_label": trigger_label,
            "deadline_seconds": deadline_seconds,
        }

        def action() -> ActionResult:
            params = SolverParameters.from_settings(
                decay_factor=decay_factor,
                max_iterations=max_iterations,
                convergence_threshold=convergence_threshold,
                trigger_label=trigger_label,
            )
            table = self._trust.compute_and_store(
                anchor_id=anchor_id,
                params=params,
                solver="decoupled",
                pretrust=pretrust,
                deadline_seconds=deadline_seconds,
                cancel_event=cancel_event,
                workers=workers,
            )
            explanation = (
                f"Ranked {len(table.records)} node(s) with decoupled EigenTrust: each score was "
                f"computed with that node's own allocations frozen out of the network."
            )
            return table.to_dict(), explanation, _run_diagnostics(table)

        return self._run("compute_decoupled_scores", request_payload, action)

    def compare_solvers(
        self,
        node_id: str,
        replacement: Mapping[str, float],
        anchor_id: Optional[str] = None,
        workers: Optional[int] = None,
    ) -> ApiResponse:
        """Read-only: nothing is stored except the audit row."""
        request_payload = {"node_id": node_id, "replacement": dict(replacement), "anchor_id": anchor_id}

        def action() -> ActionResult:
            snapshot = self._graph.load_allocation_snapshot(anchor_id)
            comparison = compare_solvers(
                snapshot, node_id, dict(replacement), SolverParameters.from_settings(), workers=workers
            )
            explanation = (
                f"Changing the allocations of {node_id} moves its standard score by "
                f"{comparison.standard_delta:+.6f} and its decoupled score by "
                f"{comparison.decoupled_delta:+.6f}."
            )
            return comparison.to_dict(), explanation, []

        return self._run("compare_solvers", request_payload, action)

    # =====================================================================
    #  Referrals
    # =====================================================================
    def forward_job(
        self,
        job_id: str,
        from_node_id: str,
        to_node_id: str,
        message: Optional[str] = None,
    ) -> ApiResponse:
        request_payload = {
            "job_id": job_id,
            "from_node_id": from_node_id,
            "to_node_id": to_node_id,
            "message": message,
        }

        def action() -> ActionResult:
            forward = self._referrals.forward_job(job_id, from_node_id, to_node_id, message=message)
            data = {
                "forward_id": forward.id,
                "job_id": forward.job_id,
                "from_node_id": forward.from_node_id,
                "to_node_id": forward.to_node_id,
                "created_at": forward.created_at.isoformat() if forward.created_at else None,
            }
            return data, f"Job {job_id} forwarded from {from_node_id} to {to_node_id}.", []

        return self._run("forward_job", request_payload, action)

    def create_referral(
        self,
        job_id: str,
        candidate_id: str,
        referrer_node_id: str,
        candidate_email: Optional[str] = None,
        how_you_know: Optional[str] = None,
        confidence_level: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ApiResponse:
        request_payload = {
            "job_id": job_id,
            "candidate_id": candidate_id,
            "referrer_node_id": referrer_node_id,
            "candidate_email": candidate_email,
            "how_you_know": how_you_know,
            "confidence_level": confidence_level,
            "notes": notes,
        }

        def action() -> ActionResult:
            referral = self._referrals.create_referral(
                job_id,
                candidate_id,
                referrer_node_id,
                candidate_email=candidate_email,
                how_you_know=how_you_know,
                confidence_level=confidence_level,
                notes=notes,
            )
            diagnostics = list((referral.chain_diagnostics or {}).get("notes", []))
            explanation = (
                f"Referral created by {referrer_node_id}; the job reached them through "
                f"{referral.chain_depth} hop(s)."
            )
            return _referral_dict(referral), explanation, diagnostics

        return self._run("create_referral", request_payload, action)

    def update_referral_status(self, referral_id: str, status: str) -> ApiResponse:
        request_payload = {"referral_id": referral_id, "status": status}

        def action() -> ActionResult:
            referral = self._referrals.update_referral_status(referral_id, status)
            return _referral_dict(referral), f"Referral {referral_id} moved to {status}.", []

        return self._run("update_referral_status", request_payload, action)

    def payment_splits(self, referral_id: str, total_amount: Optional[int] = None) -> ApiResponse:
        request_payload = {"referral_id": referral_id, "total_amount": total_amount}

        def action() -> ActionResult:
            result = self._referrals.calculate_payment_splits(referral_id, total_amount=total_amount)
            data = result.to_dict()
            diagnostics: List[str] = []
            if result.cycle_detected:
                diagnostics.append("chain was cut short by a forwarding cycle")
            if result.truncated:
                diagnostics.append("chain was truncated at the hop cap")
            explanation = (
                f"Paid {data['total_paid']} across {len(result.chain_path)} node(s), "
                f"weighted by inverse square distance from the referrer."
            )
            return data, explanation, diagnostics

        return self._run("payment_splits", request_payload, action)

    # =====================================================================
    #  Audit
    # =====================================================================
    def query_audit_log(
        self,
        operation: Optional[str] = None,
        since: Optional[datetime] = None,
        status: Optional[str] = None,
        run_id: Optional[str] = None,
        referral_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        entries = self._audit.query_log(
            operation=operation,
            since=since,
            status=status,
            run_id=run_id,
            referral_id=referral_id,
            limit=limit,
        )
        return [
            {
                "id": e.id,
                "operation": e.operation,
                "algorithm_version": e.algorithm_version,
                "run_id": e.run_id,
                "referral_id": e.referral_id,
                "request_payload": json.loads(e.request_payload) if e.request_payload else None,
                "response_payload": json.loads(e.response_payload) if e.response_payload else None,
                "duration_ms": e.duration_ms,
                "caller_identity": e.caller_identity,
                "status": e.status,
                "error_detail": e.error_detail,
                "timestamp": e.timestamp.isoformat() if e.timestamp else None,
            }
            for e in entries
        ]


def _run_diagnostics(table: ScoreTable) -> List[str]:
    if table.converged:
        return []
    return [f"did not converge within {table.iterations} iteration(s); scores are best effort"]


def _referral_dict(referral) -> Dict[str, Any]:
    return {
        "referral_id": referral.id,
        "job_id": referral.job_id,
        "candidate_id": referral.candidate_id,
        "referrer_node_id": referral.referrer_node_id,
        "chain_path": list(referral.chain_path),
        "chain_depth": referral.chain_depth,
        "chain_diagnostics": referral.chain_diagnostics,
        "status": referral.status,
        "created_at": referral.created_at.isoformat() if referral.created_at else None,
        "updated_at": referral.updated_at.isoformat() if referral.updated_at else None,
    }


def _ledger_run_id(data: Any) -> Optional[str]:
    """Score run a successful response belongs to, if any."""
    if not isinstance(data, dict):
        return None
    if "run_id" in data:
        return data["run_id"]
    scores = data.get("scores")
    if isinstance(scores, dict):
        return scores.get("run_id")
    return None


def _ledger_referral_id(data: Any, request_payload: Dict[str, Any]) -> Optional[str]:
    if isinstance(data, dict) and data.get("referral_id"):
        return data["referral_id"]
    return request_payload.get("referral_id")
