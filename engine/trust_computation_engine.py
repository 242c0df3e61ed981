"""
Trust Computation Engine
========================
Runs one full trust computation over a graph snapshot and swaps the stored
ranking for the new one.

``compute_score_table`` is the pure entry point: snapshot in, ScoreTable
out, no I/O. ``TrustComputationEngine`` loads the snapshot from the
database, calls it, and replaces the whole score set in one transaction:
either every old row is gone and every new row present, or the run fails
and the old set stays as it was. Runs are serialised by a single writer
lock so two recomputations triggered close together cannot interleave
their replacements.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.trust_graph import ComputedTrustScore, TrustComputationLog
from ._logger import logger
from .contracts import AllocationSnapshot, ScoreTable, SolverParameters
from .decoupled_solver import solve_decoupled_matrix
from .eigentrust_solver import solve_anchored
from .errors import NoNodesError
from .ranking import compute_percentiles, rank_scores
from .run_control import RunControl
from .settings import settings
from .trust_graph_manager import TrustGraphManager
from .trust_matrix import build_trust_matrix

SOLVERS = ("standard", "decoupled")

# One writer at a time across the process.
_WRITE_LOCK = threading.Lock()


def compute_score_table(
    snapshot: AllocationSnapshot,
    params: SolverParameters,
    solver: str = "standard",
    pretrust: Optional[Mapping[str, float]] = None,
    control: Optional[RunControl] = None,
    workers: Optional[int] = None,
) -> ScoreTable:
    """Builds the trust matrix, solves it, and ranks the result."""
    if solver not in SOLVERS:
        raise ValueError(f"Unknown solver '{solver}'. Supported: {list(SOLVERS)}")
    if not snapshot.node_ids:
        raise NoNodesError("No nodes in trust graph")

    t0 = time.perf_counter()
    trust_matrix = build_trust_matrix(snapshot)

    if solver == "standard":
        result = solve_anchored(trust_matrix, params, control=control)
        raw = [float(v) for v in result.vector]
        iterations, converged = result.iterations, result.converged
        records = rank_scores(trust_matrix.node_ids, raw)
    else:
        result = solve_decoupled_matrix(trust_matrix, params, pretrust=pretrust, workers=workers, control=control)
        raw = [result.scores[node_id] for node_id in trust_matrix.node_ids]
        iterations, converged = result.iterations, result.converged
        # Decoupled scores are not normalised; display conversion is left to the caller.
        records = rank_scores(trust_matrix.node_ids, raw, display=None)

    percentiles = compute_percentiles(dict(zip(trust_matrix.node_ids, raw)), trust_matrix.anchor_id)
    for record in records:
        record.percentile = percentiles.get(record.node_id)

    return ScoreTable(
        records=records,
        iterations=iterations,
        converged=converged,
        triggered_by=params.trigger_label,
        solver=solver,
        decay_factor=params.decay_factor,
        convergence_threshold=params.convergence_threshold,
        anchor_id=trust_matrix.anchor_id,
        run_id=str(uuid.uuid4()),
        duration_ms=(time.perf_counter() - t0) * 1000,
    )


class TrustComputationEngine:
    """
    Loads the allocation graph, computes a ranking, and atomically replaces
    the stored score set with it.
    """
    def __init__(self, session: Session):
        self.session = session
        self.graph_manager = TrustGraphManager(session)

    def compute_and_store(
        self,
        anchor_id: Optional[str] = None,
        params: Optional[SolverParameters] = None,
        solver: str = "standard",
        pretrust: Optional[Mapping[str, float]] = None,
        deadline_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        workers: Optional[int] = None,
    ) -> ScoreTable:
        params = params or SolverParameters.from_settings()
        deadline = deadline_seconds if deadline_seconds is not None else settings.RUN_DEADLINE_SECONDS

        with _WRITE_LOCK:
            control = RunControl(deadline_seconds=deadline, cancel_event=cancel_event)
            snapshot = self.graph_manager.load_allocation_snapshot(anchor_id)
            logger.info(
                "trust_computation_started",
                nodes=len(snapshot.node_ids),
                edges=len(snapshot.edges),
                solver=solver,
                triggered_by=params.trigger_label,
            )

            table = compute_score_table(
                snapshot, params, solver=solver, pretrust=pretrust, control=control, workers=workers
            )
            self._replace_score_set(table)

        logger.info(
            "trust_computation_finished",
            run_id=table.run_id,
            nodes=len(table.records),
            iterations=table.iterations,
            converged=table.converged,
            duration_ms=round(table.duration_ms, 3),
        )
        return table

    def _replace_score_set(self, table: ScoreTable) -> None:
        try:
            self.session.query(ComputedTrustScore).delete()
            self.session.add_all(
                ComputedTrustScore(
                    run_id=table.run_id,
                    node_id=record.node_id,
                    trust_score=record.raw_score,
                    display_score=record.display_score,
                    rank=record.rank,
                    percentile=record.percentile,
                    iteration_count=table.iterations,
                    converged=table.converged,
                    solver=table.solver,
                    computed_at=table.computed_at,
                )
                for record in table.records
            )
            self.session.add(
                TrustComputationLog(
                    run_id=table.run_id,
                    num_nodes=len(table.records),
                    num_iterations=table.iterations,
                    decay_factor=table.decay_factor,
                    convergence_threshold=table.convergence_threshold,
                    converged=table.converged,
                    solver=table.solver,
                    triggered_by=table.triggered_by,
                    duration_ms=table.duration_ms,
                    timestamp=table.computed_at,
                )
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("score_set_replacement_failed", run_id=table.run_id, error=str(exc))
            raise

        logger.info("score_set_replaced", run_id=table.run_id, rows=len(table.records))

    def current_scores(self) -> List[ComputedTrustScore]:
        return self.session.query(ComputedTrustScore).order_by(ComputedTrustScore.rank).all()

    def computation_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        logs = (
            self.session.query(TrustComputationLog)
            .order_by(TrustComputationLog.timestamp.desc())
            .limit(limit)
            .all()
        )
        return [
            {
                "run_id": log.run_id,
                "num_nodes": log.num_nodes,
                "num_iterations": log.num_iterations,
                "decay_factor": log.decay_factor,
                "convergence_threshold": log.convergence_threshold,
                "converged": log.converged,
                "solver": log.solver,
                "triggered_by": log.triggered_by,
                "duration_ms": log.duration_ms,
                "timestamp": log.timestamp.isoformat() if log.timestamp else None,
            }
            for log in logs
        ]
