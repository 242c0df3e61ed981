"""
Decoupled ("modified") EigenTrust
=================================
Guarantees that a node's own score does not depend on how that node
allocates its own outgoing trust.

For every non-anchor node k:

  1. freeze the network: copy the trust matrix with row k zeroed, so k's
     outgoing trust leaks into a sink that is not part of the score set;
  2. run the power iteration (no anchor clamp) on the frozen matrix to get
     the scores of every other node;
  3. score k directly from its incoming edges::

         score(k) = (1 - a) * sum_{g != k} C_hat[g, k] * frozen(g) + a * p(k)

     where ``C_hat`` is the exactly row-normalised original matrix.

Nothing in steps 1-3 reads row k, which is what makes the score invariant.
Scores are deliberately not renormalised across nodes: doing so would couple
every score back to every allocation. The anchor keeps its pinned reference
score of 1.0.

Cost is one full power iteration per node, O(n^3 * iterations) in total.
This is only viable for graphs of tens to low hundreds of nodes; the
per-node solves share nothing mutable and run on a thread pool.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

import numpy as np

from ._logger import logger
from .contracts import AllocationSnapshot, SolverParameters
from .eigentrust_solver import power_iterate, solve_anchored
from .run_control import RunControl
from .settings import settings
from .trust_matrix import TrustMatrix, build_trust_matrix

ANCHOR_REFERENCE_SCORE = 1.0


@dataclass
class DecoupledResult:
    scores: Dict[str, float]
    iterations: int
    converged: bool


@dataclass
class SolverComparison:
    """Score of one node under both solvers, before and after replacing its own row."""

    node_id: str
    standard_before: float
    standard_after: float
    decoupled_before: float
    decoupled_after: float

    @property
    def standard_delta(self) -> float:
        return self.standard_after - self.standard_before

    @property
    def decoupled_delta(self) -> float:
        return self.decoupled_after - self.decoupled_before

    def to_dict(self) -> Dict[str, float]:
        return {
            "node_id": self.node_id,
            "standard_before": self.standard_before,
            "standard_after": self.standard_after,
            "standard_delta": self.standard_delta,
            "decoupled_before": self.decoupled_before,
            "decoupled_after": self.decoupled_after,
            "decoupled_delta": self.decoupled_delta,
        }


def solve_decoupled(
    snapshot: AllocationSnapshot,
    params: SolverParameters,
    pretrust: Optional[Mapping[str, float]] = None,
    workers: Optional[int] = None,
    control: Optional[RunControl] = None,
) -> DecoupledResult:
    """Decoupled scores for every node of *snapshot*; an empty graph gives an empty result."""
    if not snapshot.node_ids:
        return DecoupledResult(scores={}, iterations=0, converged=True)
    return solve_decoupled_matrix(build_trust_matrix(snapshot), params, pretrust, workers, control)


def solve_decoupled_matrix(
    trust_matrix: TrustMatrix,
    params: SolverParameters,
    pretrust: Optional[Mapping[str, float]] = None,
    workers: Optional[int] = None,
    control: Optional[RunControl] = None,
) -> DecoupledResult:
    n = trust_matrix.size
    p = _pretrust_vector(trust_matrix, pretrust)
    normalized = trust_matrix.normalized()
    alpha = params.decay_factor

    def _solve_one(k: int) -> Tuple[int, float, int, bool]:
        frozen = trust_matrix.matrix.copy()
        frozen[k, :] = 0.0
        result = power_iterate(
            frozen,
            p,
            decay_factor=alpha,
            max_iterations=params.max_iterations,
            threshold=params.convergence_threshold,
            control=control,
        )
        incoming = normalized[:, k].copy()
        incoming[k] = 0.0  # self-loops never feed k's own score
        direct = float(incoming @ result.vector)
        score = (1.0 - alpha) * direct + alpha * float(p[k])
        return k, score, result.iterations, result.converged

    targets = [k for k in range(n) if k != trust_matrix.anchor_index]
    pool_size = workers or settings.SOLVER_WORKERS

    if pool_size <= 1 or len(targets) <= 1:
        outcomes = [_solve_one(k) for k in targets]
    else:
        with ThreadPoolExecutor(max_workers=pool_size) as pool:
            outcomes = list(pool.map(_solve_one, targets))

    scores: Dict[str, float] = {trust_matrix.anchor_id: ANCHOR_REFERENCE_SCORE}
    iterations = 0
    converged = True
    for k, score, used, ok in outcomes:
        scores[trust_matrix.node_ids[k]] = score
        iterations = max(iterations, used)
        converged = converged and ok

    # Re-key in node order so callers see a stable ordering.
    ordered = {node_id: scores[node_id] for node_id in trust_matrix.node_ids}

    log = logger.info if converged else logger.warning
    log(
        "decoupled_eigentrust_finished",
        nodes=n,
        frozen_solves=len(targets),
        max_iterations_used=iterations,
        converged=converged,
    )
    return DecoupledResult(scores=ordered, iterations=iterations, converged=converged)


def compare_solvers(
    snapshot: AllocationSnapshot,
    node_id: str,
    replacement: Mapping[str, float],
    params: SolverParameters,
    workers: Optional[int] = None,
) -> SolverComparison:
    """
    Replaces *node_id*'s allocations with *replacement* and reports how its
    own score moves under the standard and the decoupled solver.
    """
    if node_id not in snapshot.node_ids:
        raise ValueError(f"Node {node_id} not found")

    before = build_trust_matrix(snapshot)
    after = before.with_row(node_id, dict(replacement))
    idx = before.index[node_id]

    return SolverComparison(
        node_id=node_id,
        standard_before=float(solve_anchored(before, params).vector[idx]),
        standard_after=float(solve_anchored(after, params).vector[idx]),
        decoupled_before=solve_decoupled_matrix(before, params, workers=workers).scores[node_id],
        decoupled_after=solve_decoupled_matrix(after, params, workers=workers).scores[node_id],
    )


def _pretrust_vector(trust_matrix: TrustMatrix, pretrust: Optional[Mapping[str, float]]) -> np.ndarray:
    n = trust_matrix.size
    if pretrust is None:
        return np.full(n, 1.0 / n, dtype=np.float64)

    p = np.array([float(pretrust.get(node_id, 0.0)) for node_id in trust_matrix.node_ids])
    if np.any(p < 0.0):
        raise ValueError("pretrust values must not be negative")
    total = float(p.sum())
    if total <= 0.0:
        raise ValueError("pretrust must assign positive weight to at least one node")
    return p / total
