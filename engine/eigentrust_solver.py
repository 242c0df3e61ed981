"""
Anchored EigenTrust solver.

Power iteration of ``t' = (1 - a) * C^T t + a * p`` where ``p`` puts all
pre-trust on the anchor. The anchor's entry is pinned to 1.0 after every
update so it stays the reference point of the ranking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from ._logger import logger
from .contracts import SolverParameters
from .run_control import RunControl
from .trust_matrix import TrustMatrix


@dataclass
class SolverResult:
    vector: np.ndarray
    iterations: int
    converged: bool


def power_iterate(
    matrix: np.ndarray,
    pretrust: np.ndarray,
    decay_factor: float,
    max_iterations: int,
    threshold: float,
    anchor_index: Optional[int] = None,
    control: Optional[RunControl] = None,
) -> SolverResult:
    """
    Iterates from ``t = pretrust`` until the largest component change drops
    below *threshold* or *max_iterations* updates have been made.
    With *anchor_index* set, that component is clamped to 1.0 each step.
    """
    transposed = matrix.T
    t = pretrust.astype(np.float64, copy=True)
    if anchor_index is not None:
        t[anchor_index] = 1.0

    converged = False
    iterations = 0
    for iterations in range(1, max_iterations + 1):
        if control is not None:
            control.check()

        t_new = (1.0 - decay_factor) * (transposed @ t) + decay_factor * pretrust
        if anchor_index is not None:
            t_new[anchor_index] = 1.0

        max_change = float(np.max(np.abs(t_new - t)))
        t = t_new
        if max_change < threshold:
            converged = True
            break

    return SolverResult(vector=t, iterations=iterations, converged=converged)


def solve_anchored(
    trust_matrix: TrustMatrix,
    params: SolverParameters,
    control: Optional[RunControl] = None,
) -> SolverResult:
    """Standard EigenTrust over the full matrix with all pre-trust on the anchor."""
    pretrust = np.zeros(trust_matrix.size, dtype=np.float64)
    pretrust[trust_matrix.anchor_index] = 1.0

    result = power_iterate(
        trust_matrix.matrix,
        pretrust,
        decay_factor=params.decay_factor,
        max_iterations=params.max_iterations,
        threshold=params.convergence_threshold,
        anchor_index=trust_matrix.anchor_index,
        control=control,
    )

    if result.converged:
        logger.info("eigentrust_converged", nodes=trust_matrix.size, iterations=result.iterations)
    else:
        logger.warning(
            "eigentrust_not_converged",
            nodes=trust_matrix.size,
            iterations=result.iterations,
            threshold=params.convergence_threshold,
        )
    return result
