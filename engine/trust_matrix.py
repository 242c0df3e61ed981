"""
Trust Matrix Builder
====================
Turns raw allocation edges into a dense row-stochastic matrix ``C`` where
``C[i][j]`` is the share of node i's trust given to node j.

Row repair rules:
  - a row with no allocations trusts the anchor only (``C[i][anchor] = 1``),
    so silent nodes do not dilute the anchor's signal;
  - a row whose sum is off 1.0 by more than the tolerance is renormalised;
  - anything else is left as allocated.

Malformed input is corrected, never rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from ._logger import logger
from .contracts import AllocationSnapshot
from .errors import AnchorMissingError, NoNodesError
from .settings import settings

# Below this a row is treated as empty.
_EMPTY_ROW_EPSILON = 1e-3


@dataclass
class TrustMatrix:
    node_ids: List[str]
    index: Dict[str, int]
    anchor_index: int
    matrix: np.ndarray

    @property
    def size(self) -> int:
        return len(self.node_ids)

    @property
    def anchor_id(self) -> str:
        return self.node_ids[self.anchor_index]

    def normalized(self) -> np.ndarray:
        """Exactly row-normalised copy of the matrix (rows that are all zero stay zero)."""
        sums = self.matrix.sum(axis=1, keepdims=True)
        safe = np.where(sums > 0.0, sums, 1.0)
        return self.matrix / safe

    def with_row(self, node_id: str, proportions: Dict[str, float], row_tolerance: Optional[float] = None) -> "TrustMatrix":
        """Copy with *node_id*'s row replaced by *proportions*, repaired like any built row."""
        i = self.index[node_id]
        C = self.matrix.copy()
        C[i, :] = 0.0
        for receiver, proportion in proportions.items():
            j = self.index.get(receiver)
            if j is not None:
                C[i, j] = proportion
        tolerance = settings.ROW_TOLERANCE if row_tolerance is None else row_tolerance
        _repair_row(C, i, self.anchor_index, tolerance, node_id=node_id)
        return TrustMatrix(list(self.node_ids), dict(self.index), self.anchor_index, C)


def build_trust_matrix(
    snapshot: AllocationSnapshot,
    row_tolerance: Optional[float] = None,
) -> TrustMatrix:
    """Builds the repaired n x n trust matrix and locates the anchor."""
    n = len(snapshot.node_ids)
    if n == 0:
        raise NoNodesError("No nodes in trust graph")

    index = {node_id: i for i, node_id in enumerate(snapshot.node_ids)}
    anchor_index = index.get(snapshot.anchor_id)
    if anchor_index is None:
        raise AnchorMissingError(f"Anchor node {snapshot.anchor_id} not found")

    tolerance = settings.ROW_TOLERANCE if row_tolerance is None else row_tolerance

    C = np.zeros((n, n), dtype=np.float64)
    skipped = 0
    for edge in snapshot.edges:
        giver_idx = index.get(edge.giver)
        receiver_idx = index.get(edge.receiver)
        if giver_idx is None or receiver_idx is None:
            skipped += 1
            continue
        C[giver_idx, receiver_idx] = edge.proportion

    if skipped:
        logger.debug("allocation_edges_skipped", count=skipped, reason="unknown_node")

    for i in range(n):
        _repair_row(C, i, anchor_index, tolerance, node_id=snapshot.node_ids[i])

    return TrustMatrix(list(snapshot.node_ids), index, anchor_index, C)


def _repair_row(
    C: np.ndarray,
    i: int,
    anchor_index: int,
    tolerance: float,
    node_id: Optional[str] = None,
) -> None:
    row_sum = float(C[i].sum())
    if abs(row_sum) < _EMPTY_ROW_EPSILON:
        C[i, :] = 0.0
        C[i, anchor_index] = 1.0
        logger.debug("row_defaulted_to_anchor", node_id=node_id)
    elif abs(row_sum - 1.0) > tolerance:
        C[i, :] /= row_sum
        logger.debug("row_renormalized", node_id=node_id, row_sum=row_sum)
