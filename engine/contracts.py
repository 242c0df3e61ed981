"""
Data Contracts
==============
Snapshots the caller hands to the engines, and the results the engines hand
back. Inputs are validated pydantic models; outputs are plain dataclasses
with a ``to_dict`` helper so they serialise the same way as API envelopes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .settings import settings


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class AllocationEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    giver: str
    receiver: str
    proportion: float = Field(ge=0.0, le=1.0)


class AllocationSnapshot(BaseModel):
    """Full node set, declared anchor, and every allocation edge."""
    model_config = ConfigDict(frozen=True)

    node_ids: List[str]
    anchor_id: str
    edges: List[AllocationEdge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_nodes(self) -> "AllocationSnapshot":
        if len(set(self.node_ids)) != len(self.node_ids):
            raise ValueError("node_ids must be unique")
        return self

    def replace_row(self, giver: str, proportions: Dict[str, float]) -> "AllocationSnapshot":
        """Copy of the snapshot with every edge of *giver* swapped for *proportions*."""
        kept = [e for e in self.edges if e.giver != giver]
        kept.extend(
            AllocationEdge(giver=giver, receiver=receiver, proportion=p)
            for receiver, p in proportions.items()
        )
        return AllocationSnapshot(node_ids=list(self.node_ids), anchor_id=self.anchor_id, edges=kept)


class ForwardEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    from_node: str
    to_node: str
    timestamp: datetime
    message: Optional[str] = None

    @model_validator(mode="after")
    def _no_self_forward(self) -> "ForwardEdge":
        if self.from_node == self.to_node:
            raise ValueError("Cannot forward job to yourself")
        return self


class ForwardSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    forwards: List[ForwardEdge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_job(self) -> "ForwardSnapshot":
        for fwd in self.forwards:
            if fwd.job_id != self.job_id:
                raise ValueError(
                    f"Forward for job {fwd.job_id} does not belong to snapshot of job {self.job_id}"
                )
        return self


class SolverParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    decay_factor: float = Field(default=0.15, ge=0.0, lt=1.0)
    max_iterations: int = Field(default=100, ge=1)
    convergence_threshold: float = Field(default=1e-6, gt=0.0)
    trigger_label: str = "manual"

    @classmethod
    def from_settings(cls, **overrides: Any) -> "SolverParameters":
        values: Dict[str, Any] = {
            "decay_factor": settings.DECAY_FACTOR,
            "max_iterations": settings.MAX_ITERATIONS,
            "convergence_threshold": settings.CONVERGENCE_THRESHOLD,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

@dataclass
class ScoreRecord:
    node_id: str
    raw_score: float
    rank: int
    display_score: Optional[int] = None
    percentile: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "raw_score": self.raw_score,
            "display_score": self.display_score,
            "rank": self.rank,
            "percentile": self.percentile,
        }


@dataclass
class ScoreTable:
    """A complete ranking produced by one run, plus its run metadata."""

    records: List[ScoreRecord]
    iterations: int
    converged: bool
    triggered_by: str
    solver: str
    decay_factor: float
    convergence_threshold: float
    anchor_id: Optional[str]
    run_id: str
    computed_at: datetime = field(default_factory=datetime.utcnow)
    duration_ms: float = 0.0

    def score_of(self, node_id: str) -> float:
        for record in self.records:
            if record.node_id == node_id:
                return record.raw_score
        raise KeyError(node_id)

    def ranked(self) -> List[ScoreRecord]:
        return sorted(self.records, key=lambda r: r.rank)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "solver": self.solver,
            "anchor_id": self.anchor_id,
            "iterations": self.iterations,
            "converged": self.converged,
            "triggered_by": self.triggered_by,
            "decay_factor": self.decay_factor,
            "convergence_threshold": self.convergence_threshold,
            "computed_at": self.computed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "scores": [r.to_dict() for r in self.ranked()],
        }


@dataclass
class PaymentShare:
    node_id: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "amount": self.amount}


@dataclass
class ChainResult:
    job_id: str
    terminal: str
    chain_path: List[str]
    cycle_detected: bool = False
    truncated: bool = False
    payment: Optional[List[PaymentShare]] = None

    @property
    def chain_depth(self) -> int:
        return max(len(self.chain_path) - 1, 0)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "terminal": self.terminal,
            "chain_path": list(self.chain_path),
            "chain_depth": self.chain_depth,
            "cycle_detected": self.cycle_detected,
            "truncated": self.truncated,
        }
        if self.payment is not None:
            payload["payment"] = [s.to_dict() for s in self.payment]
            payload["total_paid"] = sum(s.amount for s in self.payment)
        return payload
