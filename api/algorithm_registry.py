"""
Algorithm Version Registry
===========================
Maps each facade operation to the versioned algorithm that serves it. The
version string of the active entry is written into every audit row, so a
stored score set or payout can be traced back to the exact solver or split
policy that produced it.

New versions are appended; the latest entry that is already effective and
not deprecated is the active one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class AlgorithmVersionDescriptor:
    """Immutable record describing one algorithm version."""
    version: str
    description: str
    effective_from: datetime = field(default_factory=datetime.utcnow)
    deprecated_at: Optional[datetime] = None


_REGISTRY: Dict[str, List[AlgorithmVersionDescriptor]] = {
    "update_allocations": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description="Whole-row allocation replacement with sum-to-one validation and optional recompute.",
        ),
    ],
    "compute_trust_scores": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description=(
                "Anchored EigenTrust power iteration with anchor clamp, "
                "0-100 display scores and atomic score-set replacement."
            ),
        ),
    ],
    "compute_decoupled_scores": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description=(
                "Per-node frozen-network EigenTrust; a node's score never reads "
                "its own outgoing allocations."
            ),
        ),
    ],
    "compare_solvers": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description="Before/after score of one node under both solvers for a replaced allocation row.",
        ),
    ],
    "forward_job": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description="Idempotent job forward keyed by (job, from, to).",
        ),
    ],
    "create_referral": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description=(
                "Earliest-forward backward walk with cycle detection and a "
                "hop cap; chain frozen at creation."
            ),
        ),
    ],
    "update_referral_status": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description="Status transition over PENDING, SCREENING, INTERVIEWING, HIRED and REJECTED.",
        ),
    ],
    "payment_splits": [
        AlgorithmVersionDescriptor(
            version="1.0.0",
            description="Inverse-square split by distance from the referrer, half-up rounding per share.",
        ),
    ],
}


def get_current_version(operation: str) -> AlgorithmVersionDescriptor:
    """
    Returns the active version descriptor for *operation*: the latest entry
    whose ``effective_from`` has passed and that is not deprecated.
    """
    versions = _REGISTRY.get(operation)
    if not versions:
        raise KeyError(f"Unknown operation: {operation}")

    now = datetime.utcnow()
    candidates = [
        v for v in versions
        if v.effective_from <= now and v.deprecated_at is None
    ]
    if not candidates:
        raise RuntimeError(
            f"No active algorithm version for operation '{operation}'"
        )
    return max(candidates, key=lambda v: v.effective_from)


def register_version(
    operation: str,
    version: str,
    description: str,
    effective_from: Optional[datetime] = None,
) -> AlgorithmVersionDescriptor:
    """Appends a version; one with a future *effective_from* stays inactive until then."""
    desc = AlgorithmVersionDescriptor(
        version=version,
        description=description,
        effective_from=effective_from or datetime.utcnow(),
    )
    _REGISTRY.setdefault(operation, []).append(desc)
    return desc


def deprecate_version(operation: str, version: str) -> None:
    versions = _REGISTRY.get(operation, [])
    for i, v in enumerate(versions):
        if v.version == version and v.deprecated_at is None:
            # frozen dataclass, replace in-list
            _REGISTRY[operation][i] = AlgorithmVersionDescriptor(
                version=v.version,
                description=v.description,
                effective_from=v.effective_from,
                deprecated_at=datetime.utcnow(),
            )
            return
    raise KeyError(
        f"Active version '{version}' not found for operation '{operation}'"
    )


def list_versions(operation: str) -> List[AlgorithmVersionDescriptor]:
    return list(_REGISTRY.get(operation, []))
