"""
Referral chain reconstruction.

Walks the forwarding graph backwards from the referrer. When several people
forwarded the same job to the same node, the earliest forward wins; later
ones are treated as attribution noise. The walk stops at the origin (a node
nobody forwarded to), on a cycle, or at the hop cap.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import networkx as nx

from ._logger import logger
from .contracts import ForwardEdge
from .settings import settings


@dataclass
class ChainReconstruction:
    chain_path: List[str]
    cycle_detected: bool = False
    truncated: bool = False
    diagnostics: List[str] = field(default_factory=list)

    @property
    def chain_depth(self) -> int:
        return len(self.chain_path) - 1


def build_forward_graph(forwards: Iterable[ForwardEdge], job_id: Optional[str] = None) -> nx.DiGraph:
    """
    Directed graph of forwards, one edge per (from, to). If the same pair
    appears more than once the earliest timestamp is kept.
    """
    G = nx.DiGraph()
    for fwd in forwards:
        if job_id is not None and fwd.job_id != job_id:
            continue
        existing = G.get_edge_data(fwd.from_node, fwd.to_node)
        if existing is not None and existing["timestamp"] <= fwd.timestamp:
            continue
        G.add_edge(fwd.from_node, fwd.to_node, timestamp=fwd.timestamp)
    return G


def reconstruct_chain(
    forwards: Iterable[ForwardEdge],
    terminal: str,
    job_id: Optional[str] = None,
    max_hops: Optional[int] = None,
) -> ChainReconstruction:
    """
    Returns the node ids from origin to *terminal* inclusive.

    Equal timestamps are broken by the sender's id so the result is a pure
    function of the edge set.
    """
    hop_cap = settings.CHAIN_MAX_HOPS if max_hops is None else max_hops
    G = build_forward_graph(forwards, job_id=job_id)

    chain = [terminal]
    visited = {terminal}
    result = ChainReconstruction(chain_path=chain)
    if terminal not in G:
        return result

    current = terminal
    while True:
        senders = list(G.predecessors(current))
        if not senders:
            break

        if len(chain) - 1 >= hop_cap:
            result.truncated = True
            result.diagnostics.append(f"hop cap of {hop_cap} reached at {current}")
            logger.warning("chain_hop_cap_reached", job_id=job_id, terminal=terminal, max_hops=hop_cap)
            break

        earliest = min(senders, key=lambda s: (G[s][current]["timestamp"], s))
        if earliest in visited:
            result.cycle_detected = True
            result.diagnostics.append(f"cycle through {earliest} detected at {current}")
            logger.warning("chain_cycle_detected", job_id=job_id, terminal=terminal, stopped_at=current)
            break

        chain.insert(0, earliest)
        visited.add(earliest)
        current = earliest

    return result
