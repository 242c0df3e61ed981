import math
from typing import Callable, Dict, List, Optional, Sequence

from .contracts import ScoreRecord


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def standard_display(raw_score: float) -> int:
    """0-100 display score for anchor-normalised scores."""
    return min(100, max(0, round_half_up(raw_score * 100.0)))


def rank_scores(
    node_ids: Sequence[str],
    raw_scores: Sequence[float],
    display: Optional[Callable[[float], int]] = standard_display,
) -> List[ScoreRecord]:
    """
    Ranks nodes by descending raw score. Every node gets a distinct rank
    1..n; equal scores keep their input order. Records come back in input
    order. With ``display=None`` the display score is left unset.
    """
    if len(node_ids) != len(raw_scores):
        raise ValueError("node_ids and raw_scores must have the same length")

    # sorted() is stable, so ties keep input order.
    order = sorted(range(len(node_ids)), key=lambda i: -raw_scores[i])
    ranks = {i: position + 1 for position, i in enumerate(order)}

    return [
        ScoreRecord(
            node_id=node_ids[i],
            raw_score=float(raw_scores[i]),
            rank=ranks[i],
            display_score=display(float(raw_scores[i])) if display is not None else None,
        )
        for i in range(len(node_ids))
    ]


def compute_percentiles(scores: Dict[str, float], anchor_id: Optional[str] = None) -> Dict[str, int]:
    """
    Percentile of every non-anchor node among the non-anchor nodes
    (lowest = 0, highest = 100, a lone node = 50). The anchor is always 100.
    """
    ranked = sorted(
        ((node_id, score) for node_id, score in scores.items() if node_id != anchor_id),
        key=lambda item: item[1],
    )
    m = len(ranked)
    percentiles: Dict[str, int] = {}
    for index, (node_id, _) in enumerate(ranked):
        percentiles[node_id] = round_half_up(index / (m - 1) * 100.0) if m > 1 else 50

    if anchor_id is not None and anchor_id in scores:
        percentiles[anchor_id] = 100
    return percentiles
