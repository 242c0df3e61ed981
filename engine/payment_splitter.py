from typing import List, Sequence

from .contracts import PaymentShare
from .ranking import round_half_up


def split_payment(total_amount: int, chain_path: Sequence[str]) -> List[PaymentShare]:
    """
    Splits *total_amount* across a chain (origin first, referrer last) with
    inverse-square decay by distance from the referrer: the referrer has
    distance 1, the node before it distance 2, and so on.

    Each share is rounded half-up on its own, so the shares may miss the
    total by up to ``len(chain_path) - 1`` units. That slack is left as is.
    """
    if total_amount < 0:
        raise ValueError("total_amount must not be negative")
    if not chain_path:
        return []
    if len(chain_path) == 1:
        return [PaymentShare(node_id=chain_path[0], amount=int(total_amount))]

    n = len(chain_path)
    weights = [1.0 / (n - index) ** 2 for index in range(n)]
    weight_sum = sum(weights)

    return [
        PaymentShare(node_id=node_id, amount=round_half_up(weights[index] / weight_sum * total_amount))
        for index, node_id in enumerate(chain_path)
    ]
