from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
from models.trust_graph import TrustNode, TrustAllocation
from models.referral_chain import JobForward
from ._logger import logger
from .contracts import AllocationEdge, AllocationSnapshot, ForwardEdge, ForwardSnapshot
from .errors import InvalidAllocationError
from .settings import settings


class TrustGraphManager:
    """
    Manages nodes and trust allocations, and turns the stored graph into
    the snapshots the solvers and the chain reconstructor consume.
    """
    def __init__(self, session: Session):
        self.session = session

    def add_node(self, node_id: Optional[str] = None, label: Optional[str] = None) -> TrustNode:
        node = TrustNode(id=node_id, label=label) if node_id else TrustNode(label=label)
        self.session.add(node)
        self.session.commit()
        return node

    def get_allocations(self, giver_id: str) -> Dict[str, float]:
        rows = self.session.query(TrustAllocation).filter(TrustAllocation.giver_id == giver_id).all()
        return {row.receiver_id: row.proportion for row in rows}

    def set_allocations(
        self,
        giver_id: str,
        allocations: Dict[str, float],
        commit: bool = True,
    ) -> List[TrustAllocation]:
        """
        Replaces the giver's whole allocation row in one transaction.
        An empty mapping clears the row; the giver then trusts only the anchor.
        With ``commit=False`` the new row is only flushed, so a caller can
        commit or roll it back together with later work.
        """
        if self.session.get(TrustNode, giver_id) is None:
            raise InvalidAllocationError(f"Giver node {giver_id} not found")

        for receiver_id, proportion in allocations.items():
            if not 0.0 <= proportion <= 1.0:
                raise InvalidAllocationError(
                    f"Proportion for {receiver_id} must be between 0 and 1, got {proportion}"
                )
            if self.session.get(TrustNode, receiver_id) is None:
                raise InvalidAllocationError(f"Receiver node {receiver_id} not found")

        if allocations:
            total = sum(allocations.values())
            if abs(total - 1.0) > settings.ROW_TOLERANCE:
                raise InvalidAllocationError(f"Allocations must sum to 1.0, got {total}")

        try:
            self.session.query(TrustAllocation).filter(TrustAllocation.giver_id == giver_id).delete()
            rows = [
                TrustAllocation(
                    giver_id=giver_id,
                    receiver_id=receiver_id,
                    proportion=proportion,
                    updated_at=datetime.utcnow(),
                )
                for receiver_id, proportion in allocations.items()
                if proportion > 0.0
            ]
            self.session.add_all(rows)
            if commit:
                self.session.commit()
            else:
                self.session.flush()
        except Exception:
            self.session.rollback()
            raise

        logger.info("allocations_replaced", giver_id=giver_id, edges=len(rows), committed=commit)
        return rows

    def remove_self_allocation(self, node_id: str) -> int:
        deleted = (
            self.session.query(TrustAllocation)
            .filter(TrustAllocation.giver_id == node_id, TrustAllocation.receiver_id == node_id)
            .delete()
        )
        self.session.commit()
        if deleted:
            logger.info("self_allocation_removed", node_id=node_id, count=deleted)
        return deleted

    def clear_allocations(self) -> int:
        """Resets every node to the clean state where it trusts only the anchor."""
        deleted = self.session.query(TrustAllocation).delete()
        self.session.commit()
        logger.info("allocations_cleared", count=deleted)
        return deleted

    def load_allocation_snapshot(self, anchor_id: Optional[str] = None) -> AllocationSnapshot:
        nodes = self.session.query(TrustNode).order_by(TrustNode.created_at, TrustNode.id).all()
        allocations = self.session.query(TrustAllocation).all()
        return AllocationSnapshot(
            node_ids=[n.id for n in nodes],
            anchor_id=anchor_id or settings.ANCHOR_NODE_ID,
            edges=[
                AllocationEdge(giver=a.giver_id, receiver=a.receiver_id, proportion=a.proportion)
                for a in allocations
            ],
        )

    def load_forward_snapshot(self, job_id: str) -> ForwardSnapshot:
        rows = (
            self.session.query(JobForward)
            .filter(JobForward.job_id == job_id)
            .order_by(JobForward.created_at)
            .all()
        )
        return ForwardSnapshot(
            job_id=job_id,
            forwards=[
                ForwardEdge(
                    job_id=row.job_id,
                    from_node=row.from_node_id,
                    to_node=row.to_node_id,
                    timestamp=row.created_at,
                    message=row.message,
                )
                for row in rows
            ],
        )
