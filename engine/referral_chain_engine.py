from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.referral_chain import REFERRAL_STATUSES, JobForward, Referral
from models.trust_graph import TrustNode
from ._logger import logger
from .chain_reconstructor import ChainReconstruction, reconstruct_chain
from .contracts import ChainResult
from .errors import InvalidForwardError, InvalidReferralError
from .payment_splitter import split_payment
from .settings import settings
from .trust_graph_manager import TrustGraphManager


class ReferralChainEngine:
    """
    Records job forwards, turns them into referral chains, and splits the
    payout of a hire across the chain.
    """
    def __init__(self, session: Session):
        self.session = session
        self.graph_manager = TrustGraphManager(session)

    def forward_job(
        self,
        job_id: str,
        from_node_id: str,
        to_node_id: str,
        message: Optional[str] = None,
    ) -> JobForward:
        """Stores a forward. Forwarding the same job to the same node twice is a no-op."""
        if from_node_id == to_node_id:
            raise InvalidForwardError("Cannot forward job to yourself")
        for node_id in (from_node_id, to_node_id):
            if self.session.get(TrustNode, node_id) is None:
                raise InvalidForwardError(f"Node {node_id} not found")

        existing = self._find_forward(job_id, from_node_id, to_node_id)
        if existing is not None:
            logger.info("job_forward_duplicate", job_id=job_id, from_node=from_node_id, to_node=to_node_id)
            return existing

        forward = JobForward(job_id=job_id, from_node_id=from_node_id, to_node_id=to_node_id, message=message)
        self.session.add(forward)
        try:
            self.session.commit()
        except IntegrityError:
            # Lost a race against a concurrent insert of the same triple.
            self.session.rollback()
            existing = self._find_forward(job_id, from_node_id, to_node_id)
            if existing is None:
                raise
            logger.info("job_forward_duplicate", job_id=job_id, from_node=from_node_id, to_node=to_node_id)
            return existing

        logger.info("job_forwarded", job_id=job_id, from_node=from_node_id, to_node=to_node_id)
        return forward

    def _find_forward(self, job_id: str, from_node_id: str, to_node_id: str) -> Optional[JobForward]:
        return (
            self.session.query(JobForward)
            .filter(
                JobForward.job_id == job_id,
                JobForward.from_node_id == from_node_id,
                JobForward.to_node_id == to_node_id,
            )
            .first()
        )

    def reconstruct_chain(self, job_id: str, terminal_node_id: str, max_hops: Optional[int] = None) -> ChainReconstruction:
        snapshot = self.graph_manager.load_forward_snapshot(job_id)
        return reconstruct_chain(snapshot.forwards, terminal_node_id, job_id=job_id, max_hops=max_hops)

    def create_referral(
        self,
        job_id: str,
        candidate_id: str,
        referrer_node_id: str,
        candidate_email: Optional[str] = None,
        how_you_know: Optional[str] = None,
        confidence_level: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Referral:
        """
        Creates a referral and freezes the chain that led the job to the
        referrer. Later forwards do not change an existing referral.
        """
        if candidate_id == referrer_node_id:
            raise InvalidReferralError("Cannot refer yourself")
        if self.session.get(TrustNode, referrer_node_id) is None:
            raise InvalidReferralError(f"Referrer node {referrer_node_id} not found")

        chain = self.reconstruct_chain(job_id, referrer_node_id)
        referral = Referral(
            job_id=job_id,
            candidate_id=candidate_id,
            candidate_email=candidate_email,
            referrer_node_id=referrer_node_id,
            chain_path=list(chain.chain_path),
            chain_depth=chain.chain_depth,
            chain_diagnostics={
                "cycle_detected": chain.cycle_detected,
                "truncated": chain.truncated,
                "notes": list(chain.diagnostics),
            },
            status="PENDING",
            how_you_know=how_you_know,
            confidence_level=confidence_level,
            notes=notes,
        )
        self.session.add(referral)
        self.session.commit()

        logger.info(
            "referral_created",
            referral_id=referral.id,
            job_id=job_id,
            chain_depth=referral.chain_depth,
        )
        return referral

    def update_referral_status(self, referral_id: str, status: str) -> Referral:
        if status not in REFERRAL_STATUSES:
            raise InvalidReferralError(f"Invalid status '{status}'. Allowed: {list(REFERRAL_STATUSES)}")

        referral = self._get_referral(referral_id)
        previous = referral.status
        referral.status = status
        referral.updated_at = datetime.utcnow()
        self.session.commit()

        logger.info("referral_status_updated", referral_id=referral_id, previous=previous, status=status)
        return referral

    def calculate_payment_splits(self, referral_id: str, total_amount: Optional[int] = None) -> ChainResult:
        """Payout split for a hired referral, over the chain stored on the referral."""
        referral = self._get_referral(referral_id)
        if referral.status != "HIRED":
            raise InvalidReferralError("Payment splits can only be calculated for HIRED referrals")

        amount = settings.DEFAULT_PAYOUT if total_amount is None else total_amount
        diagnostics = referral.chain_diagnostics or {}
        return ChainResult(
            job_id=referral.job_id,
            terminal=referral.referrer_node_id,
            chain_path=list(referral.chain_path),
            cycle_detected=bool(diagnostics.get("cycle_detected", False)),
            truncated=bool(diagnostics.get("truncated", False)),
            payment=split_payment(amount, referral.chain_path),
        )

    def get_referrals_for_job(self, job_id: str) -> List[Referral]:
        return (
            self.session.query(Referral)
            .filter(Referral.job_id == job_id)
            .order_by(Referral.created_at.desc())
            .all()
        )

    def get_forwards_by_node(self, node_id: str, job_id: Optional[str] = None) -> List[JobForward]:
        q = self.session.query(JobForward).filter(JobForward.from_node_id == node_id)
        if job_id is not None:
            q = q.filter(JobForward.job_id == job_id)
        return q.order_by(JobForward.created_at.desc()).all()

    def _get_referral(self, referral_id: str) -> Referral:
        referral = self.session.get(Referral, referral_id)
        if referral is None:
            raise InvalidReferralError(f"Referral {referral_id} not found")
        return referral
