from datetime import datetime
import uuid
from sqlalchemy import Column, String, DateTime, Integer, JSON, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base


REFERRAL_STATUSES = ("PENDING", "SCREENING", "INTERVIEWING", "HIRED", "REJECTED")


class JobForward(Base):
    """
    Records that one node passed a job opportunity on to another.
    At most one row per (job, from, to).
    """
    __tablename__ = 'job_forwards'
    __table_args__ = (
        UniqueConstraint('job_id', 'from_node_id', 'to_node_id', name='uq_forward_triple'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, nullable=False, index=True)
    from_node_id = Column(String, ForeignKey('trust_nodes.id'), nullable=False)
    to_node_id = Column(String, ForeignKey('trust_nodes.id'), nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    from_node = relationship("TrustNode", foreign_keys=[from_node_id])
    to_node = relationship("TrustNode", foreign_keys=[to_node_id])

    def __repr__(self):
        return f"<JobForward(job={self.job_id[:8]}, from={self.from_node_id[:8]}, to={self.to_node_id[:8]})>"


class Referral(Base):
    """
    A candidate referral with the attribution chain frozen at creation time.
    """
    __tablename__ = 'referrals'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, nullable=False, index=True)
    candidate_id = Column(String, nullable=False)
    candidate_email = Column(String, nullable=True)
    referrer_node_id = Column(String, ForeignKey('trust_nodes.id'), nullable=False)

    # Ordered node ids from origin to referrer
    chain_path = Column(JSON, nullable=False)
    chain_depth = Column(Integer, nullable=False)
    # e.g. {"cycle_detected": false, "truncated": false}
    chain_diagnostics = Column(JSON, nullable=True)

    status = Column(String, nullable=False, default="PENDING")
    how_you_know = Column(Text, nullable=True)
    confidence_level = Column(String, nullable=True)  # high | medium | low
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    referrer_node = relationship("TrustNode", foreign_keys=[referrer_node_id])

    def __repr__(self):
        return f"<Referral(id={self.id[:8]}, job={self.job_id[:8]}, depth={self.chain_depth}, status={self.status})>"
