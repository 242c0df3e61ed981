from datetime import datetime
import uuid
from sqlalchemy import Column, String, Float, DateTime, Integer, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base


class TrustNode(Base):
    """
    A participant of the trust graph. The anchor is chosen by configuration;
    the table itself does not mark it.
    """
    __tablename__ = 'trust_nodes'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    label = Column(String, nullable=True)  # e.g. an email or display name
    created_at = Column(DateTime, default=datetime.utcnow)

    outgoing_allocations = relationship(
        "TrustAllocation", foreign_keys="TrustAllocation.giver_id", back_populates="giver"
    )
    incoming_allocations = relationship(
        "TrustAllocation", foreign_keys="TrustAllocation.receiver_id", back_populates="receiver"
    )

    def __repr__(self):
        return f"<TrustNode(id={self.id[:8]}, label={self.label})>"


class TrustAllocation(Base):
    """
    Share of a giver's trust assigned to a receiver. Input to the solvers.
    """
    __tablename__ = 'trust_allocations'
    __table_args__ = (UniqueConstraint('giver_id', 'receiver_id', name='uq_allocation_pair'),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    giver_id = Column(String, ForeignKey('trust_nodes.id'), nullable=False)
    receiver_id = Column(String, ForeignKey('trust_nodes.id'), nullable=False)
    proportion = Column(Float, nullable=False)  # 0.0 - 1.0
    updated_at = Column(DateTime, default=datetime.utcnow)

    giver = relationship("TrustNode", foreign_keys=[giver_id], back_populates="outgoing_allocations")
    receiver = relationship("TrustNode", foreign_keys=[receiver_id], back_populates="incoming_allocations")

    def __repr__(self):
        return f"<TrustAllocation(giver={self.giver_id[:8]}, receiver={self.receiver_id[:8]}, p={self.proportion})>"


class ComputedTrustScore(Base):
    """
    One row of the active ranking. The whole set is replaced by every run.
    """
    __tablename__ = 'computed_trust_scores'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(String, nullable=False, index=True)
    node_id = Column(String, ForeignKey('trust_nodes.id'), nullable=False)
    trust_score = Column(Float, nullable=False)
    display_score = Column(Integer, nullable=True)  # 0-100, unset for decoupled runs
    rank = Column(Integer, nullable=False)
    percentile = Column(Integer, nullable=True)
    iteration_count = Column(Integer, nullable=False)
    converged = Column(Boolean, nullable=False, default=True)
    solver = Column(String, nullable=False, default="standard")  # standard | decoupled
    computed_at = Column(DateTime, default=datetime.utcnow)

    node = relationship("TrustNode", foreign_keys=[node_id])

    def __repr__(self):
        return f"<ComputedTrustScore(node={self.node_id[:8]}, score={self.trust_score:.4f}, rank={self.rank})>"


class TrustComputationLog(Base):
    """
    Append-only metadata for one computation run.
    """
    __tablename__ = 'trust_computation_logs'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(String, nullable=False, unique=True)
    num_nodes = Column(Integer, nullable=False)
    num_iterations = Column(Integer, nullable=False)
    decay_factor = Column(Float, nullable=False)
    convergence_threshold = Column(Float, nullable=False)
    converged = Column(Boolean, nullable=False)
    solver = Column(String, nullable=False, default="standard")
    triggered_by = Column(String, nullable=False, default="manual")  # e.g. "user_update", "manual"
    duration_ms = Column(Float, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return (
            f"<TrustComputationLog(run={self.run_id[:8]}, nodes={self.num_nodes}, "
            f"iterations={self.num_iterations}, converged={self.converged})>"
        )
