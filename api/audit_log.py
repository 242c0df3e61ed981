"""
Audit Ledger
============
Append-only record of every facade call that changes trust state or reads
a computed result: allocation updates, score runs, forwards, referrals and
payouts. Each row keeps the operation, the algorithm version, request and
response as JSON, timing, caller, and the error text when the call failed.

Rows that belong to a score run carry its ``run_id`` and rows about a
referral carry its ``referral_id``, so the ledger can answer "which call
produced this ranking" and "what happened to this referral" directly.

Rows live in the same database as the trust graph, so an audit row commits
together with the change it describes.
"""

from datetime import datetime
import json
import uuid
from typing import Any, List, Optional

from sqlalchemy import Column, String, Float, DateTime, Text
from sqlalchemy.orm import Session

from models.base import Base


class TrustAuditLogEntry(Base):
    __tablename__ = "trust_audit_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation = Column(String, nullable=False, index=True)
    algorithm_version = Column(String, nullable=False)
    run_id = Column(String, nullable=True, index=True)  # TrustComputationLog.run_id
    referral_id = Column(String, nullable=True, index=True)
    request_payload = Column(Text, nullable=False)  # JSON
    response_payload = Column(Text, nullable=False)  # JSON
    duration_ms = Column(Float, nullable=False)
    caller_identity = Column(String, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(String, nullable=False, default="success")  # success | error
    error_detail = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<TrustAuditLogEntry(op={self.operation}, v={self.algorithm_version}, "
            f"run={self.run_id}, referral={self.referral_id}, status={self.status})>"
        )


class AuditLogger:
    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        operation: str,
        algorithm_version: str,
        request_payload: Any,
        response_payload: Any,
        duration_ms: float,
        caller_identity: Optional[str] = None,
        status: str = "success",
        error_detail: Optional[str] = None,
        run_id: Optional[str] = None,
        referral_id: Optional[str] = None,
    ) -> TrustAuditLogEntry:
        entry = TrustAuditLogEntry(
            operation=operation,
            algorithm_version=algorithm_version,
            run_id=run_id,
            referral_id=referral_id,
            request_payload=json.dumps(request_payload, default=str),
            response_payload=json.dumps(response_payload, default=str),
            duration_ms=duration_ms,
            caller_identity=caller_identity,
            status=status,
            error_detail=error_detail,
        )
        self.session.add(entry)
        # Caller commits.
        return entry

    def query_log(
        self,
        operation: Optional[str] = None,
        since: Optional[datetime] = None,
        status: Optional[str] = None,
        run_id: Optional[str] = None,
        referral_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[TrustAuditLogEntry]:
        q = self.session.query(TrustAuditLogEntry)
        if operation:
            q = q.filter(TrustAuditLogEntry.operation == operation)
        if since:
            q = q.filter(TrustAuditLogEntry.timestamp >= since)
        if status:
            q = q.filter(TrustAuditLogEntry.status == status)
        if run_id:
            q = q.filter(TrustAuditLogEntry.run_id == run_id)
        if referral_id:
            q = q.filter(TrustAuditLogEntry.referral_id == referral_id)
        return q.order_by(TrustAuditLogEntry.timestamp.desc()).limit(limit).all()
