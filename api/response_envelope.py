"""
Response Envelope
=================
Every facade call returns the same shape:

  - ``operation`` and ``api_version`` of the algorithm that ran;
  - ``status``: ``"ok"`` or ``"error"``;
  - ``data``: score tables, chains, payouts;
  - ``explanation``: one human-readable sentence or two, always present;
  - ``diagnostics``: non-fatal notes such as "did not converge" or
    "cycle detected";
  - ``audit_id`` of the ledger row written for the call.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class ApiResponse:
    operation: str
    api_version: str
    status: str  # "ok" | "error"
    data: Any
    explanation: str
    audit_id: str
    diagnostics: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")
    metadata: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "operation": self.operation,
            "api_version": self.api_version,
            "status": self.status,
            "data": self.data,
            "explanation": self.explanation,
            "diagnostics": list(self.diagnostics),
            "audit_id": self.audit_id,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


def success_envelope(
    operation: str,
    api_version: str,
    data: Any,
    explanation: str,
    audit_id: str,
    diagnostics: Optional[List[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ApiResponse:
    return ApiResponse(
        operation=operation,
        api_version=api_version,
        status="ok",
        data=data,
        explanation=explanation,
        audit_id=audit_id,
        diagnostics=list(diagnostics or []),
        metadata=metadata,
    )


def error_envelope(
    operation: str,
    api_version: str,
    error_message: str,
    audit_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> ApiResponse:
    return ApiResponse(
        operation=operation,
        api_version=api_version,
        status="error",
        data=None,
        explanation=error_message,
        audit_id=audit_id,
        metadata=metadata,
    )
