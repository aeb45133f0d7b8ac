# collectsync/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from collectsync.services.errors import AllocationError, ExceedsAvailable


class ProblemDetail(TypedDict, total=False):
    # 必填
    type: str  # validation|capacity|state|channel
    # 可选：用于行内定位
    path: str  # e.g. rows[2]
    reason: str
    row_id: str
    batch_number: Optional[str]

    requested_qty: float
    max_qty: float


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = self.context
        if self.details:
            out["details"] = self.details
        if self.trace_id:
            out["trace_id"] = self.trace_id
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    p = Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        trace_id=trace_id,
    )
    return p.to_dict()


def problem_from_allocation_error(
    exc: AllocationError,
    *,
    context: Optional[Dict[str, Any]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    """AllocationError → Problem；ExceedsAvailable 把精确上限放进 details，调用方可直接回填。"""
    ctx: Dict[str, Any] = dict(context or {})
    ctx.update(exc.context)

    details: List[ProblemDetail] = []
    if isinstance(exc, ExceedsAvailable):
        details.append(
            {
                "type": "capacity",
                "reason": exc.reason,
                "requested_qty": exc.requested,
                "max_qty": exc.max_qty,
            }
        )

    return make_problem(
        status_code=exc.status,
        error_code=exc.code.value,
        message=exc.message,
        context=ctx,
        details=details,
        trace_id=trace_id,
    )
