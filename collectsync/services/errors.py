# collectsync/services/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional

from collectsync.domain.events_enums import AllocationState, ErrorCode


class AllocationError(Exception):
    """
    本地校验 / 状态类错误的基类。

    - 全部在发出任何网络请求之前同步抛出；
    - code / status 供 HTTP 层翻译为 Problem 形状；
    - context 为附加的定位信息（row_id / batch / max_qty 等）。
    """

    code: ErrorCode = ErrorCode.INVALID_QUANTITY
    status = 422

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}


class InvalidQuantity(AllocationError):
    code = ErrorCode.INVALID_QUANTITY

    def __init__(self, qty: float) -> None:
        super().__init__(f"qty must be > 0, got {qty}", qty=qty)


class MissingCollector(AllocationError):
    code = ErrorCode.MISSING_COLLECTOR

    def __init__(self) -> None:
        super().__init__("collector is required")


class MissingBatch(AllocationError):
    code = ErrorCode.MISSING_BATCH

    def __init__(self, item_code: str) -> None:
        super().__init__(
            f"batch_number is required for batch-managed item {item_code}",
            item_code=item_code,
        )


class MissingSource(AllocationError):
    code = ErrorCode.MISSING_SOURCE

    def __init__(self) -> None:
        super().__init__("source bin is required")


class MissingDestination(AllocationError):
    code = ErrorCode.MISSING_DESTINATION

    def __init__(self) -> None:
        super().__init__("destination bin is required")


class SameLocation(AllocationError):
    code = ErrorCode.SAME_LOCATION

    def __init__(self, bin_abs_entry: int) -> None:
        super().__init__(
            "source and destination bins must differ",
            bin_abs_entry=bin_abs_entry,
        )


class ExceedsAvailable(AllocationError):
    """请求量超过可加上限；max_qty 为调用方可以直接使用的精确上限。"""

    code = ErrorCode.EXCEEDS_AVAILABLE

    def __init__(self, requested: float, max_qty: float, reason: str = "available") -> None:
        self.requested = float(requested)
        self.max_qty = float(max_qty)
        self.reason = reason
        super().__init__(
            f"cannot add {requested:g}: maximum addable is {max_qty:g} ({reason})",
            requested=self.requested,
            max_qty=self.max_qty,
            reason=reason,
        )


class UnknownRow(AllocationError):
    code = ErrorCode.UNKNOWN_ROW
    status = 404

    def __init__(self, row_id: str) -> None:
        super().__init__(f"row not found: {row_id}", row_id=row_id)


class RowBusy(AllocationError):
    """该行已有未完成的请求：直接拒绝，不排队。"""

    code = ErrorCode.ROW_BUSY
    status = 409

    def __init__(self, row_id: str) -> None:
        super().__init__(f"row has a request in flight: {row_id}", row_id=row_id)


class IllegalTransition(AllocationError):
    code = ErrorCode.ILLEGAL_TRANSITION
    status = 409

    def __init__(self, current: AllocationState, target: AllocationState) -> None:
        super().__init__(
            f"illegal transition {current.value} -> {target.value}",
            current=current.value,
            target=target.value,
        )


class ChannelOffline(AllocationError):
    """同步通道断开：提交 / 撤销全部禁用，草稿保留。"""

    code = ErrorCode.CHANNEL_OFFLINE
    status = 503

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "sync channel is offline")


class LineClosed(AllocationError):
    code = ErrorCode.LINE_CLOSED
    status = 409

    def __init__(self, line_key: str) -> None:
        super().__init__(f"line is no longer editable: {line_key}", line=line_key)


class UnknownLine(AllocationError):
    code = ErrorCode.UNKNOWN_LINE
    status = 404

    def __init__(self, line_key: str) -> None:
        super().__init__(f"line not found: {line_key}", line=line_key)


class UnknownSession(AllocationError):
    code = ErrorCode.UNKNOWN_SESSION
    status = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}", session_id=session_id)
