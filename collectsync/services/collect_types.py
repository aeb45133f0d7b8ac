# collectsync/services/collect_types.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from collectsync.domain.events_enums import AllocationOrigin, AllocationState, PushKind
from collectsync.services.batch_code import normalize_optional_batch_code


@dataclass(frozen=True)
class StockKey:
    """
    一个可被分配的物理库存单元：(item, warehouse, bin, batch)。

    batch_number 在构造时统一归一（"" / None / "None" → None），
    所以 “无批次” 在内部只有一种表示。
    """

    item_code: str
    warehouse_code: str
    bin_abs_entry: int
    batch_number: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "item_code", str(self.item_code or "").strip())
        object.__setattr__(self, "warehouse_code", str(self.warehouse_code or "").strip())
        object.__setattr__(self, "bin_abs_entry", int(self.bin_abs_entry or 0))
        object.__setattr__(
            self, "batch_number", normalize_optional_batch_code(self.batch_number)
        )


@dataclass(frozen=True)
class BinRef:
    abs_entry: int
    code: str = ""
    warehouse_code: str = ""

    @property
    def label(self) -> str:
        return self.code or str(self.abs_entry)


@dataclass(frozen=True)
class CollectorRef:
    id: int
    display_name: str = ""

    @property
    def known(self) -> bool:
        return self.id > 0

    @property
    def label(self) -> str:
        name = (self.display_name or "").strip()
        if name and name != "-":
            return name
        if self.id > 0:
            return f"#{self.id}"
        return "-"


@dataclass(frozen=True)
class CompositeKey:
    """
    上游台账没有稳定 ID 时使用的派生身份：
    (batch_number, target_location, qty, collector_id, timestamp)

    - collect 事件：target_location = 取货库位
    - move 明细：target_location = 目标库位
    """

    batch_number: Optional[str]
    target_location: int
    qty: float
    collector_id: int
    timestamp: str

    @classmethod
    def make(
        cls,
        *,
        batch_number: Optional[str],
        target_location: int,
        qty: float,
        collector_id: int,
        timestamp: Optional[str],
    ) -> "CompositeKey":
        return cls(
            batch_number=normalize_optional_batch_code(batch_number),
            target_location=int(target_location or 0),
            qty=float(qty),
            collector_id=int(collector_id or 0),
            timestamp=str(timestamp or "").strip(),
        )

    def digest(self) -> str:
        raw = "\x1f".join(
            [
                self.batch_number or "",
                str(self.target_location),
                repr(self.qty),
                str(self.collector_id),
                self.timestamp,
            ]
        )
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class LineRef:
    """
    单据行引用。

    行身份：有 line_num 时用 line_num，否则退化为 (item_code, warehouse_code)。
    doc_num / doc_id 只是线上请求需要携带的附加信息，不参与身份。
    """

    doc_entry: Optional[int]
    line_num: Optional[int]
    item_code: str
    warehouse_code: str = ""
    doc_num: Optional[int] = field(default=None, compare=False)
    doc_id: Optional[str] = field(default=None, compare=False)

    @property
    def match_key(self) -> Tuple[Any, ...]:
        if self.line_num is not None:
            return ("L", int(self.line_num))
        return ("K", (self.item_code or "").strip(), (self.warehouse_code or "").strip())

    @property
    def label(self) -> str:
        if self.line_num is not None:
            return f"L:{self.line_num}"
        return f"K:{self.item_code}|{self.warehouse_code}"


@dataclass(frozen=True)
class OnHandRow:
    stock_key: StockKey
    on_hand_qty: float
    bin_code: str = ""
    batch_managed: bool = False
    exp_date: Optional[str] = None


@dataclass(frozen=True)
class BatchOnHand:
    batch_number: str
    on_hand_qty: float
    bin_abs_entry: int = 0
    bin_code: str = ""


@dataclass
class LineContext:
    """拣货单据行（collect）。collected_qty 为服务端维护的聚合值，可能缺省。"""

    line_ref: LineRef
    open_qty: float = 0.0
    collected_qty: Optional[float] = None
    item_name: Optional[str] = None
    batch_managed: bool = False


@dataclass
class MoveLine:
    """库位移库单据行（bin-to-bin）。moved_qty 为服务端维护的聚合值，可能缺省。"""

    line_ref: LineRef
    planned_qty: float = 0.0
    from_bin: Optional[BinRef] = None
    to_bin: Optional[BinRef] = None
    moved_qty: Optional[float] = None
    item_name: Optional[str] = None
    batch_managed: bool = False

    @property
    def item_code(self) -> str:
        return self.line_ref.item_code


@dataclass
class AllocationEvent:
    composite_key: CompositeKey
    line_ref: LineRef
    stock_key: StockKey
    collector: CollectorRef
    qty: float
    origin: AllocationOrigin = AllocationOrigin.SAVED
    timestamp: Optional[str] = None
    bin_code: str = ""
    exp_date: Optional[str] = None
    state: AllocationState = AllocationState.SAVED

    @property
    def batch_managed(self) -> bool:
        # 已保存事件上没有批次管理标记：有批次即视为批次商品
        return self.stock_key.batch_number is not None


@dataclass
class MoveDetail(AllocationEvent):
    from_bin: Optional[BinRef] = None
    to_bin: Optional[BinRef] = None


@dataclass
class LineSnapshot:
    """
    推送 / 首次加载得到的一行快照（可能是局部的）。

    - fields：本次载荷里确实出现的行上下文字段（合并，不整体替换）
    - aggregate：行级聚合（CollectedQuantity / MovedQuantity）；None = 本次未携带
    - events：该行完整的已保存事件列表；None = 本次未携带
    """

    line_ref: LineRef
    fields: Dict[str, Any] = field(default_factory=dict)
    aggregate: Optional[float] = None
    events: Optional[List[AllocationEvent]] = None


@dataclass
class PushEvent:
    kind: PushKind
    line: Optional[LineSnapshot] = None
    event: Optional[AllocationEvent] = None
    doc_status: Optional[str] = None


@dataclass(frozen=True)
class Ack:
    ok: bool
    message: str = ""


@dataclass
class DraftRow:
    row_id: str
    line_ref: LineRef
    stock_key: StockKey
    collector: CollectorRef
    qty: float
    state: AllocationState = AllocationState.DRAFT
    bin_code: str = ""
    exp_date: Optional[str] = None
    to_bin: Optional[BinRef] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    acked_at: Optional[datetime] = None
    # push 先于 ack 到达时置位：ack 成功后立即转正
    confirmed_early: bool = False

    origin = AllocationOrigin.DRAFT

    @property
    def editable(self) -> bool:
        return self.state == AllocationState.DRAFT


@dataclass(frozen=True)
class RowOutcome:
    row_id: str
    ok: bool
    message: str = ""
    code: Optional[str] = None


@dataclass
class CommitReport:
    ok: int = 0
    failed: int = 0
    outcomes: List[RowOutcome] = field(default_factory=list)

    def add(self, outcome: RowOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.ok:
            self.ok += 1
        else:
            self.failed += 1

    @property
    def partial(self) -> bool:
        return self.ok > 0 and self.failed > 0


@dataclass(frozen=True)
class UndoResult:
    ok: bool
    composite_key: CompositeKey
    attempts: int
    message: str = ""


@dataclass(frozen=True)
class RowView:
    """给调用方渲染用的合并行（saved 在前，draft 在后）。"""

    row_id: str
    origin: AllocationOrigin
    state: AllocationState
    stock_key: StockKey
    collector: CollectorRef
    qty: float
    bin_code: str = ""
    to_bin: Optional[BinRef] = None
    busy: bool = False
