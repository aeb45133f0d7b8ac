# collectsync/schemas/sessions.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Base(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ========= 入参 =========
class CollectorIn(_Base):
    id: int = Field(..., description="收集人 empID")
    display_name: str = Field(default="", description="姓名（可选）")


class BinIn(_Base):
    abs_entry: int = Field(..., description="库位 AbsEntry")
    code: str = Field(default="", description="库位编码")
    warehouse_code: str = Field(default="", description="仓库编码（缺省沿用单据行）")


class OpenCollectSessionIn(_Base):
    """打开一个拣货收集会话：定位到单据行（行号优先，否则物料 + 仓库）。"""

    doc_entry: int
    doc_num: Optional[int] = None
    line_num: Optional[int] = None
    item_code: str = ""
    warehouse_code: str = ""
    work_area_id: Optional[int] = None
    collector: Optional[CollectorIn] = None


class OpenMoveSessionIn(_Base):
    doc_entry: Optional[int] = None
    doc_id: Optional[str] = None
    line_num: Optional[int] = None
    item_code: str = ""
    work_area_id: Optional[int] = None
    collector: Optional[CollectorIn] = None
    from_bin: Optional[BinIn] = None
    to_bin: Optional[BinIn] = None


class AddCollectDraftIn(_Base):
    bin_abs_entry: int
    batch_number: Optional[str] = None
    qty: float
    collector: Optional[CollectorIn] = None


class AddMoveDraftIn(_Base):
    """批次商品逐条累加；非批次商品覆盖唯一那条草稿。"""

    qty: float
    batch_number: Optional[str] = None
    to_bin: Optional[BinIn] = None
    collector: Optional[CollectorIn] = None


class UpdateDraftIn(_Base):
    qty: float = Field(..., description="新数量；0 表示删除该草稿")


class SetSourceIn(_Base):
    from_bin: BinIn


class PushIn(_Base):
    room: str = Field(..., description="orderPick:<DocEntry> / binToBin:<DocEntry|id>")
    event: str = Field(..., description="例如 orderPick:lineUpdated")
    payload: Dict[str, Any] = Field(default_factory=dict)


# ========= 出参 =========
class LineOut(_Base):
    doc_entry: Optional[int] = None
    doc_id: Optional[str] = None
    line_num: Optional[int] = None
    item_code: str
    warehouse_code: str = ""


class RowOut(_Base):
    row_id: str
    origin: str
    state: str
    item_code: str
    warehouse_code: str
    bin_abs_entry: int
    bin_code: str = ""
    batch_number: Optional[str] = None
    to_bin_abs_entry: Optional[int] = None
    to_bin_code: Optional[str] = None
    collector_id: int
    collector_name: str
    qty: float
    busy: bool = False


class OnHandOut(_Base):
    bin_abs_entry: int
    bin_code: str
    batch_number: Optional[str] = None
    on_hand_qty: float
    available_qty: float
    max_addable: float


class BatchOut(_Base):
    batch_number: str
    on_hand_qty: float
    picked_qty: float
    available_qty: float
    max_addable: float


class CollectSessionOut(_Base):
    session_id: str
    flow: str = "collect"
    line: LineOut
    online: bool
    closed: bool
    batch_managed: bool
    open_qty: float
    collected: float
    line_remaining: float
    on_hand: List[OnHandOut] = Field(default_factory=list)
    rows: List[RowOut] = Field(default_factory=list)


class MoveSessionOut(_Base):
    session_id: str
    flow: str = "move"
    line: LineOut
    online: bool
    closed: bool
    batch_managed: bool
    planned_qty: float
    moved: float
    remaining: float
    max_addable: Optional[float] = None
    from_bin: Optional[BinIn] = None
    to_bin: Optional[BinIn] = None
    batches: List[BatchOut] = Field(default_factory=list)
    rows: List[RowOut] = Field(default_factory=list)


class RowOutcomeOut(_Base):
    row_id: str
    ok: bool
    message: str = ""
    code: Optional[str] = None


class CommitOut(_Base):
    ok: int
    failed: int
    outcomes: List[RowOutcomeOut] = Field(default_factory=list)


class UndoOut(_Base):
    ok: bool
    row_id: str
    attempts: int
    message: str = ""


class PushOut(_Base):
    applied: bool
    inserted: int = 0
    removed: int = 0
    duplicates: int = 0
    line_removed: bool = False
    reload_required: bool = False


class CloseOut(_Base):
    session_id: str
    discarded: int
