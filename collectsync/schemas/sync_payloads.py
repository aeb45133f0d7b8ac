# collectsync/schemas/sync_payloads.py
from __future__ import annotations

import math
from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field


# ========= 宽松数值 / 字符串（上游字段类型不稳定：数字、字符串、null 都会出现） =========
def _num(v: Any) -> float:
    try:
        x = float(v)
    except (TypeError, ValueError):
        return 0.0
    return x if math.isfinite(x) else 0.0


def _opt_num(v: Any) -> Optional[float]:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    return _num(v)


def _opt_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        x = float(v)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(x):
        return None
    return int(x)


def _int0(v: Any) -> int:
    return _opt_int(v) or 0


def _str(v: Any) -> str:
    return "" if v is None else str(v).strip()


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _yes_no(v: Any) -> Optional[bool]:
    if v is None:
        return None
    if isinstance(v, bool):
        return v
    return str(v).strip().upper() in ("Y", "YES", "TRUE", "1")


def _collector_obj(v: Any) -> Any:
    # 个别上游只给 empID 数字
    if isinstance(v, (int, float, str)) and not isinstance(v, bool):
        return {"empID": v}
    if isinstance(v, dict):
        return v
    return None


Num = Annotated[float, BeforeValidator(_num)]
OptNum = Annotated[Optional[float], BeforeValidator(_opt_num)]
OptInt = Annotated[Optional[int], BeforeValidator(_opt_int)]
Int0 = Annotated[int, BeforeValidator(_int0)]
Str = Annotated[str, BeforeValidator(_str)]
OptStr = Annotated[Optional[str], BeforeValidator(_opt_str)]
YesNo = Annotated[Optional[bool], BeforeValidator(_yes_no)]


class _Base(BaseModel):
    """
    - extra="ignore": 上游载荷字段很多，只取需要的
    - populate_by_name: 测试 / 内部构造时可直接用字段名
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ========= 收集人 =========
class CollectorPayload(_Base):
    emp_id: Int0 = Field(
        default=0, validation_alias=AliasChoices("empID", "EmpID", "U_UserCode", "U_UserID", "emp_id")
    )
    full_name: Str = Field(
        default="", validation_alias=AliasChoices("fullName", "FullName", "name", "full_name")
    )


CollectorField = Annotated[Optional[CollectorPayload], BeforeValidator(_collector_obj)]
_BY = AliasChoices("by", "By", "collector", "user")


# ========= 拣货（orderPick） =========
class CollectedEventPayload(_Base):
    by: CollectorField = Field(default=None, validation_alias=_BY)
    bin_abs_entry: Int0 = Field(default=0, validation_alias=AliasChoices("BinAbsEntry", "bin_abs_entry"))
    bin_code: Str = Field(default="", validation_alias=AliasChoices("BinCode", "bin_code"))
    batch_number: OptStr = Field(default=None, validation_alias=AliasChoices("BatchNumber", "batch_number"))
    exp_date: OptStr = Field(default=None, validation_alias=AliasChoices("ExpDate", "exp_date"))
    qty: Num = Field(default=0.0, validation_alias=AliasChoices("QtyDelta", "Qty", "qty"))
    at: OptStr = Field(default=None, validation_alias=AliasChoices("at", "UpdatedAt", "createdAt"))


class BinAllocationPayload(_Base):
    bin_abs_entry: Int0 = Field(default=0, validation_alias=AliasChoices("BinAbsEntry", "bin_abs_entry"))
    bin_code: Str = Field(default="", validation_alias=AliasChoices("BinCode", "bin_code"))
    batch_number: OptStr = Field(default=None, validation_alias=AliasChoices("BatchNumber", "batch_number"))
    exp_date: OptStr = Field(default=None, validation_alias=AliasChoices("ExpDate", "exp_date"))
    qty: Num = Field(default=0.0, validation_alias=AliasChoices("Quantity", "Qty", "qty"))


class OrderLinePayload(_Base):
    """getOrdersDocsItemsApi 的一行 / orderPick:line* 推送里的 Line。字段可能只出现一部分。"""

    doc_entry: OptInt = Field(default=None, validation_alias=AliasChoices("DocEntry", "doc_entry"))
    doc_num: OptInt = Field(default=None, validation_alias=AliasChoices("DocNum", "doc_num"))
    doc_status: OptStr = Field(default=None, validation_alias=AliasChoices("DocStatus", "doc_status"))
    line_num: OptInt = Field(default=None, validation_alias=AliasChoices("LineNum", "line_num"))
    item_code: Str = Field(default="", validation_alias=AliasChoices("ItemCode", "item_code"))
    item_name: OptStr = Field(default=None, validation_alias=AliasChoices("ItemName", "Dscription", "item_name"))
    warehouse_code: Str = Field(default="", validation_alias=AliasChoices("WhsCode", "warehouse_code"))
    open_qty: OptNum = Field(default=None, validation_alias=AliasChoices("OpenQty", "open_qty"))
    quantity: OptNum = Field(default=None, validation_alias=AliasChoices("Quantity", "quantity"))
    collected_qty: OptNum = Field(
        default=None, validation_alias=AliasChoices("CollectedQuantity", "collected_qty")
    )
    batch_managed: YesNo = Field(
        default=None, validation_alias=AliasChoices("IsBatchManaged", "ManBtchNum", "batch_managed")
    )
    collected_events: Optional[List[CollectedEventPayload]] = Field(
        default=None, validation_alias=AliasChoices("CollectedEvents", "collected_events")
    )
    bin_allocations: Optional[List[BinAllocationPayload]] = Field(
        default=None, validation_alias=AliasChoices("BinAllocations", "bin_allocations")
    )


# ========= 库位移库（binToBin） =========
class MoveDetailPayload(_Base):
    by: CollectorField = Field(default=None, validation_alias=_BY)
    from_bin_abs_entry: OptInt = Field(default=None, validation_alias=AliasChoices("FromBinAbsEntry"))
    from_bin_code: OptStr = Field(default=None, validation_alias=AliasChoices("FromBinCode"))
    to_bin_abs_entry: Int0 = Field(default=0, validation_alias=AliasChoices("ToBinAbsEntry"))
    to_bin_code: Str = Field(default="", validation_alias=AliasChoices("ToBinCode"))
    batch_number: OptStr = Field(default=None, validation_alias=AliasChoices("BatchNumber"))
    qty: Num = Field(default=0.0, validation_alias=AliasChoices("Qty", "Quantity"))
    updated_at: OptStr = Field(default=None, validation_alias=AliasChoices("UpdatedAt", "at"))


class BinTransferLinePayload(_Base):
    line_num: OptInt = Field(default=None, validation_alias=AliasChoices("LineNum", "line_num"))
    item_code: Str = Field(default="", validation_alias=AliasChoices("ItemCode", "item_code"))
    item_name: OptStr = Field(default=None, validation_alias=AliasChoices("ItemName", "item_name"))
    planned_qty: OptNum = Field(default=None, validation_alias=AliasChoices("Quantity", "planned_qty"))
    from_whs_code: OptStr = Field(default=None, validation_alias=AliasChoices("FromWhsCode"))
    from_bin_abs_entry: OptInt = Field(default=None, validation_alias=AliasChoices("FromBinAbsEntry"))
    from_bin_code: OptStr = Field(default=None, validation_alias=AliasChoices("FromBinCode"))
    to_whs_code: OptStr = Field(default=None, validation_alias=AliasChoices("ToWhsCode"))
    to_bin_abs_entry: OptInt = Field(default=None, validation_alias=AliasChoices("ToBinAbsEntry"))
    to_bin_code: OptStr = Field(default=None, validation_alias=AliasChoices("ToBinCode"))
    moved_qty: OptNum = Field(default=None, validation_alias=AliasChoices("MovedQuantity", "moved_qty"))
    batch_managed: YesNo = Field(
        default=None, validation_alias=AliasChoices("IsBatchManaged", "ManBtchNum", "batch_managed")
    )
    move_details: Optional[List[MoveDetailPayload]] = Field(
        default=None, validation_alias=AliasChoices("MoveDetails", "move_details")
    )


class BinTransferDocPayload(_Base):
    doc_id: OptStr = Field(default=None, validation_alias=AliasChoices("_id", "id"))
    doc_entry: OptInt = Field(default=None, validation_alias=AliasChoices("DocEntry"))
    doc_num: OptInt = Field(default=None, validation_alias=AliasChoices("DocNum"))
    from_whs_code: OptStr = Field(default=None, validation_alias=AliasChoices("FromWhsCode"))
    to_whs_code: OptStr = Field(default=None, validation_alias=AliasChoices("ToWhsCode"))
    status: OptStr = Field(default=None, validation_alias=AliasChoices("Status"))
    lines: List[BinTransferLinePayload] = Field(
        default_factory=list, validation_alias=AliasChoices("DocumentLines", "lines")
    )


# ========= 推送信封 =========
class PushEnvelope(_Base):
    """
    `{Line: {...}}` / `{line: {...}}` 两种包装都接受；
    lineRemoved 可能只在顶层带 LineNum / ItemCode / WhsCode。
    """

    line: Optional[dict] = Field(default=None, validation_alias=AliasChoices("Line", "line"))
    event: Optional[dict] = Field(default=None, validation_alias=AliasChoices("Event", "event"))
    line_num: OptInt = Field(default=None, validation_alias=AliasChoices("LineNum"))
    item_code: Str = Field(default="", validation_alias=AliasChoices("ItemCode"))
    warehouse_code: Str = Field(default="", validation_alias=AliasChoices("WhsCode"))
    status: OptStr = Field(default=None, validation_alias=AliasChoices("Status", "DocStatus"))


# ========= 库存 / 应答 =========
class OnHandPayload(_Base):
    item_code: Str = Field(default="", validation_alias=AliasChoices("ItemCode"))
    warehouse_code: Str = Field(default="", validation_alias=AliasChoices("WhsCode"))
    bin_abs_entry: Int0 = Field(default=0, validation_alias=AliasChoices("BinAbsEntry"))
    bin_code: Str = Field(default="", validation_alias=AliasChoices("BinCode"))
    batch_number: OptStr = Field(default=None, validation_alias=AliasChoices("BatchNumber"))
    batch_managed: YesNo = Field(default=None, validation_alias=AliasChoices("IsBatchManaged"))
    on_hand_qty: Num = Field(default=0.0, validation_alias=AliasChoices("OnHandQty", "OnHand"))
    exp_date: OptStr = Field(default=None, validation_alias=AliasChoices("ExpDate"))


class BatchOnHandPayload(_Base):
    batch_number: Str = Field(default="", validation_alias=AliasChoices("BatchNumber"))
    on_hand_qty: Num = Field(default=0.0, validation_alias=AliasChoices("OnHandQty", "OnHand"))
    bin_abs_entry: Int0 = Field(default=0, validation_alias=AliasChoices("BinAbsEntry"))
    bin_code: Str = Field(default="", validation_alias=AliasChoices("BinCode"))


class AckPayload(_Base):
    ok: bool = False
    message: Str = Field(default="", validation_alias=AliasChoices("message", "msg", "error"))
