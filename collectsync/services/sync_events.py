# collectsync/services/sync_events.py
"""
上游载荷 → 领域对象。

两类来源走同一套转换：
  - LineSource 首次加载 / 整单重拉（getOrdersDocsItemsApi、getBinToBinApi）；
  - 推送（orderPick:* / binToBin:*）。

转换只做形状归一，不做任何可用量判断。
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from collectsync.domain.events_enums import PushKind
from collectsync.schemas.sync_payloads import (
    BinTransferDocPayload,
    BinTransferLinePayload,
    CollectorPayload,
    OrderLinePayload,
    PushEnvelope,
)
from collectsync.services.batch_code import normalize_optional_batch_code
from collectsync.services.collect_types import (
    AllocationEvent,
    BinRef,
    CollectorRef,
    CompositeKey,
    LineRef,
    LineSnapshot,
    MoveDetail,
    PushEvent,
    StockKey,
)

logger = logging.getLogger("collectsync.sync")

# 推送事件名后缀 → 种类
_SUFFIX_KIND = {
    "lineUpdated": PushKind.LINE_UPDATED,
    "lineAdded": PushKind.LINE_ADDED,
    "lineRemoved": PushKind.LINE_REMOVED,
    "linesSynced": PushKind.LINES_SYNCED,
    "lineEvent": PushKind.EVENT,
}


def collector_from(p: Optional[CollectorPayload]) -> CollectorRef:
    if p is None:
        return CollectorRef(id=0)
    return CollectorRef(id=int(p.emp_id or 0), display_name=p.full_name)


def push_kind(event_name: str) -> Optional[PushKind]:
    suffix = str(event_name or "").rsplit(":", 1)[-1]
    return _SUFFIX_KIND.get(suffix)


# ----------------------------------------------------------------------
# orderPick
# ----------------------------------------------------------------------
def _order_events(p: OrderLinePayload, line_ref: LineRef) -> Optional[List[AllocationEvent]]:
    events = p.collected_events or []
    allocs = p.bin_allocations or []

    fallback: Dict[Tuple[int, Optional[str]], Any] = {}
    for b in allocs:
        fallback[(b.bin_abs_entry, normalize_optional_batch_code(b.batch_number))] = b

    out: List[AllocationEvent] = []
    # 一条事件 = 一行，不合并
    for i, e in enumerate(events):
        if e.qty <= 0 or not e.bin_abs_entry:
            continue
        bn = normalize_optional_batch_code(e.batch_number)
        fb = fallback.get((e.bin_abs_entry, bn))
        who = collector_from(e.by)
        out.append(
            AllocationEvent(
                composite_key=CompositeKey.make(
                    batch_number=bn,
                    target_location=e.bin_abs_entry,
                    qty=e.qty,
                    collector_id=who.id,
                    timestamp=e.at or f"#{i}",
                ),
                line_ref=line_ref,
                stock_key=StockKey(line_ref.item_code, line_ref.warehouse_code, e.bin_abs_entry, bn),
                collector=who,
                qty=e.qty,
                timestamp=e.at,
                bin_code=e.bin_code or (fb.bin_code if fb else "") or str(e.bin_abs_entry),
                exp_date=e.exp_date or (fb.exp_date if fb else None),
            )
        )

    if out:
        return out

    # 没有明细事件（未带 includeEvents）时退回 BinAllocations，收集人未知
    if allocs:
        for i, b in enumerate(allocs):
            if b.qty <= 0 or not b.bin_abs_entry:
                continue
            bn = normalize_optional_batch_code(b.batch_number)
            out.append(
                AllocationEvent(
                    composite_key=CompositeKey.make(
                        batch_number=bn,
                        target_location=b.bin_abs_entry,
                        qty=b.qty,
                        collector_id=0,
                        timestamp=f"#{i}",
                    ),
                    line_ref=line_ref,
                    stock_key=StockKey(line_ref.item_code, line_ref.warehouse_code, b.bin_abs_entry, bn),
                    collector=CollectorRef(id=0),
                    qty=b.qty,
                    bin_code=b.bin_code or str(b.bin_abs_entry),
                    exp_date=b.exp_date,
                )
            )
        return out

    if p.collected_events is not None or p.bin_allocations is not None:
        return out
    return None


def order_line_snapshot(
    raw: "Mapping[str, Any] | OrderLinePayload",
    *,
    doc_entry: Optional[int] = None,
    doc_num: Optional[int] = None,
) -> LineSnapshot:
    p = raw if isinstance(raw, OrderLinePayload) else OrderLinePayload.model_validate(raw)
    line_ref = LineRef(
        doc_entry=p.doc_entry if p.doc_entry is not None else doc_entry,
        line_num=p.line_num,
        item_code=p.item_code,
        warehouse_code=p.warehouse_code,
        doc_num=p.doc_num if p.doc_num is not None else doc_num,
    )

    seen = p.model_fields_set
    fields: Dict[str, Any] = {}
    if "open_qty" in seen and p.open_qty is not None:
        fields["open_qty"] = p.open_qty
    elif "quantity" in seen and p.quantity is not None:
        fields["open_qty"] = p.quantity
    if "collected_qty" in seen:
        fields["collected_qty"] = p.collected_qty
    if "item_name" in seen:
        fields["item_name"] = p.item_name
    if "batch_managed" in seen and p.batch_managed is not None:
        fields["batch_managed"] = p.batch_managed

    return LineSnapshot(
        line_ref=line_ref,
        fields=fields,
        aggregate=p.collected_qty,
        events=_order_events(p, line_ref),
    )


# ----------------------------------------------------------------------
# binToBin
# ----------------------------------------------------------------------
def bin_transfer_line_snapshot(
    raw: "Mapping[str, Any] | BinTransferLinePayload",
    *,
    doc_entry: Optional[int] = None,
    doc_id: Optional[str] = None,
    from_whs_code: Optional[str] = None,
    to_whs_code: Optional[str] = None,
) -> LineSnapshot:
    p = raw if isinstance(raw, BinTransferLinePayload) else BinTransferLinePayload.model_validate(raw)
    from_whs = p.from_whs_code or from_whs_code or ""
    to_whs = p.to_whs_code or to_whs_code or from_whs
    line_ref = LineRef(
        doc_entry=doc_entry,
        line_num=p.line_num,
        item_code=p.item_code,
        warehouse_code=from_whs,
        doc_id=doc_id,
    )

    from_bin = (
        BinRef(abs_entry=p.from_bin_abs_entry, code=p.from_bin_code or "", warehouse_code=from_whs)
        if p.from_bin_abs_entry
        else None
    )
    to_bin = (
        BinRef(abs_entry=p.to_bin_abs_entry, code=p.to_bin_code or "", warehouse_code=to_whs)
        if p.to_bin_abs_entry
        else None
    )

    seen = p.model_fields_set
    fields: Dict[str, Any] = {}
    if "planned_qty" in seen and p.planned_qty is not None:
        fields["planned_qty"] = p.planned_qty
    if "moved_qty" in seen:
        fields["moved_qty"] = p.moved_qty
    if "item_name" in seen:
        fields["item_name"] = p.item_name
    if "batch_managed" in seen and p.batch_managed is not None:
        fields["batch_managed"] = p.batch_managed
    if from_bin is not None:
        fields["from_bin"] = from_bin
    if to_bin is not None:
        fields["to_bin"] = to_bin

    events: Optional[List[AllocationEvent]] = None
    if p.move_details is not None:
        events = []
        for i, d in enumerate(p.move_details):
            if d.qty <= 0 or not d.to_bin_abs_entry:
                continue
            bn = normalize_optional_batch_code(d.batch_number)
            who = collector_from(d.by)
            src = from_bin
            if d.from_bin_abs_entry:
                src = BinRef(abs_entry=d.from_bin_abs_entry, code=d.from_bin_code or "", warehouse_code=from_whs)
            events.append(
                MoveDetail(
                    composite_key=CompositeKey.make(
                        batch_number=bn,
                        target_location=d.to_bin_abs_entry,
                        qty=d.qty,
                        collector_id=who.id,
                        timestamp=d.updated_at or f"#{i}",
                    ),
                    line_ref=line_ref,
                    stock_key=StockKey(
                        p.item_code, from_whs, src.abs_entry if src else 0, bn
                    ),
                    collector=who,
                    qty=d.qty,
                    timestamp=d.updated_at,
                    bin_code=src.code if src else "",
                    from_bin=src,
                    to_bin=BinRef(abs_entry=d.to_bin_abs_entry, code=d.to_bin_code, warehouse_code=to_whs),
                )
            )

    return LineSnapshot(line_ref=line_ref, fields=fields, aggregate=p.moved_qty, events=events)


# ----------------------------------------------------------------------
# 推送归一
# ----------------------------------------------------------------------
def _removed_ref(env: PushEnvelope, line: Optional[Dict[str, Any]]) -> LineRef:
    src = line or {}
    probe = PushEnvelope.model_validate(src) if src else env
    line_num = probe.line_num if probe.line_num is not None else env.line_num
    return LineRef(
        doc_entry=None,
        line_num=line_num,
        item_code=probe.item_code or env.item_code,
        warehouse_code=probe.warehouse_code or env.warehouse_code,
    )


def _single_event(event_name: str, line: LineSnapshot, status: Optional[str]) -> Optional[PushEvent]:
    events = line.events or []
    if not events:
        return None
    ev = events[0]
    if not ev.timestamp:
        # 单条事件没有时间戳就拼不出可靠的身份：改为整单重拉
        logger.info("%s without timestamp; reloading %s", event_name, line.line_ref.label)
        return PushEvent(kind=PushKind.LINES_SYNCED, doc_status=status)
    return PushEvent(kind=PushKind.EVENT, event=ev, doc_status=status)


def normalize_order_pick_push(
    event_name: str,
    payload: Mapping[str, Any],
    *,
    doc_entry: Optional[int] = None,
    doc_num: Optional[int] = None,
) -> Optional[PushEvent]:
    """orderPick:* 推送 → PushEvent；认不出的事件名 / 坏载荷返回 None（吸收，不报错）。"""
    kind = push_kind(event_name)
    if kind is None:
        logger.debug("ignored push %s", event_name)
        return None
    try:
        env = PushEnvelope.model_validate(payload or {})
        if kind == PushKind.LINES_SYNCED:
            return PushEvent(kind=kind, doc_status=env.status)
        if kind == PushKind.LINE_REMOVED:
            ref = _removed_ref(env, env.line)
            return PushEvent(kind=kind, line=LineSnapshot(line_ref=ref), doc_status=env.status)
        if kind == PushKind.EVENT:
            line = order_line_snapshot(
                {**(env.line or {}), "CollectedEvents": [env.event or {}]},
                doc_entry=doc_entry,
                doc_num=doc_num,
            )
            return _single_event(event_name, line, env.status)
        if env.line is None:
            return None
        snap = order_line_snapshot(env.line, doc_entry=doc_entry, doc_num=doc_num)
        return PushEvent(kind=kind, line=snap, doc_status=env.status or env.line.get("DocStatus"))
    except ValidationError as e:
        logger.warning("malformed %s payload dropped: %s", event_name, e.errors()[:3])
        return None


def normalize_bin_to_bin_push(
    event_name: str,
    payload: Mapping[str, Any],
    *,
    doc_entry: Optional[int] = None,
    doc_id: Optional[str] = None,
    from_whs_code: Optional[str] = None,
    to_whs_code: Optional[str] = None,
) -> Optional[PushEvent]:
    kind = push_kind(event_name)
    if kind is None:
        logger.debug("ignored push %s", event_name)
        return None
    try:
        env = PushEnvelope.model_validate(payload or {})
        if kind == PushKind.LINES_SYNCED:
            return PushEvent(kind=kind, doc_status=env.status)
        if kind == PushKind.LINE_REMOVED:
            ref = _removed_ref(env, env.line)
            return PushEvent(kind=kind, line=LineSnapshot(line_ref=ref), doc_status=env.status)
        if kind == PushKind.EVENT:
            line = bin_transfer_line_snapshot(
                {**(env.line or {}), "MoveDetails": [env.event or {}]},
                doc_entry=doc_entry,
                doc_id=doc_id,
                from_whs_code=from_whs_code,
                to_whs_code=to_whs_code,
            )
            return _single_event(event_name, line, env.status)
        if env.line is None:
            return None
        snap = bin_transfer_line_snapshot(
            env.line,
            doc_entry=doc_entry,
            doc_id=doc_id,
            from_whs_code=from_whs_code,
            to_whs_code=to_whs_code,
        )
        return PushEvent(kind=kind, line=snap, doc_status=env.status)
    except ValidationError as e:
        logger.warning("malformed %s payload dropped: %s", event_name, e.errors()[:3])
        return None


def bin_transfer_snapshots(raw: Any, doc_key: "int | str") -> List[LineSnapshot]:
    """getBinToBinApi 整单 → 行快照；单据头里缺的 DocEntry / _id 用请求键补上。"""
    doc = BinTransferDocPayload.model_validate(raw if isinstance(raw, dict) else {})
    is_entry = isinstance(doc_key, int)
    doc_entry = doc.doc_entry if doc.doc_entry is not None else (doc_key if is_entry else None)
    doc_id = doc.doc_id or (None if is_entry else str(doc_key))
    return [
        bin_transfer_line_snapshot(
            line,
            doc_entry=doc_entry,
            doc_id=doc_id,
            from_whs_code=doc.from_whs_code,
            to_whs_code=doc.to_whs_code,
        )
        for line in doc.lines
    ]
