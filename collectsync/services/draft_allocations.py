# collectsync/services/draft_allocations.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from collectsync.domain.events_enums import ALLOWED_TRANSITIONS, AllocationState
from collectsync.services.collect_types import (
    BinRef,
    CollectorRef,
    DraftRow,
    LineRef,
    StockKey,
)
from collectsync.services.errors import IllegalTransition, UnknownRow


def _to_bin_key(to_bin: Optional[BinRef]) -> int:
    return int(to_bin.abs_entry) if to_bin is not None else 0


class DraftAllocationSet:
    """
    单个编辑会话独占的草稿集合（不跨会话共享，不持久化）。

    - 同 (stock_key, collector, 目标库位) 的可编辑草稿按数量累加合并；
    - pendingCommit / pendingConfirm 的行不参与合并，但仍计入占用；
    - 行顺序 = 插入顺序，提交 / 转正都按这个顺序走。
    """

    def __init__(self) -> None:
        self._rows: Dict[str, DraftRow] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[DraftRow]:
        return iter(list(self._rows.values()))

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._rows

    # ---------------- 查询 ----------------
    def get(self, row_id: str) -> DraftRow:
        row = self._rows.get(row_id)
        if row is None:
            raise UnknownRow(row_id)
        return row

    def find_editable(
        self,
        stock_key: StockKey,
        collector_id: int,
        to_bin: Optional[BinRef] = None,
    ) -> Optional[DraftRow]:
        want = _to_bin_key(to_bin)
        for row in self._rows.values():
            if (
                row.editable
                and row.stock_key == stock_key
                and row.collector.id == collector_id
                and _to_bin_key(row.to_bin) == want
            ):
                return row
        return None

    def editable(self) -> List[DraftRow]:
        return [r for r in self._rows.values() if r.editable]

    def pending_confirm(self) -> List[DraftRow]:
        """ack 成功、等待推送确认的行（按 ack 时间先后）。"""
        rows = [r for r in self._rows.values() if r.state == AllocationState.PENDING_CONFIRM]
        rows.sort(key=lambda r: r.acked_at or r.created_at)
        return rows

    def qty_at(self, stock_key: StockKey) -> float:
        return sum(r.qty for r in self._rows.values() if r.stock_key == stock_key)

    def qty_for_batch(self, batch_number: Optional[str]) -> float:
        return sum(
            r.qty for r in self._rows.values() if r.stock_key.batch_number == batch_number
        )

    def total_qty(self) -> float:
        return sum(r.qty for r in self._rows.values())

    # ---------------- 写入 ----------------
    def add(
        self,
        *,
        line_ref: LineRef,
        stock_key: StockKey,
        collector: CollectorRef,
        qty: float,
        bin_code: str = "",
        exp_date: Optional[str] = None,
        to_bin: Optional[BinRef] = None,
    ) -> DraftRow:
        row = self.find_editable(stock_key, collector.id, to_bin)
        if row is not None:
            row.qty += float(qty)
            if collector.display_name and not row.collector.display_name:
                row.collector = collector
            return row

        row = DraftRow(
            row_id=uuid.uuid4().hex,
            line_ref=line_ref,
            stock_key=stock_key,
            collector=collector,
            qty=float(qty),
            bin_code=bin_code,
            exp_date=exp_date,
            to_bin=to_bin,
        )
        self._rows[row.row_id] = row
        return row

    def set_qty(self, row_id: str, qty: float) -> DraftRow:
        row = self.get(row_id)
        if not row.editable:
            raise IllegalTransition(row.state, AllocationState.DRAFT)
        row.qty = float(qty)
        return row

    def remove(self, row_id: str) -> DraftRow:
        row = self.get(row_id)
        if not row.editable:
            raise IllegalTransition(row.state, AllocationState.REMOVED)
        return self._rows.pop(row_id)

    def transition(self, row_id: str, target: AllocationState) -> DraftRow:
        row = self.get(row_id)
        if target not in ALLOWED_TRANSITIONS.get(row.state, set()):
            raise IllegalTransition(row.state, target)
        row.state = target
        if target == AllocationState.PENDING_CONFIRM:
            row.acked_at = datetime.now(timezone.utc)
        return row

    def promote(self, row_id: str) -> DraftRow:
        """推送确认：pendingConfirm → saved，草稿集合里不再保留。"""
        row = self.transition(row_id, AllocationState.SAVED)
        self._rows.pop(row_id, None)
        return row

    def clear(self) -> int:
        n = len(self._rows)
        self._rows.clear()
        return n
