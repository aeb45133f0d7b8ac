# collectsync/services/move_progress_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from collectsync.domain.ports import (
    CollectorDirectory,
    LineSource,
    StockSnapshotProvider,
    SyncChannel,
)
from collectsync.services.allocation_ledger import AllocationLedger, LedgerChange
from collectsync.services.availability_calc import batch_max_addable, move_remaining
from collectsync.services.batch_code import normalize_optional_batch_code
from collectsync.services.collect_types import (
    AllocationEvent,
    BatchOnHand,
    BinRef,
    CollectorRef,
    CommitReport,
    CompositeKey,
    DraftRow,
    LineRef,
    MoveLine,
    PushEvent,
    StockKey,
    UndoResult,
)
from collectsync.services.errors import (
    ExceedsAvailable,
    InvalidQuantity,
    MissingBatch,
    MissingDestination,
    MissingSource,
    SameLocation,
)
from collectsync.services.session_base import LedgerSession, coerce_qty

logger = logging.getLogger("collectsync.move")


@dataclass(frozen=True)
class BatchAvailability:
    batch_number: str
    on_hand_qty: float
    picked_qty: float
    available_qty: float


class MoveProgressService(LedgerSession):
    """
    库位移库（bin-to-bin）会话。

    - moved     = max(MovedQuantity 聚合, Σ 可见明细)
    - remaining = max(planned - moved, 0)
    - 批次商品：每个 (batch, 目标库位) 一条草稿，同键累加；
      max_addable(batch) = min(批次现存 - 已占用, remaining - Σ草稿)
    - 非批次商品：一条草稿代表整个待移动量，提交时只发一次 apply_move
    """

    flow = "move"

    def __init__(
        self,
        *,
        ledger: AllocationLedger,
        line_ref: LineRef,
        channel: SyncChannel,
        stock: StockSnapshotProvider,
        collectors: Optional[CollectorDirectory] = None,
        line_source: Optional[LineSource] = None,
        epsilon: float = 1e-9,
        from_bin: Optional[BinRef] = None,
        to_bin: Optional[BinRef] = None,
    ) -> None:
        super().__init__(
            ledger=ledger,
            line_ref=line_ref,
            channel=channel,
            collectors=collectors,
            epsilon=epsilon,
            logger=logger,
        )
        self.stock = stock
        self.line_source = line_source
        self._from_bin = from_bin
        self._to_bin = to_bin
        self._batches: Dict[str, BatchOnHand] = {}

    # ------------------------------------------------------------------
    # 行 / 库位
    # ------------------------------------------------------------------
    @property
    def context(self) -> MoveLine:
        ctx = self.ledger.context(self.line_ref)
        if ctx is None:
            return MoveLine(line_ref=self.line_ref)
        return ctx

    @property
    def from_bin(self) -> Optional[BinRef]:
        return self._from_bin or self.context.from_bin

    @property
    def to_bin(self) -> Optional[BinRef]:
        return self._to_bin or self.context.to_bin

    def set_collector(self, collector: Optional[CollectorRef]) -> CollectorRef:
        self.default_collector = None
        self.default_collector = self._resolve_collector(collector)
        return self.default_collector

    def set_destination(self, to_bin: Optional[BinRef]) -> None:
        self._to_bin = to_bin

    async def set_source(self, from_bin: BinRef) -> List[BatchOnHand]:
        """换源库位：批次现存重新拉取；旧源库位上的可编辑草稿作废。"""
        self._ensure_open()
        prev = self.from_bin
        self._from_bin = from_bin
        if prev is None or prev.abs_entry != from_bin.abs_entry:
            for row in self.drafts.editable():
                self._ensure_idle(row.row_id)
                self.drafts.remove(row.row_id)
        return await self.load_batches()

    async def load(self, work_area_id: Optional[int] = None) -> None:
        await self.load_batches()
        await self.load_collectors(work_area_id)

    async def load_batches(self) -> List[BatchOnHand]:
        src = self.from_bin
        self._batches = {}
        if src is None or not src.code:
            return []
        rows = await self.stock.get_on_hand_by_location_and_batch(self.line_ref.item_code, src.code)
        for r in rows:
            bn = normalize_optional_batch_code(r.batch_number)
            if bn is None:
                continue
            self._batches[bn] = r
        return list(self._batches.values())

    async def refresh(self) -> None:
        await self.load_batches()
        if self.line_source is None:
            return
        doc_key = self.line_ref.doc_entry if self.line_ref.doc_entry is not None else self.line_ref.doc_id
        if doc_key is None:
            return
        for snap in await self.line_source.get_bin_transfer(doc_key):
            self.ledger.load_line(snap)

    # ------------------------------------------------------------------
    # 进度 / 上限
    # ------------------------------------------------------------------
    def moved(self) -> float:
        return self.ledger.collected(self.line_ref)

    def remaining(self) -> float:
        return move_remaining(self.context.planned_qty, self.moved())

    @property
    def batch_managed(self) -> bool:
        return self.context.batch_managed or bool(self._batches)

    def picked_for_batch(self, batch_number: Optional[str]) -> float:
        bn = normalize_optional_batch_code(batch_number)
        saved = sum(e.qty for e in self._line_events() if e.stock_key.batch_number == bn)
        return saved + self.drafts.qty_for_batch(bn)

    def batch_rows(self) -> List[BatchAvailability]:
        out: List[BatchAvailability] = []
        for bn, r in self._batches.items():
            picked = self.picked_for_batch(bn)
            out.append(
                BatchAvailability(
                    batch_number=bn,
                    on_hand_qty=r.on_hand_qty,
                    picked_qty=picked,
                    available_qty=max(r.on_hand_qty - picked, 0.0),
                )
            )
        return out

    def max_addable(self, batch_number: Optional[str] = None) -> float:
        if not self.batch_managed:
            return max(self.remaining() - self.drafts.total_qty(), 0.0)
        bn = normalize_optional_batch_code(batch_number)
        row = self._batches.get(bn) if bn else None
        return batch_max_addable(
            batch_on_hand=row.on_hand_qty if row else 0.0,
            picked_for_batch=self.picked_for_batch(bn),
            remaining=self.remaining(),
            draft_total=self.drafts.total_qty(),
        )

    def _limit_for(self, row: DraftRow) -> float:
        own = row.qty
        by_line = max(self.remaining() - (self.drafts.total_qty() - own), 0.0)
        if not self.batch_managed:
            return by_line
        bn = row.stock_key.batch_number
        on_hand = self._batches[bn].on_hand_qty if bn in self._batches else 0.0
        by_batch = max(on_hand - (self.picked_for_batch(bn) - own), 0.0)
        return min(by_batch, by_line)

    # ------------------------------------------------------------------
    # 草稿
    # ------------------------------------------------------------------
    def _stock_key(self, src: BinRef, batch_number: Optional[str]) -> StockKey:
        return StockKey(
            item_code=self.line_ref.item_code,
            warehouse_code=src.warehouse_code or self.line_ref.warehouse_code,
            bin_abs_entry=src.abs_entry,
            batch_number=batch_number,
        )

    def _check_bins(self, to_bin: Optional[BinRef]) -> "tuple[BinRef, BinRef]":
        src = self.from_bin
        dst = to_bin or self.to_bin
        if src is None or not src.abs_entry:
            raise MissingSource()
        if dst is None or not dst.abs_entry:
            raise MissingDestination()
        if src.abs_entry == dst.abs_entry:
            raise SameLocation(dst.abs_entry)
        return src, dst

    def add_batch_draft(
        self,
        batch_number: Optional[str],
        qty: float,
        to_bin: Optional[BinRef] = None,
        collector: Optional[CollectorRef] = None,
    ) -> DraftRow:
        self._ensure_open()
        qty = coerce_qty(qty)
        if qty <= 0:
            raise InvalidQuantity(qty)
        who = self._resolve_collector(collector)
        src, dst = self._check_bins(to_bin)
        bn = normalize_optional_batch_code(batch_number)
        if bn is None:
            raise MissingBatch(self.line_ref.item_code)

        limit = self.max_addable(bn)
        if not self._fits(qty, limit):
            by_line = max(self.remaining() - self.drafts.total_qty(), 0.0)
            raise ExceedsAvailable(qty, limit, "remaining" if limit >= by_line else "batch")

        row = self.drafts.add(
            line_ref=self.line_ref,
            stock_key=self._stock_key(src, bn),
            collector=who,
            qty=qty,
            bin_code=src.code,
            to_bin=dst,
        )
        self.log.debug("move draft %s: +%g batch=%s -> %s", row.row_id, qty, bn, dst.label)
        return row

    def set_single_draft(
        self,
        qty: float,
        to_bin: Optional[BinRef] = None,
        batch_number: Optional[str] = None,
        collector: Optional[CollectorRef] = None,
    ) -> Optional[DraftRow]:
        """非批次商品：整行只有一条待移动草稿，重复调用即覆盖；qty == 0 清空。"""
        self._ensure_open()
        if self.batch_managed:
            raise MissingBatch(self.line_ref.item_code)
        qty = coerce_qty(qty)
        if qty < 0:
            raise InvalidQuantity(qty)

        current = next(iter(self.drafts.editable()), None)
        if qty == 0:
            if current is not None:
                self.remove_draft(current.row_id)
            return None

        who = self._resolve_collector(collector)
        src, dst = self._check_bins(to_bin)
        own = current.qty if current is not None else 0.0
        limit = max(self.remaining() - (self.drafts.total_qty() - own), 0.0)
        if not self._fits(qty, limit):
            raise ExceedsAvailable(qty, limit, "remaining")

        key = self._stock_key(src, normalize_optional_batch_code(batch_number))
        if current is None:
            return self.drafts.add(
                line_ref=self.line_ref,
                stock_key=key,
                collector=who,
                qty=qty,
                bin_code=src.code,
                to_bin=dst,
            )
        self._ensure_idle(current.row_id)
        current.qty = qty
        current.stock_key = key
        current.collector = who
        current.bin_code = src.code
        current.to_bin = dst
        return current

    def update_draft(self, row_id: str, qty: float) -> Optional[DraftRow]:
        self._ensure_open()
        row = self.drafts.get(row_id)
        self._ensure_idle(row_id)
        qty = coerce_qty(qty)
        if qty < 0:
            raise InvalidQuantity(qty)
        if qty == 0:
            self.remove_draft(row_id)
            return None
        limit = self._limit_for(row)
        if not self._fits(qty, limit):
            raise ExceedsAvailable(qty, limit)
        return self.drafts.set_qty(row_id, qty)

    def remove_draft(self, row_id: str) -> DraftRow:
        self.drafts.get(row_id)
        self._ensure_idle(row_id)
        return self.drafts.remove(row_id)

    # ------------------------------------------------------------------
    # 提交 / 撤销
    # ------------------------------------------------------------------
    def _matches(self, row: DraftRow, event: AllocationEvent) -> bool:
        # 明细里没有源库位，按 (batch, 目标库位, 收集人, 数量) 对齐
        to_abs = getattr(event, "to_bin", None)
        return (
            row.stock_key.batch_number == event.stock_key.batch_number
            and (row.to_bin.abs_entry if row.to_bin else 0) == (to_abs.abs_entry if to_abs else 0)
            and row.collector.id == event.collector.id
            and abs(row.qty - event.qty) <= self.epsilon
        )

    def _undo_batch_managed(self, event: AllocationEvent) -> bool:
        return self.batch_managed or event.batch_managed

    def _source_of(self, row: DraftRow) -> BinRef:
        return BinRef(
            abs_entry=row.stock_key.bin_abs_entry,
            code=row.bin_code,
            warehouse_code=row.stock_key.warehouse_code,
        )

    async def commit(self) -> CommitReport:
        self._ensure_open()
        await self._ensure_online()
        rows = self.drafts.editable()
        for row in rows:
            if row.to_bin is None or not row.to_bin.abs_entry:
                raise MissingDestination()

        async def _send(row: DraftRow):
            return await self.channel.apply_move(
                row.line_ref,
                self._source_of(row),
                row.to_bin,
                row.stock_key.batch_number,
                row.qty,
                row.collector,
            )

        return await self._commit_rows(rows, _send, self._limit_for)

    async def remove_detail(self, key: "CompositeKey | str") -> UndoResult:
        """撤销已保存的移库明细：完整回传 (行, 物料, 数量, 收集人, 源/目标库位, 批次)。"""
        self._ensure_open()
        event = self._find_saved(key)
        who = event.collector if event.collector.known else self._resolve_collector(None)
        src = getattr(event, "from_bin", None) or self.from_bin
        dst = getattr(event, "to_bin", None) or self.to_bin
        if src is None or not src.abs_entry:
            raise MissingSource()
        if dst is None or not dst.abs_entry:
            raise MissingDestination()

        async def _send(ev: AllocationEvent, batch_number: Optional[str]):
            return await self.channel.remove_move_detail(
                ev.line_ref, src, dst, batch_number, ev.qty, who
            )

        return await self._undo(event.composite_key, _send)

    def apply_push(self, push: PushEvent) -> LedgerChange:
        return self.ledger.apply_push(push)
