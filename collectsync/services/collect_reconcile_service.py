# collectsync/services/collect_reconcile_service.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from collectsync.domain.ports import (
    CollectorDirectory,
    LineSource,
    StockSnapshotProvider,
    SyncChannel,
)
from collectsync.services.allocation_ledger import AllocationLedger, LedgerChange
from collectsync.services.availability_calc import AvailabilityView, build_view
from collectsync.services.collect_types import (
    AllocationEvent,
    CollectorRef,
    CommitReport,
    CompositeKey,
    DraftRow,
    LineContext,
    LineRef,
    OnHandRow,
    PushEvent,
    StockKey,
    UndoResult,
)
from collectsync.services.errors import (
    ExceedsAvailable,
    InvalidQuantity,
    MissingBatch,
)
from collectsync.services.session_base import LedgerSession, coerce_qty

logger = logging.getLogger("collectsync.collect")


class CollectReconcileService(LedgerSession):
    """
    拣货收集（collect）会话：一个操作人在一条拣货单据行上的草稿编辑与提交。

    可用量口径见 availability_calc：
      - 库位：on_hand(k) - (全单已保存 + 本会话草稿)
      - 行：  open - max(聚合, Σ已保存) - Σ本会话草稿

    所有本地校验在任何网络请求之前同步抛出。
    """

    flow = "collect"

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
        self._on_hand: Dict[StockKey, OnHandRow] = {}

    # ------------------------------------------------------------------
    # 加载 / 刷新
    # ------------------------------------------------------------------
    @property
    def context(self) -> LineContext:
        ctx = self.ledger.context(self.line_ref)
        if ctx is None:
            return LineContext(line_ref=self.line_ref)
        return ctx

    async def load(self, work_area_id: Optional[int] = None) -> None:
        await self.refresh_on_hand()
        await self.load_collectors(work_area_id)

    async def refresh_on_hand(self) -> List[OnHandRow]:
        rows = await self.stock.get_on_hand(self.line_ref.item_code, self.line_ref.warehouse_code)
        self._on_hand = {r.stock_key: r for r in rows if r.stock_key.bin_abs_entry > 0}
        return list(self._on_hand.values())

    async def refresh(self) -> None:
        await self.refresh_on_hand()
        if self.line_source is None or self.line_ref.doc_entry is None:
            return
        snapshots = await self.line_source.get_order_lines(
            self.line_ref.doc_entry, self.line_ref.doc_num
        )
        for snap in snapshots:
            self.ledger.load_line(snap)

    def on_hand_rows(self) -> List[OnHandRow]:
        return list(self._on_hand.values())

    @property
    def batch_managed(self) -> bool:
        if self.context.batch_managed:
            return True
        return any(r.batch_managed or r.stock_key.batch_number for r in self._on_hand.values())

    # ------------------------------------------------------------------
    # 可用量（每次现算）
    # ------------------------------------------------------------------
    def collected(self) -> float:
        return self.ledger.collected(self.line_ref)

    def availability(self) -> AvailabilityView:
        return build_view(
            open_qty=self.context.open_qty,
            collected=self.collected(),
            on_hand={k: r.on_hand_qty for k, r in self._on_hand.items()},
            saved=self.ledger.saved_events(),
            drafts=list(self.drafts),
        )

    def available(self, key: StockKey) -> float:
        return self.availability().available(key)

    def line_remaining(self) -> float:
        return self.availability().line_remaining()

    def max_addable(self, key: StockKey) -> float:
        return self.availability().max_addable(key)

    def _limit_for(self, row: DraftRow) -> float:
        return self.availability().limit_for(row.stock_key, row.qty)

    # ------------------------------------------------------------------
    # 草稿
    # ------------------------------------------------------------------
    def add_draft(
        self,
        key: StockKey,
        collector: Optional[CollectorRef],
        qty: float,
    ) -> DraftRow:
        self._ensure_open()
        qty = coerce_qty(qty)
        if qty <= 0:
            raise InvalidQuantity(qty)
        who = self._resolve_collector(collector)

        row_info = self._on_hand.get(key)
        batch_required = self.batch_managed or bool(row_info and row_info.batch_managed)
        if batch_required and key.batch_number is None:
            raise MissingBatch(self.line_ref.item_code)

        view = self.availability()
        limit = view.max_addable(key)
        if not self._fits(qty, limit):
            reason = "available" if view.available(key) <= view.line_remaining() else "line_remaining"
            raise ExceedsAvailable(qty, limit, reason)

        row = self.drafts.add(
            line_ref=self.line_ref,
            stock_key=key,
            collector=who,
            qty=qty,
            bin_code=row_info.bin_code if row_info else "",
            exp_date=row_info.exp_date if row_info else None,
        )
        self.log.debug(
            "draft %s: +%g at bin=%s batch=%s by %s",
            row.row_id,
            qty,
            key.bin_abs_entry,
            key.batch_number,
            who.label,
        )
        return row

    def update_draft(self, row_id: str, qty: float) -> Optional[DraftRow]:
        """改草稿量；qty == 0 等同删除（返回 None）。"""
        self._ensure_open()
        row = self.drafts.get(row_id)
        self._ensure_idle(row_id)
        qty = coerce_qty(qty)
        if qty < 0:
            raise InvalidQuantity(qty)
        if qty == 0:
            self.remove_draft(row_id)
            return None

        limit = self.availability().limit_for(row.stock_key, row.qty)
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
    async def commit(self) -> CommitReport:
        self._ensure_open()
        await self._ensure_online()
        rows = self.drafts.editable()

        async def _send(row: DraftRow):
            return await self.channel.collect(
                row.line_ref,
                row.stock_key,
                row.collector,
                row.qty,
                bin_code=row.bin_code,
                exp_date=row.exp_date,
            )

        return await self._commit_rows(rows, _send, self._limit_for)

    def _undo_batch_managed(self, event: AllocationEvent) -> bool:
        return self.context.batch_managed or event.batch_managed

    async def remove_saved(self, key: "CompositeKey | str") -> UndoResult:
        """撤销已保存的收集记录（按 CompositeKey 或其 digest 定位）。"""
        self._ensure_open()

        async def _send(ev: AllocationEvent, batch_number: Optional[str]):
            return await self.channel.uncollect(
                ev.line_ref,
                ev.stock_key,
                ev.collector,
                ev.qty,
                batch_number=batch_number,
                bin_code=ev.bin_code,
                exp_date=ev.exp_date,
            )

        return await self._undo(key, _send)

    def apply_push(self, push: PushEvent) -> LedgerChange:
        return self.ledger.apply_push(push)

