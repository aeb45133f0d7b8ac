# collectsync/services/session_base.py
from __future__ import annotations

import logging
import math
import uuid
from abc import ABC, abstractmethod
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set

from collectsync.domain.events_enums import AllocationOrigin, AllocationState, ErrorCode
from collectsync.domain.ports import CollectorDirectory, SyncChannel
from collectsync.metrics import COMMIT_ROWS, UNDO
from collectsync.services.allocation_ledger import (
    AllocationLedger,
    LedgerChange,
    PendingClaim,
    transition_event,
)
from collectsync.services.batch_code import undo_batch_variants
from collectsync.services.collect_types import (
    Ack,
    AllocationEvent,
    CollectorRef,
    CommitReport,
    CompositeKey,
    DraftRow,
    LineRef,
    RowOutcome,
    RowView,
    UndoResult,
)
from collectsync.services.draft_allocations import DraftAllocationSet
from collectsync.services.errors import (
    ChannelOffline,
    InvalidQuantity,
    LineClosed,
    MissingCollector,
    RowBusy,
    UnknownRow,
)

SendRow = Callable[[DraftRow], Awaitable[Ack]]
SendUndo = Callable[[AllocationEvent, Optional[str]], Awaitable[Ack]]
RowLimit = Callable[[DraftRow], float]

# 上游单据状态里视为 “已关闭” 的取值
_CLOSED_DOC_STATUSES = {"C", "closed", "CLOSED"}


def coerce_qty(qty: object) -> float:
    try:
        q = float(qty)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidQuantity(qty) from None  # type: ignore[arg-type]
    if math.isnan(q) or math.isinf(q):
        raise InvalidQuantity(q)
    return q


class LedgerSession(ABC):
    """
    一个编辑会话（一个操作人 × 一条单据行）的公共骨架。

    职责：
      - 订阅单据级台账，按推送把 pendingConfirm 的草稿转正；
      - busy 集合：有未完成请求的行直接拒绝重入；
      - 顺序逐行提交，逐行记录结果（不做整批原子）；
      - 撤销时按批次编码候选逐个重试。

    具体的校验 / 线上请求由 collect / move 两个子类提供。
    """

    flow = "collect"

    def __init__(
        self,
        *,
        ledger: AllocationLedger,
        line_ref: LineRef,
        channel: SyncChannel,
        collectors: Optional[CollectorDirectory] = None,
        epsilon: float = 1e-9,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session_id = uuid.uuid4().hex
        self.ledger = ledger
        self.line_ref = line_ref
        self.channel = channel
        self.collectors = collectors
        self.epsilon = float(epsilon)
        self.log = logger or logging.getLogger(f"collectsync.{self.flow}")

        self.drafts = DraftAllocationSet()
        self._busy: Set[str] = set()
        self._closed = False
        self._line_removed = False
        self._collector_names: Dict[int, str] = {}
        self.default_collector: Optional[CollectorRef] = None
        self._unsubscribe = ledger.subscribe(self._on_ledger_change, pending=self._pending_claims)

    # ------------------------------------------------------------------
    # 状态守卫
    # ------------------------------------------------------------------
    @property
    def online(self) -> bool:
        return bool(self.channel.connected)

    @property
    def closed(self) -> bool:
        return self._closed or self._line_removed or self.ledger.doc_status in _CLOSED_DOC_STATUSES

    def _ensure_open(self) -> None:
        if self.closed:
            raise LineClosed(self.line_ref.label)

    async def _ensure_online(self) -> None:
        if self.online:
            return
        # 掉线后先试一次重连，草稿在恢复后可以直接重新提交
        if not await self.channel.ping():
            raise ChannelOffline()
        self.log.info("sync channel back online")

    def _ensure_idle(self, row_id: str) -> None:
        if row_id in self._busy:
            raise RowBusy(row_id)

    def _resolve_collector(self, collector: Optional[CollectorRef]) -> CollectorRef:
        c = collector or self.default_collector
        if c is None or not c.known:
            raise MissingCollector()
        if not c.display_name and c.id in self._collector_names:
            c = CollectorRef(id=c.id, display_name=self._collector_names[c.id])
        return c

    def _fits(self, qty: float, limit: float) -> bool:
        return qty <= limit + self.epsilon

    def is_busy(self, row_id: str) -> bool:
        return row_id in self._busy

    # ------------------------------------------------------------------
    # 收集人目录
    # ------------------------------------------------------------------
    async def load_collectors(self, work_area_id: Optional[int]) -> List[CollectorRef]:
        if self.collectors is None or not work_area_id:
            return []
        items = await self.collectors.list_collectors(int(work_area_id))
        items = [c for c in items if c.known]
        for c in items:
            if c.display_name:
                self._collector_names[c.id] = c.display_name
        # 只有一个收集人时自动选中
        if len(items) == 1 and self.default_collector is None:
            self.default_collector = items[0]
        return items

    def _named(self, collector: CollectorRef) -> CollectorRef:
        if collector.display_name or collector.id not in self._collector_names:
            return collector
        return CollectorRef(id=collector.id, display_name=self._collector_names[collector.id])

    # ------------------------------------------------------------------
    # 子类钩子
    # ------------------------------------------------------------------
    def _line_events(self) -> List[AllocationEvent]:
        return self.ledger.events_for_line(self.line_ref)

    def _matches(self, row: DraftRow, event: AllocationEvent) -> bool:
        return (
            row.stock_key == event.stock_key
            and row.collector.id == event.collector.id
            and abs(row.qty - event.qty) <= self.epsilon
        )

    def _undo_batch_managed(self, event: AllocationEvent) -> bool:
        return event.batch_managed

    @abstractmethod
    async def refresh(self) -> None:
        """重新拉取现存量 / 行快照（提交被拒后调用）。"""

    # ------------------------------------------------------------------
    # 推送确认
    # ------------------------------------------------------------------
    def _on_ledger_change(self, change: LedgerChange) -> None:
        if change.line_ref is None:
            return
        if change.line_ref.match_key != self.line_ref.match_key:
            return
        if change.line_removed:
            self._line_removed = True
            self.log.warning(
                "line %s removed upstream; session %s closed with %d draft(s)",
                self.line_ref.label,
                self.session_id,
                len(self.drafts),
            )
            return
        self._confirm(change)

    def _confirm(self, change: LedgerChange) -> None:
        for ev in change.inserted:
            row = self._match_waiting(ev)
            if row is None:
                continue
            if row.state == AllocationState.PENDING_CONFIRM:
                self.drafts.promote(row.row_id)
                self.log.debug("row %s confirmed by event %s", row.row_id, ev.composite_key.digest())
            else:
                # push 先于 ack：ack 成功后立即转正
                row.confirmed_early = True

    def _pending_claims(self, line_ref: LineRef) -> List[PendingClaim]:
        """只有聚合的增量由台账统一分配（同一房间的所有会话一起排队）。"""
        if self._closed or line_ref.match_key != self.line_ref.match_key:
            return []
        return [
            PendingClaim(
                acked_at=row.acked_at or row.created_at,
                qty=row.qty,
                confirm=partial(self._confirm_by_aggregate, row.row_id),
            )
            for row in self.drafts.pending_confirm()
        ]

    def _confirm_by_aggregate(self, row_id: str) -> None:
        if row_id not in self.drafts:
            return
        if self.drafts.get(row_id).state != AllocationState.PENDING_CONFIRM:
            return
        self.drafts.promote(row_id)
        self.log.debug("row %s confirmed by aggregate", row_id)

    def _match_waiting(self, event: AllocationEvent) -> Optional[DraftRow]:
        for row in self.drafts.pending_confirm():
            if self._matches(row, event):
                return row
        for row in self.drafts:
            if (
                row.state == AllocationState.PENDING_COMMIT
                and not row.confirmed_early
                and self._matches(row, event)
            ):
                return row
        return None

    # ------------------------------------------------------------------
    # 提交 / 撤销
    # ------------------------------------------------------------------
    async def _commit_rows(
        self,
        rows: List[DraftRow],
        send: SendRow,
        limit_for: RowLimit,
    ) -> CommitReport:
        report = CommitReport()
        rejected = False
        offline = False

        # 整批先占住：排队的行同样不可修改 / 删除，第二次 commit 也不会重复发送
        rows = [r for r in rows if r.row_id not in self._busy]
        queued = {r.row_id for r in rows}
        self._busy.update(queued)
        try:
            for row in rows:
                if row.row_id not in self.drafts or row.qty <= 0:
                    continue

                if not row.editable:
                    report.add(
                        RowOutcome(
                            row.row_id,
                            False,
                            f"row is {row.state.value}, not a draft",
                            ErrorCode.ILLEGAL_TRANSITION.value,
                        )
                    )
                    continue

                if offline:
                    report.add(
                        RowOutcome(row.row_id, False, "sync channel is offline", ErrorCode.CHANNEL_OFFLINE.value)
                    )
                    COMMIT_ROWS.labels(flow=self.flow, result="offline").inc()
                    continue

                limit = limit_for(row)
                if not self._fits(row.qty, limit):
                    report.add(
                        RowOutcome(
                            row.row_id,
                            False,
                            f"draft no longer fits: maximum is {limit:g}",
                            ErrorCode.STALE_DRAFT.value,
                        )
                    )
                    COMMIT_ROWS.labels(flow=self.flow, result="stale").inc()
                    continue

                self.drafts.transition(row.row_id, AllocationState.PENDING_COMMIT)
                try:
                    ack = await send(row)
                except ChannelOffline as e:
                    self._revert(row)
                    offline = True
                    report.add(RowOutcome(row.row_id, False, e.message, ErrorCode.CHANNEL_OFFLINE.value))
                    COMMIT_ROWS.labels(flow=self.flow, result="offline").inc()
                    self.log.warning("commit row %s: channel offline", row.row_id)
                    continue
                except Exception:
                    self._revert(row)
                    raise
                finally:
                    self._busy.discard(row.row_id)

                if row.row_id not in self.drafts:
                    # 等待 ack 期间会话被关闭，草稿已丢弃
                    report.add(RowOutcome(row.row_id, ack.ok, ack.message))
                    continue

                if ack.ok:
                    self.drafts.transition(row.row_id, AllocationState.PENDING_CONFIRM)
                    if row.confirmed_early:
                        self.drafts.promote(row.row_id)
                    report.add(RowOutcome(row.row_id, True, ack.message))
                    COMMIT_ROWS.labels(flow=self.flow, result="ok").inc()
                else:
                    self._revert(row)
                    rejected = True
                    report.add(
                        RowOutcome(row.row_id, False, ack.message, ErrorCode.UPSTREAM_REJECTED.value)
                    )
                    COMMIT_ROWS.labels(flow=self.flow, result="rejected").inc()
                    self.log.info("commit row %s rejected: %s", row.row_id, ack.message)
        finally:
            self._busy.difference_update(queued)

        if report.failed or report.ok:
            self.log.info(
                "%s commit on %s: ok=%d failed=%d",
                self.flow,
                self.line_ref.label,
                report.ok,
                report.failed,
            )
        if rejected and not self._closed:
            # 被权威端拒绝后不盲目重试：刷新快照，让调用方看到最新可用量
            await self.refresh()
        return report

    def _revert(self, row: DraftRow) -> None:
        row.confirmed_early = False
        if row.row_id in self.drafts:
            self.drafts.transition(row.row_id, AllocationState.DRAFT)

    def _find_saved(self, key: "CompositeKey | str") -> AllocationEvent:
        if isinstance(key, CompositeKey):
            ev = self.ledger.find(key, line_ref=self.line_ref)
            label = key.digest()
        else:
            ev = self.ledger.find_by_digest(str(key), line_ref=self.line_ref)
            label = str(key)
        if ev is None:
            raise UnknownRow(label)
        return ev

    async def _undo(self, key: "CompositeKey | str", send: SendUndo) -> UndoResult:
        event = self._find_saved(key)
        row_id = event.composite_key.digest()
        self._ensure_idle(row_id)
        await self._ensure_online()

        transition_event(event, AllocationState.PENDING_UNDO)
        self._busy.add(row_id)
        attempts = 0
        message = ""
        try:
            variants = undo_batch_variants(
                event.stock_key.batch_number,
                batch_managed=self._undo_batch_managed(event),
            )
            for variant in variants:
                attempts += 1
                try:
                    ack = await send(event, variant)
                except ChannelOffline as e:
                    message = e.message
                    break
                except Exception:
                    transition_event(event, AllocationState.SAVED)
                    raise
                if ack.ok:
                    transition_event(event, AllocationState.REMOVED)
                    self.ledger.tombstone(event.composite_key)
                    UNDO.labels(flow=self.flow, result="ok").inc()
                    self.log.info(
                        "undo %s accepted after %d attempt(s)", row_id, attempts
                    )
                    return UndoResult(True, event.composite_key, attempts, ack.message)
                message = ack.message
                self.log.debug("undo %s rejected with batch=%r: %s", row_id, variant, ack.message)

            transition_event(event, AllocationState.SAVED)
            UNDO.labels(flow=self.flow, result="failed").inc()
            self.log.info("undo %s failed: %s", row_id, message)
            return UndoResult(False, event.composite_key, attempts, message)
        finally:
            self._busy.discard(row_id)

    # ------------------------------------------------------------------
    # 视图 / 生命周期
    # ------------------------------------------------------------------
    def rows(self) -> List[RowView]:
        """saved 在前（服务端顺序），draft 在后（插入顺序）。"""
        out: List[RowView] = []
        for ev in self._line_events():
            rid = ev.composite_key.digest()
            out.append(
                RowView(
                    row_id=rid,
                    origin=AllocationOrigin.SAVED,
                    state=ev.state,
                    stock_key=ev.stock_key,
                    collector=self._named(ev.collector),
                    qty=ev.qty,
                    bin_code=ev.bin_code,
                    to_bin=getattr(ev, "to_bin", None),
                    busy=rid in self._busy,
                )
            )
        for row in self.drafts:
            out.append(
                RowView(
                    row_id=row.row_id,
                    origin=AllocationOrigin.DRAFT,
                    state=row.state,
                    stock_key=row.stock_key,
                    collector=self._named(row.collector),
                    qty=row.qty,
                    bin_code=row.bin_code,
                    to_bin=row.to_bin,
                    busy=row.row_id in self._busy,
                )
            )
        return out

    def close(self) -> int:
        """放弃会话：退订，丢弃未提交草稿（无需通知服务端）。"""
        if self._closed:
            return 0
        self._closed = True
        self._unsubscribe()
        n = self.drafts.clear()
        self.log.info("session %s closed, %d draft(s) discarded", self.session_id, n)
        return n
