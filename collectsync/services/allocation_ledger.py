# collectsync/services/allocation_ledger.py
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from collectsync.domain.events_enums import (
    ALLOWED_TRANSITIONS,
    AllocationOrigin,
    AllocationState,
    PushKind,
    UpsertOutcome,
)
from collectsync.metrics import PUSH
from collectsync.services.availability_calc import reconcile_collected
from collectsync.services.collect_types import (
    AllocationEvent,
    CompositeKey,
    LineContext,
    LineRef,
    LineSnapshot,
    PushEvent,
    StockKey,
)
from collectsync.services.errors import IllegalTransition

logger = logging.getLogger("collectsync.ledger")

LineKey = Tuple[Any, ...]


@dataclass
class LedgerChange:
    """一次台账变更的结果，推给订阅者（会话）做草稿转正。"""

    line_ref: Optional[LineRef]
    inserted: List[AllocationEvent] = field(default_factory=list)
    removed: List[CompositeKey] = field(default_factory=list)
    duplicates: int = 0
    collected_before: float = 0.0
    collected_after: float = 0.0
    line_removed: bool = False
    reload_required: bool = False
    doc_status: Optional[str] = None

    @property
    def collected_delta(self) -> float:
        return self.collected_after - self.collected_before


@dataclass
class _LineState:
    line_ref: LineRef
    context: Any = None
    aggregate: Optional[float] = None
    # dict 保持插入顺序 = 服务端事件顺序
    events: Dict[CompositeKey, AllocationEvent] = field(default_factory=dict)


Listener = Callable[[LedgerChange], None]


@dataclass
class PendingClaim:
    """ack 成功、等待推送确认的一行；聚合快照没有明细时，按 ack 时间跨会话排队认领。"""

    acked_at: datetime
    qty: float
    confirm: Callable[[], None]


PendingSource = Callable[[LineRef], List[PendingClaim]]


def _merge_ref(cur: LineRef, new: LineRef) -> LineRef:
    return LineRef(
        doc_entry=new.doc_entry if new.doc_entry is not None else cur.doc_entry,
        line_num=new.line_num if new.line_num is not None else cur.line_num,
        item_code=new.item_code or cur.item_code,
        warehouse_code=new.warehouse_code or cur.warehouse_code,
        doc_num=new.doc_num if new.doc_num is not None else cur.doc_num,
        doc_id=new.doc_id or cur.doc_id,
    )


def transition_event(event: AllocationEvent, target: AllocationState) -> None:
    if target not in ALLOWED_TRANSITIONS.get(event.state, set()):
        raise IllegalTransition(event.state, target)
    event.state = target


class AllocationLedger:
    """
    权威台账在本地的副本（单据级，一个房间一份）。

    - 以 CompositeKey 幂等 upsert：同一推送重复到达 = no-op；
    - 行快照按字段合并，不整体替换；
    - 携带完整事件列表的快照是该行 “有哪些事件” 的权威答案：
        * 列表里没有的旧事件 → 移除（同时清理对应墓碑，表示权威删除已传播）
        * 列表里有、但本地已墓碑的事件 → 不复活
    - 行级聚合（CollectedQuantity / MovedQuantity）直接覆盖，不与事件相加。
    """

    def __init__(
        self,
        *,
        context_cls: Type[Any] = LineContext,
        room: str = "",
        epsilon: float = 1e-9,
    ) -> None:
        self._context_cls = context_cls
        self.room = room
        self.epsilon = float(epsilon)
        self._lines: Dict[LineKey, _LineState] = {}
        self._tombstones: Dict[CompositeKey, LineKey] = {}
        self._listeners: List[Listener] = []
        self._pending_sources: List[PendingSource] = []
        self.doc_status: Optional[str] = None

    # ------------------------------------------------------------------
    # 订阅
    # ------------------------------------------------------------------
    def subscribe(
        self,
        listener: Listener,
        pending: Optional[PendingSource] = None,
    ) -> Callable[[], None]:
        self._listeners.append(listener)
        if pending is not None:
            self._pending_sources.append(pending)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
            if pending is not None and pending in self._pending_sources:
                self._pending_sources.remove(pending)

        return _unsubscribe

    def _notify(self, change: LedgerChange) -> None:
        for listener in list(self._listeners):
            listener(change)
        self._attribute_aggregate(change)

    def _attribute_aggregate(self, change: LedgerChange) -> int:
        """
        聚合增量里没有明细事件对应的部分，每次变更只分配一次：
        所有会话的 pendingConfirm 行合在一起按 ack 时间排队，
        队头放不下就停（不跳过，保持先 ack 先确认）。
        """
        if change.line_ref is None or change.line_removed:
            return 0
        leftover = change.collected_delta - sum(ev.qty for ev in change.inserted)
        if leftover <= self.epsilon:
            return 0

        claims: List[PendingClaim] = []
        for source in list(self._pending_sources):
            claims.extend(source(change.line_ref))
        claims.sort(key=lambda c: c.acked_at)

        confirmed = 0
        for claim in claims:
            if claim.qty > leftover + self.epsilon:
                break
            claim.confirm()
            leftover -= claim.qty
            confirmed += 1
        if confirmed:
            logger.debug("%d row(s) confirmed by aggregate on %s", confirmed, change.line_ref.label)
        return confirmed

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    def line_refs(self) -> List[LineRef]:
        return [st.line_ref for st in self._lines.values()]

    def find_line(self, *, line_num: Optional[int] = None, item_code: str = "", warehouse_code: str = "") -> Optional[LineRef]:
        probe = LineRef(
            doc_entry=None, line_num=line_num, item_code=item_code, warehouse_code=warehouse_code
        )
        st = self._lines.get(probe.match_key)
        if st is not None:
            return st.line_ref
        if line_num is not None or not item_code:
            return None
        # 无行号：按物料（+ 仓库，空仓库视为通配）扫描
        for st in self._lines.values():
            ref = st.line_ref
            if ref.item_code != item_code:
                continue
            if warehouse_code and ref.warehouse_code and ref.warehouse_code != warehouse_code:
                continue
            return ref
        return None

    def context(self, line_ref: LineRef) -> Any:
        st = self._lines.get(line_ref.match_key)
        return st.context if st else None

    def aggregate(self, line_ref: LineRef) -> Optional[float]:
        st = self._lines.get(line_ref.match_key)
        return st.aggregate if st else None

    def events_for_line(self, line_ref: LineRef) -> List[AllocationEvent]:
        st = self._lines.get(line_ref.match_key)
        if st is None:
            return []
        return [e for e in st.events.values() if self._visible(e)]

    def saved_events(self) -> List[AllocationEvent]:
        out: List[AllocationEvent] = []
        for st in self._lines.values():
            out.extend(e for e in st.events.values() if self._visible(e))
        return out

    def saved_qty_at(self, stock_key: StockKey) -> float:
        return sum(e.qty for e in self.saved_events() if e.stock_key == stock_key)

    def collected(self, line_ref: LineRef) -> float:
        st = self._lines.get(line_ref.match_key)
        if st is None:
            return 0.0
        return reconcile_collected(
            st.aggregate, (e.qty for e in st.events.values() if self._visible(e))
        )

    def find(self, key: CompositeKey, *, line_ref: Optional[LineRef] = None) -> Optional[AllocationEvent]:
        if line_ref is not None:
            st = self._lines.get(line_ref.match_key)
            states = [st] if st else []
        else:
            states = list(self._lines.values())
        for st in states:
            ev = st.events.get(key)
            if ev is not None and self._visible(ev):
                return ev
        return None

    def find_by_digest(self, digest: str, *, line_ref: Optional[LineRef] = None) -> Optional[AllocationEvent]:
        events = self.events_for_line(line_ref) if line_ref is not None else self.saved_events()
        for ev in events:
            if ev.composite_key.digest() == digest:
                return ev
        return None

    def is_tombstoned(self, key: CompositeKey) -> bool:
        return key in self._tombstones

    def _visible(self, ev: AllocationEvent) -> bool:
        return ev.composite_key not in self._tombstones and ev.state != AllocationState.REMOVED

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------
    def _ensure_line(self, line_ref: LineRef) -> _LineState:
        k = line_ref.match_key
        st = self._lines.get(k)
        if st is None:
            st = _LineState(line_ref=line_ref)
            self._lines[k] = st
        return st

    def upsert(self, event: AllocationEvent) -> UpsertOutcome:
        """幂等写入单条已保存事件。"""
        key = event.composite_key
        if key in self._tombstones:
            return UpsertOutcome.TOMBSTONED

        st = self._ensure_line(event.line_ref)
        cur = st.events.get(key)
        if cur is not None:
            # 幂等命中；顺手补全缺失的收集人姓名
            if not cur.collector.display_name and event.collector.display_name:
                cur.collector = event.collector
            return UpsertOutcome.DUPLICATE

        event.origin = AllocationOrigin.SAVED
        event.state = AllocationState.SAVED
        st.events[key] = event
        return UpsertOutcome.INSERTED

    def _merge_context(self, st: _LineState, snapshot: LineSnapshot) -> None:
        fields = dict(snapshot.fields)
        if st.context is None:
            st.context = self._context_cls(line_ref=snapshot.line_ref, **fields)
            return
        if fields:
            st.context = dataclasses.replace(st.context, **fields)

    def apply_snapshot(self, snapshot: LineSnapshot) -> LedgerChange:
        st = self._ensure_line(snapshot.line_ref)
        # 新快照里的 line_ref 可能带更多信息（doc_num 等），也可能只带行号
        st.line_ref = _merge_ref(st.line_ref, snapshot.line_ref)

        change = LedgerChange(line_ref=st.line_ref, collected_before=self.collected(st.line_ref))

        self._merge_context(st, snapshot)

        if snapshot.aggregate is not None:
            st.aggregate = snapshot.aggregate

        if snapshot.events is not None:
            incoming = {e.composite_key for e in snapshot.events}

            for key in list(st.events):
                if key not in incoming:
                    st.events.pop(key)
                    self._tombstones.pop(key, None)
                    change.removed.append(key)

            for key, owner in list(self._tombstones.items()):
                if owner == st.line_ref.match_key and key not in incoming:
                    self._tombstones.pop(key, None)

            for ev in snapshot.events:
                outcome = self.upsert(ev)
                PUSH.labels(kind="line", outcome=outcome.value).inc()
                if outcome == UpsertOutcome.INSERTED:
                    change.inserted.append(ev)
                else:
                    change.duplicates += 1

        change.collected_after = self.collected(st.line_ref)
        return change

    def remove_line(self, line_ref: LineRef) -> LedgerChange:
        st = self._lines.pop(line_ref.match_key, None)
        change = LedgerChange(line_ref=st.line_ref if st else line_ref, line_removed=True)
        if st is not None:
            change.collected_before = reconcile_collected(
                st.aggregate, (e.qty for e in st.events.values())
            )
            change.removed = list(st.events)
            for key, owner in list(self._tombstones.items()):
                if owner == line_ref.match_key:
                    self._tombstones.pop(key, None)
        return change

    def tombstone(self, key: CompositeKey) -> None:
        """撤销成功后本地墓碑：迟到的旧推送不能在权威删除传播前把它复活。"""
        for lk, st in self._lines.items():
            ev = st.events.get(key)
            if ev is not None:
                self._tombstones[key] = lk
                return
        logger.debug("tombstone for unknown key %s ignored", key.digest())

    # ------------------------------------------------------------------
    # 推送入口
    # ------------------------------------------------------------------
    def load_line(self, snapshot: LineSnapshot) -> LedgerChange:
        change = self.apply_snapshot(snapshot)
        self._notify(change)
        return change

    def apply_push(self, push: PushEvent) -> LedgerChange:
        if push.doc_status:
            self.doc_status = push.doc_status

        if push.kind == PushKind.LINES_SYNCED:
            change = LedgerChange(line_ref=None, reload_required=True)
        elif push.kind == PushKind.LINE_REMOVED:
            if push.line is None:
                return LedgerChange(line_ref=None)
            change = self.remove_line(push.line.line_ref)
        elif push.kind == PushKind.EVENT:
            if push.event is None:
                return LedgerChange(line_ref=None)
            st = self._ensure_line(push.event.line_ref)
            change = LedgerChange(line_ref=st.line_ref, collected_before=self.collected(st.line_ref))
            outcome = self.upsert(push.event)
            PUSH.labels(kind="event", outcome=outcome.value).inc()
            if outcome == UpsertOutcome.INSERTED:
                change.inserted.append(push.event)
            else:
                change.duplicates += 1
                logger.debug("push absorbed (%s): %s", outcome.value, push.event.composite_key.digest())
            change.collected_after = self.collected(st.line_ref)
        else:
            if push.line is None:
                return LedgerChange(line_ref=None)
            change = self.apply_snapshot(push.line)

        change.doc_status = push.doc_status
        self._notify(change)
        return change
