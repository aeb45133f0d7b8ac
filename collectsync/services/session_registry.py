# collectsync/services/session_registry.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from collectsync.domain.events_enums import PushKind
from collectsync.domain.ports import (
    CollectorDirectory,
    LineSource,
    StockSnapshotProvider,
    SyncChannel,
)
from collectsync.services.allocation_ledger import AllocationLedger, LedgerChange
from collectsync.services.collect_reconcile_service import CollectReconcileService
from collectsync.services.collect_types import (
    BinRef,
    CollectorRef,
    LineContext,
    LineRef,
    LineSnapshot,
    MoveLine,
    PushEvent,
)
from collectsync.services.errors import UnknownLine, UnknownSession
from collectsync.services.move_progress_service import MoveProgressService
from collectsync.services.push_room import (
    BIN_TO_BIN,
    ORDER_PICK,
    PushRoom,
    RoomBinding,
    bin_to_bin_room,
    order_pick_room,
)
from collectsync.services.session_base import LedgerSession

logger = logging.getLogger("collectsync.registry")


class SessionRegistry:
    """
    进程内会话表：

    - 每个单据（房间）一份台账副本，首个会话打开时从 LineSource 加载；
    - 同一房间的多个会话共享台账，各自独占草稿；
    - 房间里最后一个会话关闭时退出房间、丢弃台账副本。
    """

    def __init__(
        self,
        *,
        stock: StockSnapshotProvider,
        channel: SyncChannel,
        line_source: LineSource,
        collectors: Optional[CollectorDirectory] = None,
        push_room: Optional[PushRoom] = None,
        epsilon: float = 1e-9,
    ) -> None:
        self.stock = stock
        self.channel = channel
        self.line_source = line_source
        self.collectors = collectors
        self.push_room = push_room or PushRoom()
        self.epsilon = epsilon
        self._sessions: Dict[str, LedgerSession] = {}
        self._session_room: Dict[str, str] = {}
        self._room_sessions: Dict[str, Set[str]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # 台账（按房间）
    # ------------------------------------------------------------------
    def _room_lock(self, room: str) -> asyncio.Lock:
        return self._room_locks.setdefault(room, asyncio.Lock())

    def _leave_room(self, room: str) -> None:
        self.push_room.leave(room)
        lock = self._room_locks.get(room)
        if lock is not None and not lock.locked():
            self._room_locks.pop(room, None)

    async def _order_ledger(self, doc_entry: int, doc_num: Optional[int]) -> AllocationLedger:
        room = order_pick_room(doc_entry)
        # 同一单据的首次加载串行化：并发打开的会话必须拿到同一份台账
        async with self._room_lock(room):
            binding = self.push_room.get(room)
            if binding is not None:
                return binding.ledger
            ledger = AllocationLedger(context_cls=LineContext, room=room, epsilon=self.epsilon)
            for snap in await self.line_source.get_order_lines(doc_entry, doc_num):
                ledger.load_line(snap)
            binding = self.push_room.join(
                room,
                RoomBinding(ledger=ledger, flow=ORDER_PICK, doc_entry=doc_entry, doc_num=doc_num),
            )
        logger.info("order ledger %s loaded with %d line(s)", room, len(binding.ledger.line_refs()))
        return binding.ledger

    async def _transfer_ledger(self, doc_key: Union[int, str]) -> AllocationLedger:
        room = bin_to_bin_room(doc_key)
        async with self._room_lock(room):
            binding = self.push_room.get(room)
            if binding is not None:
                return binding.ledger
            ledger = AllocationLedger(context_cls=MoveLine, room=room, epsilon=self.epsilon)
            snapshots = await self.line_source.get_bin_transfer(doc_key)
            for snap in snapshots:
                ledger.load_line(snap)

            from_whs: Optional[str] = None
            to_whs: Optional[str] = None
            for ref in ledger.line_refs():
                ctx = ledger.context(ref)
                from_whs = from_whs or ref.warehouse_code or None
                if ctx is not None and ctx.to_bin is not None:
                    to_whs = to_whs or ctx.to_bin.warehouse_code or None

            is_entry = isinstance(doc_key, int)
            binding = self.push_room.join(
                room,
                RoomBinding(
                    ledger=ledger,
                    flow=BIN_TO_BIN,
                    doc_entry=doc_key if is_entry else None,
                    doc_id=None if is_entry else str(doc_key),
                    from_whs_code=from_whs,
                    to_whs_code=to_whs,
                ),
            )
        logger.info("transfer ledger %s loaded with %d line(s)", room, len(snapshots))
        return binding.ledger

    def _register(self, room: str, session: LedgerSession) -> None:
        self._sessions[session.session_id] = session
        self._session_room[session.session_id] = room
        self._room_sessions.setdefault(room, set()).add(session.session_id)

    async def _load_or_close(
        self,
        session: "CollectReconcileService | MoveProgressService",
        work_area_id: Optional[int],
    ) -> None:
        # 先登记再加载：加载期间房间已有成员，不会被别的失败打开顺手退掉
        try:
            await session.load(work_area_id)
        except Exception:
            self.close(session.session_id)
            raise

    @staticmethod
    def _find_line(
        ledger: AllocationLedger,
        line_num: Optional[int],
        item_code: str,
        warehouse_code: str,
    ) -> LineRef:
        ref = ledger.find_line(line_num=line_num, item_code=item_code, warehouse_code=warehouse_code)
        if ref is None:
            label = f"L:{line_num}" if line_num is not None else f"K:{item_code}|{warehouse_code}"
            raise UnknownLine(label)
        return ref

    def _line_or_release(
        self,
        ledger: AllocationLedger,
        line_num: Optional[int],
        item_code: str,
        warehouse_code: str,
    ) -> LineRef:
        try:
            return self._find_line(ledger, line_num, item_code, warehouse_code)
        except UnknownLine:
            # 房间里还没有会话：不留空房间
            if not self._room_sessions.get(ledger.room):
                self._leave_room(ledger.room)
            raise

    # ------------------------------------------------------------------
    # 打开 / 查找 / 关闭
    # ------------------------------------------------------------------
    async def open_collect(
        self,
        *,
        doc_entry: int,
        line_num: Optional[int] = None,
        item_code: str = "",
        warehouse_code: str = "",
        doc_num: Optional[int] = None,
        work_area_id: Optional[int] = None,
        collector: Optional[CollectorRef] = None,
    ) -> CollectReconcileService:
        ledger = await self._order_ledger(doc_entry, doc_num)
        line_ref = self._line_or_release(ledger, line_num, item_code, warehouse_code)
        svc = CollectReconcileService(
            ledger=ledger,
            line_ref=line_ref,
            channel=self.channel,
            stock=self.stock,
            collectors=self.collectors,
            line_source=self.line_source,
            epsilon=self.epsilon,
        )
        if collector is not None and collector.known:
            svc.default_collector = collector
        self._register(ledger.room, svc)
        await self._load_or_close(svc, work_area_id)
        logger.info("collect session %s opened on %s %s", svc.session_id, ledger.room, line_ref.label)
        return svc

    async def open_move(
        self,
        *,
        doc_entry: Optional[int] = None,
        doc_id: Optional[str] = None,
        line_num: Optional[int] = None,
        item_code: str = "",
        work_area_id: Optional[int] = None,
        collector: Optional[CollectorRef] = None,
        from_bin: Optional[BinRef] = None,
        to_bin: Optional[BinRef] = None,
    ) -> MoveProgressService:
        doc_key: Union[int, str, None] = doc_entry if doc_entry is not None else doc_id
        if doc_key is None:
            raise UnknownLine("document key is required")
        ledger = await self._transfer_ledger(doc_key)

        line_ref = self._line_or_release(ledger, line_num, item_code, "")

        svc = MoveProgressService(
            ledger=ledger,
            line_ref=line_ref,
            channel=self.channel,
            stock=self.stock,
            collectors=self.collectors,
            line_source=self.line_source,
            epsilon=self.epsilon,
            from_bin=from_bin,
            to_bin=to_bin,
        )
        if collector is not None and collector.known:
            svc.default_collector = collector
        self._register(ledger.room, svc)
        await self._load_or_close(svc, work_area_id)
        logger.info("move session %s opened on %s %s", svc.session_id, ledger.room, line_ref.label)
        return svc

    def get(self, session_id: str) -> LedgerSession:
        svc = self._sessions.get(session_id)
        if svc is None:
            raise UnknownSession(session_id)
        return svc

    def sessions(self) -> List[LedgerSession]:
        return list(self._sessions.values())

    def close(self, session_id: str) -> int:
        svc = self.get(session_id)
        discarded = svc.close()
        self._sessions.pop(session_id, None)
        room = self._session_room.pop(session_id, None)
        if room is not None:
            members = self._room_sessions.get(room, set())
            members.discard(session_id)
            if not members:
                self._room_sessions.pop(room, None)
                self._leave_room(room)
        return discarded

    def close_all(self) -> None:
        for sid in list(self._sessions):
            self.close(sid)

    # ------------------------------------------------------------------
    # 推送
    # ------------------------------------------------------------------
    async def dispatch(
        self,
        room: str,
        event_name: str,
        payload: Optional[Mapping[str, Any]],
    ) -> Optional[LedgerChange]:
        change = self.push_room.dispatch(room, event_name, payload)
        if change is not None and change.reload_required:
            await self.resync(room)
        return change

    async def resync(self, room: str) -> int:
        """整单重拉：逐行合并；重拉结果里不存在的行按 lineRemoved 处理。"""
        binding = self.push_room.get(room)
        if binding is None:
            return 0
        if binding.flow == ORDER_PICK:
            snapshots = await self.line_source.get_order_lines(binding.doc_entry, binding.doc_num)
        else:
            key: Union[int, str] = binding.doc_entry if binding.doc_entry is not None else binding.doc_id
            snapshots = await self.line_source.get_bin_transfer(key)

        ledger = binding.ledger
        fresh = {s.line_ref.match_key for s in snapshots}
        for ref in ledger.line_refs():
            if ref.match_key not in fresh:
                ledger.apply_push(PushEvent(kind=PushKind.LINE_REMOVED, line=LineSnapshot(line_ref=ref)))
        for snap in snapshots:
            ledger.load_line(snap)
        logger.info("room %s resynced: %d line(s)", room, len(snapshots))
        return len(snapshots)
