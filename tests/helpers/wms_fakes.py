# tests/helpers/wms_fakes.py
"""
进程内的上游 WMS 替身：同时扮演库存快照 / 收集人目录 / 单据行来源 / 同步通道。

- 单据状态以线上载荷形状（LineNum / CollectedEvents / MoveDetails ...）保存，
  读取时走与 httpx 适配器相同的转换函数；
- collect / applyMove 在服务端复核容量，超出即 Ack(ok=False)；
- 接受请求后向 subscribers（SessionRegistry）广播 lineUpdated；
  deferred=True 时先攒着，flush() 再发，用来模拟推送迟到。
"""
from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple, Union

from collectsync.services.collect_types import (
    Ack,
    BatchOnHand,
    BinRef,
    CollectorRef,
    LineRef,
    LineSnapshot,
    OnHandRow,
    StockKey,
)
from collectsync.services.errors import ChannelOffline
from collectsync.services.sync_events import bin_transfer_snapshots, order_line_snapshot

EPS = 1e-9


def _who(c: CollectorRef) -> Dict[str, Any]:
    return {"empID": c.id, "fullName": c.display_name}


class FakeWms:
    def __init__(self) -> None:
        self.orders: Dict[int, List[Dict[str, Any]]] = {}
        self.transfers: Dict[Union[int, str], Dict[str, Any]] = {}
        self.on_hand: Dict[Tuple[str, str], List[OnHandRow]] = {}
        self.batches: Dict[Tuple[str, str], List[BatchOnHand]] = {}
        self.collectors: Dict[int, List[CollectorRef]] = {}

        self.subscribers: List[Any] = []
        self.deferred = False
        self.outbox: List[Tuple[str, str, Dict[str, Any]]] = []

        self.connected = True
        # ping() 能否把通道拉回在线（模拟网络恢复）
        self.reachable = False
        self.pings = 0
        # 第 N 次同步请求之后掉线（None = 不掉线）
        self.drop_after: Optional[int] = None
        # 非 None 时每个同步请求先等它
        self.gate: Optional[asyncio.Event] = None
        # 服务端保存 “无批次” 时用的值（"" 或 None，两种上游都见过）
        self.blank_batch: Optional[str] = ""

        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.reads: List[str] = []
        self._clock = 0

    # ------------------------------------------------------------------
    # 种数据
    # ------------------------------------------------------------------
    def add_order_line(self, doc_entry: int, **line: Any) -> Dict[str, Any]:
        row = {"DocEntry": doc_entry, "CollectedQuantity": 0, "CollectedEvents": []}
        row.update(line)
        self.orders.setdefault(doc_entry, []).append(row)
        return row

    def add_transfer(self, doc_key: Union[int, str], lines: List[Dict[str, Any]], **head: Any) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"DocumentLines": lines}
        if isinstance(doc_key, int):
            doc["DocEntry"] = doc_key
        else:
            doc["_id"] = doc_key
        doc.update(head)
        for line in lines:
            line.setdefault("MovedQuantity", 0)
            line.setdefault("MoveDetails", [])
        self.transfers[doc_key] = doc
        return doc

    def set_on_hand(self, item_code: str, warehouse_code: str, rows: List[OnHandRow]) -> None:
        self.on_hand[(item_code, warehouse_code)] = rows

    def set_batches(self, item_code: str, bin_code: str, rows: List[BatchOnHand]) -> None:
        self.batches[(item_code, bin_code)] = rows

    # ------------------------------------------------------------------
    # 只读接口
    # ------------------------------------------------------------------
    async def get_on_hand(self, item_code: str, warehouse_code: str) -> List[OnHandRow]:
        self.reads.append("on_hand")
        return list(self.on_hand.get((item_code, warehouse_code), []))

    async def get_on_hand_by_location_and_batch(self, item_code: str, bin_code: str) -> List[BatchOnHand]:
        self.reads.append("batches")
        return list(self.batches.get((item_code, bin_code), []))

    async def list_collectors(self, work_area_id: int) -> List[CollectorRef]:
        return list(self.collectors.get(work_area_id, []))

    async def get_order_lines(self, doc_entry: int, doc_num: Optional[int] = None) -> List[LineSnapshot]:
        self.reads.append("order_lines")
        return [
            order_line_snapshot(copy.deepcopy(raw), doc_entry=doc_entry, doc_num=doc_num)
            for raw in self.orders.get(doc_entry, [])
        ]

    async def get_bin_transfer(self, doc_key: Union[int, str]) -> List[LineSnapshot]:
        self.reads.append("bin_transfer")
        return bin_transfer_snapshots(copy.deepcopy(self.transfers.get(doc_key, {})), doc_key)

    # ------------------------------------------------------------------
    # 推送
    # ------------------------------------------------------------------
    async def _publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        if self.deferred:
            self.outbox.append((room, event, payload))
            return
        for reg in list(self.subscribers):
            await reg.dispatch(room, event, copy.deepcopy(payload))

    async def flush(self) -> int:
        pending, self.outbox = self.outbox, []
        for room, event, payload in pending:
            for reg in list(self.subscribers):
                await reg.dispatch(room, event, copy.deepcopy(payload))
        return len(pending)

    async def ping(self) -> bool:
        self.pings += 1
        if self.reachable:
            self.connected = True
        return self.connected

    def _tick(self) -> str:
        self._clock += 1
        return f"2024-05-01T08:00:{self._clock:02d}Z"

    async def _enter(self, name: str, payload: Dict[str, Any]) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if not self.connected:
            raise ChannelOffline()
        if self.drop_after is not None and len(self.calls) >= self.drop_after:
            self.connected = False
            raise ChannelOffline("sync channel is offline: connection reset")
        self.calls.append((name, payload))

    # ------------------------------------------------------------------
    # orderPick
    # ------------------------------------------------------------------
    def _order_line(self, line_ref: LineRef) -> Dict[str, Any]:
        for row in self.orders.get(line_ref.doc_entry, []):
            if row.get("LineNum") == line_ref.line_num:
                return row
        raise KeyError(line_ref.label)

    def _picked_at(self, doc_entry: int, bin_abs_entry: int, batch_number: Optional[str]) -> float:
        total = 0.0
        for row in self.orders.get(doc_entry, []):
            for e in row["CollectedEvents"]:
                if e["BinAbsEntry"] == bin_abs_entry and (e["BatchNumber"] or None) == batch_number:
                    total += e["QtyDelta"]
        return total

    def _on_hand_at(self, key: StockKey) -> float:
        for r in self.on_hand.get((key.item_code, key.warehouse_code), []):
            if r.stock_key == key:
                return r.on_hand_qty
        return 0.0

    async def _publish_order_line(self, line_ref: LineRef, row: Dict[str, Any]) -> None:
        row["CollectedQuantity"] = sum(e["QtyDelta"] for e in row["CollectedEvents"])
        await self._publish(
            f"orderPick:{line_ref.doc_entry}", "orderPick:lineUpdated", {"Line": copy.deepcopy(row)}
        )

    async def collect(
        self,
        line_ref: LineRef,
        stock_key: StockKey,
        collector: CollectorRef,
        qty: float,
        *,
        bin_code: str = "",
        exp_date: Optional[str] = None,
    ) -> Ack:
        await self._enter("collect", {"line": line_ref.label, "qty": qty, "by": collector.id})
        row = self._order_line(line_ref)
        collected = sum(e["QtyDelta"] for e in row["CollectedEvents"])
        if collected + qty > float(row.get("OpenQty", 0)) + EPS:
            return Ack(False, "quantity exceeds open quantity")
        picked = self._picked_at(line_ref.doc_entry, stock_key.bin_abs_entry, stock_key.batch_number)
        if picked + qty > self._on_hand_at(stock_key) + EPS:
            return Ack(False, "quantity exceeds on hand")
        row["CollectedEvents"].append(
            {
                "by": _who(collector),
                "BinAbsEntry": stock_key.bin_abs_entry,
                "BinCode": bin_code,
                "BatchNumber": stock_key.batch_number or self.blank_batch,
                "ExpDate": exp_date,
                "QtyDelta": qty,
                "at": self._tick(),
            }
        )
        await self._publish_order_line(line_ref, row)
        return Ack(True)

    async def uncollect(
        self,
        line_ref: LineRef,
        stock_key: StockKey,
        collector: CollectorRef,
        qty: float,
        *,
        batch_number: Optional[str],
        bin_code: str = "",
        exp_date: Optional[str] = None,
    ) -> Ack:
        await self._enter("uncollect", {"line": line_ref.label, "batch": batch_number, "qty": qty})
        row = self._order_line(line_ref)
        for i, e in enumerate(row["CollectedEvents"]):
            if (
                e["BinAbsEntry"] == stock_key.bin_abs_entry
                and e["by"]["empID"] == collector.id
                and abs(e["QtyDelta"] - qty) <= EPS
                and e["BatchNumber"] == batch_number
            ):
                row["CollectedEvents"].pop(i)
                await self._publish_order_line(line_ref, row)
                return Ack(True)
        return Ack(False, "collected event not found")

    # ------------------------------------------------------------------
    # binToBin
    # ------------------------------------------------------------------
    def _transfer(self, line_ref: LineRef) -> Tuple[Union[int, str], Dict[str, Any]]:
        key: Union[int, str] = line_ref.doc_entry if line_ref.doc_entry is not None else line_ref.doc_id
        for row in self.transfers[key]["DocumentLines"]:
            if row.get("LineNum") == line_ref.line_num:
                return key, row
        raise KeyError(line_ref.label)

    async def _publish_transfer_line(self, key: Union[int, str], row: Dict[str, Any]) -> None:
        row["MovedQuantity"] = sum(d["Qty"] for d in row["MoveDetails"])
        await self._publish(f"binToBin:{key}", "binToBin:lineUpdated", {"Line": copy.deepcopy(row)})

    async def apply_move(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        batch_number: Optional[str],
        qty: float,
        collector: CollectorRef,
    ) -> Ack:
        await self._enter("apply_move", {"line": line_ref.label, "qty": qty, "by": collector.id})
        key, row = self._transfer(line_ref)
        moved = sum(d["Qty"] for d in row["MoveDetails"])
        if moved + qty > float(row.get("Quantity", 0)) + EPS:
            return Ack(False, "quantity exceeds planned quantity")
        row["MoveDetails"].append(
            {
                "Qty": qty,
                "BatchNumber": batch_number or self.blank_batch,
                "FromBinAbsEntry": from_bin.abs_entry,
                "FromBinCode": from_bin.code,
                "ToBinAbsEntry": to_bin.abs_entry,
                "ToBinCode": to_bin.code,
                "by": _who(collector),
                "UpdatedAt": self._tick(),
            }
        )
        await self._publish_transfer_line(key, row)
        return Ack(True)

    async def remove_move_detail(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        batch_number: Optional[str],
        qty: float,
        collector: CollectorRef,
    ) -> Ack:
        await self._enter("remove_move_detail", {"line": line_ref.label, "batch": batch_number, "qty": qty})
        key, row = self._transfer(line_ref)
        for i, d in enumerate(row["MoveDetails"]):
            if (
                d["ToBinAbsEntry"] == to_bin.abs_entry
                and d["by"]["empID"] == collector.id
                and abs(d["Qty"] - qty) <= EPS
                and d["BatchNumber"] == batch_number
            ):
                row["MoveDetails"].pop(i)
                await self._publish_transfer_line(key, row)
                return Ack(True)
        return Ack(False, "move detail not found")


ANN = CollectorRef(id=1, display_name="Ann")
BOB = CollectorRef(id=2, display_name="Bob")


def make_registry(wms: FakeWms):
    """一个 “操作端”：自己的 SessionRegistry（自己的台账副本），订阅 wms 的广播。"""
    from collectsync.services.session_registry import SessionRegistry

    reg = SessionRegistry(stock=wms, channel=wms, line_source=wms, collectors=wms)
    wms.subscribers.append(reg)
    return reg
