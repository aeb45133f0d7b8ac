# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import List, Optional, Protocol, Union

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


class StockSnapshotProvider(Protocol):
    async def get_on_hand(self, item_code: str, warehouse_code: str) -> List[OnHandRow]:
        ...

    async def get_on_hand_by_location_and_batch(
        self, item_code: str, bin_code: str
    ) -> List[BatchOnHand]:
        ...


class CollectorDirectory(Protocol):
    async def list_collectors(self, work_area_id: int) -> List[CollectorRef]:
        ...


class LineSource(Protocol):
    """单据行来源：首次加载 / 整单重拉。"""

    async def get_order_lines(
        self, doc_entry: int, doc_num: Optional[int] = None
    ) -> List[LineSnapshot]:
        ...

    async def get_bin_transfer(self, doc_key: Union[int, str]) -> List[LineSnapshot]:
        ...


class SyncChannel(Protocol):
    """
    同步通道（请求-应答）。

    - connected=False 时调用方不得发起请求，先 ping() 试着重连；
    - 网络层错误由实现转换为 ChannelOffline；
    - 业务拒绝一律以 Ack(ok=False, message) 返回，不抛异常。
    """

    @property
    def connected(self) -> bool:
        ...

    async def ping(self) -> bool:
        ...

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
        ...

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
        ...

    async def apply_move(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        batch_number: Optional[str],
        qty: float,
        collector: CollectorRef,
    ) -> Ack:
        ...

    async def remove_move_detail(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        batch_number: Optional[str],
        qty: float,
        collector: CollectorRef,
    ) -> Ack:
        ...
