# collectsync/adapters/wms_http.py
"""
上游 WMS 的 httpx 适配器。

- 只读接口（库存快照 / 收集人 / 单据行）：HTTP 错误直接抛出（httpx.HTTPError），由调用方决定；
- 同步通道（collect / uncollect / applyMove / removeDetail）：
    * 传输层失败 → 标记离线并抛 ChannelOffline；
    * 业务拒绝 → Ack(ok=False, message)，不抛异常。
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from collectsync.schemas.sync_payloads import (
    AckPayload,
    BatchOnHandPayload,
    CollectorPayload,
    OnHandPayload,
)
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
from collectsync.services.sync_events import (
    bin_transfer_snapshots,
    collector_from,
    order_line_snapshot,
)

logger = logging.getLogger("collectsync.http")


def build_client(base_url: str, *, timeout: float = 10.0, **kwargs: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, timeout=timeout, **kwargs)


def _rows(data: Any) -> List[Dict[str, Any]]:
    # 上游有时直接返回数组，有时包一层 {data: [...]}
    if isinstance(data, dict):
        data = data.get("data", data.get("rows", []))
    if not isinstance(data, list):
        return []
    return [r for r in data if isinstance(r, dict)]


async def _get_json(client: httpx.AsyncClient, path: str, params: Dict[str, Any]) -> Any:
    resp = await client.get(path, params={k: v for k, v in params.items() if v is not None})
    resp.raise_for_status()
    return resp.json()


class HttpStockSnapshotProvider:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def get_on_hand(self, item_code: str, warehouse_code: str) -> List[OnHandRow]:
        data = await _get_json(
            self._client, "/getOnHandItemsApi", {"ItemCode": item_code, "WhsCode": warehouse_code}
        )
        out: List[OnHandRow] = []
        for raw in _rows(data):
            p = OnHandPayload.model_validate(raw)
            out.append(
                OnHandRow(
                    stock_key=StockKey(
                        p.item_code or item_code,
                        p.warehouse_code or warehouse_code,
                        p.bin_abs_entry,
                        p.batch_number,
                    ),
                    on_hand_qty=p.on_hand_qty,
                    bin_code=p.bin_code or str(p.bin_abs_entry),
                    batch_managed=bool(p.batch_managed),
                    exp_date=p.exp_date,
                )
            )
        return out

    async def get_on_hand_by_location_and_batch(
        self, item_code: str, bin_code: str
    ) -> List[BatchOnHand]:
        data = await _get_json(
            self._client, "/getOnHandByBinBatchApi", {"ItemCode": item_code, "Bin": bin_code}
        )
        out: List[BatchOnHand] = []
        for raw in _rows(data):
            p = BatchOnHandPayload.model_validate(raw)
            out.append(
                BatchOnHand(
                    batch_number=p.batch_number,
                    on_hand_qty=p.on_hand_qty,
                    bin_abs_entry=p.bin_abs_entry,
                    bin_code=p.bin_code or bin_code,
                )
            )
        return out


class HttpCollectorDirectory:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def list_collectors(self, work_area_id: int) -> List[CollectorRef]:
        data = await _get_json(self._client, "/getCollectorsWorkAreaApi", {"DocEntry": work_area_id})
        out: List[CollectorRef] = []
        for raw in _rows(data):
            ref = collector_from(CollectorPayload.model_validate(raw))
            if ref.known:
                out.append(ref)
        return out


class HttpLineSource:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def get_order_lines(
        self, doc_entry: int, doc_num: Optional[int] = None
    ) -> List[LineSnapshot]:
        data = await _get_json(
            self._client,
            "/getOrdersDocsItemsApi",
            {"DocEntry": doc_entry, "DocNum": doc_num, "includeEvents": 1},
        )
        return [
            order_line_snapshot(raw, doc_entry=doc_entry, doc_num=doc_num) for raw in _rows(data)
        ]

    async def get_bin_transfer(self, doc_key: Union[int, str]) -> List[LineSnapshot]:
        params = {"DocEntry": doc_key} if isinstance(doc_key, int) else {"id": str(doc_key)}
        data = await _get_json(self._client, "/getBinToBinApi", params)
        return bin_transfer_snapshots(data, doc_key)


def _who(collector: CollectorRef) -> Dict[str, Any]:
    return {"empID": collector.id, "fullName": collector.display_name}


def _doc_keys(line_ref: LineRef) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if line_ref.doc_entry is not None:
        out["DocEntry"] = line_ref.doc_entry
    if line_ref.doc_id:
        out["id"] = line_ref.doc_id
    if line_ref.line_num is not None:
        out["LineNum"] = line_ref.line_num
    return out


class HttpSyncChannel:
    """
    同步通道的 HTTP 版本：每个 socket emit/ack 对应一次 POST。

    connected 为 False 时先 ping() 一次：成功（任意 HTTP 响应）即恢复在线并照常发送，
    失败则直接拒绝，不发业务请求。
    """

    def __init__(self, client: httpx.AsyncClient, *, ping_path: str = "/health") -> None:
        self._client = client
        self._ping_path = ping_path
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def mark_offline(self) -> None:
        self._connected = False

    def mark_online(self) -> None:
        self._connected = True

    async def ping(self) -> bool:
        try:
            await self._client.get(self._ping_path)
        except httpx.TransportError as e:
            logger.warning("sync channel ping failed: %s", e)
            self._connected = False
            return False
        self._connected = True
        return True

    async def _post(self, path: str, payload: Dict[str, Any]) -> Ack:
        if not self._connected and not await self.ping():
            raise ChannelOffline()
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.TransportError as e:
            self._connected = False
            logger.warning("sync channel offline on %s: %s", path, e)
            raise ChannelOffline(f"sync channel is offline: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        ack = AckPayload.model_validate(body if isinstance(body, dict) else {})
        if resp.is_error:
            return Ack(ok=False, message=ack.message or f"HTTP {resp.status_code}")
        return Ack(ok=ack.ok, message=ack.message)

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
        payload = {
            **_doc_keys(line_ref),
            "DocNum": line_ref.doc_num,
            "ItemCode": line_ref.item_code,
            "WhsCode": line_ref.warehouse_code or stock_key.warehouse_code,
            "collector": _who(collector),
            "BinAbsEntry": stock_key.bin_abs_entry,
            "BinCode": bin_code,
            "BatchNumber": stock_key.batch_number or "",
            "ExpDate": exp_date,
            "Qty": qty,
        }
        return await self._post("/orderPick/collect", payload)

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
        payload = {
            **_doc_keys(line_ref),
            "DocNum": line_ref.doc_num,
            "ItemCode": line_ref.item_code,
            "WhsCode": line_ref.warehouse_code or stock_key.warehouse_code,
            "collector": _who(collector),
            "BinAbsEntry": stock_key.bin_abs_entry,
            "BinCode": bin_code,
            "BatchNumber": batch_number,
            "ExpDate": exp_date,
            "Qty": qty,
            "note": "UNDO",
        }
        return await self._post("/orderPick/uncollect", payload)

    def _move_payload(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        qty: float,
        collector: CollectorRef,
    ) -> Dict[str, Any]:
        from_whs = from_bin.warehouse_code or line_ref.warehouse_code
        return {
            **_doc_keys(line_ref),
            "ItemCode": line_ref.item_code,
            "Qty": qty,
            "by": _who(collector),
            "FromWhsCode": from_whs or None,
            "ToWhsCode": to_bin.warehouse_code or from_whs or None,
            "FromBinAbsEntry": from_bin.abs_entry,
            "FromBinCode": from_bin.code,
            "ToBinAbsEntry": to_bin.abs_entry,
            "ToBinCode": to_bin.code,
        }

    async def apply_move(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        batch_number: Optional[str],
        qty: float,
        collector: CollectorRef,
    ) -> Ack:
        payload = self._move_payload(line_ref, from_bin, to_bin, qty, collector)
        if batch_number:
            payload["BatchNumber"] = batch_number
        return await self._post("/binToBin/applyMove", payload)

    async def remove_move_detail(
        self,
        line_ref: LineRef,
        from_bin: BinRef,
        to_bin: BinRef,
        batch_number: Optional[str],
        qty: float,
        collector: CollectorRef,
    ) -> Ack:
        payload = self._move_payload(line_ref, from_bin, to_bin, qty, collector)
        payload["BatchNumber"] = batch_number
        return await self._post("/binToBin/removeDetail", payload)
