# tests/conftest.py
from __future__ import annotations

from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from collectsync.core.config import AppSettings
from collectsync.main import create_app
from collectsync.services.collect_types import BatchOnHand, OnHandRow, StockKey
from collectsync.services.session_registry import SessionRegistry
from tests.helpers.wms_fakes import ANN, BOB, FakeWms, make_registry


@pytest.fixture
def wms() -> FakeWms:
    """
    默认数据：
      - 拣货单 DocEntry=5：L0 物料 A（批次）@W1，OpenQty=20；L1 物料 N（非批次）@W1，OpenQty=8
      - A 在 W1：库位 101 / 批次 B1 现存 10；库位 102 / 批次 B2 现存 5
      - N 在 W1：库位 201 现存 8
      - 移库单 DocEntry=7：L0 物料 M（非批次）W1-A01 → W1-B01，计划 100
      - 移库单 DocEntry=8：L0 物料 A（批次）W1-A01 → W1-B01，计划 30
    """
    w = FakeWms()
    w.add_order_line(5, DocNum=1005, LineNum=0, ItemCode="A", WhsCode="W1", OpenQty=20, IsBatchManaged="Y")
    w.add_order_line(5, DocNum=1005, LineNum=1, ItemCode="N", WhsCode="W1", OpenQty=8)
    w.set_on_hand(
        "A",
        "W1",
        [
            OnHandRow(StockKey("A", "W1", 101, "B1"), 10, bin_code="W1-X01", batch_managed=True),
            OnHandRow(StockKey("A", "W1", 102, "B2"), 5, bin_code="W1-X02", batch_managed=True),
        ],
    )
    w.set_on_hand("N", "W1", [OnHandRow(StockKey("N", "W1", 201, None), 8, bin_code="W1-Y01")])

    w.add_transfer(
        7,
        [
            {
                "LineNum": 0,
                "ItemCode": "M",
                "Quantity": 100,
                "FromBinAbsEntry": 11,
                "FromBinCode": "W1-A01",
                "ToBinAbsEntry": 22,
                "ToBinCode": "W1-B01",
            }
        ],
        FromWhsCode="W1",
        ToWhsCode="W1",
    )
    w.add_transfer(
        8,
        [
            {
                "LineNum": 0,
                "ItemCode": "A",
                "Quantity": 30,
                "IsBatchManaged": "Y",
                "FromBinAbsEntry": 11,
                "FromBinCode": "W1-A01",
                "ToBinAbsEntry": 22,
                "ToBinCode": "W1-B01",
            }
        ],
        FromWhsCode="W1",
        ToWhsCode="W1",
    )
    w.set_batches(
        "A",
        "W1-A01",
        [
            BatchOnHand("B1", 12, bin_abs_entry=11, bin_code="W1-A01"),
            BatchOnHand("B2", 25, bin_abs_entry=11, bin_code="W1-A01"),
        ],
    )
    w.collectors[3] = [ANN, BOB]
    return w


@pytest.fixture
def registry(wms: FakeWms) -> SessionRegistry:
    return make_registry(wms)


# =========================================
# FastAPI / httpx AsyncClient
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(registry: SessionRegistry) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(AppSettings(ENV="test", WMS_API_BASE_URL="http://wms.invalid"))
    # ASGITransport 不跑 lifespan：直接挂上内存 registry
    app.state.registry = registry
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
    ) as c:
        yield c
