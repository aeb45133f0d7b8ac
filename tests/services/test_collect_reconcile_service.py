import asyncio
import copy

import pytest

from collectsync.domain.events_enums import AllocationOrigin, AllocationState, ErrorCode
from collectsync.services.collect_types import LineRef, StockKey
from collectsync.services.errors import (
    ChannelOffline,
    ExceedsAvailable,
    InvalidQuantity,
    LineClosed,
    MissingBatch,
    MissingCollector,
    RowBusy,
    UnknownRow,
)
from tests.helpers.wms_fakes import ANN, BOB

B1 = StockKey("A", "W1", 101, "B1")
B2 = StockKey("A", "W1", 102, "B2")
NB = StockKey("N", "W1", 201, None)


def _saved(svc):
    return [r for r in svc.rows() if r.origin == AllocationOrigin.SAVED]


@pytest.mark.asyncio
async def test_competing_drafts_share_location_capacity(registry):
    """
    库位现存 10：C1 草稿 6 → 剩 4；C2 要 5 被拒（上限 4）；
    C1 改成 2 → 剩 8，C2 的 5 可以加进来。
    """
    svc = await registry.open_collect(doc_entry=5, line_num=0)

    first = svc.add_draft(B1, ANN, 6)
    assert svc.available(B1) == pytest.approx(4)

    with pytest.raises(ExceedsAvailable) as ei:
        svc.add_draft(B1, BOB, 5)
    assert ei.value.max_qty == pytest.approx(4)
    assert ei.value.reason == "available"

    svc.update_draft(first.row_id, 2)
    assert svc.available(B1) == pytest.approx(8)

    svc.add_draft(B1, BOB, 5)
    assert svc.available(B1) == pytest.approx(3)
    assert [r.qty for r in svc.drafts] == [2, 5]


@pytest.mark.asyncio
async def test_line_remaining_is_the_tighter_bound(wms, registry):
    wms.orders[5][0]["OpenQty"] = 12
    svc = await registry.open_collect(doc_entry=5, line_num=0)

    svc.add_draft(B1, ANN, 10)
    assert svc.line_remaining() == pytest.approx(2)
    assert svc.max_addable(B2) == pytest.approx(2)

    with pytest.raises(ExceedsAvailable) as ei:
        svc.add_draft(B2, ANN, 3)
    assert ei.value.max_qty == pytest.approx(2)
    assert ei.value.reason == "line_remaining"


@pytest.mark.asyncio
async def test_local_validation_runs_before_any_request(wms, registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)

    with pytest.raises(InvalidQuantity):
        svc.add_draft(B1, ANN, 0)
    with pytest.raises(InvalidQuantity):
        svc.add_draft(B1, ANN, "abc")
    with pytest.raises(MissingCollector):
        svc.add_draft(B1, None, 1)
    with pytest.raises(MissingBatch):
        svc.add_draft(StockKey("A", "W1", 101, None), ANN, 1)
    with pytest.raises(UnknownRow):
        svc.remove_draft("nope")

    assert len(svc.drafts) == 0
    assert wms.calls == []


@pytest.mark.asyncio
async def test_same_key_and_collector_merge_into_one_row(registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    a = svc.add_draft(B1, ANN, 2)
    b = svc.add_draft(B1, ANN, 3)
    assert a.row_id == b.row_id
    assert [r.qty for r in svc.drafts] == [5]


@pytest.mark.asyncio
async def test_single_collector_of_work_area_is_selected(wms, registry):
    wms.collectors[4] = [ANN]
    svc = await registry.open_collect(doc_entry=5, line_num=0, work_area_id=4)
    assert svc.default_collector == ANN
    row = svc.add_draft(B1, None, 1)
    assert row.collector.id == ANN.id


@pytest.mark.asyncio
async def test_update_to_zero_removes_draft(registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    row = svc.add_draft(B1, ANN, 4)
    assert svc.update_draft(row.row_id, 0) is None
    assert len(svc.drafts) == 0


@pytest.mark.asyncio
async def test_commit_turns_drafts_into_saved_rows(wms, registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    svc.add_draft(B1, ANN, 6)
    svc.add_draft(B2, BOB, 4)

    report = await svc.commit()

    assert (report.ok, report.failed) == (2, 0)
    assert [c[0] for c in wms.calls] == ["collect", "collect"]
    assert len(svc.drafts) == 0
    assert svc.collected() == pytest.approx(10)
    assert [(r.stock_key, r.qty) for r in _saved(svc)] == [(B1, 6), (B2, 4)]
    assert svc.available(B1) == pytest.approx(4)


@pytest.mark.asyncio
async def test_acked_rows_are_counted_once_until_push_arrives(wms, registry):
    wms.deferred = True
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    row = svc.add_draft(B1, ANN, 6)

    report = await svc.commit()
    assert report.ok == 1
    assert svc.drafts.get(row.row_id).state == AllocationState.PENDING_CONFIRM
    assert svc.collected() == 0
    assert svc.available(B1) == pytest.approx(4)

    await wms.flush()

    assert len(svc.drafts) == 0
    assert svc.collected() == pytest.approx(6)
    assert svc.available(B1) == pytest.approx(4)


@pytest.mark.asyncio
async def test_partial_commit_reports_each_row(wms, registry):
    """另一个操作人先提交了 5（推送还没到）：本地 6 被拒，4 成功，拒绝后刷新可用量。"""
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    wms.deferred = True
    await wms.collect(LineRef(5, 0, "A", "W1"), B1, BOB, 5)

    big = svc.add_draft(B1, ANN, 6)
    svc.add_draft(B2, ANN, 4)

    report = await svc.commit()

    assert (report.ok, report.failed) == (1, 1)
    assert report.partial
    assert report.outcomes[0].row_id == big.row_id
    assert report.outcomes[0].code == ErrorCode.UPSTREAM_REJECTED.value
    assert report.outcomes[0].message == "quantity exceeds on hand"

    # 拒绝后已整单重拉：4 那一行已被确认，6 那一行回到可编辑草稿
    assert [r.row_id for r in svc.drafts] == [big.row_id]
    assert svc.drafts.get(big.row_id).state == AllocationState.DRAFT
    assert svc.collected() == pytest.approx(9)
    assert svc.max_addable(B1) == 0

    svc.update_draft(big.row_id, 5)
    wms.deferred = False
    report = await svc.commit()
    assert (report.ok, report.failed) == (1, 0)
    assert svc.collected() == pytest.approx(14)


@pytest.mark.asyncio
async def test_repeated_push_is_absorbed(wms, registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    svc.add_draft(B1, ANN, 6)
    await svc.commit()

    payload = {"Line": copy.deepcopy(wms.orders[5][0])}
    first = await registry.dispatch("orderPick:5", "orderPick:lineUpdated", payload)
    second = await registry.dispatch("orderPick:5", "orderPick:lineUpdated", payload)

    assert first.inserted == [] and first.duplicates == 1
    assert second.inserted == [] and second.duplicates == 1
    assert svc.collected() == pytest.approx(6)
    assert len(_saved(svc)) == 1


@pytest.mark.asyncio
async def test_undo_tries_both_blank_batch_encodings(wms, registry):
    wms.blank_batch = None
    svc = await registry.open_collect(doc_entry=5, line_num=1)
    svc.add_draft(NB, ANN, 3)
    await svc.commit()
    saved = _saved(svc)[0]

    result = await svc.remove_saved(saved.row_id)

    assert result.ok
    assert result.attempts == 2
    assert [c[1]["batch"] for c in wms.calls if c[0] == "uncollect"] == ["", None]
    assert _saved(svc) == []
    assert svc.collected() == 0


@pytest.mark.asyncio
async def test_undo_rejected_keeps_saved_row(wms, registry):
    svc = await registry.open_collect(doc_entry=5, line_num=1)
    svc.add_draft(NB, ANN, 3)
    await svc.commit()
    saved = _saved(svc)[0]

    # 服务端已经没有这条（例如别人撤掉了，但推送还没到）
    wms.orders[5][1]["CollectedEvents"].clear()
    result = await svc.remove_saved(saved.row_id)

    assert not result.ok
    assert result.attempts == 2
    assert result.message == "collected event not found"
    rows = _saved(svc)
    assert len(rows) == 1 and rows[0].state == AllocationState.SAVED


@pytest.mark.asyncio
async def test_tombstone_blocks_stale_push_until_removal_propagates(wms, registry):
    svc = await registry.open_collect(doc_entry=5, line_num=1)
    svc.add_draft(NB, ANN, 3)
    await svc.commit()
    stale = {"Line": copy.deepcopy(wms.orders[5][1])}
    event = svc.ledger.events_for_line(svc.line_ref)[0]

    wms.deferred = True
    result = await svc.remove_saved(event.composite_key)
    assert result.ok and result.attempts == 1
    assert svc.ledger.is_tombstoned(event.composite_key)

    await registry.dispatch("orderPick:5", "orderPick:lineUpdated", stale)
    assert _saved(svc) == []

    await wms.flush()
    assert not svc.ledger.is_tombstoned(event.composite_key)
    assert svc.collected() == 0


@pytest.mark.asyncio
async def test_offline_channel_blocks_commit_and_keeps_drafts(wms, registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    row = svc.add_draft(B1, ANN, 2)
    wms.connected = False

    assert not svc.online
    with pytest.raises(ChannelOffline):
        await svc.commit()
    assert svc.drafts.get(row.row_id).state == AllocationState.DRAFT
    assert wms.calls == []


@pytest.mark.asyncio
async def test_channel_drop_mid_commit_fails_remaining_rows(wms, registry):
    wms.drop_after = 1
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    svc.add_draft(B1, ANN, 2)
    second = svc.add_draft(B2, ANN, 1)

    report = await svc.commit()

    assert (report.ok, report.failed) == (1, 1)
    assert report.outcomes[1].code == ErrorCode.CHANNEL_OFFLINE.value
    assert svc.drafts.get(second.row_id).state == AllocationState.DRAFT
    assert not svc.online


@pytest.mark.asyncio
async def test_row_in_flight_rejects_reentry(wms, registry):
    wms.gate = asyncio.Event()
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    row = svc.add_draft(B1, ANN, 2)

    task = asyncio.create_task(svc.commit())
    await asyncio.sleep(0)

    assert svc.is_busy(row.row_id)
    with pytest.raises(RowBusy):
        svc.remove_draft(row.row_id)
    with pytest.raises(RowBusy):
        svc.update_draft(row.row_id, 1)

    wms.gate.set()
    report = await task
    assert report.ok == 1
    assert not svc.is_busy(row.row_id)


@pytest.mark.asyncio
async def test_aggregate_only_push_confirms_in_ack_order(wms, registry):
    wms.deferred = True
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    first = svc.add_draft(B1, ANN, 2)
    second = svc.add_draft(B2, ANN, 3)
    await svc.commit()

    line = {"LineNum": 0, "ItemCode": "A", "WhsCode": "W1"}
    await registry.dispatch("orderPick:5", "orderPick:lineUpdated", {"Line": {**line, "CollectedQuantity": 2}})
    assert first.row_id not in svc.drafts
    assert svc.drafts.get(second.row_id).state == AllocationState.PENDING_CONFIRM

    await registry.dispatch("orderPick:5", "orderPick:lineUpdated", {"line": {**line, "CollectedQuantity": 5}})
    assert len(svc.drafts) == 0
    assert svc.collected() == pytest.approx(5)


@pytest.mark.asyncio
async def test_removed_line_closes_session_but_keeps_drafts(registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    svc.add_draft(B1, ANN, 2)

    await registry.dispatch("orderPick:5", "orderPick:lineRemoved", {"LineNum": 0})

    assert svc.closed
    assert len(svc.drafts) == 1
    with pytest.raises(LineClosed):
        svc.add_draft(B1, ANN, 1)


@pytest.mark.asyncio
async def test_closed_document_status_blocks_editing(registry):
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    await registry.dispatch(
        "orderPick:5",
        "orderPick:lineUpdated",
        {"Line": {"LineNum": 0, "ItemCode": "A", "WhsCode": "W1"}, "DocStatus": "C"},
    )
    assert svc.closed
    with pytest.raises(LineClosed):
        await svc.commit()


@pytest.mark.asyncio
async def test_queued_rows_stay_locked_until_commit_finishes(wms, registry):
    wms.gate = asyncio.Event()
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    svc.add_draft(B1, ANN, 2)
    second = svc.add_draft(B2, ANN, 1)

    task = asyncio.create_task(svc.commit())
    await asyncio.sleep(0)

    assert svc.is_busy(second.row_id)
    with pytest.raises(RowBusy):
        svc.remove_draft(second.row_id)
    with pytest.raises(RowBusy):
        svc.update_draft(second.row_id, 3)
    again = await svc.commit()
    assert (again.ok, again.failed) == (0, 0)

    wms.gate.set()
    report = await task
    assert (report.ok, report.failed) == (2, 0)
    assert [c[0] for c in wms.calls] == ["collect", "collect"]
    assert len(svc.drafts) == 0
    assert not svc.is_busy(second.row_id)


@pytest.mark.asyncio
async def test_drafts_resubmit_after_reconnect(wms, registry):
    wms.drop_after = 1
    svc = await registry.open_collect(doc_entry=5, line_num=0)
    svc.add_draft(B1, ANN, 2)
    second = svc.add_draft(B2, ANN, 1)

    report = await svc.commit()
    assert (report.ok, report.failed) == (1, 1)
    assert not svc.online
    assert svc.drafts.get(second.row_id).state == AllocationState.DRAFT

    wms.drop_after = None
    wms.reachable = True
    report = await svc.commit()

    assert (report.ok, report.failed) == (1, 0)
    assert wms.pings == 1
    assert svc.online
    assert len(svc.drafts) == 0
    assert svc.collected() == pytest.approx(3)
