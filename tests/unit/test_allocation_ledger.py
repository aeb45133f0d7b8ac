from datetime import datetime, timedelta, timezone

import pytest

from collectsync.domain.events_enums import AllocationState, PushKind, UpsertOutcome
from collectsync.services.allocation_ledger import AllocationLedger, PendingClaim, transition_event
from collectsync.services.collect_types import LineRef, LineSnapshot, PushEvent
from collectsync.services.errors import IllegalTransition
from collectsync.services.session_base import LedgerSession
from collectsync.services.sync_events import order_line_snapshot

REF = LineRef(doc_entry=5, line_num=0, item_code="A", warehouse_code="W1")


def _ev(qty, at, emp=1, bin_abs=101, batch="B1"):
    return {
        "by": {"empID": emp, "fullName": "Ann"},
        "BinAbsEntry": bin_abs,
        "BatchNumber": batch,
        "QtyDelta": qty,
        "at": at,
    }


def _line(*events, **extra):
    row = {"DocEntry": 5, "LineNum": 0, "ItemCode": "A", "WhsCode": "W1", "CollectedEvents": list(events)}
    row.update(extra)
    return order_line_snapshot(row)


def test_upsert_is_idempotent():
    ledger = AllocationLedger()
    snap = _line(_ev(2, "t1"))
    ev = snap.events[0]

    assert ledger.upsert(ev) == UpsertOutcome.INSERTED
    assert ledger.upsert(_line(_ev(2, "t1")).events[0]) == UpsertOutcome.DUPLICATE
    assert ledger.collected(REF) == 2


def test_repeated_snapshot_changes_nothing():
    ledger = AllocationLedger()
    first = ledger.load_line(_line(_ev(2, "t1"), _ev(3, "t2"), OpenQty=10))
    again = ledger.load_line(_line(_ev(2, "t1"), _ev(3, "t2"), OpenQty=10))

    assert len(first.inserted) == 2
    assert again.inserted == []
    assert again.duplicates == 2
    assert again.collected_delta == 0
    assert ledger.collected(REF) == 5


def test_authoritative_list_removes_missing_events():
    ledger = AllocationLedger()
    ledger.load_line(_line(_ev(2, "t1"), _ev(3, "t2")))

    change = ledger.load_line(_line(_ev(3, "t2")))

    assert len(change.removed) == 1
    assert ledger.collected(REF) == 3


def test_aggregate_overrides_but_is_not_added():
    ledger = AllocationLedger()
    ledger.load_line(_line(_ev(2, "t1"), CollectedQuantity=2))
    assert ledger.collected(REF) == 2

    # 只带聚合、不带事件：事件保留，取两者较大
    ledger.load_line(order_line_snapshot({"DocEntry": 5, "LineNum": 0, "CollectedQuantity": 6}))
    assert ledger.aggregate(REF) == 6
    assert ledger.collected(REF) == 6
    assert len(ledger.events_for_line(REF)) == 1
    assert ledger.line_refs() == [REF]


def test_context_fields_merge_not_replace():
    ledger = AllocationLedger()
    ledger.load_line(_line(OpenQty=20, ItemName="Apple", IsBatchManaged="Y"))
    ledger.load_line(order_line_snapshot({"DocEntry": 5, "LineNum": 0, "CollectedQuantity": 1}))

    ctx = ledger.context(REF)
    assert ctx.open_qty == 20
    assert ctx.item_name == "Apple"
    assert ctx.batch_managed is True
    assert ctx.collected_qty == 1


def test_tombstone_blocks_resurrection_until_authoritative_delete():
    ledger = AllocationLedger()
    ledger.load_line(_line(_ev(2, "t1")))
    key = ledger.events_for_line(REF)[0].composite_key

    ledger.tombstone(key)
    assert ledger.collected(REF) == 0

    # 旧推送里仍带着这条：不复活
    ledger.load_line(_line(_ev(2, "t1"), _ev(1, "t2")))
    assert ledger.is_tombstoned(key)
    assert ledger.collected(REF) == 1

    # 权威删除传播：墓碑清掉
    ledger.load_line(_line(_ev(1, "t2")))
    assert not ledger.is_tombstoned(key)
    assert ledger.collected(REF) == 1


def test_line_removed_and_lines_synced():
    ledger = AllocationLedger()
    seen = []
    unsubscribe = ledger.subscribe(seen.append)
    ledger.load_line(_line(_ev(2, "t1")))

    change = ledger.apply_push(PushEvent(kind=PushKind.LINES_SYNCED))
    assert change.reload_required

    change = ledger.apply_push(PushEvent(kind=PushKind.LINE_REMOVED, line=LineSnapshot(line_ref=REF)))
    assert change.line_removed
    assert ledger.line_refs() == []
    assert len(seen) == 3

    unsubscribe()
    ledger.load_line(_line())
    assert len(seen) == 3


def test_single_event_push_and_doc_status():
    ledger = AllocationLedger()
    ev = _line(_ev(4, "t9")).events[0]

    change = ledger.apply_push(PushEvent(kind=PushKind.EVENT, event=ev, doc_status="C"))
    assert [e.qty for e in change.inserted] == [4]
    assert change.collected_delta == 4
    assert ledger.doc_status == "C"


def test_find_line_by_item_when_line_number_missing():
    ledger = AllocationLedger()
    ledger.load_line(_line())
    assert ledger.find_line(line_num=0) == REF
    assert ledger.find_line(item_code="A", warehouse_code="W1") == REF
    assert ledger.find_line(item_code="A", warehouse_code="W2") is None
    assert ledger.find_line(line_num=3) is None


def test_event_transitions_follow_lifecycle():
    ev = _line(_ev(2, "t1")).events[0]
    transition_event(ev, AllocationState.PENDING_UNDO)
    transition_event(ev, AllocationState.REMOVED)
    with pytest.raises(IllegalTransition):
        transition_event(ev, AllocationState.SAVED)


def test_aggregate_only_increase_is_shared_in_ack_order():
    ledger = AllocationLedger()
    ledger.load_line(_line())
    confirmed = []
    t0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def source(name, acked_at, qty):
        def claims(line_ref):
            if name in confirmed:
                return []
            return [PendingClaim(acked_at, qty, lambda: confirmed.append(name))]

        return claims

    ledger.subscribe(lambda change: None, pending=source("late", t0 + timedelta(seconds=5), 3))
    ledger.subscribe(lambda change: None, pending=source("early", t0, 2))

    ledger.load_line(order_line_snapshot({"DocEntry": 5, "LineNum": 0, "CollectedQuantity": 2}))
    assert confirmed == ["early"]

    ledger.load_line(order_line_snapshot({"DocEntry": 5, "LineNum": 0, "CollectedQuantity": 5}))
    assert confirmed == ["early", "late"]


def test_unsubscribe_drops_pending_source():
    ledger = AllocationLedger()
    ledger.load_line(_line())
    calls = []
    unsubscribe = ledger.subscribe(lambda change: None, pending=lambda ref: calls.append(ref) or [])

    unsubscribe()
    ledger.load_line(order_line_snapshot({"DocEntry": 5, "LineNum": 0, "CollectedQuantity": 2}))
    assert calls == []


def test_session_base_cannot_be_instantiated():
    with pytest.raises(TypeError):
        LedgerSession(ledger=AllocationLedger(), line_ref=REF, channel=None)
