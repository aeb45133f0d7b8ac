# collectsync/api/routers/session_mappers.py
from __future__ import annotations

from typing import Optional

from collectsync.schemas.sessions import (
    BatchOut,
    BinIn,
    CollectorIn,
    CollectSessionOut,
    CommitOut,
    LineOut,
    MoveSessionOut,
    OnHandOut,
    PushOut,
    RowOut,
    RowOutcomeOut,
    UndoOut,
)
from collectsync.services.allocation_ledger import LedgerChange
from collectsync.services.collect_reconcile_service import CollectReconcileService
from collectsync.services.collect_types import (
    BinRef,
    CollectorRef,
    CommitReport,
    LineRef,
    RowView,
    UndoResult,
)
from collectsync.services.move_progress_service import MoveProgressService


def collector_ref(c: Optional[CollectorIn]) -> Optional[CollectorRef]:
    if c is None:
        return None
    return CollectorRef(id=c.id, display_name=c.display_name)


def bin_ref(b: Optional[BinIn]) -> Optional[BinRef]:
    if b is None:
        return None
    return BinRef(abs_entry=b.abs_entry, code=b.code, warehouse_code=b.warehouse_code)


def _bin_out(b: Optional[BinRef]) -> Optional[BinIn]:
    if b is None:
        return None
    return BinIn(abs_entry=b.abs_entry, code=b.code, warehouse_code=b.warehouse_code)


def _line_out(ref: LineRef) -> LineOut:
    return LineOut(
        doc_entry=ref.doc_entry,
        doc_id=ref.doc_id,
        line_num=ref.line_num,
        item_code=ref.item_code,
        warehouse_code=ref.warehouse_code,
    )


def map_row(r: RowView) -> RowOut:
    return RowOut(
        row_id=r.row_id,
        origin=r.origin.value,
        state=r.state.value,
        item_code=r.stock_key.item_code,
        warehouse_code=r.stock_key.warehouse_code,
        bin_abs_entry=r.stock_key.bin_abs_entry,
        bin_code=r.bin_code,
        batch_number=r.stock_key.batch_number,
        to_bin_abs_entry=r.to_bin.abs_entry if r.to_bin else None,
        to_bin_code=r.to_bin.code if r.to_bin else None,
        collector_id=r.collector.id,
        collector_name=r.collector.label,
        qty=r.qty,
        busy=r.busy,
    )


def map_collect_session(svc: CollectReconcileService) -> CollectSessionOut:
    view = svc.availability()
    on_hand = [
        OnHandOut(
            bin_abs_entry=r.stock_key.bin_abs_entry,
            bin_code=r.bin_code,
            batch_number=r.stock_key.batch_number,
            on_hand_qty=r.on_hand_qty,
            available_qty=view.available(r.stock_key),
            max_addable=view.max_addable(r.stock_key),
        )
        for r in svc.on_hand_rows()
    ]
    return CollectSessionOut(
        session_id=svc.session_id,
        line=_line_out(svc.line_ref),
        online=svc.online,
        closed=svc.closed,
        batch_managed=svc.batch_managed,
        open_qty=svc.context.open_qty,
        collected=svc.collected(),
        line_remaining=view.line_remaining(),
        on_hand=on_hand,
        rows=[map_row(r) for r in svc.rows()],
    )


def map_move_session(svc: MoveProgressService) -> MoveSessionOut:
    batches = [
        BatchOut(
            batch_number=b.batch_number,
            on_hand_qty=b.on_hand_qty,
            picked_qty=b.picked_qty,
            available_qty=b.available_qty,
            max_addable=svc.max_addable(b.batch_number),
        )
        for b in svc.batch_rows()
    ]
    return MoveSessionOut(
        session_id=svc.session_id,
        line=_line_out(svc.line_ref),
        online=svc.online,
        closed=svc.closed,
        batch_managed=svc.batch_managed,
        planned_qty=svc.context.planned_qty,
        moved=svc.moved(),
        remaining=svc.remaining(),
        max_addable=None if svc.batch_managed else svc.max_addable(),
        from_bin=_bin_out(svc.from_bin),
        to_bin=_bin_out(svc.to_bin),
        batches=batches,
        rows=[map_row(r) for r in svc.rows()],
    )


def map_commit(report: CommitReport) -> CommitOut:
    return CommitOut(
        ok=report.ok,
        failed=report.failed,
        outcomes=[
            RowOutcomeOut(row_id=o.row_id, ok=o.ok, message=o.message, code=o.code)
            for o in report.outcomes
        ],
    )


def map_undo(result: UndoResult) -> UndoOut:
    return UndoOut(
        ok=result.ok,
        row_id=result.composite_key.digest(),
        attempts=result.attempts,
        message=result.message,
    )


def map_push(change: Optional[LedgerChange]) -> PushOut:
    if change is None:
        return PushOut(applied=False)
    return PushOut(
        applied=True,
        inserted=len(change.inserted),
        removed=len(change.removed),
        duplicates=change.duplicates,
        line_removed=change.line_removed,
        reload_required=change.reload_required,
    )
