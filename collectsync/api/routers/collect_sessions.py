# collectsync/api/routers/collect_sessions.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from collectsync.api.deps import get_registry
from collectsync.api.routers.session_mappers import (
    collector_ref,
    map_collect_session,
    map_commit,
    map_undo,
)
from collectsync.schemas.sessions import (
    AddCollectDraftIn,
    CloseOut,
    CollectSessionOut,
    CommitOut,
    OpenCollectSessionIn,
    UndoOut,
    UpdateDraftIn,
)
from collectsync.services.collect_reconcile_service import CollectReconcileService
from collectsync.services.collect_types import StockKey
from collectsync.services.errors import UnknownSession
from collectsync.services.session_registry import SessionRegistry

router = APIRouter(prefix="/collect-sessions", tags=["collect"])


def _collect(registry: SessionRegistry, session_id: str) -> CollectReconcileService:
    svc = registry.get(session_id)
    if not isinstance(svc, CollectReconcileService):
        raise UnknownSession(session_id)
    return svc


@router.post("", response_model=CollectSessionOut, status_code=201)
async def open_collect_session(
    body: OpenCollectSessionIn,
    registry: SessionRegistry = Depends(get_registry),
) -> CollectSessionOut:
    svc = await registry.open_collect(
        doc_entry=body.doc_entry,
        doc_num=body.doc_num,
        line_num=body.line_num,
        item_code=body.item_code,
        warehouse_code=body.warehouse_code,
        work_area_id=body.work_area_id,
        collector=collector_ref(body.collector),
    )
    return map_collect_session(svc)


@router.get("/{session_id}", response_model=CollectSessionOut)
async def get_collect_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CollectSessionOut:
    return map_collect_session(_collect(registry, session_id))


@router.post("/{session_id}/refresh", response_model=CollectSessionOut)
async def refresh_collect_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CollectSessionOut:
    svc = _collect(registry, session_id)
    await svc.refresh()
    return map_collect_session(svc)


@router.post("/{session_id}/drafts", response_model=CollectSessionOut, status_code=201)
async def add_collect_draft(
    body: AddCollectDraftIn,
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CollectSessionOut:
    svc = _collect(registry, session_id)
    key = StockKey(
        item_code=svc.line_ref.item_code,
        warehouse_code=svc.line_ref.warehouse_code,
        bin_abs_entry=body.bin_abs_entry,
        batch_number=body.batch_number,
    )
    svc.add_draft(key, collector_ref(body.collector), body.qty)
    return map_collect_session(svc)


@router.patch("/{session_id}/drafts/{row_id}", response_model=CollectSessionOut)
async def update_collect_draft(
    body: UpdateDraftIn,
    session_id: str = Path(..., description="会话 ID"),
    row_id: str = Path(..., description="草稿行 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CollectSessionOut:
    svc = _collect(registry, session_id)
    svc.update_draft(row_id, body.qty)
    return map_collect_session(svc)


@router.delete("/{session_id}/drafts/{row_id}", response_model=CollectSessionOut)
async def remove_collect_draft(
    session_id: str = Path(..., description="会话 ID"),
    row_id: str = Path(..., description="草稿行 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CollectSessionOut:
    svc = _collect(registry, session_id)
    svc.remove_draft(row_id)
    return map_collect_session(svc)


@router.post("/{session_id}/commit", response_model=CommitOut)
async def commit_collect_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CommitOut:
    """逐行提交；部分成功时 ok / failed 各自计数，失败行保持草稿可再次提交。"""
    report = await _collect(registry, session_id).commit()
    return map_commit(report)


@router.delete("/{session_id}/saved/{row_id}", response_model=UndoOut)
async def remove_saved_collect_row(
    session_id: str = Path(..., description="会话 ID"),
    row_id: str = Path(..., description="已保存行 ID（CompositeKey digest）"),
    registry: SessionRegistry = Depends(get_registry),
) -> UndoOut:
    result = await _collect(registry, session_id).remove_saved(row_id)
    return map_undo(result)


@router.delete("/{session_id}", response_model=CloseOut)
async def close_collect_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CloseOut:
    _collect(registry, session_id)
    return CloseOut(session_id=session_id, discarded=registry.close(session_id))
