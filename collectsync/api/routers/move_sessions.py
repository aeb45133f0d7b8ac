# collectsync/api/routers/move_sessions.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from collectsync.api.deps import get_registry
from collectsync.api.routers.session_mappers import (
    bin_ref,
    collector_ref,
    map_commit,
    map_move_session,
    map_undo,
)
from collectsync.schemas.sessions import (
    AddMoveDraftIn,
    CloseOut,
    CommitOut,
    MoveSessionOut,
    OpenMoveSessionIn,
    SetSourceIn,
    UndoOut,
    UpdateDraftIn,
)
from collectsync.services.errors import UnknownSession
from collectsync.services.move_progress_service import MoveProgressService
from collectsync.services.session_registry import SessionRegistry

router = APIRouter(prefix="/move-sessions", tags=["bin-to-bin"])


def _move(registry: SessionRegistry, session_id: str) -> MoveProgressService:
    svc = registry.get(session_id)
    if not isinstance(svc, MoveProgressService):
        raise UnknownSession(session_id)
    return svc


@router.post("", response_model=MoveSessionOut, status_code=201)
async def open_move_session(
    body: OpenMoveSessionIn,
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    svc = await registry.open_move(
        doc_entry=body.doc_entry,
        doc_id=body.doc_id,
        line_num=body.line_num,
        item_code=body.item_code,
        work_area_id=body.work_area_id,
        collector=collector_ref(body.collector),
        from_bin=bin_ref(body.from_bin),
        to_bin=bin_ref(body.to_bin),
    )
    return map_move_session(svc)


@router.get("/{session_id}", response_model=MoveSessionOut)
async def get_move_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    return map_move_session(_move(registry, session_id))


@router.post("/{session_id}/refresh", response_model=MoveSessionOut)
async def refresh_move_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    svc = _move(registry, session_id)
    await svc.refresh()
    return map_move_session(svc)


@router.put("/{session_id}/source", response_model=MoveSessionOut)
async def set_move_source(
    body: SetSourceIn,
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    """换源库位会作废旧源库位上的可编辑草稿，并重新拉取批次现存。"""
    svc = _move(registry, session_id)
    await svc.set_source(bin_ref(body.from_bin))
    return map_move_session(svc)


@router.post("/{session_id}/drafts", response_model=MoveSessionOut, status_code=201)
async def add_move_draft(
    body: AddMoveDraftIn,
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    svc = _move(registry, session_id)
    if svc.batch_managed:
        svc.add_batch_draft(
            body.batch_number,
            body.qty,
            to_bin=bin_ref(body.to_bin),
            collector=collector_ref(body.collector),
        )
    else:
        svc.set_single_draft(
            body.qty,
            to_bin=bin_ref(body.to_bin),
            batch_number=body.batch_number,
            collector=collector_ref(body.collector),
        )
    return map_move_session(svc)


@router.patch("/{session_id}/drafts/{row_id}", response_model=MoveSessionOut)
async def update_move_draft(
    body: UpdateDraftIn,
    session_id: str = Path(..., description="会话 ID"),
    row_id: str = Path(..., description="草稿行 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    svc = _move(registry, session_id)
    svc.update_draft(row_id, body.qty)
    return map_move_session(svc)


@router.delete("/{session_id}/drafts/{row_id}", response_model=MoveSessionOut)
async def remove_move_draft(
    session_id: str = Path(..., description="会话 ID"),
    row_id: str = Path(..., description="草稿行 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> MoveSessionOut:
    svc = _move(registry, session_id)
    svc.remove_draft(row_id)
    return map_move_session(svc)


@router.post("/{session_id}/commit", response_model=CommitOut)
async def commit_move_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CommitOut:
    report = await _move(registry, session_id).commit()
    return map_commit(report)


@router.delete("/{session_id}/saved/{row_id}", response_model=UndoOut)
async def remove_move_detail(
    session_id: str = Path(..., description="会话 ID"),
    row_id: str = Path(..., description="已保存明细 ID（CompositeKey digest）"),
    registry: SessionRegistry = Depends(get_registry),
) -> UndoOut:
    result = await _move(registry, session_id).remove_detail(row_id)
    return map_undo(result)


@router.delete("/{session_id}", response_model=CloseOut)
async def close_move_session(
    session_id: str = Path(..., description="会话 ID"),
    registry: SessionRegistry = Depends(get_registry),
) -> CloseOut:
    _move(registry, session_id)
    return CloseOut(session_id=session_id, discarded=registry.close(session_id))
