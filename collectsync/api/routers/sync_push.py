# collectsync/api/routers/sync_push.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from collectsync.api.deps import get_registry
from collectsync.api.routers.session_mappers import map_push
from collectsync.schemas.sessions import PushIn, PushOut
from collectsync.services.session_registry import SessionRegistry

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/push", response_model=PushOut)
async def receive_push(
    body: PushIn,
    registry: SessionRegistry = Depends(get_registry),
) -> PushOut:
    """
    上游房间推送入口（socket 事件的 HTTP 转发）。

    未加入的房间 / 无法识别的事件名 / 载荷不合法 → applied=false，不报错。
    """
    change = await registry.dispatch(body.room, body.event, body.payload)
    return map_push(change)
