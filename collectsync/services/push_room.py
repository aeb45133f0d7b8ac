# collectsync/services/push_room.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from collectsync.metrics import PUSH
from collectsync.services.allocation_ledger import AllocationLedger, LedgerChange
from collectsync.services.sync_events import (
    normalize_bin_to_bin_push,
    normalize_order_pick_push,
)

logger = logging.getLogger("collectsync.push")

ORDER_PICK = "orderPick"
BIN_TO_BIN = "binToBin"


def order_pick_room(doc_entry: int) -> str:
    return f"{ORDER_PICK}:{int(doc_entry)}"


def bin_to_bin_room(doc_key: Union[int, str]) -> str:
    return f"{BIN_TO_BIN}:{str(doc_key).strip()}"


@dataclass
class RoomBinding:
    """一个房间（单据）对应一份台账副本，以及归一推送所需的单据头信息。"""

    ledger: AllocationLedger
    flow: str
    doc_entry: Optional[int] = None
    doc_num: Optional[int] = None
    doc_id: Optional[str] = None
    from_whs_code: Optional[str] = None
    to_whs_code: Optional[str] = None


class PushRoom:
    """
    推送扇出：服务端按房间广播，这里按房间名找到台账副本并 upsert。

    - 未加入的房间、认不出的事件名、坏载荷：吸收并计数，不抛错；
    - 事件名前缀必须与房间的 flow 一致（orderPick:* 只进 orderPick 房间）。
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, RoomBinding] = {}

    def join(self, room: str, binding: RoomBinding) -> RoomBinding:
        cur = self._rooms.get(room)
        if cur is not None:
            return cur
        self._rooms[room] = binding
        logger.debug("joined room %s", room)
        return binding

    def leave(self, room: str) -> None:
        if self._rooms.pop(room, None) is not None:
            logger.debug("left room %s", room)

    def get(self, room: str) -> Optional[RoomBinding]:
        return self._rooms.get(room)

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def dispatch(
        self,
        room: str,
        event_name: str,
        payload: Optional[Mapping[str, Any]],
    ) -> Optional[LedgerChange]:
        binding = self._rooms.get(room)
        if binding is None:
            PUSH.labels(kind="room", outcome="unjoined").inc()
            logger.debug("push %s for unjoined room %s ignored", event_name, room)
            return None

        if not str(event_name or "").startswith(binding.flow + ":"):
            PUSH.labels(kind="room", outcome="foreign").inc()
            logger.debug("push %s does not belong to room %s", event_name, room)
            return None

        if binding.flow == ORDER_PICK:
            push = normalize_order_pick_push(
                event_name,
                payload or {},
                doc_entry=binding.doc_entry,
                doc_num=binding.doc_num,
            )
        else:
            push = normalize_bin_to_bin_push(
                event_name,
                payload or {},
                doc_entry=binding.doc_entry,
                doc_id=binding.doc_id,
                from_whs_code=binding.from_whs_code,
                to_whs_code=binding.to_whs_code,
            )

        if push is None:
            PUSH.labels(kind="room", outcome="dropped").inc()
            return None
        return binding.ledger.apply_push(push)
